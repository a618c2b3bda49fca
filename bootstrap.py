import logging

from schoolmarks.db import Base, SessionLocal, engine
from schoolmarks.services.bootstrap_service import run_bootstrap


logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s %(message)s')
logger = logging.getLogger('bootstrap')


def main():
    # Importing models registers every table on Base.metadata.
    import schoolmarks.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        result = run_bootstrap(db)
        if result.get('ran'):
            logger.info('Bootstrap executed: %s', result)
        else:
            logger.info('Bootstrap skipped: %s', result)
    finally:
        db.close()


if __name__ == '__main__':
    main()
