from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from schoolmarks.config import settings
from schoolmarks.models import Role, User


logger = logging.getLogger(__name__)


def run_bootstrap(db: Session) -> dict:
    """Seed a super_admin account on an empty database when one is configured."""
    users_count = db.query(User).count()
    admin_email = (settings.bootstrap_admin_email or '').strip().lower()
    if users_count > 0 or not admin_email:
        logger.info('bootstrap_skip users=%s admin_configured=%s', users_count, bool(admin_email))
        return {'ran': False, 'users_count': users_count}

    logger.warning('bootstrap_run_empty_db_detected')
    admin = User(
        email=admin_email,
        first_name='System',
        last_name='Administrator',
        role=Role.SUPER_ADMIN.value,
        is_active=True,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    logger.info('bootstrap_admin_created user_id=%s', admin.id)
    return {'ran': True, 'users_count': 1, 'admin_user_id': admin.id}
