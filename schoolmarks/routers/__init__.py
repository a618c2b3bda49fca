from schoolmarks.routers import auth, batch_jobs, marks, notifications

__all__ = [
    'auth',
    'batch_jobs',
    'marks',
    'notifications',
]
