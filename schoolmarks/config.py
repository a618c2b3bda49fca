from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'School Marks'
    app_env: str = 'local'
    app_timezone: str = 'UTC'
    database_url: str = 'sqlite:///./schoolmarks.db'
    auth_secret: str = 'change-me'
    auth_token_expiry_hours: int = 12
    enable_notifications: bool = True
    rejection_reason_min_length: int = 10
    pass_percentage: float = 40.0
    batch_job_retention_days: int = 30
    notification_retention_days: int = 90
    marks_page_limit_default: int = 50
    marks_page_limit_max: int = 100
    batch_job_cleanup_time: str = '02:00'
    bootstrap_admin_email: str = ''
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200


settings = Settings()
