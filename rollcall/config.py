from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'CFA Roll Call'
    app_env: str = 'local'
    app_timezone: str = 'Europe/Paris'
    database_url: str = 'sqlite:///./rollcall.db'
    appel_expiry_batch_size: int = 500
    appel_default_expiration_minutes: int = 20
    cron_log_path: str = ''
    app_log_path: str = ''
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200


settings = Settings()
