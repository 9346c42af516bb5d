from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GRADE_ENGINE_",
        env_file=".env",
        extra="ignore",
    )

    environment: str = "development"
    database_url: str = "sqlite:///./grade_engine.db"
    # Seconds a connection waits on a locked database before giving up
    database_timeout_seconds: float = 5.0
    log_level: str = "INFO"

    # Per-(student, offering) critical section
    recompute_lock_timeout_seconds: float = 5.0
    batch_max_workers: int = 4

    rate_limit_enabled: bool = True
    batch_recompute_rate_limit: str = "10/minute"

    default_failing_letter: str = "F"


settings = Settings()
