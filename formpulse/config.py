from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FORMPULSE_", env_file=".env", env_file_encoding="utf-8")

    PROJECT_NAME: str = "FormPulse API"
    LOG_LEVEL: str = "INFO"

    # external event store
    STORE_BACKEND: str = "redis"          # redis | memory
    REDIS_URL: str = "redis://localhost:6379/0"
    EVENT_KEY_PREFIX: str = "formpulse:events"

    # collectors are called from any embedding site
    CORS_ORIGINS: str = "*"

    DEFAULT_WINDOW_DAYS: int = 7
    RETENTION_DAYS: int = 30
    MAX_BATCH_EVENTS: int = 500

    @property
    def cors_origins(self):
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()
