from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://app:devpassword@db:5432/timehug"
    REDIS_URL: str = "redis://redis:6379/0"

    STORAGE_URL: str = "http://storage:5000"
    STORAGE_BUCKET: str = "generations"
    STORAGE_SERVICE_KEY: str = ""
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    AUTH_JWT_SECRET: str = ""
    AUTH_JWT_AUDIENCE: str = "authenticated"

    DEFAULT_TEMPLATE_SLUG: str = "hug-younger-self"
    STORE_TIMEOUT_SECONDS: float = 10.0

    # "placeholder" completes immediately; "async" dispatches to GENERATOR_URL
    FULFILLMENT_MODE: str = "placeholder"
    GENERATOR_URL: str = "http://generator:8080"
    GENERATOR_API_KEY: str = ""
    GENERATOR_TIMEOUT_SECONDS: float = 30.0
    GENERATION_WEBHOOK_SECRET: str = ""
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    REFUND_ON_FAILURE: bool = True
    STALE_GENERATION_MINUTES: int = 30

    APP_ENV: str = "development"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
