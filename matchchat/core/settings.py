from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "matchchat"

    # unset -> in-process bus (single worker)
    REDIS_URL: str | None = None

    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    ATTACHMENT_BACKEND: str = "local"  # "local" | "s3"
    LOCAL_MEDIA_DIR: str = "./data/media"
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    S3_ENDPOINT: str | None = None
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_BUCKET: str = "matchchat-attachments"
    S3_PUBLIC_URL: str | None = None

    MAX_ATTACHMENT_BYTES: int = 5 * 1024 * 1024
    MARK_READ_BATCH_SIZE: int = 100
    PREVIEW_MAX_LENGTH: int = 200

    SUMMARY_RETRY_BASE_DELAY: float = 0.2
    SUMMARY_RETRY_MAX_DELAY: float = 5.0

    SUPPORT_DISPLAY_NAME: str = "Wedding Match Support"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"


settings = Settings()
