"""Configuration for FastAPI application"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # API Settings
    API_TITLE: str = "Pledge Hub API"
    API_VERSION: str = "1.0.0"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080

    # Security
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 1 day

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:5000",
        "http://0.0.0.0:5000",
    ]

    # Rate limiting for write endpoints
    RATE_LIMIT_ENABLED: bool = True
    WRITE_RATE_LIMIT: str = "30/minute"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # pledgehub settings share the same .env


settings = Settings()
