"""API configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://fleetflow:fleetflow@db:5432/fleetflow"
    DB_CREATE_ALL: bool = False
    REDIS_URL: str = "redis://redis:6379/0"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Generative advisor (any OpenAI-compatible endpoint, Groq by default)
    ADVISOR_API_KEY: str | None = None
    ADVISOR_BASE_URL: str = "https://api.groq.com/openai/v1"
    ADVISOR_MODEL: str = "llama-3.1-8b-instant"
    ADVISOR_TIMEOUT_SEC: float = 10.0
    AI_DAILY_QUOTA: int = 1000

    # Map / traffic / weather providers
    TOMTOM_API_KEY: str | None = None
    OPENWEATHER_API_KEY: str | None = None
    GEOCODE_REGION: str = "India"
    GEOCODE_COUNTRY_SET: str = "IN"

    # Provider cache TTLs (seconds)
    GEOCODE_CACHE_TTL: int = 24 * 3600
    SEARCH_CACHE_TTL: int = 3600
    WEATHER_CACHE_TTL: int = 10 * 60
    TRAFFIC_CACHE_TTL: int = 5 * 60
    ROUTE_STATS_CACHE_TTL: int = 10 * 60
    STALE_CACHE_TTL: int = 7 * 24 * 3600

    # Background re-optimization sweep
    REOPTIMIZE_WORKER_ENABLED: bool = True
    REOPTIMIZE_INTERVAL_SEC: int = 5 * 60
    REOPTIMIZE_LOOKBACK_HOURS: int = 24
    REOPTIMIZE_CONCURRENCY: int = 4

    NOTIFICATION_QUEUE_SIZE: int = 1000

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
