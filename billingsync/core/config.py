from pydantic_settings import BaseSettings
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Environment configuration
    environment: str = "development"

    # Database configuration (async SQLAlchemy URL, e.g. postgresql+asyncpg://...)
    database_url: Optional[str] = ""
    database_echo: bool = False

    # Frontend URL (for CORS)
    frontend_url: str = "http://localhost:3000"

    # JWT configuration (bearer tokens for users and operators)
    jwt_secret_key: str = "your-secret-key-change-this"
    jwt_algorithm: str = "HS256"

    # Razorpay configuration
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_base: str = "https://api.razorpay.com/v1"
    razorpay_timeout: float = 15.0
    razorpay_plan_id: str = "plan_pro_monthly"
    razorpay_total_count: int = 120

    # Circuit breakers (seconds)
    razorpay_breaker_failure_threshold: int = 5
    razorpay_breaker_timeout: float = 60.0
    razorpay_breaker_monitoring_period: float = 300.0
    database_breaker_failure_threshold: int = 3
    database_breaker_timeout: float = 30.0
    database_breaker_monitoring_period: float = 180.0

    # Job processing
    job_processor_enabled: bool = False
    job_interval_seconds: float = 30.0
    job_batch_size: int = 10
    job_stale_after_seconds: float = 600.0
    job_ttl_days: int = 30
    daily_sync_hour: int = 2

    # Webhook ledger / grace period
    processed_webhook_ttl_days: int = 90
    grace_period_days: int = 3

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
