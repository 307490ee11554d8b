from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "postgresql+asyncpg://homebid:homebid_dev@db:5432/homebid"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"
    RESERVATION_TTL_SECONDS: int = 300

    # Security
    SECRET_KEY: str = "dev-secret-key-not-for-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    ALLOWED_ORIGINS: str = "*"

    # Stripe
    STRIPE_SECRET_KEY: str = "mock_stripe_key"
    CURRENCY: str = "usd"

    # Fees
    DEPOSIT_FRACTION: Decimal = Decimal("0.25")
    PLATFORM_FEE_FRACTION: Decimal = Decimal("0.12")
    RELEASE_DEPOSIT_ON_ACCEPT: bool = False

    # Bidding
    MIN_BID_AMOUNT: Decimal = Decimal("50")
    MAX_BID_AMOUNT: Decimal = Decimal("999999")

    # Completion
    COMPLETION_DISPUTE_WINDOW_DAYS: int = 7
    ENFORCE_DISPUTE_WINDOW: bool = True
    MAX_COMPLETION_PHOTOS: int = 20
    MAX_COMPLETION_VIDEOS: int = 5

    # Disputes
    MEDIATION_WINDOW_HOURS: int = 48
    DISPUTE_REASON_MIN_LENGTH: int = 10
    DISPUTE_REASON_MAX_LENGTH: int = 1000
    REWORK_WINDOW_DAYS: int = 7
    REWORK_EXPIRY_POLICY: str = "refund"  # refund, arbitration

    # App
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
