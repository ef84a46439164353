from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    # This service needs to know the secret to VERIFY tokens
    SECRET_KEY: str
    ALGORITHM: str

    REDIS_URL: str
    SEARCH_INDEX_PREFIX: str = "search"

    # Payment provider
    STRIPE_API_KEY: str = ""
    PAYMENT_CURRENCY: str = "gbp"

    # Template mail API
    MAIL_API_URL: str = "https://mandrillapp.com/api/1.0"
    MAIL_API_KEY: str = ""
    MAIL_TIMEOUT_SECONDS: float = 10.0

    # Used when the settings table has no row for a fee
    DEFAULT_COMMISSION_FEE: Decimal = Decimal("0")
    DEFAULT_SERVICE_FEE: Decimal = Decimal("0")

    OUTBOX_POLL_INTERVAL: int = 5
    OUTBOX_BATCH_SIZE: int = 100

    model_config = SettingsConfigDict(env_file=".env")


settings = Settings()
