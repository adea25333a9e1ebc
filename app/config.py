from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings (tokens are issued by the auth service, only verified here)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # App Settings
    APP_NAME: str = "GST Billing Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Seller (single GSTIN entity)
    SELLER_GSTIN: str = ""
    SELLER_LEGAL_NAME: str = ""
    SELLER_TRADE_NAME: Optional[str] = None
    SELLER_ADDRESS_LINE1: str = ""
    SELLER_ADDRESS_LINE2: Optional[str] = None
    SELLER_CITY: str = ""
    SELLER_STATE_CODE: str = "27"  # Maharashtra
    SELLER_PINCODE: str = ""
    SELLER_PHONE: Optional[str] = None
    SELLER_EMAIL: Optional[str] = None

    # Document numbering: {PREFIX}/{COMPANY_CODE}/{FY}/{SEQUENCE}
    # Leave COMPANY_CODE empty to keep invoice numbers within the 16 char portal limit
    COMPANY_CODE: str = ""
    QUOTATION_VALIDITY_DAYS: int = 30
    DEFAULT_PAYMENT_TERMS: str = "Net 30"

    # GST E-Invoice (NIC portal)
    EINVOICE_ENABLED: bool = False
    EINVOICE_API_MODE: str = "SANDBOX"  # SANDBOX or PRODUCTION
    EINVOICE_BASE_URL: Optional[str] = None  # Overrides the NIC URL (e.g. a GSP endpoint)
    EINVOICE_USERNAME: str = ""
    EINVOICE_PASSWORD: str = ""
    EINVOICE_CLIENT_ID: str = ""
    EINVOICE_CLIENT_SECRET: str = ""
    EINVOICE_AUTH_TIMEOUT_SECONDS: float = 30.0
    EINVOICE_TIMEOUT_SECONDS: float = 60.0
    EINVOICE_TOKEN_TTL_MINUTES: int = 330  # Portal tokens live 6 hours, refresh at 5.5
    EINVOICE_CANCEL_WINDOW_HOURS: int = 24
    EINVOICE_ENCRYPT_PAYLOAD: bool = True

    # Overdue / expiry sweep
    OVERDUE_SWEEP_ENABLED: bool = True
    OVERDUE_SWEEP_INTERVAL_MINUTES: int = 60

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('EINVOICE_API_MODE', mode='before')
    @classmethod
    def normalize_api_mode(cls, v):
        return v.upper() if isinstance(v, str) else v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
