# paygate/core/config.py
from functools import lru_cache
from typing import Optional

from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Paygate"
    LOG_LEVEL: str = "INFO"

    # Payment enforcement
    X402_ENABLED: bool = False
    X402_PAY_TO_ADDRESS: Optional[str] = None
    X402_NETWORK: str = "base-sepolia"
    X402_PRICE: str = "$0.01"

    # Facilitator used for verify/settle
    X402_FACILITATOR_URL: AnyHttpUrl = "https://x402.org/facilitator"
    X402_FACILITATOR_API_KEY: Optional[str] = None

    # Paywall branding
    X402_PAYWALL_APP_NAME: Optional[str] = None
    X402_PAYWALL_APP_LOGO: Optional[str] = None
    X402_PAYWALL_CDP_CLIENT_KEY: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env


@lru_cache()  # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
