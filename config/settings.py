# config/settings.py - Broker, trading and logging configuration
import os
from typing import Optional

from pydantic_settings import BaseSettings

SANDBOX_URL = "https://sandbox-invest-public-api.tinkoff.ru/rest/tinkoff.public.invest.api.contract.v1."
PRODUCTION_URL = "https://invest-public-api.tinkoff.ru/rest/tinkoff.public.invest.api.contract.v1."


class Settings(BaseSettings):
    # Broker credentials
    TINVEST_TOKEN: Optional[str] = os.getenv("TINVEST_TOKEN")
    TINVEST_ACCOUNT_ID: Optional[str] = os.getenv("TINVEST_ACCOUNT_ID")

    # Broker endpoints
    TINVEST_SANDBOX: bool = os.getenv("TINVEST_SANDBOX", "true").lower() == "true"
    TINVEST_SANDBOX_URL: str = os.getenv("TINVEST_SANDBOX_URL", SANDBOX_URL)
    TINVEST_PROD_URL: str = os.getenv("TINVEST_PROD_URL", PRODUCTION_URL)

    # Per-call deadline for every broker request
    API_TIMEOUT: float = float(os.getenv("API_TIMEOUT", "10.0"))

    # Broker quota: 600 ms spacing keeps bulk loops under 100 requests per minute
    RATE_LIMIT_INTERVAL: float = float(os.getenv("RATE_LIMIT_INTERVAL", "0.6"))
    RATE_LIMIT_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_PER_MINUTE", "100"))

    # Exchange calendar used for market hours
    SCHEDULE_EXCHANGE: str = os.getenv("SCHEDULE_EXCHANGE", "MOEX_PLUS_WEEKEND")
    PORTFOLIO_CURRENCY: str = os.getenv("PORTFOLIO_CURRENCY", "RUB")

    # Local state
    LEDGER_PATH: str = os.getenv("LEDGER_PATH", "data/positions.csv")
    INSTRUMENTS_CONFIG: Optional[str] = os.getenv("INSTRUMENTS_CONFIG")

    # Trading limits
    TRADING_LIMIT: float = float(os.getenv("TRADING_LIMIT", "30000"))
    MAX_POSITION_PCT: float = float(os.getenv("MAX_POSITION_PCT", "0.1"))
    MAX_LOSS_THRESHOLD: float = float(os.getenv("MAX_LOSS_THRESHOLD", "0.05"))

    # Logging configuration
    LOG_TO_FILE: bool = os.getenv("LOG_TO_FILE", "true").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_DIR: str = os.getenv("LOG_DIR", "logs")
    LOG_TIMEZONE: str = os.getenv("LOG_TIMEZONE", "Asia/Yekaterinburg")

    # Deployment mode
    DEPLOYMENT_MODE: str = os.getenv(
        "DEPLOYMENT_MODE", "development"
    )  # development, production, test

    def get_base_url(self) -> str:
        """Broker REST prefix for the selected environment"""
        return self.TINVEST_SANDBOX_URL if self.TINVEST_SANDBOX else self.TINVEST_PROD_URL

    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.DEPLOYMENT_MODE.lower() == "production"

    class Config:
        env_file = ".env"


settings = Settings()
