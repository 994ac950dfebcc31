# tinvest_trader/utils/config_validator.py
"""Configuration validation on application startup"""
import logging
import re
from typing import List, Tuple

from config.settings import settings
from tinvest_trader.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

BROKER_URL_PATTERN = r"^https://[\w\.\-]+(:\d+)?/rest/tinkoff\.public\.invest\.api\.contract\.v1\.$"


class ConfigValidationError(ConfigurationError):
    """Configuration validation error"""

    pass


class ConfigValidator:
    """Validate trading configuration on startup"""

    @staticmethod
    def validate_token(token) -> Tuple[bool, str]:
        """Validate that an API token is present"""
        if token and token.strip():
            return True, ""
        return False, "TINVEST_TOKEN is not set"

    @staticmethod
    def validate_account_id(account_id) -> Tuple[bool, str]:
        """Validate that the trading account id is present"""
        if account_id and account_id.strip():
            return True, ""
        return False, "TINVEST_ACCOUNT_ID is not set"

    @staticmethod
    def validate_base_url(url: str, name: str) -> Tuple[bool, str]:
        """Validate broker REST prefix format"""
        if re.match(BROKER_URL_PATTERN, url):
            return True, ""
        return False, f"Invalid {name}: expected '.../rest/tinkoff.public.invest.api.contract.v1.', got {url}"

    @staticmethod
    def validate_timeout(timeout: float, name: str) -> Tuple[bool, str]:
        """Validate timeout value"""
        if timeout > 0:
            return True, ""
        return False, f"Invalid {name}: must be positive, got {timeout}"

    @staticmethod
    def validate_rate_limit(interval: float, per_minute: int) -> Tuple[bool, str]:
        """Validate that the call spacing honours the per-minute quota"""
        if interval <= 0 or per_minute <= 0:
            return False, "RATE_LIMIT_INTERVAL and RATE_LIMIT_PER_MINUTE must be positive"
        if 60.0 / interval > per_minute:
            return False, (
                f"RATE_LIMIT_INTERVAL {interval}s allows {60.0 / interval:.0f} requests/min, "
                f"quota is {per_minute}"
            )
        return True, ""

    @staticmethod
    def validate_fraction(value: float, name: str) -> Tuple[bool, str]:
        """Validate a fraction in (0, 1]"""
        if 0 < value <= 1:
            return True, ""
        return False, f"Invalid {name}: must be in (0, 1], got {value}"

    @staticmethod
    def validate_all(config=None) -> List[str]:
        """Validate all critical configuration values"""
        config = config or settings
        errors = []

        checks = [
            ConfigValidator.validate_token(config.TINVEST_TOKEN),
            ConfigValidator.validate_account_id(config.TINVEST_ACCOUNT_ID),
            ConfigValidator.validate_base_url(config.TINVEST_SANDBOX_URL, "TINVEST_SANDBOX_URL"),
            ConfigValidator.validate_base_url(config.TINVEST_PROD_URL, "TINVEST_PROD_URL"),
            ConfigValidator.validate_timeout(config.API_TIMEOUT, "API_TIMEOUT"),
            ConfigValidator.validate_rate_limit(
                config.RATE_LIMIT_INTERVAL, config.RATE_LIMIT_PER_MINUTE
            ),
            ConfigValidator.validate_fraction(config.MAX_POSITION_PCT, "MAX_POSITION_PCT"),
            ConfigValidator.validate_fraction(config.MAX_LOSS_THRESHOLD, "MAX_LOSS_THRESHOLD"),
        ]
        for valid, msg in checks:
            if not valid:
                errors.append(msg)

        if config.TRADING_LIMIT <= 0:
            errors.append(f"Invalid TRADING_LIMIT: must be positive, got {config.TRADING_LIMIT}")

        # Deployment mode
        valid_modes = ["development", "production", "test"]
        if config.DEPLOYMENT_MODE.lower() not in valid_modes:
            errors.append(
                f"Invalid DEPLOYMENT_MODE: must be one of {valid_modes}, "
                f"got '{config.DEPLOYMENT_MODE}'"
            )

        if config.is_production() and config.TINVEST_SANDBOX:
            logger.warning("DEPLOYMENT_MODE is production but TINVEST_SANDBOX is enabled")

        return errors

    @staticmethod
    def validate_and_raise(config=None):
        """Validate configuration and raise if any errors found"""
        errors = ConfigValidator.validate_all(config)

        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            logger.error(error_msg)
            raise ConfigValidationError(error_msg)

        logger.info("Configuration validation passed")
