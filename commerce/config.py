import logging
import os
from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    platform_fee_rate: Decimal = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.25"))
    affiliate_commission_rate: Decimal = Decimal(os.getenv("AFFILIATE_COMMISSION_RATE", "0.10"))
    min_withdrawal: int = int(os.getenv("MIN_WITHDRAWAL", "10000"))
    currency: str = os.getenv("LEDGER_CURRENCY", "NGN")

    reporting_timezone: str = os.getenv("REPORTING_TIMEZONE", "Africa/Lagos")

    conflict_retry_attempts: int = int(os.getenv("CONFLICT_RETRY_ATTEMPTS", "5"))
    conflict_retry_base_delay: float = float(os.getenv("CONFLICT_RETRY_BASE_DELAY", "0.01"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def configure_logging(level: str = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
