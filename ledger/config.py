from decimal import Decimal
from functools import lru_cache
import json
import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings

from .constants import to_money, to_rate
from .errors import InvalidInputError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App Settings
    APP_NAME: str = "Credential Market Ledger"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = ["http://localhost:5173"]

    # Fallbacks for the runtime key-value settings
    DEFAULT_EXCHANGE_RATE: Decimal = Decimal("3.65")
    DEFAULT_WITHDRAWAL_FEE: Decimal = Decimal("0.10")
    DEFAULT_YAPE_MIN: Decimal = Decimal("10.00")
    DEFAULT_BINANCE_MIN: Decimal = Decimal("10.00")

    # Business constants
    SUPPLIER_APPLICATION_COST: Decimal = Decimal("7.50")
    DEFAULT_DURATION_DAYS: int = 30
    SYSTEM_REFERRAL_CODE: str = "BLD231"  # applies without a referrer

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


EXCHANGE_RATE = "exchange_rate"
WITHDRAWAL_FEE = "withdrawal_fee"
YAPE_MIN = "yape_min"
BINANCE_MIN = "binance_min"


class SettingsStore:
    """
    Runtime key-value settings kept in storage (admin-editable).

    Every read falls back to the configured default when the key is absent
    or unparseable.
    """

    def __init__(self, storage, settings: Settings | None = None):
        self.storage = storage
        self.settings = settings or get_settings()

    def _defaults(self) -> dict[str, Decimal]:
        return {
            EXCHANGE_RATE: self.settings.DEFAULT_EXCHANGE_RATE,
            WITHDRAWAL_FEE: self.settings.DEFAULT_WITHDRAWAL_FEE,
            YAPE_MIN: self.settings.DEFAULT_YAPE_MIN,
            BINANCE_MIN: self.settings.DEFAULT_BINANCE_MIN,
        }

    def get_decimal(self, key: str) -> Decimal:
        fallback = self._defaults()[key]
        raw = self.storage.settings.get(key)
        if raw is None:
            return Decimal(str(fallback))
        try:
            return Decimal(str(raw))
        except ArithmeticError:
            logger.warning("Setting %s has unparseable value %r, using %s", key, raw, fallback)
            return Decimal(str(fallback))

    @property
    def exchange_rate(self) -> Decimal:
        return self.get_decimal(EXCHANGE_RATE)

    @property
    def withdrawal_fee(self) -> Decimal:
        return self.get_decimal(WITHDRAWAL_FEE)

    @property
    def yape_min(self) -> Decimal:
        return self.get_decimal(YAPE_MIN)

    @property
    def binance_min(self) -> Decimal:
        return self.get_decimal(BINANCE_MIN)

    def set_exchange_rate(self, rate) -> Decimal:
        value = to_money(rate)
        if value <= 0:
            raise InvalidInputError("Exchange rate must be a positive number")
        self.storage.settings[EXCHANGE_RATE] = str(value)
        return value

    def set_withdrawal_fee(self, fee) -> Decimal:
        value = to_rate(fee)
        if value < 0 or value > 1:
            raise InvalidInputError("Withdrawal fee must be between 0 and 1 (e.g. 0.10 for 10%)")
        self.storage.settings[WITHDRAWAL_FEE] = str(value)
        return value

    def set_recharge_limits(self, yape_min, binance_min) -> tuple[Decimal, Decimal]:
        yape, binance = to_money(yape_min), to_money(binance_min)
        if yape < 0 or binance < 0:
            raise InvalidInputError("Recharge minimums must be non-negative")
        self.storage.settings[YAPE_MIN] = str(yape)
        self.storage.settings[BINANCE_MIN] = str(binance)
        return yape, binance
