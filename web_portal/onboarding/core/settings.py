"""
Settings management using Pydantic Settings.
Unified configuration from environment variables.
"""

from decimal import Decimal
from typing import Dict

from pydantic import ConfigDict, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./onboarding.db"

    # Admin
    ADMIN_TOKEN: str = ""
    ADMIN_TOKEN_HASH: str = ""
    ALLOW_TERMINAL_DELETE: bool = True

    # Channel lifecycle
    CHANNEL_TTL_MINUTES: int = 24 * 60
    ADDRESS_COOLDOWN_MINUTES: int = 7 * 24 * 60
    PLAN_TTL_MINUTES: int = 15
    AMOUNT_TOLERANCE: Decimal = Decimal("0.05")

    # Account creation
    OPERATOR_ACCOUNT: str = "onboarder"
    ACCOUNT_CREATION_FEE: str = "3.000 HIVE"
    DELEGATION_VESTS: str = "30000.000000 VESTS"
    ACCOUNT_PRICE_USD: Decimal = Decimal("3.00")
    # share of the asset network fee added to the USD price
    NETWORK_FEE_SURCHARGE: Decimal = Decimal("0.20")
    CHARGE_TRANSFER_FEE: bool = True

    # RC cost defaults per operation
    RC_COST_CLAIM_ACCOUNT: int = 10_000_000_000_000
    RC_COST_CREATE_CLAIMED_ACCOUNT: int = 50_000_000_000
    RC_COST_CREATE_ACCOUNT: int = 30_000_000_000

    # Pricing
    PRICE_FEED_PROVIDER: str = "manual"
    MANUAL_PRICES_USD: str = ""
    COINGECKO_API_KEY: str = ""
    PRICE_CACHE_SECONDS: int = 120

    # Collaborators
    MONITOR_FEED_URL: str = ""
    MONITOR_FEED_TOKEN: str = ""
    KEYCHAIN_URL: str = ""
    KEYCHAIN_TOKEN: str = ""
    ADDRESS_SERVICE_URL: str = ""
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # Scheduler
    SCHEDULER_ENABLED: bool = False
    EXPIRY_SWEEP_SECONDS: int = 60
    MONITOR_POLL_SECONDS: int = 30
    RESOURCE_SNAPSHOT_SECONDS: int = 300

    LOG_LEVEL: str = "INFO"
    APP_BUILD_STAMP: str = ""

    @field_validator("ADMIN_TOKEN", "ADMIN_TOKEN_HASH", "OPERATOR_ACCOUNT", mode="before")
    def strip_value(cls, v):
        return v.strip() if isinstance(v, str) else v

    def manual_prices(self) -> Dict[str, Decimal]:
        # "BTC=60000,ETH=2500"
        out: Dict[str, Decimal] = {}
        for part in (self.MANUAL_PRICES_USD or "").split(","):
            if "=" not in part:
                continue
            sym, price = part.split("=", 1)
            out[sym.strip().upper()] = Decimal(price.strip())
        return out

    model_config = ConfigDict(env_file=".env", case_sensitive=True, extra="allow")


settings = Settings()
