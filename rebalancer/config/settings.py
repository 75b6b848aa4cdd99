import sys
from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global application settings.
    Read from environment variables (and .env) and validated on load.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Bybit
    BYBIT_API_KEY: Optional[str] = None
    BYBIT_API_SECRET: Optional[str] = None
    BYBIT_TESTNET: bool = False
    BYBIT_RECV_WINDOW: str = "5000"

    # Rebalancing
    REBALANCE_THRESHOLD: Decimal = Field(default=Decimal("1.0"), ge=Decimal("0.01"), le=Decimal("100"))
    MIN_TRADE_USDT: Decimal = Field(default=Decimal("10"), ge=Decimal("1"))
    CHECK_INTERVAL_SECONDS: int = Field(default=30, ge=1)
    STRICT_PRICE_CHECK: bool = False  # True: a coin without price aborts the snapshot
    PORTFOLIO_FILE: str = "portfolio.json"

    # Execution pacing
    SETTLEMENT_DELAY_SECONDS: float = 1.0
    INTER_TRADE_DELAY_SECONDS: float = 0.5
    INSTRUMENT_REFRESH_SECONDS: int = 3600

    # WebSocket
    WS_PING_INTERVAL_SECONDS: float = 20.0
    WS_RECONNECT_DELAY_SECONDS: float = 5.0
    WS_MAX_RECONNECT_ATTEMPTS: int = 10

    # Notion trade journal (optional)
    NOTION_TOKEN: Optional[str] = None
    NOTION_TRADE_DB_ID: Optional[str] = None

    # Discord alerts (optional)
    DISCORD_WEBHOOK_URL: Optional[str] = None

    # Behaviour
    LOG_LEVEL: str = "INFO"
    LOG_RETENTION_DAYS: int = 30
    DRY_RUN: bool = False

    @property
    def has_api_credentials(self) -> bool:
        return bool(self.BYBIT_API_KEY and self.BYBIT_API_SECRET)


# Singleton Instance
try:
    settings = Settings()
except Exception as e:
    # logging depends on settings, so only print here
    print(f"CRITICAL: Failed to load configuration. Invalid env vars? {e}", file=sys.stderr)
    settings = None
