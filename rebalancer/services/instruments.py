import threading
import time
from typing import Dict, Optional

from rebalancer.config.logging import get_logger
from rebalancer.core.exceptions import AppError, DataSourceError
from rebalancer.core.models import QUOTE_COIN, InstrumentInfo

logger = get_logger("Trade")

TRADING_STATUS = "Trading"


class InstrumentRegistry:
    """
    Per-symbol trading constraints of active USDT spot pairs.
    The map is replaced as a whole on refresh; a failed refresh keeps the old one.
    """

    def __init__(self, client, quote_coin: str = QUOTE_COIN):
        self.client = client
        self.quote_coin = quote_coin
        self._lock = threading.Lock()
        self._instruments: Dict[str, InstrumentInfo] = {}
        self.last_refreshed: Optional[float] = None

    def refresh(self):
        try:
            instruments = self.client.get_instruments()
        except AppError as e:
            logger.error(f"Instrument refresh failed, keeping {len(self)} cached pairs: {e}")
            raise DataSourceError(f"Instrument refresh failed: {e}")

        active = {
            info.symbol: info
            for info in instruments
            if info.quote_coin == self.quote_coin and info.status == TRADING_STATUS
        }
        with self._lock:
            self._instruments = active
            self.last_refreshed = time.monotonic()
        logger.info(f"Instruments loaded: {len(active)} {self.quote_coin} pairs")

    def lookup(self, symbol: str) -> Optional[InstrumentInfo]:
        with self._lock:
            return self._instruments.get(symbol)

    def is_stale(self, max_age_seconds: float) -> bool:
        if self.last_refreshed is None:
            return True
        return time.monotonic() - self.last_refreshed >= max_age_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._instruments)
