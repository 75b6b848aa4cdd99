import threading
from decimal import Decimal
from typing import Dict, Iterable, Optional

from rebalancer.config.logging import get_logger
from rebalancer.core.exceptions import AppError
from rebalancer.core.models import QUOTE_COIN

logger = get_logger("Portfolio")


class PriceCache:
    """
    Latest known price per symbol. Written by the ticker stream thread,
    read by the tick loop. Last write wins; nothing is evicted.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._prices: Dict[str, Decimal] = {}

    def on_ticker_update(self, symbol: str, price: Decimal):
        with self._lock:
            self._prices[symbol] = price

    def get_price(self, symbol: str) -> Optional[Decimal]:
        with self._lock:
            return self._prices.get(symbol)

    def remove(self, symbol: str):
        with self._lock:
            self._prices.pop(symbol, None)

    def clear(self):
        with self._lock:
            self._prices.clear()

    def snapshot(self) -> Dict[str, Decimal]:
        with self._lock:
            return dict(self._prices)

    def __len__(self) -> int:
        with self._lock:
            return len(self._prices)


class MarketDataService:
    """
    Price lookup for the planner and the snapshot: cache first,
    then a direct ticker query against the exchange.
    """

    def __init__(self, cache: PriceCache, client, quote_coin: str = QUOTE_COIN):
        self.cache = cache
        self.client = client
        self.quote_coin = quote_coin

    def price(self, symbol: str) -> Optional[Decimal]:
        cached = self.cache.get_price(symbol)
        if cached is not None:
            return cached

        try:
            price = self.client.get_ticker(symbol)
        except AppError as e:
            logger.warning(f"No price for {symbol}: {e}")
            return None
        return price

    def coin_prices(self, coins: Iterable[str]) -> Dict[str, Decimal]:
        """coin -> price in quote currency. Coins without a price are left out."""
        prices = {}
        for coin in coins:
            if coin == self.quote_coin:
                continue
            price = self.price(f"{coin}{self.quote_coin}")
            if price is not None:
                prices[coin] = price
        return prices
