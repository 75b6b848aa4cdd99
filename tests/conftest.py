from decimal import Decimal

import pytest

from rebalancer.core.exceptions import DataSourceError, OrderSubmissionError
from rebalancer.core.models import CoinBalance, InstrumentInfo, PortfolioConfig


class FakeBybitClient:
    """In-memory stand-in for BybitClient."""

    def __init__(self, balances=None, tickers=None, instruments=None):
        self.balances = balances or {}
        self.tickers = tickers or {}
        self.instruments = instruments or []
        self.fail_symbols = set()
        self.order_statuses = {}
        self.orders = []
        self.ticker_calls = []

    def get_wallet_balance(self):
        return [CoinBalance(coin=c, wallet_balance=Decimal(b)) for c, b in self.balances.items()]

    def get_instruments(self):
        return list(self.instruments)

    def get_ticker(self, symbol):
        self.ticker_calls.append(symbol)
        if symbol not in self.tickers:
            raise DataSourceError(f"No ticker price returned for {symbol}")
        return Decimal(self.tickers[symbol])

    def create_order(self, symbol, side, qty, market_unit=None, order_link_id=None):
        self.orders.append({
            "symbol": symbol, "side": side, "qty": qty,
            "market_unit": market_unit, "order_link_id": order_link_id,
        })
        if symbol in self.fail_symbols:
            raise OrderSubmissionError(f"Insufficient balance for {symbol}")
        return f"order-{len(self.orders)}"

    def get_order_status(self, order_id):
        return self.order_statuses.get(order_id, "Filled")


class FakeConfigStore:
    def __init__(self, config):
        self.config = config

    def load(self):
        return self.config


def instrument(symbol, base_precision=6, min_order_qty="0.000001", min_order_amt="1"):
    return InstrumentInfo(
        symbol=symbol,
        base_coin=symbol[:-4],
        quote_coin="USDT",
        status="Trading",
        base_precision=base_precision,
        min_order_qty=Decimal(min_order_qty),
        min_order_amt=Decimal(min_order_amt),
    )


@pytest.fixture
def make_client():
    def _make(**kwargs):
        return FakeBybitClient(**kwargs)
    return _make


@pytest.fixture
def make_instrument():
    return instrument


@pytest.fixture
def make_config_store():
    def _make(targets, threshold="1", **kwargs):
        return FakeConfigStore(PortfolioConfig(
            targets={c: Decimal(str(p)) for c, p in targets.items()},
            threshold=Decimal(threshold),
            **kwargs
        ))
    return _make


@pytest.fixture
def spot_instruments():
    return [
        instrument("BTCUSDT", base_precision=6, min_order_qty="0.000048"),
        instrument("ETHUSDT", base_precision=4, min_order_qty="0.0001"),
        instrument("SOLUSDT", base_precision=3, min_order_qty="0.01"),
    ]
