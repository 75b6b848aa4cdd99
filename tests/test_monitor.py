import time
from decimal import Decimal

import pytest

from rebalancer.core.exceptions import DataSourceError
from rebalancer.core.models import ConnectionStatus, MonitorPhase, PortfolioConfig, TradeAction
from rebalancer.services.calculator import PortfolioCalculator
from rebalancer.services.executor import TradeExecutor
from rebalancer.services.instruments import InstrumentRegistry
from rebalancer.services.journal import TradeJournal
from rebalancer.services.market_data import MarketDataService, PriceCache
from rebalancer.services.monitor import RebalanceMonitor
from rebalancer.services.planner import RebalancePlanner
from rebalancer.services.portfolio import PortfolioService
from rebalancer.services.portfolio_store import PortfolioConfigStore


class FakeStream:
    def __init__(self):
        self.on_status = None
        self.exhausted = False
        self.subscribed = []
        self.unsubscribed = []
        self.connected = False

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.connected = False

    def subscribe(self, symbols):
        self.subscribed.extend(symbols)

    def unsubscribe(self, symbol):
        self.unsubscribed.append(symbol)


class FlakyConfigStore:
    """Raises a non-application error on the first `failures` loads."""

    def __init__(self, config, failures):
        self.config = config
        self.failures = failures

    def load(self):
        if self.failures:
            self.failures -= 1
            raise ValueError("unreadable interval")
        return self.config


def wait_until(condition, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def build(make_client, make_config_store, spot_instruments):
    def _build(balances, targets, tickers, threshold="1", stream=None, dry_run=False, alert=None,
               config_store=None, **config):
        client = make_client(balances=balances, tickers=tickers, instruments=spot_instruments)
        if config_store is None:
            config_store = make_config_store(targets, threshold=threshold, **config)
        market_data = MarketDataService(PriceCache(), client)
        registry = InstrumentRegistry(client)
        portfolio = PortfolioService(client, market_data, PortfolioCalculator(), config_store)
        journal = TradeJournal()
        executor = TradeExecutor(
            client, journal, snapshot_provider=portfolio.snapshot,
            settlement_delay=0, inter_trade_delay=0, sleep=lambda s: None,
        )
        monitor = RebalanceMonitor(
            config_store=config_store,
            portfolio=portfolio,
            planner=RebalancePlanner(registry, market_data),
            executor=executor,
            registry=registry,
            stream=stream,
            journal=journal,
            min_trade_usdt=Decimal("10"),
            check_interval=0.01,
            dry_run=dry_run,
            alert=alert,
        )
        return monitor, client, journal
    return _build


SCENARIO = dict(
    balances={"BTC": "0.01", "USDT": "400"},
    targets={"BTC": 50, "USDT": 50},
    tickers={"BTCUSDT": "50000"},
)


def test_tick_rebalances_drifted_portfolio(build):
    alerts = []
    monitor, client, journal = build(**SCENARIO, alert=alerts.append)

    logs = monitor.run_once()

    assert [(log.action, log.coin, log.status) for log in logs] == [("SELL", "BTC", "SUCCESS")]
    assert client.orders[0]["qty"] == "0.001"
    assert len(journal.all()) == 1
    assert '"totalValueUsdt": "900' in logs[0].portfolio_before
    state = monitor.state
    assert state.last_check_time is not None
    assert state.last_rebalance_time is not None
    assert state.error_message is None
    assert alerts and "SELL BTC" in alerts[0]


def test_tick_within_threshold_does_nothing(build):
    monitor, client, _ = build(**dict(SCENARIO, targets={"BTC": 55, "USDT": 45}), threshold="1")

    assert monitor.run_once() == []
    assert client.orders == []
    assert monitor.state.last_check_time is not None
    assert monitor.state.last_rebalance_time is None


def test_inactive_portfolio_is_skipped(build):
    monitor, client, _ = build(**SCENARIO, is_active=False)
    assert monitor.run_once() == []
    assert client.orders == []


def test_dry_run_plans_without_orders(build):
    monitor, client, _ = build(**SCENARIO, dry_run=True)
    assert monitor.run_once() == []
    assert client.orders == []


def test_tick_skipped_while_pass_in_flight(build):
    monitor, client, _ = build(**SCENARIO)
    nested = []
    original = client.create_order

    def create_order(**kwargs):
        nested.append(monitor.run_once())
        return original(**kwargs)
    client.create_order = create_order

    logs = monitor.run_once()

    assert nested == [None]
    assert len(logs) == 1
    assert len(client.orders) == 1


def test_total_failure_recorded_not_raised(build):
    alerts = []
    monitor, client, journal = build(**SCENARIO, alert=alerts.append)
    client.fail_symbols = {"BTCUSDT"}

    assert monitor.run_once() is None

    assert "failed" in monitor.state.error_message
    assert monitor.state.last_rebalance_time is not None
    assert journal.all()[0].status == "FAILED"
    assert any("Rebalance failed" in a for a in alerts)


def test_io_failure_recorded_and_loop_survives(build):
    monitor, client, _ = build(**SCENARIO)

    def broken():
        raise DataSourceError("Failed to connect to Bybit")
    original = client.get_wallet_balance
    client.get_wallet_balance = broken

    assert monitor.run_once() is None
    assert "Failed to connect" in monitor.state.error_message

    client.get_wallet_balance = original
    assert len(monitor.run_once()) == 1
    assert monitor.state.error_message is None


def test_config_overrides_min_trade(build):
    monitor, client, _ = build(**SCENARIO, min_trade_usdt=Decimal("100"))
    assert monitor.run_once() == []
    assert client.orders == []


def test_snapshot_and_plan_on_demand(build):
    monitor, client, _ = build(**SCENARIO)

    state = monitor.calculate_portfolio_snapshot()
    assert state.total_value_usdt == Decimal("900")

    trades = monitor.plan_once()
    assert [(t.coin, t.action) for t in trades] == [("BTC", TradeAction.SELL)]
    assert client.orders == []


def test_unheld_target_coin_is_bought(build):
    monitor, client, _ = build(
        balances={"USDT": "1000"},
        targets={"ETH": 50, "USDT": 50},
        tickers={"ETHUSDT": "2000"},
    )
    logs = monitor.run_once()
    assert [(log.action, log.coin) for log in logs] == [("BUY", "ETH")]
    assert client.orders[0]["qty"] == "500"
    assert client.orders[0]["market_unit"] == "quoteCoin"


def test_unconfigured_holdings_are_not_traded(build):
    monitor, client, _ = build(
        balances={"BTC": "0.01", "DOGE": "100000", "USDT": "500"},
        targets={"BTC": 50, "USDT": 50},
        tickers={"BTCUSDT": "50000", "DOGEUSDT": "0.1"},
    )
    assert monitor.run_once() == []
    assert client.orders == []


def test_state_observers_and_lifecycle(build):
    stream = FakeStream()
    # Inactive: background ticks leave the state alone while it is inspected
    monitor, _, _ = build(**SCENARIO, stream=stream, is_active=False)
    seen = []
    unsubscribe = monitor.subscribe(seen.append)
    assert seen[0].phase == MonitorPhase.IDLE

    monitor.start()
    assert stream.connected
    assert stream.subscribed == ["BTCUSDT"]
    assert monitor.state.is_running
    assert monitor.state.phase == MonitorPhase.CONNECTING

    stream.on_status(ConnectionStatus.CONNECTED, None)
    assert monitor.state.phase == MonitorPhase.MONITORING

    stream.on_status(ConnectionStatus.ERROR, "connection reset")
    assert monitor.state.phase == MonitorPhase.ERROR
    assert monitor.state.error_message == "connection reset"

    monitor.stop()
    assert not stream.connected
    assert monitor.state.phase == MonitorPhase.STOPPED
    assert not monitor.state.is_running
    assert not monitor.is_running

    unsubscribe()
    count = len(seen)
    monitor.run_once()
    assert len(seen) == count


def test_exhausted_stream_alerts(build):
    alerts = []
    stream = FakeStream()
    monitor, _, _ = build(**SCENARIO, stream=stream, alert=alerts.append)
    stream.exhausted = True

    stream.on_status(ConnectionStatus.ERROR, "Max reconnect attempts (10) reached")

    assert monitor.state.connection_status == ConnectionStatus.ERROR
    assert alerts and "REST prices" in alerts[0]


def test_background_loop_survives_failing_tick(build):
    monitor, client, journal = build(**SCENARIO)
    calls = []
    original = client.get_wallet_balance

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("socket closed")
        return original()
    client.get_wallet_balance = flaky

    monitor.start()
    try:
        assert wait_until(lambda: client.orders)
        assert monitor.is_running
    finally:
        monitor.stop()
    assert len(calls) > 1
    assert journal.all()[-1].status == "SUCCESS"


def test_background_loop_survives_config_load_errors(build):
    config = PortfolioConfig(targets={"BTC": Decimal("50"), "USDT": Decimal("50")}, threshold=Decimal("1"))
    # The first tick and the interval lookup after it both fail
    store = FlakyConfigStore(config, failures=2)
    monitor, client, _ = build(**SCENARIO, config_store=store)

    monitor.start()
    try:
        assert wait_until(lambda: client.orders)
        assert monitor.is_running
    finally:
        monitor.stop()
    assert store.failures == 0


def test_malformed_portfolio_file_does_not_kill_the_loop(build, tmp_path):
    path = tmp_path / "portfolio.json"
    path.write_text('{"coins": {"BTC": 50, "USDT": 50}, "threshold": "1,5"}')
    monitor, client, _ = build(**SCENARIO, config_store=PortfolioConfigStore(str(path)))

    monitor.start()
    try:
        assert wait_until(lambda: monitor.state.error_message is not None)
        assert "Malformed portfolio file" in monitor.state.error_message
        assert monitor.is_running
        assert client.orders == []

        path.write_text('{"coins": {"BTC": 50, "USDT": 50}, "threshold": 1.5}')
        assert wait_until(lambda: client.orders)
        assert monitor.is_running
    finally:
        monitor.stop()
    assert client.orders[0]["side"] == "Sell"
