from decimal import Decimal

import pytest

from rebalancer.core.exceptions import DataDestinationError, DataSourceError, RebalanceError
from rebalancer.core.models import PortfolioState, RebalanceTrade, TradeAction, TradeStatus
from rebalancer.services.executor import TradeExecutor, map_order_status
from rebalancer.services.journal import TradeJournal

D = Decimal


def trade(coin, action, quantity, usdt, price):
    return RebalanceTrade(
        coin=coin,
        symbol=f"{coin}USDT",
        action=action,
        quantity=D(quantity),
        estimated_usdt_amount=D(usdt),
        current_price=D(price),
    )


@pytest.fixture
def plan():
    return [
        trade("BTC", TradeAction.SELL, "0.002", "100", "50000"),
        trade("SOL", TradeAction.SELL, "1.5", "210.45", "140.30"),
        trade("ETH", TradeAction.BUY, "0.1", "300.4567", "3004.567"),
    ]


@pytest.fixture
def make_executor(make_client):
    def _make(client=None, **kwargs):
        client = client or make_client()
        journal = kwargs.pop("journal", None) or TradeJournal()
        sleeps = []
        executor = TradeExecutor(
            client,
            journal,
            settlement_delay=kwargs.pop("settlement_delay", 1.0),
            inter_trade_delay=kwargs.pop("inter_trade_delay", 0.5),
            sleep=sleeps.append,
            **kwargs
        )
        return executor, client, journal, sleeps
    return _make


def test_all_trades_succeed(make_executor, plan):
    executor, client, journal, sleeps = make_executor()

    logs = executor.execute_all(plan)

    assert [log.status for log in logs] == ["SUCCESS"] * 3
    assert [log.order_id for log in logs] == ["order-1", "order-2", "order-3"]
    assert [o["symbol"] for o in client.orders] == ["BTCUSDT", "SOLUSDT", "ETHUSDT"]
    # settlement after every order, courtesy delay between trades
    assert sleeps == [1.0, 0.5, 1.0, 0.5, 1.0]


def test_buy_spends_quote_amount_and_sell_uses_base_quantity(make_executor, plan):
    executor, client, _, _ = make_executor()

    executor.execute_all(plan)

    sell, _, buy = client.orders
    assert sell["side"] == "Sell"
    assert sell["qty"] == "0.002"
    assert sell["market_unit"] == "baseCoin"
    assert buy["side"] == "Buy"
    assert buy["qty"] == "300.45"
    assert buy["market_unit"] == "quoteCoin"


def test_every_order_gets_a_unique_link_id(make_executor, plan):
    executor, client, journal, _ = make_executor()

    logs = executor.execute_all(plan)

    link_ids = [o["order_link_id"] for o in client.orders]
    assert len(set(link_ids)) == 3
    assert all(link_id.startswith("rebal_") for link_id in link_ids)
    assert [log.order_link_id for log in logs] == link_ids


def test_partial_failure_returns_all_logs(make_executor, plan):
    executor, client, _, _ = make_executor()
    client.fail_symbols = {"SOLUSDT"}

    logs = executor.execute_all(plan)

    assert len(logs) == 3
    assert [log.status for log in logs] == ["SUCCESS", "FAILED", "SUCCESS"]
    assert logs[1].order_id is None


def test_all_failed_raises(make_executor, plan):
    executor, client, journal, _ = make_executor()
    client.fail_symbols = {"BTCUSDT", "SOLUSDT", "ETHUSDT"}

    with pytest.raises(RebalanceError):
        executor.execute_all(plan)

    # Failures are still journaled
    assert [t.status for t in journal.all()] == ["FAILED"] * 3


def test_all_rejected_counts_as_failure(make_executor, plan):
    executor, client, _, _ = make_executor()
    client.order_statuses = {"order-1": "Rejected", "order-2": "Cancelled", "order-3": "Rejected"}

    with pytest.raises(RebalanceError):
        executor.execute_all(plan)


def test_partial_fill_is_surfaced(make_executor, plan):
    executor, client, _, _ = make_executor()
    client.order_statuses = {"order-1": "PartiallyFilled", "order-2": "New", "order-3": "Mystery"}

    logs = executor.execute_all(plan)

    assert [log.status for log in logs] == ["PARTIALLY_FILLED", "PENDING", "Mystery"]


def test_empty_plan(make_executor):
    executor, client, _, sleeps = make_executor()
    assert executor.execute_all([]) == []
    assert client.orders == []
    assert sleeps == []


def test_stop_between_trades(make_executor, plan):
    executor, client, _, _ = make_executor()
    executor.should_stop = lambda: len(client.orders) >= 1

    logs = executor.execute_all(plan)

    assert len(logs) == 1
    assert len(client.orders) == 1


def test_journal_entry_written_then_updated(make_executor, plan):
    class RecordingSink:
        def __init__(self):
            self.calls = []

        def save_trade_log(self, log):
            self.calls.append(("save", log.status))

        def update_trade_log(self, log):
            self.calls.append(("update", log.status))

    sink = RecordingSink()
    executor, _, journal, _ = make_executor(journal=TradeJournal(sink=sink))

    executor.execute_all(plan[:1])

    assert sink.calls == [("save", "PENDING"), ("update", "SUCCESS")]
    assert len(journal.all()) == 1


def test_sink_failure_does_not_change_outcome(make_executor, plan):
    class BrokenSink:
        def save_trade_log(self, log):
            raise DataDestinationError("notion down")

        def update_trade_log(self, log):
            raise DataDestinationError("notion down")

    executor, _, _, _ = make_executor(journal=TradeJournal(sink=BrokenSink()))
    logs = executor.execute_all(plan)
    assert [log.status for log in logs] == ["SUCCESS"] * 3


def test_snapshots_are_attached(make_executor, plan):
    state = PortfolioState(holdings=(), total_value_usdt=D("900"))
    executor, _, _, _ = make_executor(snapshot_provider=lambda: state)

    log = executor.execute_all(plan[:1])[0]

    assert '"totalValueUsdt": "900"' in log.portfolio_before
    assert '"totalValueUsdt": "900"' in log.portfolio_after


def test_snapshot_failure_does_not_block_trade(make_executor, plan):
    def broken_snapshot():
        raise DataSourceError("wallet unavailable")

    executor, client, _, _ = make_executor(snapshot_provider=broken_snapshot)

    log = executor.execute_all(plan[:1])[0]

    assert log.status == TradeStatus.SUCCESS
    assert log.portfolio_before == "{}"
    assert log.portfolio_after == "{}"


def test_status_poll_failure_is_recorded_as_unknown(make_executor, plan):
    executor, client, _, _ = make_executor()

    def broken_status(order_id):
        raise DataSourceError("timeout")
    client.get_order_status = broken_status

    log = executor.execute_all(plan[:1])[0]
    assert log.status == "Unknown"
    assert log.order_id == "order-1"


def test_map_order_status():
    assert map_order_status("Filled") == "SUCCESS"
    assert map_order_status("PartiallyFilledCanceled") == "PARTIALLY_FILLED"
    assert map_order_status("Deactivated") == "CANCELLED"
    assert map_order_status("Rejected") == "REJECTED"
    assert map_order_status("Untriggered") == "PENDING"
    assert map_order_status("Triggered") == "Triggered"
