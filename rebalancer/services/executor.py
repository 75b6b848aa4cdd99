import time
import uuid
from dataclasses import replace
from typing import Callable, List, Optional

from rebalancer.config.logging import get_logger
from rebalancer.core.exceptions import AppError, RebalanceError
from rebalancer.core.models import RebalanceTrade, TradeAction, TradeLog, TradeStatus
from rebalancer.core.precision import QUOTE_AMOUNT_PLACES, format_plain, truncate

logger = get_logger("Trade")

EMPTY_SNAPSHOT = "{}"

# Bybit orderStatus -> TradeStatus. Anything else is recorded as reported.
ORDER_STATUS_MAP = {
    "Filled": TradeStatus.SUCCESS,
    "PartiallyFilled": TradeStatus.PARTIALLY_FILLED,
    "PartiallyFilledCanceled": TradeStatus.PARTIALLY_FILLED,
    "Cancelled": TradeStatus.CANCELLED,
    "Deactivated": TradeStatus.CANCELLED,
    "Rejected": TradeStatus.REJECTED,
    "New": TradeStatus.PENDING,
    "Untriggered": TradeStatus.PENDING,
}

FAILED_STATUSES = {TradeStatus.FAILED.value, TradeStatus.REJECTED.value, TradeStatus.CANCELLED.value}


def map_order_status(raw: str) -> str:
    status = ORDER_STATUS_MAP.get(raw)
    return status.value if status else raw


def new_order_link_id() -> str:
    return f"rebal_{uuid.uuid4().hex[:12]}"


class TradeExecutor:
    """
    Executes a trade plan strictly in order, one market order at a time.

    snapshot_provider: callable returning the current PortfolioState (used for the
    before/after audit snapshots).
    should_stop: optional callable checked between trades; once it returns True
    the remaining trades are not submitted.
    """

    def __init__(self, client, journal, snapshot_provider: Optional[Callable] = None,
                 settlement_delay: float = 1.0, inter_trade_delay: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep,
                 should_stop: Optional[Callable[[], bool]] = None):
        self.client = client
        self.journal = journal
        self.snapshot_provider = snapshot_provider
        self.settlement_delay = settlement_delay
        self.inter_trade_delay = inter_trade_delay
        self.sleep = sleep
        self.should_stop = should_stop

    def execute_all(self, trades: List[RebalanceTrade]) -> List[TradeLog]:
        """
        Returns one TradeLog per submitted trade. Raises RebalanceError when every
        trade ended in a failed state.
        """
        if not trades:
            return []

        logs = []
        for index, trade in enumerate(trades):
            if self.should_stop and self.should_stop():
                logger.warning(f"Stop requested, {len(trades) - index} trade(s) not submitted")
                break
            if index > 0 and self.inter_trade_delay > 0:
                self.sleep(self.inter_trade_delay)
            logs.append(self.execute(trade))

        if logs and all(log.status in FAILED_STATUSES for log in logs):
            raise RebalanceError(f"All {len(logs)} trade(s) failed")

        succeeded = sum(1 for log in logs if log.status not in FAILED_STATUSES)
        logger.info(f"Rebalance pass finished: {succeeded}/{len(logs)} trade(s) went through")
        return logs

    def execute(self, trade: RebalanceTrade) -> TradeLog:
        before = self._snapshot()
        qty, market_unit = self.order_quantity(trade)
        link_id = new_order_link_id()

        pending = self.journal.record(TradeLog(
            action=trade.action.value,
            symbol=trade.symbol,
            coin=trade.coin,
            quantity=trade.quantity,
            price=trade.current_price,
            usdt_amount=trade.estimated_usdt_amount,
            portfolio_before=before,
            portfolio_after=EMPTY_SNAPSHOT,
            status=TradeStatus.PENDING.value,
            order_link_id=link_id,
        ))

        side = "Buy" if trade.action == TradeAction.BUY else "Sell"
        logger.info(f"Submitting {side} {trade.symbol} qty={qty} ({market_unit})")
        try:
            order_id = self.client.create_order(
                symbol=trade.symbol,
                side=side,
                qty=qty,
                market_unit=market_unit,
                order_link_id=link_id,
            )
        except AppError as e:
            logger.error(f"Order for {trade.symbol} failed: {e}")
            return self.journal.update(replace(
                pending,
                status=TradeStatus.FAILED.value,
                portfolio_after=self._snapshot(),
            ))

        if self.settlement_delay > 0:
            self.sleep(self.settlement_delay)
        status = self._poll_status(order_id)
        logger.info(f"Order {order_id} for {trade.symbol}: {status}")

        return self.journal.update(replace(
            pending,
            order_id=order_id,
            status=status,
            portfolio_after=self._snapshot(),
        ))

    @staticmethod
    def order_quantity(trade: RebalanceTrade):
        """
        BUY orders spend a USDT amount (2 decimals, rounded down).
        SELL orders sell a coin quantity already truncated to instrument precision.
        """
        if trade.action == TradeAction.BUY:
            return format_plain(truncate(trade.estimated_usdt_amount, QUOTE_AMOUNT_PLACES)), "quoteCoin"
        return format_plain(trade.quantity), "baseCoin"

    def _poll_status(self, order_id: str) -> str:
        try:
            raw = self.client.get_order_status(order_id)
        except AppError as e:
            logger.warning(f"Could not confirm order {order_id}: {e}")
            raw = "Unknown"
        return map_order_status(raw)

    def _snapshot(self) -> str:
        if self.snapshot_provider is None:
            return EMPTY_SNAPSHOT
        try:
            return self.snapshot_provider().to_json()
        except AppError as e:
            logger.warning(f"Portfolio snapshot unavailable: {e}")
            return EMPTY_SNAPSHOT
