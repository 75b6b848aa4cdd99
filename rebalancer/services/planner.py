from decimal import Decimal
from typing import List, Optional

from rebalancer.config.logging import get_logger
from rebalancer.core.models import (
    QUOTE_COIN, InstrumentInfo, PortfolioState, RebalanceTrade, TradeAction,
)
from rebalancer.core.precision import DEFAULT_BASE_PRECISION, truncate

logger = get_logger("Rebalance")

HUNDRED = Decimal("100")


class RebalancePlanner:
    """
    Decides whether a portfolio has drifted and turns the drift into market orders.
    """

    def __init__(self, registry, market_data, quote_coin: str = QUOTE_COIN):
        self.registry = registry
        self.market_data = market_data
        self.quote_coin = quote_coin

    def needs_rebalancing(self, state: PortfolioState, threshold: Decimal) -> bool:
        """True if any configured non-quote coin is at least `threshold` points off target."""
        return any(
            h.coin != self.quote_coin
            and h.target_percentage > 0
            and abs(h.deviation) >= threshold
            for h in state.holdings
        )

    def plan(self, state: PortfolioState, threshold: Decimal, min_trade_usdt: Decimal) -> List[RebalanceTrade]:
        """
        Builds the trade list for every drifted coin. Coins lacking an instrument,
        a price, or a large enough order size are skipped. Sells come before buys.
        """
        if state.is_degenerate:
            logger.warning("Portfolio value is zero or negative, nothing to plan")
            return []

        trades = []
        for holding in state.holdings:
            if holding.coin == self.quote_coin:
                continue
            deviation = abs(holding.deviation)
            if deviation < threshold:
                continue

            symbol = f"{holding.coin}{self.quote_coin}"
            instrument = self._instrument(symbol, holding.coin)
            if instrument is None:
                logger.warning(f"No instrument found for {symbol}, skipping")
                continue

            target_usdt = state.total_value_usdt * holding.target_percentage / HUNDRED
            difference_usdt = target_usdt - holding.usdt_value
            if abs(difference_usdt) < min_trade_usdt:
                logger.debug(
                    f"{holding.coin}: difference {difference_usdt:.2f} USDT is below the minimum trade amount"
                )
                continue

            price = self.market_data.price(symbol)
            if price is None or price <= 0:
                logger.error(f"No price available for {symbol}, skipping")
                continue

            quantity = truncate(abs(difference_usdt) / price, instrument.base_precision)
            if quantity <= 0 or quantity < instrument.min_order_qty:
                logger.debug(
                    f"{holding.coin}: quantity {quantity} is below the minimum order quantity {instrument.min_order_qty}"
                )
                continue

            action = TradeAction.BUY if difference_usdt > 0 else TradeAction.SELL
            if action == TradeAction.BUY and abs(difference_usdt) < instrument.min_order_amt:
                logger.debug(f"{holding.coin}: buy amount below the minimum order amount {instrument.min_order_amt}")
                continue

            trades.append(RebalanceTrade(
                coin=holding.coin,
                symbol=symbol,
                action=action,
                quantity=quantity,
                estimated_usdt_amount=abs(difference_usdt),
                current_price=price,
            ))
            logger.info(
                f"{action.value} {holding.coin}: {quantity} @ {price} "
                f"(target {holding.target_percentage:.2f}%, current {holding.current_percentage:.2f}%, "
                f"deviation {deviation:.2f}%)"
            )

        # Sells free up USDT for the buys that follow
        return sorted(trades, key=lambda t: 0 if t.action == TradeAction.SELL else 1)

    def _instrument(self, symbol: str, coin: str) -> Optional[InstrumentInfo]:
        instrument = self.registry.lookup(symbol)
        if instrument is not None:
            return instrument
        if len(self.registry) == 0:
            # Registry never loaded: fall back to a conservative precision
            return InstrumentInfo(
                symbol=symbol,
                base_coin=coin,
                quote_coin=self.quote_coin,
                status="Trading",
                base_precision=DEFAULT_BASE_PRECISION,
            )
        return None
