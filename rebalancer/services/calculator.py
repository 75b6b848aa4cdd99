from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping

from rebalancer.config.logging import get_logger
from rebalancer.core.exceptions import DataSourceError
from rebalancer.core.models import QUOTE_COIN, CoinHolding, PortfolioState
from rebalancer.core.precision import (
    BALANCE_PLACES, PERCENT_PLACES, USDT_VALUE_PLACES, round_half_up,
)

logger = get_logger("Portfolio")

HUNDRED = Decimal("100")
MAX_PORTFOLIO_COINS = 50


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    message: str


class PortfolioCalculator:
    """
    Pure portfolio math: balances + prices + targets -> PortfolioState.
    Holds no state between calls.
    """

    def __init__(self, quote_coin: str = QUOTE_COIN, strict_prices: bool = False):
        self.quote_coin = quote_coin
        self.strict_prices = strict_prices

    def calculate(self, balances: Mapping[str, Decimal], prices: Mapping[str, Decimal],
                  targets: Mapping[str, Decimal]) -> PortfolioState:
        """
        Values every coin in `balances` in quote currency and compares it with its target.

        The quote coin is priced at exactly 1. Any other coin without a price is left
        out of the total (or aborts the calculation when strict_prices is set).
        A total of zero or less yields an empty state: nothing can be rebalanced.
        """
        valued = []
        for coin, balance in balances.items():
            price = self._price_of(coin, prices)
            if price is None:
                if self.strict_prices and balance > 0:
                    raise DataSourceError(f"No price for {coin}, snapshot aborted")
                logger.debug(f"No price for {coin}, left out of the portfolio total")
                continue
            usdt_value = round_half_up(balance * price, USDT_VALUE_PLACES)
            valued.append((coin, balance, price, usdt_value))

        total = sum((usdt_value for _, _, _, usdt_value in valued), Decimal("0"))
        if total <= 0:
            return PortfolioState.empty()

        holdings = []
        for coin, balance, price, usdt_value in valued:
            current_percentage = round_half_up(usdt_value / total * HUNDRED, PERCENT_PLACES)
            target_percentage = Decimal(targets.get(coin, Decimal("0")))
            holdings.append(CoinHolding(
                coin=coin,
                balance=round_half_up(balance, BALANCE_PLACES),
                usdt_value=usdt_value,
                current_percentage=current_percentage,
                target_percentage=target_percentage,
                deviation=round_half_up(current_percentage - target_percentage, PERCENT_PLACES),
                price_usdt=price,
            ))

        holdings.sort(key=lambda h: h.usdt_value, reverse=True)
        return PortfolioState(holdings=tuple(holdings), total_value_usdt=total)

    def _price_of(self, coin: str, prices: Mapping[str, Decimal]):
        if coin == self.quote_coin:
            return Decimal("1")
        return prices.get(coin)


def validate_targets(targets: Mapping[str, Decimal]) -> ValidationResult:
    """Active targets must add up to exactly 100%. Reported, never corrected."""
    if len(targets) > MAX_PORTFOLIO_COINS:
        return ValidationResult(False, f"Too many coins: {len(targets)} (max {MAX_PORTFOLIO_COINS})")

    total = sum((Decimal(v) for v in targets.values()), Decimal("0"))
    shown = round_half_up(total, 2)
    if total < HUNDRED:
        return ValidationResult(False, f"Target total is below 100%: {shown}%")
    if total > HUNDRED:
        return ValidationResult(False, f"Target total exceeds 100%: {shown}%")
    return ValidationResult(True, "Valid")
