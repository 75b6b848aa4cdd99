from decimal import Decimal
from typing import Dict, Optional

from rebalancer.config.logging import get_logger
from rebalancer.core.models import QUOTE_COIN, PortfolioConfig, PortfolioState

logger = get_logger("Portfolio")


class PortfolioService:
    """
    Builds a PortfolioState from live wallet balances and prices.

    Only coins in the configured targets are valued: coins held but not configured
    are invisible to the rebalancer and are never traded away.
    """

    def __init__(self, client, market_data, calculator, config_store, quote_coin: str = QUOTE_COIN):
        self.client = client
        self.market_data = market_data
        self.calculator = calculator
        self.config_store = config_store
        self.quote_coin = quote_coin

    def balances(self, config: PortfolioConfig) -> Dict[str, Decimal]:
        wallet = {b.coin: b.wallet_balance for b in self.client.get_wallet_balance()}
        # Configured coins not held yet start at zero so they can be bought
        return {coin: wallet.get(coin, Decimal("0")) for coin in config.targets}

    def snapshot(self, config: Optional[PortfolioConfig] = None) -> PortfolioState:
        config = config or self.config_store.load()
        if not config.targets:
            logger.warning("No target allocation configured")
            return PortfolioState.empty()

        balances = self.balances(config)
        prices = self.market_data.coin_prices(balances.keys())
        state = self.calculator.calculate(balances, prices, config.targets)
        logger.debug(f"Portfolio snapshot: {state.total_value_usdt} {self.quote_coin} over {len(state.holdings)} coin(s)")
        return state
