from decimal import Decimal
from typing import Any, Dict, List

from rebalancer.core.models import CoinBalance, InstrumentInfo
from rebalancer.core.precision import decimal_places, to_decimal


class BybitMapper:
    """
    Turns raw Bybit V5 JSON into core domain models.
    """

    @staticmethod
    def to_coin_balances(raw: Dict[str, Any]) -> List[CoinBalance]:
        """
        wallet-balance result -> CoinBalance list.
        Only the first account in 'list' is used (UNIFIED).
        """
        accounts = raw.get("list") or [{}]
        return [
            CoinBalance(
                coin=coin.get("coin", ""),
                wallet_balance=to_decimal(coin.get("walletBalance")),
                available_to_withdraw=to_decimal(coin.get("availableToWithdraw")),
                usd_value=to_decimal(coin.get("usdValue")),
            )
            for coin in accounts[0].get("coin", [])
            if coin.get("coin")
        ]

    @staticmethod
    def to_instrument(raw: Dict[str, Any]) -> InstrumentInfo:
        lot = raw.get("lotSizeFilter", {}) or {}
        price_filter = raw.get("priceFilter", {}) or {}
        return InstrumentInfo(
            symbol=raw.get("symbol", ""),
            base_coin=raw.get("baseCoin", ""),
            quote_coin=raw.get("quoteCoin", ""),
            status=raw.get("status", ""),
            base_precision=decimal_places(lot.get("basePrecision")),
            quote_precision=decimal_places(lot.get("quotePrecision")),
            min_order_qty=to_decimal(lot.get("minOrderQty")),
            max_order_qty=to_decimal(lot.get("maxOrderQty")),
            min_order_amt=to_decimal(lot.get("minOrderAmt")),
            max_order_amt=to_decimal(lot.get("maxOrderAmt")),
            tick_size=to_decimal(price_filter.get("tickSize")),
        )

    @staticmethod
    def to_prices(raw: Dict[str, Any]) -> Dict[str, Decimal]:
        prices = {}
        for ticker in raw.get("list", []):
            price = to_decimal(ticker.get("lastPrice"))
            if ticker.get("symbol") and price > 0:
                prices[ticker["symbol"]] = price
        return prices

    @staticmethod
    def to_order_status(raw: Dict[str, Any]) -> str:
        orders = raw.get("list") or []
        if not orders:
            return "Unknown"
        return orders[0].get("orderStatus") or "Unknown"
