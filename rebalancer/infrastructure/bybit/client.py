import time
import hmac
import hashlib
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from rebalancer.config.settings import settings
from rebalancer.config.logging import get_logger
from rebalancer.core.exceptions import ConfigurationError, DataSourceError, OrderSubmissionError
from rebalancer.core.models import CoinBalance, InstrumentInfo
from .mapper import BybitMapper

logger = get_logger("API")

MAINNET_BASE_URL = "https://api.bybit.com"
TESTNET_BASE_URL = "https://api-testnet.bybit.com"
RATE_LIMIT_CODE = 10002


class BybitClient:
    """
    Bybit V5 REST client for spot rebalancing.
    Handles signing, requests and pagination; the Mapper turns payloads into models.
    """

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 testnet: Optional[bool] = None, recv_window: Optional[str] = None,
                 timeout: float = 10):
        self.api_key = api_key if api_key is not None else (settings.BYBIT_API_KEY if settings else None)
        self.api_secret = api_secret if api_secret is not None else (settings.BYBIT_API_SECRET if settings else None)
        if testnet is None:
            testnet = settings.BYBIT_TESTNET if settings else False
        self.base_url = TESTNET_BASE_URL if testnet else MAINNET_BASE_URL
        self.recv_window = recv_window or (settings.BYBIT_RECV_WINDOW if settings else "5000")
        self.timeout = timeout

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _generate_signature(self, timestamp: str, payload: str) -> str:
        param_str = timestamp + self.api_key + self.recv_window + payload
        return hmac.new(
            bytes(self.api_secret, "utf-8"),
            param_str.encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

    def _request(self, method: str, endpoint: str, params: Optional[Dict] = None,
                 body: Optional[Dict] = None, signed: bool = True, _retried: bool = False) -> Dict:
        query_params = ""
        if params:
            # Bybit expects a sorted query string
            query_params = "&".join([f"{k}={v}" for k, v in sorted(params.items())])

        body_str = json.dumps(body, separators=(",", ":")) if body is not None else None

        headers = {"Content-Type": "application/json"}
        if signed:
            if not self.has_credentials:
                raise ConfigurationError("BYBIT_API_KEY / BYBIT_API_SECRET are not set")
            timestamp = str(int(time.time() * 1000))
            payload = body_str if method.upper() in ("POST", "PUT") else query_params
            headers.update({
                "X-BAPI-API-KEY": self.api_key,
                "X-BAPI-SIGN": self._generate_signature(timestamp, payload or ""),
                "X-BAPI-TIMESTAMP": timestamp,
                "X-BAPI-RECV-WINDOW": self.recv_window,
            })

        url = f"{self.base_url}{endpoint}"
        if query_params:
            url += f"?{query_params}"

        try:
            response = requests.request(method, url, headers=headers, data=body_str, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Bybit Connection Error: {e}")
            raise DataSourceError(f"Failed to connect to Bybit: {e}")
        except ValueError as e:
            raise DataSourceError(f"Failed to decode Bybit response from {endpoint}: {e}")

        if data.get("retCode") != 0:
            if data.get("retCode") == RATE_LIMIT_CODE and not _retried:
                logger.warning("Rate limit hit. Retrying after a short delay...")
                time.sleep(1)
                return self._request(method, endpoint, params, body, signed, _retried=True)
            raise DataSourceError(f"Bybit API Error: {data.get('retMsg')} (Code: {data.get('retCode')})")

        return data

    def get_wallet_balance(self, account_type: str = "UNIFIED") -> List[CoinBalance]:
        """Coin balances of the trading account."""
        raw_data = self._request("GET", "/v5/account/wallet-balance", {"accountType": account_type})
        balances = BybitMapper.to_coin_balances(raw_data.get("result", {}))
        logger.debug(f"Wallet balances fetched: {len(balances)} coins")
        return balances

    def get_instruments(self, category: str = "spot") -> List[InstrumentInfo]:
        """All spot instruments, following the pagination cursor."""
        endpoint = "/v5/market/instruments-info"
        params: Dict[str, Any] = {"category": category, "limit": 1000}
        instruments = []

        while True:
            raw_data = self._request("GET", endpoint, params, signed=False)
            result = raw_data.get("result", {})
            instruments.extend(BybitMapper.to_instrument(item) for item in result.get("list", []))

            cursor = result.get("nextPageCursor")
            if not cursor:
                break
            params["cursor"] = cursor

        return instruments

    def get_tickers(self, category: str = "spot") -> Dict[str, Decimal]:
        raw_data = self._request("GET", "/v5/market/tickers", {"category": category}, signed=False)
        return BybitMapper.to_prices(raw_data.get("result", {}))

    def get_ticker(self, symbol: str, category: str = "spot") -> Decimal:
        raw_data = self._request("GET", "/v5/market/tickers", {"category": category, "symbol": symbol}, signed=False)
        prices = BybitMapper.to_prices(raw_data.get("result", {}))
        price = prices.get(symbol)
        if price is None or price <= 0:
            raise DataSourceError(f"No ticker price returned for {symbol}")
        return price

    def create_order(self, symbol: str, side: str, qty: str, market_unit: Optional[str] = None,
                     order_link_id: Optional[str] = None, order_type: str = "Market",
                     category: str = "spot") -> str:
        """Places an order and returns the exchange order id."""
        body = {
            "category": category,
            "symbol": symbol,
            "side": side,
            "orderType": order_type,
            "qty": qty,
        }
        if market_unit:
            body["marketUnit"] = market_unit
        if order_link_id:
            body["orderLinkId"] = order_link_id

        try:
            raw_data = self._request("POST", "/v5/order/create", body=body)
        except DataSourceError as e:
            raise OrderSubmissionError(f"{side} {symbol} not accepted: {e}")
        order_id = raw_data.get("result", {}).get("orderId")
        if not order_id:
            raise DataSourceError(f"Order for {symbol} accepted without an orderId")
        return order_id

    def get_order_status(self, order_id: str, category: str = "spot") -> str:
        raw_data = self._request("GET", "/v5/order/realtime", {"category": category, "orderId": order_id})
        return BybitMapper.to_order_status(raw_data.get("result", {}))
