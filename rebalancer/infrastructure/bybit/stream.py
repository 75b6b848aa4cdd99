import json
import threading
from typing import Callable, Iterable, Optional, Set

import websocket

from rebalancer.config.settings import settings
from rebalancer.config.logging import get_logger
from rebalancer.core.models import ConnectionStatus
from rebalancer.core.precision import to_decimal

logger = get_logger("WebSocket")

MAINNET_URL = "wss://stream.bybit.com/v5/public/spot"
TESTNET_URL = "wss://stream-testnet.bybit.com/v5/public/spot"
TICKER_PREFIX = "tickers."


class BybitTickerStream:
    """
    Public spot ticker stream. Pushes only ever write to the price cache.

    on_status(status, message) is called on every connection status change.
    """

    def __init__(self, price_cache, testnet: Optional[bool] = None,
                 on_status: Optional[Callable] = None,
                 ping_interval: Optional[int] = None,
                 reconnect_delay: Optional[int] = None,
                 max_reconnect_attempts: Optional[int] = None,
                 ws_factory=websocket.WebSocketApp):
        if testnet is None:
            testnet = settings.BYBIT_TESTNET if settings else False
        self.ws_url = TESTNET_URL if testnet else MAINNET_URL
        self.price_cache = price_cache
        self.on_status = on_status
        self.ping_interval = _setting(ping_interval, "WS_PING_INTERVAL_SECONDS", 20)
        self.reconnect_delay = _setting(reconnect_delay, "WS_RECONNECT_DELAY_SECONDS", 5)
        self.max_reconnect_attempts = _setting(max_reconnect_attempts, "WS_MAX_RECONNECT_ATTEMPTS", 10)
        self.ws_factory = ws_factory

        self.ws = None
        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self._topics: Set[str] = set()
        self._topics_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- Lifecycle ---

    def connect(self):
        if self._thread and self._thread.is_alive():
            logger.debug("Ticker stream already running")
            return
        self._stop.clear()
        self.reconnect_attempts = 0
        self._thread = threading.Thread(target=self._run, name="ticker-stream", daemon=True)
        self._thread.start()

    def disconnect(self):
        self._stop.set()
        if self.ws:
            try:
                self.ws.close()
            except Exception as e:
                logger.warning(f"Error closing WebSocket: {e}")
        with self._topics_lock:
            self._topics.clear()
        self.price_cache.clear()
        self._set_status(ConnectionStatus.DISCONNECTED)
        logger.info("Ticker stream disconnected")

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def exhausted(self) -> bool:
        """True once the reconnect attempts are used up. Only connect() restarts the stream."""
        return self.reconnect_attempts > self.max_reconnect_attempts

    def _run(self):
        while not self._stop.is_set():
            self._set_status(ConnectionStatus.CONNECTING)
            self.ws = self.ws_factory(
                self.ws_url,
                on_open=self.on_open,
                on_message=self.on_message,
                on_error=self.on_error,
                on_close=self.on_close
            )
            try:
                self.ws.run_forever()
            except Exception as e:
                logger.error(f"WebSocket crashed: {e}")

            if self._stop.is_set():
                break

            self.reconnect_attempts += 1
            if self.reconnect_attempts > self.max_reconnect_attempts:
                message = f"Max reconnect attempts ({self.max_reconnect_attempts}) reached"
                logger.error(message)
                self._set_status(ConnectionStatus.ERROR, message)
                break

            delay = self.reconnect_delay * self.reconnect_attempts
            logger.info(
                f"Reconnecting in {delay} seconds "
                f"(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})..."
            )
            self._stop.wait(delay)

    # --- WebSocketApp callbacks ---

    def on_open(self, ws):
        logger.info("WebSocket connected")
        self.reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        with self._topics_lock:
            topics = sorted(self._topics)
        if topics:
            self._send({"op": "subscribe", "args": topics})
        threading.Thread(target=self.heartbeat, args=(ws,), daemon=True).start()

    def on_message(self, ws, message):
        self.handle_message(message)

    def on_error(self, ws, error):
        logger.error(f"WebSocket error: {error}")
        self._set_status(ConnectionStatus.ERROR, str(error))

    def on_close(self, ws, close_status_code, close_msg):
        logger.warning(f"WebSocket closed ({close_status_code}: {close_msg})")
        if self.status != ConnectionStatus.ERROR:
            self._set_status(ConnectionStatus.DISCONNECTED)

    def heartbeat(self, ws):
        # Bound to one socket: ends once a reconnect has replaced it
        while not self._stop.is_set() and self.ws is ws and ws.sock and ws.sock.connected:
            try:
                ws.send(json.dumps({"op": "ping"}))
            except Exception:
                break
            self._stop.wait(self.ping_interval)

    # --- Subscriptions ---

    def subscribe(self, symbols: Iterable[str]):
        with self._topics_lock:
            new_topics = [f"{TICKER_PREFIX}{s}" for s in symbols if f"{TICKER_PREFIX}{s}" not in self._topics]
            self._topics.update(new_topics)
        if new_topics and self.is_connected:
            self._send({"op": "subscribe", "args": new_topics})
        if new_topics:
            logger.info(f"Subscribed to {new_topics}")

    def unsubscribe(self, symbol: str):
        topic = f"{TICKER_PREFIX}{symbol}"
        with self._topics_lock:
            if topic not in self._topics:
                return
            self._topics.discard(topic)
        if self.is_connected:
            self._send({"op": "unsubscribe", "args": [topic]})
        self.price_cache.remove(symbol)
        logger.info(f"Unsubscribed from {topic}")

    @property
    def topics(self) -> Set[str]:
        with self._topics_lock:
            return set(self._topics)

    def handle_message(self, message: str):
        try:
            data = json.loads(message)
        except (TypeError, ValueError) as e:
            logger.error(f"Error parsing message: {e}")
            return

        op = data.get("op")
        if op in ("pong", "ping") or data.get("ret_msg") == "pong":
            return
        if op in ("subscribe", "unsubscribe"):
            if data.get("success"):
                logger.debug(f"{op} ok: {data.get('ret_msg', '')}")
            else:
                logger.warning(f"{op} failed: {data.get('ret_msg')}")
            return

        topic = data.get("topic", "")
        if not topic.startswith(TICKER_PREFIX):
            return

        payload = data.get("data")
        tickers = payload if isinstance(payload, list) else [payload or {}]
        for ticker in tickers:
            symbol = ticker.get("symbol") or topic[len(TICKER_PREFIX):]
            price = to_decimal(ticker.get("lastPrice"))
            if price > 0:
                self.price_cache.on_ticker_update(symbol, price)

    def _send(self, payload: dict):
        try:
            self.ws.send(json.dumps(payload))
        except Exception as e:
            logger.error(f"Failed to send {payload.get('op')}: {e}")

    def _set_status(self, status: ConnectionStatus, message: Optional[str] = None):
        self.status = status
        if self.on_status:
            self.on_status(status, message)


def _setting(value, name: str, default):
    if value is not None:
        return value
    return getattr(settings, name) if settings else default
