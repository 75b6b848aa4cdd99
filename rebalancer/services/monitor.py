import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from rebalancer.config.settings import settings
from rebalancer.config.logging import attach_journal, get_logger
from rebalancer.core.exceptions import AppError, ConfigurationError, RebalanceError
from rebalancer.core.models import (
    ConnectionStatus, MonitorPhase, PortfolioConfig, PortfolioState, RebalanceTrade,
    ServiceState, TradeLog,
)
from .calculator import validate_targets

logger = get_logger("Service")

STOP_TIMEOUT_SECONDS = 60


class RebalanceMonitor:
    """
    Periodic rebalancing loop.

    One background thread owns the ticks. Each tick re-reads the portfolio
    configuration, takes a snapshot and, when any coin drifted past the threshold,
    plans and executes trades. At most one pass (plan + execute) runs at a time:
    a tick that finds a pass in flight is skipped, not queued.
    """

    def __init__(self, config_store, portfolio, planner, executor, registry,
                 stream=None, journal=None,
                 min_trade_usdt: Decimal = Decimal("10"),
                 check_interval: float = 30,
                 instrument_refresh_seconds: float = 3600,
                 dry_run: bool = False,
                 alert: Optional[Callable[[str], None]] = None):
        self.config_store = config_store
        self.portfolio = portfolio
        self.planner = planner
        self.executor = executor
        self.registry = registry
        self.stream = stream
        self.journal = journal
        self.min_trade_usdt = min_trade_usdt
        self.check_interval = check_interval
        self.instrument_refresh_seconds = instrument_refresh_seconds
        self.dry_run = dry_run
        self.alert = alert

        self._state = ServiceState()
        self._state_lock = threading.Lock()
        self._listeners: List[Callable[[ServiceState], None]] = []

        self._stop = threading.Event()
        self._pass_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._subscribed = set()

        # The executor checks this between trades, never during one
        if getattr(self.executor, "should_stop", None) is None:
            self.executor.should_stop = self._stop.is_set
        if self.stream is not None:
            self.stream.on_status = self._on_connection_status

    # --- Service state ---

    @property
    def state(self) -> ServiceState:
        with self._state_lock:
            return self._state

    def subscribe(self, callback: Callable[[ServiceState], None]) -> Callable[[], None]:
        """Registers a state observer; it receives the current state right away. Returns an unsubscribe callable."""
        with self._state_lock:
            self._listeners.append(callback)
            current = self._state
        callback(current)

        def unsubscribe():
            with self._state_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return unsubscribe

    def _update_state(self, **changes) -> ServiceState:
        with self._state_lock:
            self._state = replace(self._state, **changes)
            new_state = self._state
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"State listener failed: {e}")
        return new_state

    @property
    def log_store(self):
        return getattr(self.journal, "log_store", None)

    # --- Lifecycle ---

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            logger.warning("Monitor already running")
            return

        logger.info("Starting rebalance monitor...")
        self._stop.clear()
        self._update_state(
            is_running=True,
            phase=MonitorPhase.CONNECTING,
            error_message=None,
        )

        self._refresh_instruments()

        if self.stream is not None:
            self.stream.connect()
            try:
                self._sync_subscriptions(self._load_config())
            except AppError as e:
                logger.warning(f"Ticker subscriptions deferred to the first tick: {e}")
        else:
            self._update_state(phase=MonitorPhase.MONITORING)

        if self.journal is not None and settings:
            self.journal.purge_older_than(settings.LOG_RETENTION_DAYS)

        self._thread = threading.Thread(target=self._run, name="rebalance-monitor", daemon=True)
        self._thread.start()

    def stop(self):
        """Stops ticking. A trade already submitted records its outcome before this returns."""
        logger.info("Stopping rebalance monitor...")
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=STOP_TIMEOUT_SECONDS)
            if self._thread.is_alive():
                logger.warning(f"Monitor thread still busy after {STOP_TIMEOUT_SECONDS}s")
        if self.stream is not None:
            self.stream.disconnect()
        self._subscribed.clear()
        self._update_state(
            is_running=False,
            phase=MonitorPhase.STOPPED,
            connection_status=ConnectionStatus.DISCONNECTED,
        )
        logger.info("Rebalance monitor stopped")

    def _run(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Monitor loop error: {e}")
            self._stop.wait(self._interval())

    def _interval(self) -> float:
        try:
            config = self.config_store.load()
        except AppError:
            return self.check_interval
        except Exception as e:
            logger.error(f"Cannot read check interval, using {self.check_interval}s: {e}")
            return self.check_interval
        return config.check_interval_seconds or self.check_interval

    # --- Ticks ---

    def run_once(self) -> Optional[List[TradeLog]]:
        """
        One tick. Returns the trade logs of the pass (empty when nothing was
        traded) or None when the tick was skipped or failed.
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.warning("Previous rebalance pass still running, tick skipped")
            return None
        try:
            return self._tick()
        except AppError as e:
            logger.error(f"Tick failed: {e}")
            self._update_state(error_message=str(e))
            return None
        except Exception as e:
            logger.exception(f"Unexpected error during tick: {e}")
            self._update_state(error_message=str(e))
            return None
        finally:
            self._update_state(last_check_time=datetime.now())
            self._pass_lock.release()

    def _tick(self) -> List[TradeLog]:
        if self.registry.is_stale(self.instrument_refresh_seconds):
            self._refresh_instruments()

        config = self._load_config()
        if not config.is_active:
            logger.debug("Portfolio is inactive, nothing to do")
            return []

        validation = validate_targets(config.targets)
        if not validation.is_valid:
            logger.warning(f"Target allocation invalid: {validation.message}")

        if self.stream is not None:
            self._sync_subscriptions(config)

        state = self.portfolio.snapshot(config)
        if state.is_degenerate:
            logger.warning("Portfolio value is zero, rebalancing not possible")
            return []

        if not self.planner.needs_rebalancing(state, config.threshold):
            logger.debug("Portfolio within threshold")
            self._update_state(error_message=None)
            return []

        min_trade = config.min_trade_usdt or self.min_trade_usdt
        trades = self.planner.plan(state, config.threshold, min_trade)
        if not trades:
            logger.info("Rebalancing needed but no trade passes the order minimums")
            return []

        if self.dry_run:
            self._log_dry_run(trades)
            return []

        return self._execute(trades)

    def _execute(self, trades: List[RebalanceTrade]) -> List[TradeLog]:
        logger.info(f"Executing {len(trades)} trade(s)...")
        try:
            logs = self.executor.execute_all(trades)
        except RebalanceError as e:
            self._send_alert(f"Rebalance failed: {e}")
            raise
        finally:
            self._update_state(last_rebalance_time=datetime.now())

        self._update_state(error_message=None)
        summary = ", ".join(f"{log.action} {log.coin} {log.quantity} ({log.status})" for log in logs)
        self._send_alert(f"Rebalance executed: {summary}")
        return logs

    def plan_once(self, config: Optional[PortfolioConfig] = None) -> List[RebalanceTrade]:
        """Plans against a fresh snapshot without executing anything."""
        config = config or self._load_config()
        if len(self.registry) == 0:
            self._refresh_instruments()
        state = self.portfolio.snapshot(config)
        return self.planner.plan(state, config.threshold, config.min_trade_usdt or self.min_trade_usdt)

    def calculate_portfolio_snapshot(self) -> PortfolioState:
        """Manual refresh outside the tick cycle."""
        return self.portfolio.snapshot(self._load_config())

    # --- Helpers ---

    def _load_config(self) -> PortfolioConfig:
        config = self.config_store.load()
        if config.threshold <= 0:
            raise ConfigurationError(f"Invalid threshold: {config.threshold}")
        return config

    def _refresh_instruments(self):
        try:
            self.registry.refresh()
        except AppError as e:
            logger.warning(f"Using {len(self.registry)} cached instruments: {e}")

    def _sync_subscriptions(self, config: PortfolioConfig):
        wanted = set(config.symbols(self.planner.quote_coin))
        for symbol in self._subscribed - wanted:
            self.stream.unsubscribe(symbol)
        if wanted - self._subscribed:
            self.stream.subscribe(sorted(wanted - self._subscribed))
        self._subscribed = wanted

    def _log_dry_run(self, trades: List[RebalanceTrade]):
        for trade in trades:
            logger.info(
                f"[DRY RUN] {trade.action.value} {trade.symbol} qty={trade.quantity} "
                f"(~{trade.estimated_usdt_amount:.2f} USDT @ {trade.current_price})"
            )

    def _on_connection_status(self, status: ConnectionStatus, message: Optional[str] = None):
        changes = {"connection_status": status}
        if self.state.is_running:
            if status == ConnectionStatus.CONNECTED:
                changes["phase"] = MonitorPhase.MONITORING
                changes["error_message"] = None
            elif status == ConnectionStatus.ERROR:
                changes["phase"] = MonitorPhase.ERROR
                changes["error_message"] = message
            elif status == ConnectionStatus.CONNECTING:
                changes["phase"] = MonitorPhase.CONNECTING
        self._update_state(**changes)

        if status == ConnectionStatus.ERROR and self.stream is not None and self.stream.exhausted:
            self._send_alert(f"Price stream down, running on REST prices only: {message}")

    def _send_alert(self, message: str):
        if self.alert is None:
            return
        try:
            self.alert(message)
        except Exception as e:
            logger.error(f"Alert failed: {e}")

    # --- Wiring ---

    @classmethod
    def from_settings(cls, config_path: Optional[str] = None, with_stream: bool = True) -> "RebalanceMonitor":
        """Builds the monitor and its collaborators from the environment."""
        from rebalancer.infrastructure.alerter import send_discord_alert
        from rebalancer.infrastructure.bybit.client import BybitClient
        from rebalancer.infrastructure.bybit.stream import BybitTickerStream
        from .calculator import PortfolioCalculator
        from .executor import TradeExecutor
        from .instruments import InstrumentRegistry
        from .journal import LogStore, TradeJournal
        from .market_data import MarketDataService, PriceCache
        from .planner import RebalancePlanner
        from .portfolio import PortfolioService
        from .portfolio_store import PortfolioConfigStore

        if settings is None:
            raise ConfigurationError("Settings could not be loaded, check the environment")

        log_store = LogStore()
        attach_journal(log_store)

        sink = None
        if settings.NOTION_TOKEN and settings.NOTION_TRADE_DB_ID:
            from rebalancer.infrastructure.notion.client import NotionTradeStore
            sink = NotionTradeStore()
        journal = TradeJournal(sink=sink, log_store=log_store)

        client = BybitClient()
        cache = PriceCache()
        market_data = MarketDataService(cache, client)
        registry = InstrumentRegistry(client)
        config_store = PortfolioConfigStore(config_path or settings.PORTFOLIO_FILE, settings.REBALANCE_THRESHOLD)
        portfolio = PortfolioService(
            client, market_data, PortfolioCalculator(strict_prices=settings.STRICT_PRICE_CHECK), config_store
        )
        executor = TradeExecutor(
            client,
            journal,
            snapshot_provider=portfolio.snapshot,
            settlement_delay=settings.SETTLEMENT_DELAY_SECONDS,
            inter_trade_delay=settings.INTER_TRADE_DELAY_SECONDS,
        )
        stream = BybitTickerStream(cache) if with_stream else None

        webhook = settings.DISCORD_WEBHOOK_URL
        return cls(
            config_store=config_store,
            portfolio=portfolio,
            planner=RebalancePlanner(registry, market_data),
            executor=executor,
            registry=registry,
            stream=stream,
            journal=journal,
            min_trade_usdt=settings.MIN_TRADE_USDT,
            check_interval=settings.CHECK_INTERVAL_SECONDS,
            instrument_refresh_seconds=settings.INSTRUMENT_REFRESH_SECONDS,
            dry_run=settings.DRY_RUN,
            alert=(lambda message: send_discord_alert(webhook, message)) if webhook else None,
        )
