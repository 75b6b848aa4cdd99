import json
import os
import threading
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from rebalancer.config.logging import get_logger
from rebalancer.core.exceptions import ConfigurationError
from rebalancer.core.models import PortfolioConfig
from rebalancer.core.precision import format_plain
from .calculator import MAX_PORTFOLIO_COINS

logger = get_logger("Portfolio")

HUNDRED = Decimal("100")


class PortfolioConfigStore:
    """
    Target allocation persisted as a JSON document:

        {"coins": {"BTC": 50, "USDT": 50}, "threshold": 1.0,
         "is_active": true, "disabled": ["ETH"]}

    Disabled coins keep their target in the file but are left out of
    PortfolioConfig.targets.
    """

    def __init__(self, path: str, default_threshold: Decimal = Decimal("1.0")):
        self.path = path
        self.default_threshold = default_threshold
        self._lock = threading.Lock()

    # --- Raw document ---

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {"coins": {}, "is_active": True, "disabled": []}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f, parse_float=Decimal, parse_int=Decimal)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read portfolio file {self.path}: {e}")
        if not isinstance(document, dict) or not isinstance(document.get("coins", {}), dict):
            raise ConfigurationError(f"Portfolio file {self.path} must hold an object with a 'coins' object")
        return document

    def _write(self, document: Dict[str, Any]):
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, default=_json_default)
        os.replace(tmp_path, self.path)

    # --- PortfolioConfig ---

    def load(self) -> PortfolioConfig:
        with self._lock:
            document = self._read()
        try:
            disabled = {c.upper() for c in document.get("disabled") or []}
            targets = {
                coin.upper(): Decimal(pct)
                for coin, pct in document.get("coins", {}).items()
                if coin.upper() not in disabled
            }
            min_trade = document.get("min_trade_usdt")
            interval = document.get("check_interval_seconds")
            config = PortfolioConfig(
                targets=targets,
                threshold=Decimal(document.get("threshold", self.default_threshold)),
                is_active=bool(document.get("is_active", True)),
                min_trade_usdt=Decimal(min_trade) if min_trade is not None else None,
                check_interval_seconds=int(interval) if interval is not None else None,
            )
        except (InvalidOperation, ValueError, TypeError, AttributeError) as e:
            raise ConfigurationError(f"Malformed portfolio file {self.path}: {e!r}")
        _check_interval(config.check_interval_seconds)
        return config

    def save(self, config: PortfolioConfig):
        """Writes the enabled targets and settings; disabled coins in the file are kept."""
        _check_interval(config.check_interval_seconds)
        with self._lock:
            document = self._read()
            disabled = {c.upper() for c in document.get("disabled") or []}
            coins = {c: v for c, v in document.get("coins", {}).items() if c.upper() in disabled}
            coins.update(config.targets)
            document.update({
                "coins": coins,
                "threshold": config.threshold,
                "is_active": config.is_active,
            })
            if config.min_trade_usdt is not None:
                document["min_trade_usdt"] = config.min_trade_usdt
            if config.check_interval_seconds is not None:
                document["check_interval_seconds"] = config.check_interval_seconds
            self._write(document)
        logger.info(f"Portfolio saved: {len(config.targets)} coin(s), threshold {config.threshold}%")

    def set_target(self, coin: str, percentage: Decimal):
        coin = coin.upper()
        percentage = Decimal(percentage)
        if percentage < 0 or percentage > HUNDRED:
            raise ConfigurationError(f"Target for {coin} must be between 0 and 100, got {percentage}")
        with self._lock:
            document = self._read()
            coins = document.setdefault("coins", {})
            if coin not in coins and len(coins) >= MAX_PORTFOLIO_COINS:
                raise ConfigurationError(f"Portfolio already holds the maximum of {MAX_PORTFOLIO_COINS} coins")
            coins[coin] = percentage
            self._write(document)
        logger.info(f"Target set: {coin} = {format_plain(percentage)}%")

    def remove_coin(self, coin: str) -> bool:
        coin = coin.upper()
        with self._lock:
            document = self._read()
            removed = document.get("coins", {}).pop(coin, None) is not None
            document["disabled"] = [c for c in (document.get("disabled") or []) if c.upper() != coin]
            if removed:
                self._write(document)
        if removed:
            logger.info(f"Coin removed from portfolio: {coin}")
        return removed

    def set_enabled(self, coin: str, enabled: bool):
        coin = coin.upper()
        with self._lock:
            document = self._read()
            if coin not in document.get("coins", {}):
                raise ConfigurationError(f"{coin} is not part of the portfolio")
            disabled = [c for c in (document.get("disabled") or []) if c.upper() != coin]
            if not enabled:
                disabled.append(coin)
            document["disabled"] = disabled
            self._write(document)
        logger.info(f"{coin} {'enabled' if enabled else 'disabled'}")

    def set_threshold(self, threshold: Decimal):
        threshold = Decimal(threshold)
        if threshold <= 0 or threshold > HUNDRED:
            raise ConfigurationError(f"Threshold must be between 0 and 100, got {threshold}")
        with self._lock:
            document = self._read()
            document["threshold"] = threshold
            self._write(document)

    def set_active(self, active: bool):
        with self._lock:
            document = self._read()
            document["is_active"] = active
            self._write(document)
        logger.info(f"Portfolio {'activated' if active else 'deactivated'}")

    def disabled_coins(self) -> list:
        with self._lock:
            return [c.upper() for c in (self._read().get("disabled") or [])]


def _json_default(value):
    if isinstance(value, Decimal):
        # Keep integers as integers in the file
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _check_interval(seconds):
    if seconds is not None and seconds < 1:
        raise ConfigurationError(f"check_interval_seconds must be at least 1, got {seconds}")
