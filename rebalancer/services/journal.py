import threading
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

from rebalancer.config.logging import get_logger
from rebalancer.core.exceptions import DataDestinationError
from rebalancer.core.models import AppLog, LogStats, TradeLog, TradeStatus

logger = get_logger("System")

DEFAULT_MAX_LOGS = 5000


class LogStore:
    """
    Bounded, thread-safe store of application log entries (newest last).
    Fed by JournalLogHandler.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_LOGS):
        self._lock = threading.Lock()
        self._entries = deque(maxlen=max_entries)

    def append(self, entry: AppLog):
        with self._lock:
            self._entries.append(entry)

    def _newest_first(self) -> List[AppLog]:
        with self._lock:
            return list(reversed(self._entries))

    def recent(self, limit: int = 500) -> List[AppLog]:
        return self._newest_first()[:limit]

    def by_level(self, level: str) -> List[AppLog]:
        return [e for e in self._newest_first() if e.level == level.upper()]

    def by_tag(self, tag: str) -> List[AppLog]:
        return [e for e in self._newest_first() if e.tag == tag]

    def errors_and_warnings(self, limit: int = 100) -> List[AppLog]:
        return [e for e in self._newest_first() if e.level in ("ERROR", "WARNING", "CRITICAL")][:limit]

    def search(self, text: str) -> List[AppLog]:
        needle = text.lower()
        return [e for e in self._newest_first() if needle in e.message.lower()]

    def purge_older_than(self, days: int):
        cutoff = datetime.now() - timedelta(days=days)
        with self._lock:
            kept = [e for e in self._entries if e.timestamp >= cutoff]
            self._entries.clear()
            self._entries.extend(kept)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def error_count(self) -> int:
        return len(self.by_level("ERROR"))

    def export_text(self, entries: Optional[List[AppLog]] = None) -> str:
        """Plain-text export, newest first. Exports the whole store unless entries are given."""
        if entries is None:
            entries = self._newest_first()
        lines = [
            "=== BYBIT REBALANCER LOG EXPORT ===",
            f"Export Time: {datetime.now():%Y-%m-%d %H:%M:%S}",
            f"Total Logs: {len(entries)}",
            "=" * 50,
            "",
        ]
        for e in entries:
            lines.append(f"[{e.timestamp:%Y-%m-%d %H:%M:%S.%f}] [{e.level}] [{e.tag}] {e.message}")
            if e.details:
                lines.append(f"  Details: {e.details}")
        return "\n".join(lines)


class TradeJournal:
    """
    Append-only record of attempted trades.
    Each entry is written once at submission and replaced once with its outcome.
    An optional sink (e.g. Notion) receives a durable copy.
    """

    def __init__(self, sink=None, log_store: Optional[LogStore] = None):
        self.sink = sink
        self.log_store = log_store
        self._lock = threading.Lock()
        self._trades: List[TradeLog] = []
        self._next_id = 1

    def record(self, trade_log: TradeLog) -> TradeLog:
        with self._lock:
            stored = replace(trade_log, id=self._next_id)
            self._next_id += 1
            self._trades.append(stored)
        logger.info(f"Trade recorded: {stored.action} {stored.coin} {stored.quantity} ({stored.status})")
        self._push(stored, created=True)
        return stored

    def update(self, trade_log: TradeLog) -> TradeLog:
        if trade_log.id is None:
            raise ValueError("Only recorded trade logs can be updated")
        with self._lock:
            for index, existing in enumerate(self._trades):
                if existing.id == trade_log.id:
                    self._trades[index] = trade_log
                    break
            else:
                raise KeyError(f"Unknown trade log id {trade_log.id}")
        self._push(trade_log, created=False)
        return trade_log

    def _push(self, trade_log: TradeLog, created: bool):
        if self.sink is None:
            return
        try:
            if created:
                self.sink.save_trade_log(trade_log)
            else:
                self.sink.update_trade_log(trade_log)
        except DataDestinationError as e:
            # The trade outcome does not depend on the journal copy
            logger.error(f"Trade journal sink failed for trade {trade_log.id}: {e}")

    def all(self) -> List[TradeLog]:
        with self._lock:
            return list(reversed(self._trades))

    def recent(self, limit: int = 100) -> List[TradeLog]:
        return self.all()[:limit]

    def by_status(self, status: str) -> List[TradeLog]:
        return [t for t in self.all() if t.status == status]

    def purge_older_than(self, days: int):
        cutoff = datetime.now() - timedelta(days=days)
        with self._lock:
            self._trades = [t for t in self._trades if t.timestamp >= cutoff]
        if self.log_store is not None:
            self.log_store.purge_older_than(days)
        logger.info(f"Records older than {days} days removed")

    def stats(self) -> LogStats:
        trades = self.all()
        return LogStats(
            total_logs=self.log_store.count() if self.log_store else 0,
            error_count=self.log_store.error_count() if self.log_store else 0,
            total_trades=len(trades),
            successful_trades=len(self.by_status(TradeStatus.SUCCESS)),
            failed_trades=len(self.by_status(TradeStatus.FAILED)),
        )
