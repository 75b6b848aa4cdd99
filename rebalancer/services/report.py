from typing import List, Optional

import pandas as pd

from rebalancer.config.logging import get_logger
from rebalancer.core.models import AppLog, LogStats, PortfolioState, RebalanceTrade, TradeLog

logger = get_logger("System")

TRADE_COLUMNS = [
    "id", "timestamp", "action", "symbol", "coin", "quantity", "price", "usdtAmount",
    "orderId", "orderLinkId", "status", "portfolioBefore", "portfolioAfter",
]


class TradeReportService:
    """
    Exports the trade journal with pandas.
    """

    @staticmethod
    def to_frame(trades: List[TradeLog]) -> pd.DataFrame:
        df = pd.DataFrame([t.to_dict() for t in trades], columns=TRADE_COLUMNS)
        if not df.empty:
            df["timestamp"] = pd.to_datetime(df["timestamp"])
            for column in ("quantity", "price", "usdtAmount"):
                df[column] = pd.to_numeric(df[column])
            df.sort_values("timestamp", inplace=True)
        return df

    def export(self, trades: List[TradeLog], path: str, output_format: str = "csv") -> str:
        """
        Writes one row per trade log. Returns the written path.

        Args:
            output_format: 'csv' or 'excel'.
        """
        df = self.to_frame(trades)
        if output_format == "csv":
            df.to_csv(path, index=False)
        elif output_format == "excel":
            df.to_excel(path, sheet_name="Trades", index=False)
        else:
            raise ValueError(f"Unsupported report format: {output_format}")
        logger.info(f"Exported {len(df)} trade(s) to {path}")
        return path

    @staticmethod
    def summary(trades: List[TradeLog]) -> pd.DataFrame:
        """Trade count and USDT volume per coin and action."""
        df = TradeReportService.to_frame(trades)
        if df.empty:
            return df
        return df.groupby(["coin", "action"]).agg(trades=("id", "count"), volume_usdt=("usdtAmount", "sum"))


def export_logs_text(log_store, path: Optional[str] = None,
                     tag: Optional[str] = None, search: Optional[str] = None) -> str:
    """
    Plain-text log export, optionally narrowed to one tag and/or a message substring.
    Writes the text to path when given. Returns the text.
    """
    entries = None
    if tag:
        entries = log_store.by_tag(tag)
        if search:
            entries = [e for e in entries if search.lower() in e.message.lower()]
    elif search:
        entries = log_store.search(search)
    text = log_store.export_text(entries)
    if path:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        logger.info(f"Exported logs to {path}")
    return text


class ReportFormatter:
    @staticmethod
    def format_snapshot(state: PortfolioState) -> str:
        if state.is_degenerate:
            return "Portfolio is empty (total value 0 USDT)"
        lines = [
            f"Total: {state.total_value_usdt:.2f} USDT  ({state.timestamp:%Y-%m-%d %H:%M:%S})",
            f"{'COIN':<8}{'BALANCE':>18}{'VALUE':>14}{'CURRENT%':>10}{'TARGET%':>10}{'DEV':>9}",
        ]
        for h in state.holdings:
            lines.append(
                f"{h.coin:<8}{h.balance:>18f}{h.usdt_value:>14.2f}"
                f"{h.current_percentage:>10.2f}{h.target_percentage:>10.2f}{h.deviation:>+9.2f}"
            )
        return "\n".join(lines)

    @staticmethod
    def format_plan(trades: List[RebalanceTrade]) -> str:
        if not trades:
            return "No trades needed"
        lines = []
        for i, t in enumerate(trades, 1):
            lines.append(
                f"{i}. {t.action.value:<4} {t.symbol:<12} qty={t.quantity} "
                f"~{t.estimated_usdt_amount:.2f} USDT @ {t.current_price}"
            )
        return "\n".join(lines)

    @staticmethod
    def format_trade_logs(trades: List[TradeLog]) -> str:
        if not trades:
            return "No trades executed"
        return "\n".join(
            f"{t.timestamp:%H:%M:%S} {t.action:<4} {t.symbol:<12} {t.quantity} -> {t.status}"
            + (f" (order {t.order_id})" if t.order_id else "")
            for t in trades
        )

    @staticmethod
    def format_stats(stats: LogStats) -> str:
        return (
            f"Trades: {stats.total_trades} ({stats.successful_trades} ok, {stats.failed_trades} failed)  "
            f"Logs: {stats.total_logs} ({stats.error_count} errors)"
        )

    @staticmethod
    def format_app_logs(entries: List[AppLog]) -> str:
        return "\n".join(f"{e.timestamp:%H:%M:%S} [{e.level}] [{e.tag}] {e.message}" for e in entries)
