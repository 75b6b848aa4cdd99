from datetime import datetime
from typing import Any, Dict

from rebalancer.core.models import TradeLog
from rebalancer.core.precision import to_decimal

# Notion rich_text blocks are limited to 2000 characters
RICH_TEXT_LIMIT = 2000


class NotionMapper:
    """
    Converts domain models into Notion database properties.
    Property names must match the Notion database.
    """

    @staticmethod
    def _text(value: str) -> Dict[str, Any]:
        return {"rich_text": [{"text": {"content": (value or "")[:RICH_TEXT_LIMIT]}}]}

    @staticmethod
    def trade_log_to_props(trade_log: TradeLog) -> Dict[str, Any]:
        return {
            "Name": {"title": [{"text": {"content": f"{trade_log.action} {trade_log.coin}"}}]},
            "Symbol": {"select": {"name": trade_log.symbol}},
            "Action": {"select": {"name": trade_log.action}},
            "Status": {"select": {"name": trade_log.status}},
            "Quantity": {"number": float(trade_log.quantity)},
            "Price": {"number": float(trade_log.price)},
            "USDT Amount": {"number": float(trade_log.usdt_amount)},
            "Timestamp": {"date": {"start": trade_log.timestamp.isoformat()}},
            "OrderID": NotionMapper._text(trade_log.order_id or ""),
            "Portfolio Before": NotionMapper._text(trade_log.portfolio_before),
            "Portfolio After": NotionMapper._text(trade_log.portfolio_after),
        }

    @staticmethod
    def trade_log_outcome_props(trade_log: TradeLog) -> Dict[str, Any]:
        return {
            "Status": {"select": {"name": trade_log.status}},
            "OrderID": NotionMapper._text(trade_log.order_id or ""),
            "Portfolio After": NotionMapper._text(trade_log.portfolio_after),
        }

    @staticmethod
    def page_to_trade_log(page: Dict[str, Any]) -> TradeLog:
        props = page.get("properties", {})

        def get_prop(name):
            p = props.get(name, {})
            p_type = p.get("type")
            if p_type == "date":
                return (p.get("date") or {}).get("start")
            elif p_type == "select":
                return (p.get("select") or {}).get("name")
            elif p_type == "number":
                return p.get("number")
            elif p_type in ("rich_text", "title"):
                t = p.get(p_type, [])
                return "".join(part.get("plain_text", "") for part in t)
            return None

        timestamp = get_prop("Timestamp")
        return TradeLog(
            action=get_prop("Action") or "",
            symbol=get_prop("Symbol") or "",
            coin=(get_prop("Name") or "").split(" ")[-1],
            quantity=to_decimal(get_prop("Quantity")),
            price=to_decimal(get_prop("Price")),
            usdt_amount=to_decimal(get_prop("USDT Amount")),
            portfolio_before=get_prop("Portfolio Before") or "{}",
            portfolio_after=get_prop("Portfolio After") or "{}",
            status=get_prop("Status") or "",
            order_id=get_prop("OrderID") or None,
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(),
        )
