from typing import Dict, List, Optional

from notion_client import Client

from rebalancer.config.settings import settings
from rebalancer.config.logging import get_logger
from rebalancer.core.exceptions import DataDestinationError
from rebalancer.core.models import TradeLog
from .mapper import NotionMapper

logger = get_logger("Database")


class NotionTradeStore:
    """
    Notion API wrapper used as the durable copy of the trade journal.
    """

    def __init__(self, token: Optional[str] = None, database_id: Optional[str] = None, client=None):
        token = token or (settings.NOTION_TOKEN if settings else None)
        self.database_id = database_id or (settings.NOTION_TRADE_DB_ID if settings else None)
        if not token or not self.database_id:
            raise DataDestinationError("NOTION_TOKEN / NOTION_TRADE_DB_ID are not set")
        self.client = client or Client(auth=token)
        # journal id -> Notion page id
        self._pages: Dict[int, str] = {}

    def save_trade_log(self, trade_log: TradeLog):
        try:
            page = self.client.pages.create(
                parent={"database_id": self.database_id},
                properties=NotionMapper.trade_log_to_props(trade_log)
            )
        except Exception as e:
            logger.error(f"Failed to save trade log to Notion: {e}")
            raise DataDestinationError(f"Notion save error: {e}")
        if trade_log.id is not None:
            self._pages[trade_log.id] = page.get("id")
        logger.debug(f"Trade log {trade_log.id} saved to Notion.")

    def update_trade_log(self, trade_log: TradeLog):
        page_id = self._pages.get(trade_log.id)
        if not page_id:
            # Never created (earlier failure): write the final version instead
            self.save_trade_log(trade_log)
            return
        try:
            self.client.pages.update(
                page_id=page_id,
                properties=NotionMapper.trade_log_outcome_props(trade_log)
            )
        except Exception as e:
            logger.error(f"Failed to update trade log in Notion: {e}")
            raise DataDestinationError(f"Notion update error: {e}")

    def query_trade_logs(self) -> List[TradeLog]:
        """All trade logs in the database, oldest first (handles pagination)."""
        results = []
        start_cursor = None
        while True:
            kwargs = {
                "database_id": self.database_id,
                "sorts": [{"property": "Timestamp", "direction": "ascending"}],
                "page_size": 100,
            }
            if start_cursor:
                kwargs["start_cursor"] = start_cursor
            try:
                response = self.client.databases.query(**kwargs)
            except Exception as e:
                raise DataDestinationError(f"Failed to query Notion database: {e}")

            results.extend(response.get("results", []))
            if not response.get("has_more"):
                break
            start_cursor = response.get("next_cursor")

        logger.info(f"Queried and retrieved {len(results)} trade logs from Notion.")
        return [NotionMapper.page_to_trade_log(page) for page in results]
