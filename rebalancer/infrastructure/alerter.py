from typing import Optional

import requests

from rebalancer.config.logging import get_logger

logger = get_logger("System")


def send_discord_alert(webhook_url: Optional[str], message: str):
    """
    Sends a message to a Discord webhook.

    Args:
        webhook_url: The Discord webhook URL.
        message: The message to send.
    """
    if not webhook_url:
        logger.warning("Discord webhook URL is not configured. Cannot send alert.")
        return

    data = {
        "content": message,
        "username": "Bybit Rebalancer"
    }

    try:
        response = requests.post(webhook_url, json=data, timeout=10)
        if response.status_code >= 300:
            logger.error(f"Failed to send Discord alert. Status code: {response.status_code}, Response: {response.text}")
    except requests.exceptions.RequestException as e:
        logger.error(f"Error sending Discord alert: {e}")
