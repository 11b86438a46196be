"""Webhook delivery for watchlist price-drop notifications."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from price_tracker.config import settings

logger = logging.getLogger(__name__)


@dataclass
class PriceDropNotification:
    """A price drop to tell a user about."""

    watchlist_id: int
    user_id: int
    email: str
    product_name: str
    price: Decimal
    target_price: Decimal
    currency: str
    url: str


class WebhookNotifier:
    """
    Posts notifications to a webhook.

    Discord webhook URLs get an embed payload, anything else a flat JSON
    document. With no URL configured notifications are only logged.
    """

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _is_discord(self) -> bool:
        return "discord.com/api/webhooks" in self.webhook_url

    def format_payload(self, notification: PriceDropNotification) -> dict:
        """Build the request body for the configured webhook."""
        if self._is_discord():
            return {
                "embeds": [
                    {
                        "title": f"Price drop: {notification.product_name}"[:256],
                        "url": notification.url,
                        "color": 0x2ECC71,
                        "fields": [
                            {
                                "name": "Price",
                                "value": f"{notification.price:.2f} {notification.currency}",
                                "inline": True,
                            },
                            {
                                "name": "Target",
                                "value": f"{notification.target_price:.2f} {notification.currency}",
                                "inline": True,
                            },
                        ],
                    }
                ]
            }
        return {
            "type": "price_drop",
            "watchlist_id": notification.watchlist_id,
            "user_id": notification.user_id,
            "email": notification.email,
            "product": notification.product_name,
            "price": str(notification.price),
            "target_price": str(notification.target_price),
            "currency": notification.currency,
            "url": notification.url,
        }

    async def send(self, notification: PriceDropNotification) -> None:
        """
        Deliver a notification.

        Raises:
            httpx.HTTPError: Delivery failed (the caller re-arms the alert)
        """
        if not self.webhook_url:
            logger.info(
                f"Price drop for watchlist {notification.watchlist_id}: "
                f"{notification.product_name} at {notification.price} "
                f"(target {notification.target_price}), no webhook configured"
            )
            return

        client = await self._get_client()
        response = await client.post(self.webhook_url, json=self.format_payload(notification))
        response.raise_for_status()
        logger.debug(f"Sent price drop notification for watchlist {notification.watchlist_id}")
