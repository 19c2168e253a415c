#!/usr/bin/env python3
"""
Notification dispatchers.

After a run that discovered new works the scheduler calls
`notify(discovered_count)`. LogNotifier only writes a log line;
WebhookNotifier POSTs a small JSON payload to NOTIFY_WEBHOOK_URL.
"""

from datetime import datetime, timezone
from typing import Optional

from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import NetworkError

# Module-specific logger
logger = get_logger("notifier")


class NotificationDispatcher:
    """Interface for run notifications."""

    async def notify(self, discovered_count: int) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LogNotifier(NotificationDispatcher):
    async def notify(self, discovered_count: int) -> None:
        logger.info(f"🔔 Discovered {discovered_count} new works")


class WebhookNotifier(NotificationDispatcher):
    """POST `{"event", "discovered", "timestamp"}` to a webhook URL.

    Args:
        url: webhook endpoint
        session: optional shared aiohttp ClientSession to reuse
        proxy_url: optional HTTP proxy for the request
    """

    def __init__(self, url: str, session: Optional[ClientSession] = None,
                 proxy_url: Optional[str] = None) -> None:
        self.url = url
        self._session = session
        self.proxy_url = proxy_url if proxy_url is not None else config.PROXY_URL

    async def notify(self, discovered_count: int) -> None:
        """Send the notification.

        Raises:
            NetworkError: the webhook could not be reached or rejected the call.
        """
        payload = {
            "event": "new_works",
            "discovered": discovered_count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        request_kwargs = {
            "json": payload,
            "headers": {"User-Agent": config.USER_AGENT},
            "timeout": ClientTimeout(total=max(int(config.HTTP_TIMEOUT), 1)),
        }
        if self.proxy_url:
            request_kwargs["proxy"] = self.proxy_url

        async def _execute(client: ClientSession) -> None:
            async with client.post(self.url, **request_kwargs) as resp:
                resp.raise_for_status()

        try:
            if self._session is None:
                async with ClientSession() as owned_session:
                    await _execute(owned_session)
            else:
                await _execute(self._session)
        except ClientError as e:
            raise NetworkError(f"Webhook notification failed: {e}", {"url": self.url}) from e
        logger.info(f"🔔 Notified webhook of {discovered_count} new works")


def create_notifier(webhook_url: Optional[str] = None) -> NotificationDispatcher:
    """Pick the webhook notifier when a URL is configured, else log only."""
    url = webhook_url or config.NOTIFY_WEBHOOK_URL
    if url:
        return WebhookNotifier(url)
    return LogNotifier()
