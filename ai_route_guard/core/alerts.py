"""
Operator alerting.

Notifiers are fire-and-forget: a failed notification is logged and never
propagates to the component that raised the alert.
"""

from typing import List, Optional, Protocol

import httpx
import structlog

log = structlog.get_logger(__name__)


class Notifier(Protocol):
    def notify(self, title: str, body: str) -> None:
        ...


class LogNotifier:
    """Writes alerts to the structured log at warning level."""

    def notify(self, title: str, body: str) -> None:
        log.warning("alert.notified", title=title, body=body)


class WebhookNotifier:
    """Posts alerts as JSON ``{"title", "body"}`` to a webhook URL."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def notify(self, title: str, body: str) -> None:
        response = self._client.post(self.url, json={"title": title, "body": body})
        response.raise_for_status()
        log.info("alert.webhook_sent", title=title, status_code=response.status_code)

    def close(self) -> None:
        self._client.close()


class CompositeNotifier:
    """Fans an alert out to several notifiers; one failing doesn't stop the rest."""

    def __init__(self, notifiers: List[Notifier]):
        self.notifiers = list(notifiers)

    def notify(self, title: str, body: str) -> None:
        for notifier in self.notifiers:
            notify_safely(notifier, title, body)

    def close(self) -> None:
        for notifier in self.notifiers:
            close_notifier(notifier)


def close_notifier(notifier: Notifier) -> None:
    close = getattr(notifier, "close", None)
    if close is not None:
        close()


def notify_safely(notifier: Notifier, title: str, body: str) -> bool:
    """Send an alert, logging instead of raising on failure.

    Returns:
        True if the notifier accepted the alert
    """
    try:
        notifier.notify(title, body)
        return True
    except Exception:
        log.exception("alert.notify_failed", title=title, notifier=type(notifier).__name__)
        return False
