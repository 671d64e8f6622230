"""Best-effort notifications to workers (e.g. "your merge request was rejected")."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

import requests

from refinery.errors import NotifyError

LOG = logging.getLogger("refinery.services.notify")


class Notifier(ABC):
    """Notification transport."""

    @abstractmethod
    def send(self, recipient: str, message: str) -> None:
        """Deliver ``message`` to ``recipient``. Raises NotifyError on failure."""
        ...


class LogNotifier(Notifier):
    """Writes notifications to the log. Used when no transport is configured."""

    def send(self, recipient: str, message: str) -> None:
        LOG.info("Notify %s: %s", recipient, message)


class WebhookNotifier(Notifier):
    """POSTs ``{"recipient": ..., "message": ...}`` as JSON to a webhook URL."""

    def __init__(self, url: str, token: str | None = None, timeout: float = 10.0) -> None:
        self._url = url
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def send(self, recipient: str, message: str) -> None:
        payload: Dict[str, Any] = {"recipient": recipient, "message": message}
        try:
            resp = self._session.post(self._url, json=payload, timeout=self._timeout)
        except requests.RequestException as e:
            raise NotifyError(f"Notification to {recipient} failed: {e}") from e
        if resp.status_code >= 400:
            raise NotifyError(f"Notification to {recipient} failed: {resp.status_code} {resp.text[:200]}")
        LOG.debug("Notified %s via webhook", recipient)
