"""Alert severities and the emergency-contact notification sink."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

import requests

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    LOW = 10
    MEDIUM = 20
    HIGH = 30
    CRITICAL = 40

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.MEDIUM
        normalized = value.strip().upper()
        for member in cls:
            if member.name == normalized:
                return member
        return default or cls.MEDIUM


class NotificationSink(Protocol):
    """Anything that can deliver a message to an emergency contact."""

    def notify(self, contact: str, message: str) -> None:
        ...


@dataclass
class NotificationConfig:
    dry_run: bool = True
    timeout: float = 5.0
    webhook_headers: Optional[Dict[str, str]] = None


@dataclass
class NotificationRecord:
    contact: str
    message: str
    sent_at: datetime
    delivered: bool
    error: Optional[str] = None


class NotificationService:
    """
    Fire-and-forget delivery of operator notifications.

    Contacts that look like http(s) URLs receive a JSON webhook POST; any other
    contact (email address, pager handle) is logged for the relay that owns it.
    Delivery failures are logged and recorded, never raised to the caller.
    """

    def __init__(self, config: Optional[NotificationConfig] = None,
                 session: Optional[requests.Session] = None) -> None:
        self._config = config or NotificationConfig()
        self._session = session or requests.Session()
        self._history: List[NotificationRecord] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "NotificationService":
        raw_config = raw_config or {}

        headers = dict(raw_config.get("webhook_headers") or {})
        token_env = raw_config.get("webhook_token_env")
        if token_env and os.getenv(token_env):
            headers.setdefault("Authorization", f"Bearer {os.getenv(token_env)}")

        config = NotificationConfig(
            dry_run=bool(raw_config.get("dry_run", True)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            webhook_headers=headers or None,
        )
        return cls(config)

    @property
    def history(self) -> List[NotificationRecord]:
        with self._lock:
            return list(self._history)

    def notify(self, contact: str, message: str) -> None:
        self._deliver(contact, message)

    def notify_all(self, contacts: Iterable[str], message: str) -> int:
        """Notify every contact; returns how many were delivered."""
        return sum(1 for contact in contacts if self._deliver(contact, message))

    def _deliver(self, contact: str, message: str) -> bool:
        delivered = False
        error: Optional[str] = None

        try:
            if self._config.dry_run:
                logger.info("[NOTIFY:dry-run] %s <- %s", contact, message)
                delivered = True
            elif self._is_webhook(contact):
                self._post_webhook(contact, message)
                delivered = True
            else:
                logger.warning("[NOTIFY] %s <- %s", contact, message)
                delivered = True
        except requests.RequestException as exc:
            error = str(exc)
            logger.error("Failed to notify %s: %s", contact, exc)

        with self._lock:
            self._history.append(
                NotificationRecord(
                    contact=contact,
                    message=message,
                    sent_at=datetime.now(timezone.utc),
                    delivered=delivered,
                    error=error,
                )
            )
        return delivered

    @staticmethod
    def _is_webhook(contact: str) -> bool:
        lowered = contact.lower()
        return lowered.startswith("http://") or lowered.startswith("https://")

    def _post_webhook(self, url: str, message: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self._config.webhook_headers:
            headers.update(self._config.webhook_headers)

        payload = {"text": message}
        response = self._session.post(
            url,
            data=json.dumps(payload),
            headers=headers,
            timeout=self._config.timeout,
        )
        response.raise_for_status()


__all__ = [
    "AlertSeverity",
    "NotificationConfig",
    "NotificationRecord",
    "NotificationService",
    "NotificationSink",
]
