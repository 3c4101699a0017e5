from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from bankrecon.config import settings

logger = logging.getLogger(__name__)

BATCH_COMPLETED = "reconciliation.batch_completed"
BATCH_FAILED = "reconciliation.batch_failed"


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict[str, Any]


class EventPublisher:
    def publish(self, name: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError


class DisabledPublisher(EventPublisher):
    def publish(self, name: str, payload: dict[str, Any]) -> None:
        return None


class LoggingPublisher(EventPublisher):
    def publish(self, name: str, payload: dict[str, Any]) -> None:
        logger.info("Event %s", name, extra={"event": name, "payload": payload})


@dataclass
class InMemoryPublisher(EventPublisher):
    """Keeps published events; handy for local runs and tests."""

    events: list[Event] = field(default_factory=list)

    def publish(self, name: str, payload: dict[str, Any]) -> None:
        self.events.append(Event(name=name, payload=dict(payload)))

    def named(self, name: str) -> list[Event]:
        return [e for e in self.events if e.name == name]


class WebhookPublisher(EventPublisher):
    def __init__(self, url: str | None = None, timeout: float | None = None, client: httpx.Client | None = None) -> None:
        url = url or settings.webhook_url
        if not url:
            raise RuntimeError("Missing RECON_WEBHOOK_URL")
        self._url = url
        self._timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self._client = client

    def publish(self, name: str, payload: dict[str, Any]) -> None:
        body = {"event": name, "payload": payload}
        try:
            if self._client is not None:
                r = self._client.post(self._url, json=body, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    r = client.post(self._url, json=body)
            r.raise_for_status()
        except httpx.HTTPError:
            # Subscribers are notified best-effort; the batch outcome is already persisted.
            logger.exception("Event delivery failed", extra={"event": name, "url": self._url})


def build_event_publisher() -> EventPublisher:
    kind = (settings.event_publisher or "log").lower()
    if kind == "webhook":
        return WebhookPublisher()
    if kind == "disabled":
        return DisabledPublisher()
    return LoggingPublisher()
