"""Notification side channel for human-readable failure events."""

from __future__ import annotations

import logging
from collections import deque
from typing import Protocol, runtime_checkable

from querysync.types import Notification, NotificationKind

logger = logging.getLogger(__name__)

_DEFAULT_TITLES = {
    NotificationKind.INFO: "Info",
    NotificationKind.WARNING: "Warning",
    NotificationKind.ERROR: "Error",
    NotificationKind.SUCCESS: "Success",
}

_LOG_LEVELS = {
    NotificationKind.INFO: logging.INFO,
    NotificationKind.WARNING: logging.WARNING,
    NotificationKind.ERROR: logging.ERROR,
    NotificationKind.SUCCESS: logging.INFO,
}


@runtime_checkable
class NotificationSink(Protocol):
    """Receives notifications; implemented by the UI layer."""

    def emit(self, notification: Notification) -> None:
        """Deliver a notification."""
        ...


class LoggingSink:
    """Sink that writes notifications to the log."""

    def emit(self, notification: Notification) -> None:
        logger.log(
            _LOG_LEVELS[notification.kind],
            "%s: %s",
            notification.title,
            notification.message,
        )


class CollectingSink:
    """Sink that keeps the most recent notifications in memory."""

    def __init__(self, max_items: int | None = 100) -> None:
        self._items: deque[Notification] = deque(maxlen=max_items)

    def emit(self, notification: Notification) -> None:
        self._items.append(notification)

    @property
    def notifications(self) -> list[Notification]:
        return list(self._items)

    def drain(self) -> list[Notification]:
        """Return and forget collected notifications."""
        items = list(self._items)
        self._items.clear()
        return items


class Notifier:
    """Fire-and-forget front for a sink. Never raises."""

    def __init__(self, sink: NotificationSink | None = None) -> None:
        self._sink = sink if sink is not None else LoggingSink()

    @property
    def sink(self) -> NotificationSink:
        return self._sink

    def emit(
        self,
        kind: NotificationKind | str,
        message: str,
        *,
        title: str | None = None,
    ) -> None:
        try:
            kind = NotificationKind(kind)
            notification = Notification(
                kind=kind,
                title=title or _DEFAULT_TITLES[kind],
                message=message,
            )
            self._sink.emit(notification)
        except Exception:
            logger.exception("Notification sink failed for %r", message)
