"""Deliver pipeline notifications to the presentation layer."""
from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Deque, List, Optional

from ..core.models import Notification, NotificationCategory

LOGGER = logging.getLogger(__name__)

NotificationListener = Callable[[Notification], None]


class NotificationCenter:
    """Keep a bounded notification history and fan out to listeners."""

    def __init__(self, history: int = 50) -> None:
        self._history: Deque[Notification] = deque(maxlen=max(history, 1))
        self._listeners: List[NotificationListener] = []

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, notification: Notification) -> None:
        self._history.append(notification)
        if notification.category is NotificationCategory.INFO:
            LOGGER.info("%s: %s", notification.title, notification.description)
        else:
            LOGGER.warning("[%s] %s: %s", notification.category.value, notification.title, notification.description)
        for listener in list(self._listeners):
            listener(notification)

    def recent(self, limit: Optional[int] = None) -> List[Notification]:
        items = list(self._history)
        if limit is not None:
            return items[-limit:]
        return items

    def clear(self) -> None:
        self._history.clear()
