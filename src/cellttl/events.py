"""Expiration notifications.

The reaper publishes one ``ExpirationEvent`` per cell it deletes. Any number
of callbacks may subscribe; plain functions are called inline and coroutine
functions are scheduled as tasks on the running loop. A failing subscriber
is logged and does not affect the others.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

Subscriber = Callable[["ExpirationEvent"], Any]


@dataclass(frozen=True)
class ExpirationEvent:
    """A cell removed after its TTL elapsed.

    Attributes:
        row: Row key of the expired cell.
        column: Column qualifier of the expired cell.
        family: Column family of the expired cell.
        table: Data table the cell belonged to.
    """

    row: str
    column: str
    family: str = ""
    table: str = ""


class ExpirationNotifier:
    """Observer list for expiration events."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: ExpirationEvent) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event)
            except Exception:
                logger.exception("Expiration subscriber failed for %s:%s", event.row, event.column)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Expiration subscriber failed", exc_info=task.exception())

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)
