"""In-process event bus and fire-and-forget dispatch of post-commit side effects.

Anything dispatched here runs after the authoritative transaction has
committed. Its failure is observability-only: logged, never retried, never
surfaced to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Coroutine

logger = logging.getLogger("guildvault.events")

# Async handler signature: (server_id, event_name, data) -> None
EventHandler = Callable[[uuid.UUID, str, dict[str, Any]], Coroutine[Any, Any, None]]

SERVER_UPDATED = "server_updated"


class EventBus:
    """Simple pub/sub: publish(server, event, data) calls all subscribers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove a specific handler (e.g. on client disconnect)."""
        self._handlers = [h for h in self._handlers if h is not handler]

    def clear(self) -> None:
        """Remove all handlers (useful for testing)."""
        self._handlers.clear()

    async def publish(self, server_id: uuid.UUID, event: str, data: dict[str, Any]) -> None:
        for handler in self._handlers:
            try:
                await handler(server_id, event, data)
            except Exception as exc:
                logger.warning("event-bus handler error: %s", exc)


class BackgroundDispatcher:
    """Spawns detached tasks and keeps a reference until each one finishes."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "") -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name or None)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("background task %s failed: %s", task.get_name(), exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every spawned task (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# Module-level singletons
event_bus = EventBus()
background = BackgroundDispatcher()
