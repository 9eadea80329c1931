"""In-process event fan-out.

Handlers are invoked synchronously in subscription order. A handler that
returns a coroutine has it scheduled on the running loop; the bus keeps a
reference until it completes. Failing handlers are logged and never affect
the publisher or the remaining handlers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, List, Optional, Set

from .event_types import Event, EventName

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None] | None]


@dataclass(frozen=True)
class _Subscription:
    handler: EventHandler
    names: Optional[FrozenSet[EventName]]

    def accepts(self, event: Event) -> bool:
        return self.names is None or event.name in self.names


class EventBus:
    """Fan-out of state-change, raw-message and lifecycle events."""

    def __init__(self) -> None:
        self._subscriptions: List[_Subscription] = []
        self._pending: Set[asyncio.Task[Any]] = set()

    def subscribe(
        self,
        handler: EventHandler,
        names: Optional[Iterable[EventName]] = None,
    ) -> Callable[[], None]:
        """Register ``handler`` for ``names`` (all events when omitted).

        Returns a callable that removes the subscription.
        """

        subscription = _Subscription(
            handler=handler,
            names=frozenset(names) if names is not None else None,
        )
        self._subscriptions.append(subscription)

        def _unsubscribe() -> None:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, event: Event) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.accepts(event):
                continue
            try:
                result = subscription.handler(event)
            except Exception:
                LOGGER.exception("Event handler failed for %s", event.name.value)
                continue

            if asyncio.iscoroutine(result):
                self._schedule(result, event)

    def emit(self, name: EventName, device_id: Optional[int] = None, **payload: Any) -> Event:
        event = Event(name=name, device_id=device_id, payload=payload)
        self.publish(event)
        return event

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, coroutine: Awaitable[None], event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning(
                "No running loop for async handler of %s; dropping", event.name.value
            )
            coroutine.close()  # type: ignore[attr-defined]
            return

        task = loop.create_task(coroutine)  # type: ignore[arg-type]
        self._pending.add(task)
        task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Async event handler failed", exc_info=exc)
