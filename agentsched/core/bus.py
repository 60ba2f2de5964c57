"""
agentsched Event Bus.

Observer pub/sub plus a middleware chain. The Worker, the executor and the
leader elector publish onto it; the audit log and any embedding service
(HTTP layer, notifier) subscribe.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from typing import Awaitable, Callable

from agentsched.core.events import Event

logger = logging.getLogger(__name__)

# Type aliases
EventHandler = Callable[[Event], Awaitable[None]]
MiddlewareNext = Callable[[Event], Awaitable[Event]]
MiddlewareFunc = Callable[[Event, MiddlewareNext], Awaitable[Event]]


class EventBus:
    """
    Publish/subscribe event bus with middleware pipeline.

    Usage:
        bus = EventBus()

        bus.on("schedule:failed", alert_handler)
        bus.on("leader:*", leadership_handler)

        bus.use(event_logger.middleware)

        await bus.emit(Event(type="schedule:executed", data={...}))
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}
        self._middleware: list[MiddlewareFunc] = []

    # ━━━ Subscription ━━━

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to an event type. Supports wildcards: 'schedule:*', '*'."""
        self._subscribers.setdefault(event_type, []).append(handler)

    # ━━━ Middleware ━━━

    def use(self, middleware: MiddlewareFunc) -> None:
        """
        Add middleware to the processing pipeline.

        Middleware signature:
            async def my_middleware(event: Event, next: MiddlewareNext) -> Event:
                result = await next(event)
                return result
        """
        self._middleware.append(middleware)

    # ━━━ Emission ━━━

    async def emit(self, event: Event) -> Event:
        """
        Emit an event through the middleware chain, then to subscribers.

        Middleware executes in registration order.
        Subscribers execute concurrently; their errors are logged only.
        """
        chain = self._build_chain()
        return await chain(event)

    # ━━━ Internals ━━━

    def _build_chain(self) -> MiddlewareNext:
        async def dispatch(event: Event) -> Event:
            handlers = self._find_handlers(event.type)
            if handlers:
                results = await asyncio.gather(
                    *(h(event) for h in handlers),
                    return_exceptions=True,
                )
                for result in results:
                    if isinstance(result, Exception):
                        logger.error(
                            f"Subscriber error for {event.type}: {result}",
                            exc_info=result,
                        )
            return event

        handler: MiddlewareNext = dispatch
        for mw in reversed(self._middleware):
            next_handler = handler

            # Default parameters pin the closure to this iteration
            async def make_handler(
                event: Event,
                *,
                _mw: MiddlewareFunc = mw,
                _next: MiddlewareNext = next_handler,
            ) -> Event:
                return await _mw(event, _next)

            handler = make_handler

        return handler

    def _find_handlers(self, event_type: str) -> list[EventHandler]:
        handlers: list[EventHandler] = []
        for pattern, subs in self._subscribers.items():
            if pattern == event_type or pattern == "*":
                handlers.extend(subs)
            elif "*" in pattern and fnmatch.fnmatch(event_type, pattern):
                handlers.extend(subs)
        return handlers


async def publish(
    bus: EventBus | None,
    event_type: str,
    source: str,
    **data: object,
) -> None:
    """Emit onto an optional bus. A missing bus is a no-op."""
    if bus is None:
        return
    try:
        await bus.emit(Event(type=event_type, source=source, data=dict(data)))
    except Exception as e:
        logger.warning(f"Failed to publish {event_type}: {e}")
