"""
Event chain execution engine.

Provides workflow orchestration on top of EventBus, processing events
recursively until a handler returns nothing.
"""

import asyncio
from typing import AsyncGenerator, Optional

from .events import BaseEvent, Dependencies, EventBus


class _ChainFailed:
    """Queue marker carrying an exception raised inside the chain."""

    def __init__(self, error: BaseException) -> None:
        self.error = error


class EventChain:
    """Executes event-driven workflows by chaining event handler results.

    Handler exceptions are not swallowed: they are re-raised from
    ``execute()`` in the consuming task.
    """

    def __init__(
        self,
        event_bus: EventBus,
        deps: Dependencies,
    ) -> None:
        """
        Initialize event chain executor.

        Args:
            event_bus: The event bus to dispatch events through.
            deps: Dependencies container to pass to handlers.
        """
        self.event_bus = event_bus
        self.deps = deps

    async def execute(self, initial_event: BaseEvent) -> AsyncGenerator[BaseEvent, None]:
        """
        Execute event chain starting from initial event.

        Returns:
            Yields events encountered during chain execution.
        """
        events_queue: asyncio.Queue = asyncio.Queue()

        async def producer():
            try:
                async for event in self._process_event(initial_event):
                    await events_queue.put(event)
            except Exception as e:
                await events_queue.put(_ChainFailed(e))
            finally:
                await events_queue.put(None)  # Sentinel to indicate completion

        task = asyncio.create_task(producer())
        try:
            while True:
                event = await events_queue.get()
                if event is None:  # Chain complete
                    break
                if isinstance(event, _ChainFailed):
                    raise event.error
                yield event
        finally:
            if not task.done():
                task.cancel()

    async def run(self, initial_event: BaseEvent) -> Optional[BaseEvent]:
        """Drive the chain to completion and return the last event produced."""
        last: Optional[BaseEvent] = None
        async for event in self.execute(initial_event):
            last = event
        return last

    async def _process_event(self, event: BaseEvent) -> AsyncGenerator[BaseEvent, None]:
        """
        Process single event and recursively handle results.

        Args:
            event: The event to process.

        Yields:
            Events from the chain.
        """
        async for result in self.event_bus.dispatch(event, self.deps):
            if result is None:
                continue
            if isinstance(result, BaseEvent):
                yield result
                async for e in self._process_event(result):
                    yield e
            else:
                raise TypeError(f"Handler returned unsupported type: {type(result).__name__}")
