"""
Event-driven pipeline with typed events and clear data flow.

Events carry their own data, handlers return next events, and dependencies
are injected separately from business data.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from ..adapters.bases import ChainGateway
from ..config import Settings
from ..schemas.bases import ExecutionReceipt, FacilitationRequest, GasQuote, PaymentRecord
from ..schemas.https import FacilitationResponse
from .exceptions import RelayError

logger = logging.getLogger(__name__)

# ==================== Base Event ====================

class BaseEvent(ABC):
    """Base class for all events in the system."""

    @abstractmethod
    def __repr__(self) -> str:
        """String representation of the event."""
        pass


# ==================== Trigger Events (External) ====================

class FacilitationRequestedEvent(BaseModel, BaseEvent):
    """External trigger: raw facilitation body received over HTTP."""
    raw: Any
    received_at: int

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        kind = type(self.raw).__name__
        return f"FacilitationRequestedEvent(body={kind}, received_at={self.received_at})"


# ==================== Pipeline Events ====================

class RequestValidatedEvent(BaseModel, BaseEvent):
    """Result: request passed structural validation."""
    request: FacilitationRequest

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"RequestValidatedEvent(request={self.request!r})"


class SignatureVerifiedEvent(BaseModel, BaseEvent):
    """Result: recovered signer equals the requester. Ends the intake chain
    and starts the execution chain."""
    request: FacilitationRequest

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"SignatureVerifiedEvent(requester={self.request.requester}, nonce={self.request.nonce})"


class NonceCheckedEvent(BaseModel, BaseEvent):
    """Result: nonce is the requester's next expected nonce."""
    request: FacilitationRequest

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"NonceCheckedEvent(nonce={self.request.nonce})"


class RateCheckedEvent(BaseModel, BaseEvent):
    """Result: requester is within its rate window."""
    request: FacilitationRequest
    remaining: int

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"RateCheckedEvent(remaining={self.remaining})"


class QuoteReadyEvent(BaseModel, BaseEvent):
    """Result: target call simulated and priced."""
    request: FacilitationRequest
    quote: GasQuote

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"QuoteReadyEvent(total={self.quote.total_charge}, units={self.quote.gas_units})"


class FundsGuardedEvent(BaseModel, BaseEvent):
    """Result: requester can pay and relayer can front the gas."""
    request: FacilitationRequest
    quote: GasQuote

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"FundsGuardedEvent(requester={self.request.requester})"


class SubmittedEvent(BaseModel, BaseEvent):
    """Result: relay transaction broadcast, receipt possibly available."""
    request: FacilitationRequest
    quote: GasQuote
    tx_hash: str
    receipt: Optional[ExecutionReceipt] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"SubmittedEvent(tx_hash={self.tx_hash})"


# ==================== Result Events ====================

class SettledEvent(BaseModel, BaseEvent):
    """Result: settlement recorded (confirmed, pending or reverted)."""
    response: FacilitationResponse
    record: PaymentRecord

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"SettledEvent(tx={self.response.transaction_id}, status={self.response.status.value})"


class RejectedEvent(BaseModel, BaseEvent):
    """Result: the request was refused by a pipeline stage."""
    error: RelayError
    stage: str = ""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"RejectedEvent(stage={self.stage}, code={self.error.code})"


# ==================== Dependencies Container ====================

@dataclass(frozen=True)
class Dependencies:
    """Container for infrastructure dependencies (read-only)."""
    settings: Settings
    gateway: ChainGateway
    state: Any = None
    submitter: Any = None
    clock: Callable[[], float] = field(default=time.time)


# ==================== Event Bus ====================

EventHandlerFunc = Callable[[BaseEvent, Dependencies], Awaitable[Optional[BaseEvent]]]
EventHookFunc = Callable[[BaseEvent, Dependencies], Awaitable[None]]


class EventBus:
    """Event dispatcher for publishing and subscribing to events."""

    def __init__(self) -> None:
        """Initialize with empty subscribers and hooks."""
        self._subscribers: Dict[type, list[EventHandlerFunc]] = {}
        self._hooks: Dict[type, list[EventHookFunc]] = {}

    def subscribe(self, event_class: type[BaseEvent], handler: EventHandlerFunc) -> None:
        """
        Register an async handler for the given event class.
        Multiple handlers can be subscribed to the same event type and run in parallel.

        Args:
            event_class: The event class to subscribe to.
            handler: The async handler function to call when the event is published.

        Raises:
            TypeError: If handler is not a coroutine function.
        """
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Handler must be a coroutine function, got {type(handler).__name__}")

        self._subscribers.setdefault(event_class, []).append(handler)

    def hook(self, event_class: type[BaseEvent], hook_func: EventHookFunc) -> None:
        """
        Register a hook for the given event class.
        Hooks are executed before subscribers when the event is dispatched.

        Args:
            event_class: The event class to hook into.
            hook_func: The hook function to call when the event is published.
        """
        if not inspect.iscoroutinefunction(hook_func):
            raise TypeError(f"Hook must be a coroutine function, got {type(hook_func).__name__}")

        self._hooks.setdefault(event_class, []).append(hook_func)

    def has_subscribers(self, event_class: type[BaseEvent]) -> bool:
        return bool(self._subscribers.get(event_class))

    async def dispatch(self, event: BaseEvent, deps: Dependencies) -> AsyncGenerator[Optional[BaseEvent], None]:
        """
        Dispatch an event to all registered hooks and subscribers.
        Hooks run first, then all subscribers run in parallel.

        Args:
            event: The event to dispatch.
            deps: Dependencies container with injected services.

        Yields:
            Results from all subscribers as they complete. Yields nothing if no subscribers are registered.
        """
        hooks = self._hooks.get(type(event), [])
        await asyncio.gather(*(hook(event, deps) for hook in hooks))

        handlers = self._subscribers.get(type(event), [])
        if not handlers:
            return

        logger.debug("Dispatching %r to %d handler(s)", event, len(handlers))
        tasks = [handler(event, deps) for handler in handlers]
        for coro in asyncio.as_completed(tasks):
            result = await coro
            yield result
