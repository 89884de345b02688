"""
Event System for the Tutor Response Pipeline

Two families of events live here:

Outbound events (the delivery contract, in emission order per turn):
- TextEvent: display text, split into sentences
- AudioEvent: one ordered audio segment
- CompleteEvent: end-of-turn metadata (visual payload, signals, validation)
- ErrorEvent: generation failure, the only user-visible error

Internal events (observability, published on the EventBus):
- ValidationFailSafeEvent: validator timed out, errored or was unparseable
- RegenerationExhaustedEvent: answer delivered with a disclaimer
- SynthesisFallbackEvent: progressive synthesis aborted
- BackgroundTaskFailedEvent: a fire-and-forget side effect raised
- CacheInvalidatedEvent: cached responder definitions must be dropped
"""

import asyncio
import base64
import time
import uuid
from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from tutor.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound="Event")
EventHandler = Callable[[T], Awaitable[None]]


class EventPriority(Enum):
    """Priority levels for event processing."""
    CRITICAL = 0  # Cache invalidation
    HIGH = 1      # Fail-safes, exhausted regeneration
    NORMAL = 2    # Synthesis fallbacks
    LOW = 3       # Background task bookkeeping


@dataclass
class Event(ABC):
    """Base event class for all pipeline events."""
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    timestamp: float = field(default_factory=time.time)
    priority: EventPriority = EventPriority.NORMAL
    source: str = ""


# ============================================================================
# Outbound Delivery Events
# ============================================================================

@dataclass
class OutboundEvent(Event):
    """Base class for events sent to the client for one turn."""
    session_id: str = ""
    turn_id: str = ""
    source: str = "delivery"

    kind = "event"

    def payload(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.kind, "session_id": self.session_id, "turn_id": self.turn_id}
        data.update(self.payload())
        return data


@dataclass
class TextEvent(OutboundEvent):
    """Display text for the learner."""
    index: int = 0
    text: str = ""

    kind = "text"

    def payload(self) -> Dict[str, Any]:
        return {"index": self.index, "text": self.text}


@dataclass
class AudioEvent(OutboundEvent):
    """One audio segment, tagged with its order."""
    index: int = 0
    audio: bytes = b""
    text: str = ""

    kind = "audio"

    def payload(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "audio_base64": base64.b64encode(self.audio).decode("ascii"),
            "text": self.text,
        }


@dataclass
class CompleteEvent(OutboundEvent):
    """End-of-turn metadata."""
    responder_id: str = ""
    visual_payload: Optional[str] = None
    lesson_complete: bool = False
    handoff_target: Optional[str] = None
    handoff_message: Optional[str] = None
    routing_reason: str = ""
    disclaimer: Optional[str] = None
    validation_outcome: str = ""
    failsafe: bool = False
    synthesis_mode: str = ""
    attempts: int = 0

    kind = "complete"

    def payload(self) -> Dict[str, Any]:
        return {
            "responder": self.responder_id,
            "visual": self.visual_payload,
            "lesson_complete": self.lesson_complete,
            "handoff_target": self.handoff_target,
            "handoff_message": self.handoff_message,
            "routing_reason": self.routing_reason,
            "disclaimer": self.disclaimer,
            "validation": self.validation_outcome,
            "failsafe": self.failsafe,
            "synthesis_mode": self.synthesis_mode,
            "attempts": self.attempts,
        }


@dataclass
class ErrorEvent(OutboundEvent):
    """Generation failure reported to the learner."""
    message: str = ""

    kind = "error"

    def payload(self) -> Dict[str, Any]:
        return {"message": self.message}


# ============================================================================
# Internal Observability Events
# ============================================================================

@dataclass
class ValidationFailSafeEvent(Event):
    """Validator could not deliver a verdict; the answer was auto-approved."""
    session_id: str = ""
    turn_id: str = ""
    failsafe_kind: str = ""
    detail: str = ""
    priority: EventPriority = EventPriority.HIGH
    source: str = "validation_gate"


@dataclass
class RegenerationExhaustedEvent(Event):
    """Both attempts were rejected and the best draft went out with a disclaimer."""
    session_id: str = ""
    turn_id: str = ""
    responder_id: str = ""
    confidence_score: float = 0.0
    issues: List[str] = field(default_factory=list)
    priority: EventPriority = EventPriority.HIGH
    source: str = "validation_gate"


@dataclass
class SynthesisFallbackEvent(Event):
    """Progressive synthesis crossed its failure threshold."""
    session_id: str = ""
    turn_id: str = ""
    failed_jobs: int = 0
    source: str = "dispatcher"


@dataclass
class BackgroundTaskFailedEvent(Event):
    """A background side effect raised."""
    task_name: str = ""
    owner: str = ""
    error: str = ""
    priority: EventPriority = EventPriority.LOW
    source: str = "background"


@dataclass
class CacheInvalidatedEvent(Event):
    """Cached entries must be dropped by every cache on the bus."""
    namespace: str = ""
    key: Optional[str] = None
    origin: str = ""
    priority: EventPriority = EventPriority.CRITICAL
    source: str = "cache"


# ============================================================================
# Event Bus
# ============================================================================

class EventBus:
    """
    Async event bus for pipeline observability and cache coordination.

    Queued events are dispatched by ``run`` in priority order; cache
    invalidation uses ``publish_immediate`` so no turn reads a stale entry.
    A handler subscribed to a base class receives its subclasses too.
    """

    def __init__(self, max_queue_size: int = 500):
        self._handlers: Dict[type, List[EventHandler]] = {}
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue(maxsize=max_queue_size)
        self._running = False
        self._sequence = 0
        self.dropped = 0

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    async def publish(self, event: Event) -> None:
        """Queue an event for the run loop."""
        self._sequence += 1
        try:
            self._queue.put_nowait((event.priority.value, self._sequence, event))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Event queue full, dropping {type(event).__name__}")

    async def publish_immediate(self, event: Event) -> None:
        """Dispatch an event now, bypassing the queue."""
        await self._dispatch(event)

    async def _dispatch(self, event: Event) -> None:
        handlers = [
            handler
            for event_type, registered in self._handlers.items()
            if isinstance(event, event_type)
            for handler in registered
        ]
        for handler in handlers:
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Handler error for {type(event).__name__}: {e}")

    async def run(self) -> None:
        """Dispatch queued events until ``stop`` is called."""
        self._running = True
        logger.debug("Event bus started")

        while self._running:
            try:
                _, _, event = await asyncio.wait_for(self._queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

        logger.debug("Event bus stopped")

    def stop(self) -> None:
        self._running = False

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait until every queued event has been dispatched."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Event queue drain timed out")
