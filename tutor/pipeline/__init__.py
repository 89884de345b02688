"""
Tutoring Response Pipeline

Event-driven turn processing:
- Session Router: Which responder answers, and routing transitions
- Sentence Extractor: Speakable units from a token stream
- Synthesis Dispatcher: Bounded, ordered parallel speech synthesis
- Validation Gate: Answer checking with bounded regeneration
- Delivery Assembler: One result and one event sequence per turn
- Orchestrator: Wires the stages together (tutor.pipeline.orchestrator)

Usage:
    from tutor.pipeline.orchestrator import TutorPipeline, TurnRequest

    pipeline = await TutorPipeline.create()
    result = await pipeline.process_turn(TurnRequest("session-1", "Hi!"))
"""

from .events import (
    EventBus,
    EventPriority,
    Event,
    OutboundEvent,
    TextEvent,
    AudioEvent,
    CompleteEvent,
    ErrorEvent,
)
from .signals import Continue, Complete, HandoffTo, TurnSignal, parse_signal

__all__ = [
    "EventBus",
    "EventPriority",
    "Event",
    "OutboundEvent",
    "TextEvent",
    "AudioEvent",
    "CompleteEvent",
    "ErrorEvent",
    "Continue",
    "Complete",
    "HandoffTo",
    "TurnSignal",
    "parse_signal",
]
