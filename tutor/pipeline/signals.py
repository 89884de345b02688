"""
Turn signals carried by a responder's answer.

A generated answer tells the router what should happen next. The raw
provider fields (``lessonComplete``, ``handoffRequest``) are parsed exactly
once, at the generation edge, into one of three variants:

    Continue()        keep the current responder
    Complete()        lesson finished, force the assessment responder next
    HandoffTo(target) hand the session to another responder
"""

from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Complete:
    pass


@dataclass(frozen=True)
class HandoffTo:
    target: str
    reason: str = ""


TurnSignal = Union[Continue, Complete, HandoffTo]


def parse_signal(lesson_complete: Any = False, handoff_request: Any = None) -> TurnSignal:
    """
    Build a TurnSignal from raw response fields.

    ``handoff_request`` may be a responder id string or a mapping with an
    ``agent``/``target`` key. Completion wins over a handoff.
    """
    if lesson_complete is True or str(lesson_complete).lower() == "true":
        return Complete()

    target: Optional[str] = None
    reason = ""
    if isinstance(handoff_request, str):
        target = handoff_request
    elif isinstance(handoff_request, dict):
        target = handoff_request.get("agent") or handoff_request.get("target")
        reason = str(handoff_request.get("reason") or "")

    if target and target.strip():
        return HandoffTo(target=target.strip(), reason=reason)
    return Continue()


def signal_name(signal: TurnSignal) -> str:
    if isinstance(signal, Complete):
        return "complete"
    if isinstance(signal, HandoffTo):
        return "handoff"
    return "continue"
