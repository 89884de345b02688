"""
Delivery Assembler Module

Turns the gate's chosen draft and its ordered audio into exactly one
DeliveryResult per turn, with the outbound events in delivery order:

    text* -> audio* -> complete      (delivered turn)
    error                            (generation failure)

Committing the routing transition and the history entry is the last thing a
delivered turn does; records for the session store are written afterwards
by owned background tasks.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tutor.core.llm import GenerationResult
from tutor.logger import get_logger
from tutor.messages import msg
from .background import BackgroundTasks
from .dispatcher import CollectedAudio
from .events import AudioEvent, CompleteEvent, ErrorEvent, OutboundEvent, TextEvent
from .extractor import SentenceExtractor
from .router import RoutingDecision, SessionRouter
from .session import ConversationTurn, SessionState, SessionStore, TurnRecord, ValidationFailureRecord
from .signals import Continue, TurnSignal, signal_name
from .validation import ValidationVerdict

logger = get_logger(__name__)

SYNTHESIS_PROGRESSIVE = "progressive"
SYNTHESIS_FALLBACK = "single_pass"
SYNTHESIS_NONE = "none"


@dataclass
class DeliveryResult:
    """Everything delivered for one turn."""
    session_id: str
    turn_id: str
    responder_id: str
    routing: RoutingDecision
    display_text: str = ""
    audio_text: str = ""
    audio: bytes = b""
    visual_payload: Optional[str] = None
    signal: TurnSignal = field(default_factory=Continue)
    verdict: Optional[ValidationVerdict] = None
    disclaimer: Optional[str] = None
    synthesis_mode: str = SYNTHESIS_NONE
    attempts: int = 0
    events: List[OutboundEvent] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def failsafe(self) -> bool:
        return self.verdict is not None and self.verdict.is_failsafe

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turn_id": self.turn_id,
            "responder": self.responder_id,
            "routing_reason": self.routing.reason,
            "display_text": self.display_text,
            "audio_text": self.audio_text,
            "visual": self.visual_payload,
            "signal": signal_name(self.signal),
            "validation": self.verdict.outcome.name.lower() if self.verdict else None,
            "confidence": self.verdict.confidence_score if self.verdict else None,
            "disclaimer": self.disclaimer,
            "synthesis_mode": self.synthesis_mode,
            "attempts": self.attempts,
            "error": self.error,
            "events": [e.to_dict() for e in self.events],
        }


class DeliveryAssembler:
    """Builds delivery results and commits the turn's session transition."""

    def __init__(
        self,
        router: SessionRouter,
        store: SessionStore,
        background: BackgroundTasks,
        splitter: Optional[SentenceExtractor] = None,
    ):
        self._router = router
        self._store = store
        self._background = background
        self._splitter = splitter or SentenceExtractor()

    def _text_events(self, session_id: str, turn_id: str, texts: List[str]) -> List[OutboundEvent]:
        return [
            TextEvent(session_id=session_id, turn_id=turn_id, index=i, text=text)
            for i, text in enumerate(texts)
        ]

    def _display_sentences(self, display_text: str) -> List[str]:
        sentences: List[str] = []
        for unit in self._splitter.split_text(display_text):
            if unit.merge_into_previous and sentences:
                sentences[-1] = f"{sentences[-1]} {unit.speakable}".strip()
            elif unit.speakable:
                sentences.append(unit.speakable)
        return sentences

    def assemble(
        self,
        state: SessionState,
        turn_id: str,
        user_text: str,
        decision: RoutingDecision,
        result: GenerationResult,
        verdict: ValidationVerdict,
        collected: CollectedAudio,
        synthesis_mode: str,
        attempts: int = 1,
        disclaimer: bool = False,
    ) -> DeliveryResult:
        """
        Assemble a delivered turn and commit its routing transition.

        Must be called at most once per turn, after the gate has finished.
        """
        session_id = state.session_id
        responder_id = result.responder_id or decision.target_responder
        disclaimer_text = msg("delivery.disclaimer") if disclaimer else None

        texts: List[str] = []
        if decision.handoff_message:
            texts.append(decision.handoff_message)
        texts.extend(self._display_sentences(result.display_text))
        if disclaimer_text:
            texts.append(disclaimer_text)

        announcement = self._router.announcement_for(result.signal, responder_id)
        events = self._text_events(session_id, turn_id, texts)
        for segment in collected.segments:
            events.append(AudioEvent(
                session_id=session_id,
                turn_id=turn_id,
                index=segment.index,
                audio=segment.audio,
                text=segment.text,
            ))
        events.append(CompleteEvent(
            session_id=session_id,
            turn_id=turn_id,
            responder_id=responder_id,
            visual_payload=result.visual_payload,
            lesson_complete=signal_name(result.signal) == "complete",
            handoff_target=self._router.handoff_target_for(result.signal, responder_id),
            handoff_message=announcement,
            routing_reason=decision.reason,
            disclaimer=disclaimer_text,
            validation_outcome=verdict.outcome.name.lower(),
            failsafe=verdict.is_failsafe,
            synthesis_mode=synthesis_mode,
            attempts=attempts,
        ))

        delivery = DeliveryResult(
            session_id=session_id,
            turn_id=turn_id,
            responder_id=responder_id,
            routing=decision,
            display_text=result.display_text,
            audio_text=result.audio_text,
            audio=collected.audio,
            visual_payload=result.visual_payload,
            signal=result.signal,
            verdict=verdict,
            disclaimer=disclaimer_text,
            synthesis_mode=synthesis_mode,
            attempts=attempts,
            events=events,
        )

        # commit: nothing below may fail the turn
        state.history.append(ConversationTurn(
            turn_id=turn_id,
            user_text=user_text,
            agent_text=result.display_text,
            responder_id=responder_id,
        ))
        state.turn_count += 1
        self._router.advance(state, decision, result.signal, announcement)

        self._background.spawn("record_turn", self._store.record_turn(TurnRecord(
            session_id=session_id,
            turn_id=turn_id,
            responder_id=responder_id,
            active_responder=state.active_responder,
            routing_reason=decision.reason,
            signal=signal_name(result.signal),
            user_text=user_text,
            agent_text=result.display_text,
        )))
        if disclaimer:
            self._background.spawn(
                "record_validation_failure",
                self._store.record_validation_failure(ValidationFailureRecord(
                    session_id=session_id,
                    turn_id=turn_id,
                    responder_id=responder_id,
                    user_text=user_text,
                    display_text=result.display_text,
                    confidence_score=verdict.confidence_score,
                    issues=list(verdict.issues),
                    required_fixes=list(verdict.required_fixes),
                    attempts=attempts,
                )),
            )
        return delivery

    def assemble_error(
        self,
        state: SessionState,
        turn_id: str,
        decision: RoutingDecision,
        error: str,
    ) -> DeliveryResult:
        """Assemble a failed turn. Session state is left untouched."""
        event = ErrorEvent(
            session_id=state.session_id,
            turn_id=turn_id,
            message=msg("delivery.generation_failed"),
        )
        return DeliveryResult(
            session_id=state.session_id,
            turn_id=turn_id,
            responder_id=decision.target_responder,
            routing=decision,
            events=[event],
            error=error,
        )
