"""
Validation Gate Module

Quality-gates a complete answer before delivery.

Gate lifecycle per turn:
    DRAFTED -> VALIDATING -> APPROVED
                          -> REJECTED -> DRAFTED (regenerate with fixes)
                          -> REJECTED -> DELIVERED_WITH_DISCLAIMER (attempts exhausted)

An answer is approved iff the validator's confidence reaches the approval
threshold. When the validator times out, errors or answers with something
unparseable, the answer is approved anyway as a fail-safe and the event is
logged under its own marker so it never looks like a genuine approval.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tutor.config import settings
from tutor.core.llm import AzureChatClient, GenerationError, GenerationResult, Message, load_json_object
from tutor.logger import get_logger
from .events import EventBus, ValidationFailSafeEvent

logger = get_logger(__name__)

FAILSAFE_CONFIDENCE = 0.5


class VerdictOutcome(Enum):
    """How a verdict came about."""
    APPROVED = auto()
    REJECTED = auto()
    FAILSAFE_TIMEOUT = auto()
    FAILSAFE_ERROR = auto()
    FAILSAFE_UNPARSEABLE = auto()
    SKIPPED = auto()


FAILSAFE_OUTCOMES = (
    VerdictOutcome.FAILSAFE_TIMEOUT,
    VerdictOutcome.FAILSAFE_ERROR,
    VerdictOutcome.FAILSAFE_UNPARSEABLE,
)

FAILSAFE_MARKERS = {
    VerdictOutcome.FAILSAFE_TIMEOUT: "validation.failsafe.timeout",
    VerdictOutcome.FAILSAFE_ERROR: "validation.failsafe.error",
    VerdictOutcome.FAILSAFE_UNPARSEABLE: "validation.failsafe.unparseable",
}


class GateState(Enum):
    """State of the gate for one turn."""
    DRAFTED = auto()
    VALIDATING = auto()
    APPROVED = auto()
    REJECTED = auto()
    DELIVERED_WITH_DISCLAIMER = auto()


@dataclass(frozen=True)
class ValidationVerdict:
    """Immutable result of validating one draft."""
    approved: bool
    confidence_score: float
    issues: Tuple[str, ...] = ()
    required_fixes: Tuple[str, ...] = ()
    outcome: VerdictOutcome = VerdictOutcome.APPROVED

    @property
    def is_failsafe(self) -> bool:
        return self.outcome in FAILSAFE_OUTCOMES

    @classmethod
    def failsafe(cls, outcome: VerdictOutcome, detail: str) -> "ValidationVerdict":
        return cls(
            approved=True,
            confidence_score=FAILSAFE_CONFIDENCE,
            issues=(f"Validation system error - auto-approved as fail-safe ({detail})",),
            outcome=outcome,
        )

    @classmethod
    def skipped(cls) -> "ValidationVerdict":
        return cls(approved=True, confidence_score=1.0, outcome=VerdictOutcome.SKIPPED)


@dataclass
class ValidationRequest:
    """A complete answer plus what it is checked against."""
    responder_id: str
    user_text: str
    display_text: str
    audio_text: str
    visual_payload: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


class ValidationProvider(ABC):
    """Returns the validator's raw JSON verdict for an answer."""

    @abstractmethod
    async def validate(self, request: ValidationRequest) -> str:
        ...


class VerdictPayload(BaseModel):
    """JSON shape of a validator verdict."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    approved: bool = False
    confidence_score: float = Field(alias="confidenceScore", ge=0.0, le=1.0)
    issues: List[str] = Field(default_factory=list)
    required_fixes: Optional[List[str]] = Field(default=None, alias="requiredFixes")


VALIDATION_INSTRUCTION = """You review a tutor's answer before a learner sees it.
Check:
1. Factual accuracy against the lesson topic
2. Appropriateness for the learner's grade level
3. Consistency between the spoken text, the displayed text and any diagram
4. Teaching order: no steps skipped or introduced before their prerequisites
5. Whether the diagram matches what the text describes

Answer with JSON only:
{"approved": true|false, "confidenceScore": 0.0-1.0, "issues": ["..."], "requiredFixes": ["..."] or null}"""


class AzureValidationProvider(ValidationProvider):
    """Validator backed by the quality Azure OpenAI deployment."""

    def __init__(self, client: Optional[AzureChatClient] = None):
        self._client = client or AzureChatClient()

    async def validate(self, request: ValidationRequest) -> str:
        facts = "\n".join(f"- {k}: {v}" for k, v in request.context.items() if v not in (None, ""))
        answer = (
            f"Tutor: {request.responder_id}\n"
            f"Learner context:\n{facts or '- none'}\n\n"
            f"Learner said: {request.user_text}\n\n"
            f"Spoken text:\n{request.audio_text}\n\n"
            f"Displayed text:\n{request.display_text}\n\n"
            f"Diagram:\n{request.visual_payload or 'none'}"
        )
        return await self._client.complete(
            [Message("system", VALIDATION_INSTRUCTION), Message("user", answer)],
            settings.azure.quality_deployment,
            json_mode=True,
            temperature=0.0,
            max_tokens=500,
        )


@dataclass
class Draft:
    """One generation attempt and whatever the caller attached to it."""
    attempt: int
    result: GenerationResult
    payload: Any = None
    verdict: Optional[ValidationVerdict] = None


@dataclass
class GateResult:
    """Final outcome of the gate for one turn."""
    state: GateState
    draft: Draft
    verdict: ValidationVerdict
    drafts: List[Draft]
    transitions: List[GateState]

    @property
    def attempts(self) -> int:
        return len(self.drafts)

    @property
    def disclaimer(self) -> bool:
        return self.state == GateState.DELIVERED_WITH_DISCLAIMER


DraftProducer = Callable[[int, List[str]], Awaitable[Draft]]


def _detach(task: asyncio.Task) -> None:
    """Collect the outcome of a validator call that outlived its deadline."""
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Late validator call ended with: {task.exception()}")


class ValidationGate:
    """
    Validates drafts and drives bounded regeneration.

    Usage:
        gate = ValidationGate(AzureValidationProvider())
        result = await gate.run(produce_draft, user_text="...", context={...})
    """

    def __init__(
        self,
        provider: ValidationProvider,
        timeout: Optional[float] = None,
        approval_threshold: Optional[float] = None,
        max_attempts: Optional[int] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self._provider = provider
        self._timeout = timeout or settings.validation.timeout
        self._threshold = (
            settings.validation.approval_threshold
            if approval_threshold is None else approval_threshold
        )
        self._max_attempts = max_attempts or settings.validation.max_attempts
        self._event_bus = event_bus

    @property
    def timeout(self) -> float:
        return self._timeout

    def parse_verdict(self, raw: str) -> ValidationVerdict:
        """Parse raw validator output; raises ValueError or ValidationError."""
        payload = VerdictPayload.model_validate(load_json_object(raw))
        approved = payload.confidence_score >= self._threshold
        if approved != payload.approved:
            logger.debug(
                f"Validator said approved={payload.approved} at confidence "
                f"{payload.confidence_score:.2f}; threshold decides"
            )
        return ValidationVerdict(
            approved=approved,
            confidence_score=payload.confidence_score,
            issues=tuple(payload.issues),
            required_fixes=tuple(payload.required_fixes or ()),
            outcome=VerdictOutcome.APPROVED if approved else VerdictOutcome.REJECTED,
        )

    async def evaluate(
        self,
        request: ValidationRequest,
        session_id: str = "",
        turn_id: str = "",
    ) -> ValidationVerdict:
        """
        Validate one answer. Always returns within the timeout (plus
        scheduling slack), whether or not the provider honours cancellation.
        """
        task = asyncio.ensure_future(self._provider.validate(request))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            task.add_done_callback(_detach)
            return await self._failsafe(
                VerdictOutcome.FAILSAFE_TIMEOUT, f"no verdict after {self._timeout}s", session_id, turn_id
            )

        try:
            raw = task.result()
        except Exception as e:
            return await self._failsafe(VerdictOutcome.FAILSAFE_ERROR, str(e), session_id, turn_id)

        try:
            verdict = self.parse_verdict(raw)
        except (ValueError, ValidationError) as e:
            return await self._failsafe(
                VerdictOutcome.FAILSAFE_UNPARSEABLE, str(e).splitlines()[0], session_id, turn_id
            )

        if verdict.approved:
            logger.info(
                f"validation.approved [{session_id}:{turn_id}] {request.responder_id} "
                f"confidence={verdict.confidence_score:.2f}"
            )
        else:
            logger.info(
                f"validation.rejected [{session_id}:{turn_id}] {request.responder_id} "
                f"confidence={verdict.confidence_score:.2f} issues={list(verdict.issues)}"
            )
        return verdict

    async def _failsafe(
        self,
        outcome: VerdictOutcome,
        detail: str,
        session_id: str,
        turn_id: str,
    ) -> ValidationVerdict:
        logger.warning(f"{FAILSAFE_MARKERS[outcome]} [{session_id}:{turn_id}] auto-approved: {detail}")
        if self._event_bus is not None:
            await self._event_bus.publish(ValidationFailSafeEvent(
                session_id=session_id,
                turn_id=turn_id,
                failsafe_kind=FAILSAFE_MARKERS[outcome],
                detail=detail,
            ))
        return ValidationVerdict.failsafe(outcome, detail)

    async def run(
        self,
        produce: DraftProducer,
        user_text: str,
        context: Optional[Dict[str, Any]] = None,
        skip: bool = False,
        session_id: str = "",
        turn_id: str = "",
    ) -> GateResult:
        """
        Produce, validate and, if needed, regenerate a draft.

        Args:
            produce: Called with (attempt, required_fixes) to build a draft
            user_text: The learner's utterance, for the validator
            context: Learner and lesson facts, for the validator
            skip: Approve the first draft without validation

        Raises:
            GenerationError: If the first draft cannot be produced
        """
        drafts: List[Draft] = []
        transitions: List[GateState] = []
        corrections: List[str] = []

        for attempt in range(1, self._max_attempts + 1):
            try:
                draft = await produce(attempt, corrections)
            except GenerationError as e:
                if not drafts:
                    raise
                logger.warning(f"[{session_id}:{turn_id}] regeneration failed ({e}), keeping earlier draft")
                break

            drafts.append(draft)
            transitions.append(GateState.DRAFTED)

            if skip:
                draft.verdict = ValidationVerdict.skipped()
                transitions.append(GateState.APPROVED)
                return GateResult(GateState.APPROVED, draft, draft.verdict, drafts, transitions)

            transitions.append(GateState.VALIDATING)
            draft.verdict = await self.evaluate(
                ValidationRequest(
                    responder_id=draft.result.responder_id,
                    user_text=user_text,
                    display_text=draft.result.display_text,
                    audio_text=draft.result.audio_text,
                    visual_payload=draft.result.visual_payload,
                    context=context or {},
                ),
                session_id,
                turn_id,
            )
            if draft.verdict.approved:
                transitions.append(GateState.APPROVED)
                return GateResult(GateState.APPROVED, draft, draft.verdict, drafts, transitions)

            transitions.append(GateState.REJECTED)
            corrections = list(draft.verdict.required_fixes) or list(draft.verdict.issues)

        best = max(drafts, key=lambda d: (d.verdict.confidence_score, d.attempt))
        transitions.append(GateState.DELIVERED_WITH_DISCLAIMER)
        logger.warning(
            f"[{session_id}:{turn_id}] regeneration exhausted after {len(drafts)} attempt(s); "
            f"delivering attempt {best.attempt} with disclaimer"
        )
        return GateResult(GateState.DELIVERED_WITH_DISCLAIMER, best, best.verdict, drafts, transitions)
