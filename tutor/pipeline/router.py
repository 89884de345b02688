"""
Session Router Module

Decides which responder answers a turn and applies the routing transition
once the turn is delivered.

Phases:
    NO_ACTIVE_RESPONDER  -> selection policy is consulted (once per turn)
    RESPONDER_ACTIVE     -> fast path, the active responder answers directly
    AWAITING_ASSESSMENT  -> the assessment responder is forced

Selection policies are pluggable: the coordinator policy asks a fast model,
the rule-based policy matches keywords and is fully deterministic.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tutor.core.llm import AzureChatClient, Message, load_json_object
from tutor.core.registry import RegistryError, ResponderRegistry
from tutor.config import settings
from tutor.logger import get_logger
from tutor.messages import handoff_message, msg
from .session import RouterPhase, SessionState
from .signals import Complete, HandoffTo, TurnSignal

logger = get_logger(__name__)

AUTO_START_PREFIX = "[AUTO_START]"

REASON_CONTINUING = "continuing"
REASON_SELECTED = "selected"
REASON_DIRECT = "direct"
REASON_LESSON_COMPLETE = "lesson_complete"
REASON_AUTO_START = "auto_start"
REASON_FALLBACK = "fallback"


class PolicyDecisionError(Exception):
    """Raised when a selection policy cannot produce a usable decision."""


@dataclass(frozen=True)
class RoutingDecision:
    """
    Which responder answers this turn, and why.

    ``direct_response`` is set when the policy answered the learner itself;
    no responder generation runs for such turns.
    """
    target_responder: str
    reason: str
    handoff_message: Optional[str] = None
    direct_response: Optional[str] = None
    policy_invoked: bool = False


@dataclass
class RoutingContext:
    """What a selection policy may look at besides the utterance."""
    session_id: str
    registry: ResponderRegistry
    history: List[Message] = field(default_factory=list)
    learner: Dict[str, Any] = field(default_factory=dict)


class SelectionPolicy(ABC):
    """Chooses a responder for a session that has none."""

    @abstractmethod
    async def decide(self, turn: str, context: RoutingContext) -> RoutingDecision:
        ...


class RuleBasedSelectionPolicy(SelectionPolicy):
    """
    Deterministic keyword routing.

    Support responders with a matching phrase win first, then the subject
    responder with the most keyword hits, then the lesson subject from the
    learner context. Without any signal the coordinator answers.
    """

    def __init__(self, coordinator_id: str = "coordinator"):
        self._coordinator_id = coordinator_id

    async def decide(self, turn: str, context: RoutingContext) -> RoutingDecision:
        text = turn.lower()
        words = set(re.findall(r"[a-z']+", text))

        for responder in context.registry:
            if responder.role == "support" and any(" " in k and k in text for k in responder.keywords):
                return RoutingDecision(responder.id, REASON_SELECTED, policy_invoked=True)

        best_id, best_hits = None, 0
        for responder in context.registry.subject_responders():
            hits = sum(1 for k in responder.keywords if k in words)
            if hits > best_hits:
                best_id, best_hits = responder.id, hits
        if best_id:
            return RoutingDecision(best_id, REASON_SELECTED, policy_invoked=True)

        subject = str(context.learner.get("subject", "")).lower()
        for responder in context.registry.subject_responders():
            if subject and responder.capability == subject:
                return RoutingDecision(responder.id, REASON_SELECTED, policy_invoked=True)

        return RoutingDecision(self._coordinator_id, REASON_DIRECT, policy_invoked=True)


_ROUTE_TO = re.compile(r'"route_to"\s*:\s*"([^"]+)"')

ROUTING_INSTRUCTION = """Decide who should answer the learner's latest message.
Available tutors:
{responders}

Answer with JSON only:
{{"route_to": "<tutor id, or self to answer yourself>",
  "reason": "<short reason>",
  "handoff_message": "<one sentence introducing the tutor, or null>",
  "response": "<your answer when route_to is self, otherwise null>"}}"""


class CoordinatorSelectionPolicy(SelectionPolicy):
    """Asks the coordinator model which responder should take over."""

    def __init__(self, client: Optional[AzureChatClient] = None, coordinator_id: str = "coordinator"):
        self._client = client or AzureChatClient()
        self._coordinator_id = coordinator_id

    async def decide(self, turn: str, context: RoutingContext) -> RoutingDecision:
        coordinator = context.registry.resolve(self._coordinator_id)
        system = ROUTING_INSTRUCTION.format(responders=context.registry.describe())
        if coordinator and coordinator.system_instruction:
            system = f"{coordinator.system_instruction}\n\n{system}"

        messages = [Message("system", system), *context.history[-6:], Message("user", turn)]
        raw = await self._client.complete(
            messages,
            settings.azure.deployment_for(coordinator.tier if coordinator else "fast"),
            json_mode=True,
            temperature=0.2,
            max_tokens=400,
        )
        return self.parse(raw)

    def parse(self, raw: str) -> RoutingDecision:
        """Parse the coordinator's JSON, falling back to a bare route_to match."""
        try:
            data = load_json_object(raw)
        except ValueError:
            match = _ROUTE_TO.search(raw)
            if not match:
                raise PolicyDecisionError(f"Unparseable routing decision: {raw[:120]!r}")
            logger.warning("Routing decision recovered with regex fallback")
            data = {"route_to": match.group(1)}

        route_to = str(data.get("route_to") or "").strip()
        if not route_to:
            raise PolicyDecisionError("Routing decision has no route_to")

        reason = str(data.get("reason") or REASON_SELECTED)
        if route_to.lower() == "self":
            response = data.get("response")
            return RoutingDecision(
                self._coordinator_id,
                REASON_DIRECT,
                direct_response=str(response) if response else None,
                policy_invoked=True,
            )
        return RoutingDecision(
            route_to,
            reason,
            handoff_message=data.get("handoff_message") or None,
            policy_invoked=True,
        )


class SessionRouter:
    """
    Routing state machine for all sessions.

    ``route`` reads a session's state and never writes it. ``advance`` is the
    only writer of the active responder and phase; the delivery assembler
    calls it as the last step of a delivered turn.
    """

    def __init__(
        self,
        registry: ResponderRegistry,
        policy: SelectionPolicy,
        coordinator_id: str = "coordinator",
        default_responder: str = "coordinator",
        assessment_responder: str = "assessor",
    ):
        self._registry = registry
        self._policy = policy
        self._coordinator_id = coordinator_id
        self._default_responder = default_responder
        self._assessment_responder = assessment_responder
        self.policy_calls = 0
        self.check_registry(registry)

    @property
    def registry(self) -> ResponderRegistry:
        return self._registry

    @registry.setter
    def registry(self, registry: ResponderRegistry) -> None:
        self.check_registry(registry)
        self._registry = registry

    def check_registry(self, registry: ResponderRegistry) -> None:
        """Raise RegistryError unless every responder routing may force is registered."""
        required = (self._coordinator_id, self._default_responder, self._assessment_responder)
        missing = sorted({rid for rid in required if registry.resolve(rid) is None})
        if missing:
            raise RegistryError(f"Registry lacks configured responder(s): {', '.join(missing)}")

    @staticmethod
    def is_auto_start(turn: str) -> bool:
        return turn.lstrip().startswith(AUTO_START_PREFIX)

    async def route(
        self,
        turn: str,
        state: SessionState,
        learner: Optional[Dict[str, Any]] = None,
        history: Optional[List[Message]] = None,
    ) -> RoutingDecision:
        if self.is_auto_start(turn):
            return RoutingDecision(self._coordinator_id, REASON_AUTO_START)

        if state.phase == RouterPhase.AWAITING_ASSESSMENT:
            return RoutingDecision(
                self._assessment_responder,
                REASON_LESSON_COMPLETE,
                handoff_message=state.pending_handoff_message,
            )

        if state.phase == RouterPhase.RESPONDER_ACTIVE:
            active = self._registry.resolve(state.active_responder)
            if active is not None:
                return RoutingDecision(active.id, REASON_CONTINUING, handoff_message=state.pending_handoff_message)
            logger.warning(
                f"Session {state.session_id}: active responder "
                f"'{state.active_responder}' is no longer registered"
            )

        return await self._select(turn, state, learner or {}, history or [])

    async def _select(
        self,
        turn: str,
        state: SessionState,
        learner: Dict[str, Any],
        history: List[Message],
    ) -> RoutingDecision:
        self.policy_calls += 1
        context = RoutingContext(
            session_id=state.session_id,
            registry=self._registry,
            history=history,
            learner=learner,
        )
        try:
            decision = await self._policy.decide(turn, context)
        except Exception as e:
            logger.warning(f"Session {state.session_id}: selection policy failed ({e}), using fallback")
            return self._fallback()

        if decision.direct_response is not None:
            return decision

        responder = self._registry.resolve(decision.target_responder)
        if responder is None:
            logger.warning(
                f"Session {state.session_id}: policy chose unknown responder "
                f"'{decision.target_responder}', using fallback"
            )
            return self._fallback()

        message = decision.handoff_message
        if message is None and not responder.is_coordinator:
            message = handoff_message(responder.name)
        return RoutingDecision(
            responder.id,
            decision.reason or REASON_SELECTED,
            handoff_message=message,
            policy_invoked=True,
        )

    def _fallback(self) -> RoutingDecision:
        return RoutingDecision(self._default_responder, REASON_FALLBACK, policy_invoked=True)

    def advance(
        self,
        state: SessionState,
        decision: RoutingDecision,
        signal: TurnSignal,
        announcement: Optional[str] = None,
    ) -> None:
        """
        Apply the routing transition for a delivered turn.

        ``announcement`` is the line already sent for the transition, if the
        caller computed one; it opens the next turn of the forced responder.
        """
        if decision.reason == REASON_AUTO_START:
            return

        responder = self._registry.resolve(decision.target_responder)
        responder_id = responder.id if responder is not None else decision.target_responder

        if decision.direct_response is not None or responder is None or responder.is_coordinator:
            active, phase = None, RouterPhase.NO_ACTIVE_RESPONDER
        else:
            active, phase = responder.id, RouterPhase.RESPONDER_ACTIVE

        if isinstance(signal, Complete):
            if responder is not None and responder.id == self._assessment_responder:
                active, phase = None, RouterPhase.NO_ACTIVE_RESPONDER
            else:
                active, phase = self._assessment_responder, RouterPhase.AWAITING_ASSESSMENT
        elif isinstance(signal, HandoffTo):
            target = self._registry.resolve(signal.target)
            if target is None:
                logger.warning(f"Session {state.session_id}: ignoring handoff to unknown '{signal.target}'")
            elif target.is_coordinator:
                active, phase = None, RouterPhase.NO_ACTIVE_RESPONDER
            else:
                active, phase = target.id, RouterPhase.RESPONDER_ACTIVE

        if (active, phase) != (state.active_responder, state.phase):
            logger.info(
                f"Session {state.session_id}: {state.phase.name}({state.active_responder}) "
                f"-> {phase.name}({active})"
            )
        state.active_responder = active
        state.phase = phase
        state.pending_handoff_message = announcement or self.announcement_for(signal, responder_id)

    def announcement_for(self, signal: TurnSignal, responder_id: str = "") -> Optional[str]:
        """Line that announces the responder taking over next turn."""
        if isinstance(signal, Complete):
            if responder_id == self._assessment_responder:
                return None
            return msg("routing.assessment_handoff")
        if isinstance(signal, HandoffTo):
            target = self._registry.resolve(signal.target)
            if target is not None and not target.is_coordinator:
                return handoff_message(target.name)
        return None

    def handoff_target_for(self, signal: TurnSignal, responder_id: str = "") -> Optional[str]:
        """Responder that will answer next turn because of ``signal``, if any."""
        if isinstance(signal, Complete):
            return None if responder_id == self._assessment_responder else self._assessment_responder
        if isinstance(signal, HandoffTo):
            target = self._registry.resolve(signal.target)
            return target.id if target is not None else None
        return None
