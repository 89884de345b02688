"""
Tutor Pipeline Orchestrator

Runs one learner turn end to end:

    route -> generate (streamed) -> extract sentences -> synthesize (bounded)
          -> validate (bounded regeneration) -> assemble -> commit

Turns of the same session are serialized by the session manager; turns of
different sessions run concurrently and share nothing mutable except the
responder registry cache and the event bus.
"""

import asyncio
import uuid
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from tutor.config import settings
from tutor.core.cache import CacheService
from tutor.core.llm import (
    AzureChatClient,
    AzureGenerationProvider,
    GenerationError,
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
)
from tutor.core.registry import RegistryError, Responder, ResponderRegistry
from tutor.core.speech import AzureSpeechSynthesizer, SynthesisProvider
from tutor.logger import TurnLogger, get_logger
from .background import BackgroundTasks
from .delivery import (
    SYNTHESIS_FALLBACK,
    SYNTHESIS_NONE,
    SYNTHESIS_PROGRESSIVE,
    DeliveryAssembler,
    DeliveryResult,
)
from .dispatcher import AudioSegment, CollectedAudio, SynthesisDispatcher, synthesize_single_pass
from .events import (
    BackgroundTaskFailedEvent,
    Event,
    EventBus,
    OutboundEvent,
    RegenerationExhaustedEvent,
    SynthesisFallbackEvent,
    ValidationFailSafeEvent,
)
from .extractor import SentenceExtractor
from .router import (
    CoordinatorSelectionPolicy,
    RoutingDecision,
    RuleBasedSelectionPolicy,
    SelectionPolicy,
    SessionRouter,
)
from .session import InMemorySessionStore, SessionManager, SessionState, SessionStore
from .validation import AzureValidationProvider, Draft, ValidationGate, ValidationProvider, ValidationVerdict

logger = get_logger(__name__)

REGISTRY_CACHE_KEY = "registry"

OBSERVED_EVENTS = (
    ValidationFailSafeEvent,
    RegenerationExhaustedEvent,
    SynthesisFallbackEvent,
    BackgroundTaskFailedEvent,
)


class PipelineState(Enum):
    """Lifecycle of the pipeline."""
    STOPPED = auto()
    RUNNING = auto()


@dataclass
class TurnRequest:
    """One learner utterance for one session."""
    session_id: str
    text: str
    context: Dict[str, Any] = field(default_factory=dict)


class TutorPipeline:
    """
    Tutoring response pipeline.

    Usage:
        pipeline = await TutorPipeline.create()
        await pipeline.start()
        result = await pipeline.process_turn(TurnRequest("s1", "What is 1/2 + 1/4?"))
        await pipeline.stop()
    """

    def __init__(
        self,
        registry: ResponderRegistry,
        generation: GenerationProvider,
        synthesis: Optional[SynthesisProvider],
        validator: ValidationProvider,
        policy: Optional[SelectionPolicy] = None,
        store: Optional[SessionStore] = None,
        event_bus: Optional[EventBus] = None,
        registry_path: Optional[str] = None,
        validation_timeout: Optional[float] = None,
    ):
        self._event_bus = event_bus or EventBus()
        self._initial_registry = registry
        self._registry_path = registry_path
        self._registry_cache = CacheService(
            "responders",
            ttl_seconds=settings.cache.ttl_seconds,
            max_size=settings.cache.max_size,
            event_bus=self._event_bus,
        )
        self._registry_cache.set(REGISTRY_CACHE_KEY, registry)

        self._generation = generation
        self._synthesis = synthesis
        self._store = store or InMemorySessionStore()

        routing = settings.routing
        self._router = SessionRouter(
            registry,
            policy or RuleBasedSelectionPolicy(routing.coordinator_id),
            coordinator_id=routing.coordinator_id,
            default_responder=routing.default_responder,
            assessment_responder=routing.assessment_responder,
        )
        self._sessions = SessionManager(
            self._store,
            coordinator_id=routing.coordinator_id,
            history_size=settings.session.history_size,
            idle_timeout=settings.session.idle_timeout,
        )
        self._gate = ValidationGate(validator, timeout=validation_timeout, event_bus=self._event_bus)
        self._background = BackgroundTasks("pipeline", self._event_bus)
        self._assembler = DeliveryAssembler(self._router, self._store, self._background)

        self._state = PipelineState.STOPPED
        self._event_bus_task: Optional[asyncio.Task] = None
        self.turns_processed = 0
        self.turns_failed = 0
        self.observed: Counter = Counter()

    @classmethod
    async def create(
        cls,
        store: Optional[SessionStore] = None,
        registry_path: Optional[str] = None,
    ) -> "TutorPipeline":
        """Build a pipeline wired to Azure OpenAI and Azure Speech from settings."""
        path = registry_path or str(settings.routing.path)
        registry = await asyncio.to_thread(ResponderRegistry.load, path)

        client = AzureChatClient()
        if settings.routing.policy == "rules":
            policy: SelectionPolicy = RuleBasedSelectionPolicy(settings.routing.coordinator_id)
        else:
            policy = CoordinatorSelectionPolicy(client, settings.routing.coordinator_id)

        synthesis: Optional[SynthesisProvider] = None
        if settings.speech.is_configured:
            synthesis = AzureSpeechSynthesizer()
        else:
            logger.warning("Azure Speech not configured, turns will be delivered as text only")

        return cls(
            registry=registry,
            generation=AzureGenerationProvider(client),
            synthesis=synthesis,
            validator=AzureValidationProvider(client),
            policy=policy,
            store=store,
            registry_path=path,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start the event bus."""
        if self._state == PipelineState.RUNNING:
            return
        for event_type in OBSERVED_EVENTS:
            self._event_bus.subscribe(event_type, self._on_observed)
        self._event_bus_task = asyncio.create_task(self._event_bus.run())
        self._state = PipelineState.RUNNING
        logger.info(f"Tutor pipeline started with {len(self._router.registry)} responders")

    async def stop(self) -> None:
        """Finish background records and stop the event bus."""
        if self._state != PipelineState.RUNNING:
            return
        self._state = PipelineState.STOPPED

        await self._background.drain()
        await self._event_bus.drain(timeout=1.0)
        self._event_bus.stop()
        if self._event_bus_task:
            try:
                await asyncio.wait_for(self._event_bus_task, timeout=1.0)
            except asyncio.TimeoutError:
                self._event_bus_task.cancel()
        logger.info("Tutor pipeline stopped")

    async def _on_observed(self, event: Event) -> None:
        name = type(event).__name__
        self.observed[name] += 1
        logger.debug(f"Observed {name} from {event.source}")

    # ========================================================================
    # Registry
    # ========================================================================

    async def _load_registry(self) -> ResponderRegistry:
        if not self._registry_path:
            return self._initial_registry
        try:
            registry = await asyncio.to_thread(ResponderRegistry.load, self._registry_path)
            self._router.check_registry(registry)
        except RegistryError as e:
            logger.error(f"Responder registry reload rejected, keeping current registry: {e}")
            return self._router.registry
        logger.info(f"Responder registry reloaded ({len(registry)} responders)")
        return registry

    async def _current_registry(self) -> ResponderRegistry:
        registry = await self._registry_cache.get_or_load(REGISTRY_CACHE_KEY, self._load_registry)
        self._router.registry = registry
        return registry

    async def invalidate_cache(self) -> None:
        """Drop the cached registry here and on every pipeline sharing the bus."""
        await self._registry_cache.invalidate()

    # ========================================================================
    # Turns
    # ========================================================================

    async def process_turn(self, request: TurnRequest) -> DeliveryResult:
        """
        Run one turn and return its single delivery result.

        Cancelling the caller abandons the turn: outstanding synthesis is
        cancelled and session state is left as it was.
        """
        turn_id = uuid.uuid4().hex[:12]
        log = TurnLogger(logger, request.session_id, turn_id)

        async with self._sessions.turn(request.session_id) as state:
            registry = await self._current_registry()
            decision = await self._router.route(
                request.text,
                state,
                learner=request.context,
                history=state.recent_messages(settings.session.prompt_window),
            )
            log.info(f"Routed to {decision.target_responder} ({decision.reason})")

            dispatchers: List[SynthesisDispatcher] = []
            try:
                if decision.direct_response is not None:
                    result = await self._deliver_direct(state, turn_id, request, decision, log)
                else:
                    responder = registry.get(decision.target_responder)
                    result = await self._deliver_generated(
                        state, turn_id, request, decision, responder, dispatchers, log
                    )
            except GenerationError as e:
                for dispatcher in dispatchers:
                    dispatcher.cancel()
                self.turns_failed += 1
                log.error(f"Generation failed: {e}")
                return self._assembler.assemble_error(state, turn_id, decision, str(e))
            except asyncio.CancelledError:
                for dispatcher in dispatchers:
                    dispatcher.cancel()
                log.info("Turn abandoned")
                raise

            self.turns_processed += 1
            return result

    async def stream_turn(self, request: TurnRequest) -> AsyncIterator[OutboundEvent]:
        """Run one turn and yield its outbound events in delivery order."""
        result = await self.process_turn(request)
        for event in result.events:
            yield event

    async def _deliver_direct(
        self,
        state: SessionState,
        turn_id: str,
        request: TurnRequest,
        decision: RoutingDecision,
        log: TurnLogger,
    ) -> DeliveryResult:
        text = decision.direct_response or ""
        result = GenerationResult(display_text=text, audio_text=text, responder_id=decision.target_responder)
        coordinator = self._router.registry.resolve(decision.target_responder)
        collected, mode = await self._single_pass(result, coordinator, log)
        return self._assembler.assemble(
            state, turn_id, request.text, decision, result,
            ValidationVerdict.skipped(), collected, mode,
        )

    async def _deliver_generated(
        self,
        state: SessionState,
        turn_id: str,
        request: TurnRequest,
        decision: RoutingDecision,
        responder: Responder,
        dispatchers: List[SynthesisDispatcher],
        log: TurnLogger,
    ) -> DeliveryResult:
        history = state.recent_messages(settings.session.prompt_window)

        async def produce(attempt: int, corrections: List[str]) -> Draft:
            stream = self._generation.stream(responder, GenerationRequest(
                user_text=request.text,
                history=history,
                context=request.context,
                corrections=corrections,
                attempt=attempt,
            ))
            dispatcher = None
            if self._synthesis is not None:
                dispatcher = SynthesisDispatcher(self._synthesis, voice=responder.voice or None)
                dispatchers.append(dispatcher)

            extractor = SentenceExtractor()
            try:
                async for unit in extractor.extract(stream):
                    if dispatcher is not None:
                        await dispatcher.dispatch(unit)
            except GenerationError:
                if dispatcher is not None:
                    dispatcher.cancel()
                raise
            except Exception as e:
                if dispatcher is not None:
                    dispatcher.cancel()
                raise GenerationError(f"{responder.id} stream failed: {e}") from e
            if dispatcher is not None:
                await dispatcher.flush()

            log.debug(f"Attempt {attempt}: {extractor.unit_count} units streamed")
            return Draft(attempt=attempt, result=stream.result, payload=dispatcher)

        gate = await self._gate.run(
            produce,
            user_text=request.text,
            context=request.context,
            skip=responder.skip_validation,
            session_id=state.session_id,
            turn_id=turn_id,
        )
        chosen = gate.draft
        for draft in gate.drafts:
            if draft is not chosen and draft.payload is not None:
                draft.payload.cancel()

        collected, mode = await self._collect_audio(state, turn_id, chosen, responder, log)

        if gate.disclaimer:
            await self._event_bus.publish(RegenerationExhaustedEvent(
                session_id=state.session_id,
                turn_id=turn_id,
                responder_id=responder.id,
                confidence_score=gate.verdict.confidence_score,
                issues=list(gate.verdict.issues),
            ))

        return self._assembler.assemble(
            state, turn_id, request.text, decision, chosen.result,
            gate.verdict, collected, mode,
            attempts=gate.attempts,
            disclaimer=gate.disclaimer,
        )

    async def _collect_audio(
        self,
        state: SessionState,
        turn_id: str,
        draft: Draft,
        responder: Responder,
        log: TurnLogger,
    ) -> Tuple[CollectedAudio, str]:
        dispatcher: Optional[SynthesisDispatcher] = draft.payload
        if dispatcher is None:
            return CollectedAudio(), SYNTHESIS_NONE

        collected = await dispatcher.collect()
        if not collected.fallback_required and dispatcher.jobs:
            if collected.failed_indices:
                log.warning(f"Audio missing for sentence(s) {collected.failed_indices}")
            return collected, SYNTHESIS_PROGRESSIVE

        if collected.fallback_required:
            log.warning(f"{dispatcher.failed_count} synthesis jobs failed, switching to single pass")
            await self._event_bus.publish(SynthesisFallbackEvent(
                session_id=state.session_id,
                turn_id=turn_id,
                failed_jobs=dispatcher.failed_count,
            ))
        return await self._single_pass(draft.result, responder, log)

    async def _single_pass(
        self,
        result: GenerationResult,
        responder: Optional[Responder],
        log: TurnLogger,
    ) -> Tuple[CollectedAudio, str]:
        if self._synthesis is None or not result.audio_text.strip():
            return CollectedAudio(), SYNTHESIS_NONE

        voice = responder.voice if responder is not None and responder.voice else None
        try:
            audio = await synthesize_single_pass(self._synthesis, result.audio_text, voice)
        except Exception as e:
            log.error(f"Single-pass synthesis failed, delivering text only: {e}")
            return CollectedAudio(), SYNTHESIS_NONE

        segment = AudioSegment(0, result.audio_text.strip(), audio)
        return CollectedAudio(segments=[segment]), SYNTHESIS_FALLBACK

    # ========================================================================
    # Sessions
    # ========================================================================

    async def end_session(self, session_id: str) -> bool:
        """Destroy a session's live state, after any turn in flight."""
        ended = await self._sessions.end_session(session_id)
        if ended:
            logger.info(f"Session {session_id} ended")
        return ended

    def session(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def router(self) -> SessionRouter:
        return self._router

    @property
    def gate(self) -> ValidationGate:
        return self._gate

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    @property
    def registry_cache(self) -> CacheService:
        return self._registry_cache

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.name.lower(),
            "active_sessions": self._sessions.active_sessions,
            "turns_processed": self.turns_processed,
            "turns_failed": self.turns_failed,
            "policy_calls": self._router.policy_calls,
            "responders": len(self._router.registry),
            "background_pending": self._background.pending,
            "registry_cache_hits": self._registry_cache.hits,
            "observed": dict(self.observed),
        }
