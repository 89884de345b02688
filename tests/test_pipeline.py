"""
Tests for the tutor pipeline: whole turns from routing to delivery.
"""

import asyncio

import pytest

from tests.fakes import Answer, FakeSynthesizer, ScriptedGeneration, ScriptedValidator, verdict_json
from tutor.core.registry import RegistryError, ResponderRegistry
from tutor.core.speech import SynthesisError
from tutor.messages import handoff_message, msg
from tutor.pipeline.delivery import SYNTHESIS_FALLBACK, SYNTHESIS_NONE, SYNTHESIS_PROGRESSIVE
from tutor.pipeline.events import AudioEvent, CompleteEvent, ErrorEvent, TextEvent
from tutor.pipeline.orchestrator import TurnRequest, TutorPipeline
from tutor.pipeline.router import (
    REASON_CONTINUING,
    REASON_DIRECT,
    REASON_LESSON_COMPLETE,
    REASON_SELECTED,
    RoutingDecision,
    RuleBasedSelectionPolicy,
    SelectionPolicy,
)
from tutor.pipeline.session import RouterPhase
from tutor.pipeline.signals import Complete, HandoffTo

MATH_ANSWER = "To add 1/2 and 1/4, use quarters. Two quarters plus one quarter is three quarters."


def kinds(result):
    return [e.kind for e in result.events]


def complete_event(result) -> CompleteEvent:
    return result.events[-1]


class CountingRules(RuleBasedSelectionPolicy):
    """Rule-based policy that counts its own invocations."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def decide(self, turn, context):
        self.calls += 1
        return await super().decide(turn, context)


class DirectPolicy(SelectionPolicy):
    """The coordinator answers every learner itself."""

    async def decide(self, turn, context):
        return RoutingDecision("coordinator", REASON_DIRECT, direct_response="Hi! What shall we learn today?",
                               policy_invoked=True)


class ShortTextFailingSynthesizer(FakeSynthesizer):
    """Fails for sentence-sized requests and succeeds for the whole answer."""

    async def synthesize(self, text, voice=None):
        if len(text) < 60:
            self.calls.append((text, voice))
            raise SynthesisError("voice busy")
        return await super().synthesize(text, voice)


@pytest.fixture
def build(registry, generation, synthesizer):
    def factory(validator=None, synthesis=synthesizer, policy=None, **kwargs):
        return TutorPipeline(
            registry=registry,
            generation=generation,
            synthesis=synthesis,
            validator=validator or ScriptedValidator(),
            policy=policy or RuleBasedSelectionPolicy(),
            **kwargs,
        )
    return factory


class TestTutoringSession:
    """A whole tutoring session across routing transitions."""

    @pytest.mark.asyncio
    async def test_session_walkthrough(self, build, generation):
        """Selection runs once; later turns follow fast path, completion and handoffs."""
        policy = CountingRules()
        pipeline = build(policy=policy)
        generation.queue(
            "math_specialist",
            MATH_ANSWER,
            "No problem. Let's look at it again slowly with pictures.",
            Answer("Great job, you have mastered adding fractions today!", signal=Complete()),
        )
        generation.queue(
            "assessor",
            Answer("Good effort. Let's practise fractions a little more together.", signal=HandoffTo("math")),
        )
        generation.queue(
            "math_specialist",
            Answer("Plants are a great question for our science tutor.", signal=HandoffTo("science_specialist")),
        )
        generation.queue("science_specialist", "Plants make food from sunlight. It is called photosynthesis.")

        # turn 1: no active responder, selection picks the lesson subject
        first = await pipeline.process_turn(TurnRequest("s1", "Hello", {"subject": "math"}))
        state = pipeline.session("s1")

        assert first.ok
        assert first.responder_id == "math_specialist"
        assert first.routing.reason == REASON_SELECTED
        assert first.routing.policy_invoked is True
        assert first.events[0].text == handoff_message("Professor Numbers")
        assert state.active_responder == "math_specialist"
        assert policy.calls == 1

        # turn 2: fast path
        second = await pipeline.process_turn(TurnRequest("s1", "I don't know"))

        assert second.responder_id == "math_specialist"
        assert second.routing.reason == REASON_CONTINUING
        assert second.routing.policy_invoked is False
        assert handoff_message("Professor Numbers") not in [e.text for e in second.events if e.kind == "text"]
        assert policy.calls == 1
        assert [m.content for m in generation.calls_for("math_specialist")[1].history][:2] == ["Hello", MATH_ANSWER]

        # turn 3: lesson complete forces the assessor next
        third = await pipeline.process_turn(TurnRequest("s1", "Is it 3/4?"))

        assert complete_event(third).lesson_complete is True
        assert complete_event(third).handoff_target == "assessor"
        assert complete_event(third).handoff_message == msg("routing.assessment_handoff")
        assert state.phase == RouterPhase.AWAITING_ASSESSMENT

        # turn 4: assessor answers, hands back to math
        fourth = await pipeline.process_turn(TurnRequest("s1", "Ready for questions"))

        assert fourth.responder_id == "assessor"
        assert fourth.routing.reason == REASON_LESSON_COMPLETE
        assert fourth.events[0].text == msg("routing.assessment_handoff")
        assert state.active_responder == "math_specialist"
        assert state.phase == RouterPhase.RESPONDER_ACTIVE

        # turn 5: math hands off to science without a selection call
        fifth = await pipeline.process_turn(TurnRequest("s1", "How do plants eat?"))

        assert fifth.responder_id == "math_specialist"
        assert complete_event(fifth).handoff_target == "science_specialist"
        assert state.active_responder == "science_specialist"

        # turn 6: science continues on the fast path
        sixth = await pipeline.process_turn(TurnRequest("s1", "Tell me more"))

        assert sixth.responder_id == "science_specialist"
        assert sixth.routing.reason == REASON_CONTINUING
        assert sixth.events[0].text == complete_event(fifth).handoff_message == handoff_message("Dr. Discovery")
        assert state.pending_handoff_message is None
        assert policy.calls == 1
        assert pipeline.router.policy_calls == 1
        assert state.turn_count == 6

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, build, generation):
        pipeline = build()

        await pipeline.process_turn(TurnRequest("a", "Help with fractions please"))
        await pipeline.process_turn(TurnRequest("b", "Why do plants need light?"))

        assert pipeline.session("a").active_responder == "math_specialist"
        assert pipeline.session("b").active_responder == "science_specialist"
        assert pipeline.router.policy_calls == 2


class TestDelivery:
    """Tests for the events of a delivered turn."""

    @pytest.mark.asyncio
    async def test_event_order(self, build, generation, synthesizer):
        """Text first, then audio in sequence order, then one completion."""
        pipeline = build()
        generation.queue("math_specialist", MATH_ANSWER)

        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))
        events = kinds(result)

        assert events == ["text"] * events.count("text") + ["audio"] * events.count("audio") + ["complete"]
        assert events.count("complete") == 1
        audio = [e for e in result.events if isinstance(e, AudioEvent)]
        assert [e.index for e in audio] == [0, 1]
        assert result.synthesis_mode == SYNTHESIS_PROGRESSIVE
        assert {voice for _, voice in synthesizer.calls} == {"en-US-GuyNeural"}
        assert result.audio == b"".join(e.audio for e in audio)

    @pytest.mark.asyncio
    async def test_stream_turn_yields_result_events(self, build, generation):
        pipeline = build()

        events = [e async for e in pipeline.stream_turn(TurnRequest("s1", "Fractions?"))]

        assert isinstance(events[0], TextEvent)
        assert isinstance(events[-1], CompleteEvent)

    @pytest.mark.asyncio
    async def test_turn_record_is_written(self, build, generation):
        pipeline = build()

        await pipeline.process_turn(TurnRequest("s1", "Fractions?"))
        await pipeline.background.drain()

        records = pipeline.store.turns["s1"]
        assert len(records) == 1
        assert records[0].active_responder == "math_specialist"
        assert records[0].signal == "continue"

    @pytest.mark.asyncio
    async def test_without_speech_delivers_text_only(self, build, generation):
        pipeline = build(synthesis=None)

        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))

        assert "audio" not in kinds(result)
        assert result.synthesis_mode == SYNTHESIS_NONE
        assert complete_event(result).synthesis_mode == SYNTHESIS_NONE

    @pytest.mark.asyncio
    async def test_direct_coordinator_answer(self, build, generation, synthesizer):
        """A direct answer skips generation and validation."""
        validator = ScriptedValidator()
        pipeline = build(validator=validator, policy=DirectPolicy())

        result = await pipeline.process_turn(TurnRequest("s1", "Hi"))

        assert result.display_text == "Hi! What shall we learn today?"
        assert kinds(result) == ["text", "text", "audio", "complete"]
        assert complete_event(result).validation_outcome == "skipped"
        assert generation.requests == []
        assert validator.requests == []
        assert pipeline.session("s1").phase == RouterPhase.NO_ACTIVE_RESPONDER


class TestValidationInPipeline:
    """Tests for the validation gate inside a turn."""

    @pytest.mark.asyncio
    async def test_skip_validation_responders(self, build, generation):
        """Coordinator and support responders are never validated."""
        validator = ScriptedValidator()
        pipeline = build(validator=validator)

        await pipeline.process_turn(TurnRequest("s1", "Hello!"))

        assert validator.requests == []

    @pytest.mark.asyncio
    async def test_regeneration_uses_corrections(self, build, generation):
        validator = ScriptedValidator(
            verdict_json(0.4, issues=["too vague"], fixes=["name the common denominator"]),
            verdict_json(0.9),
        )
        pipeline = build(validator=validator)
        generation.queue("math_specialist", "Just add them up somehow.", MATH_ANSWER)

        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))

        assert result.display_text == MATH_ANSWER
        assert result.attempts == 2
        assert result.disclaimer is None
        assert generation.calls_for("math_specialist")[1].corrections == ["name the common denominator"]
        assert generation.calls_for("math_specialist")[1].attempt == 2

    @pytest.mark.asyncio
    async def test_exhausted_regeneration_adds_disclaimer(self, build, generation):
        """Two rejections deliver the best draft with a disclaimer and a failure record."""
        validator = ScriptedValidator(
            verdict_json(0.5, issues=["too vague"]),
            verdict_json(0.6, issues=["still vague"]),
        )
        pipeline = build(validator=validator)
        generation.queue("math_specialist", "Just add them up somehow.", MATH_ANSWER)

        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))
        await pipeline.background.drain()

        texts = [e.text for e in result.events if isinstance(e, TextEvent)]
        assert texts[-1] == msg("delivery.disclaimer")
        assert result.display_text == MATH_ANSWER
        assert complete_event(result).disclaimer == msg("delivery.disclaimer")
        assert complete_event(result).attempts == 2
        for event in result.events:
            if isinstance(event, AudioEvent):
                assert event.text in MATH_ANSWER

        failures = pipeline.store.validation_failures
        assert len(failures) == 1
        assert failures[0].confidence_score == 0.6
        assert failures[0].attempts == 2
        assert failures[0].final_action == "delivered_with_disclaimer"

    @pytest.mark.asyncio
    async def test_validator_timeout_is_failsafe(self, build, generation):
        pipeline = build(validator=ScriptedValidator(5.0), validation_timeout=0.05)

        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))

        assert result.ok
        assert result.failsafe
        assert complete_event(result).failsafe is True
        assert complete_event(result).validation_outcome == "failsafe_timeout"


class TestFailures:
    """Tests for failed and abandoned turns."""

    @pytest.mark.asyncio
    async def test_generation_failure_is_one_error_event(self, build, generation):
        """A failed generation emits a single error and leaves the session as it was."""
        pipeline = build()
        generation.queue("math_specialist", Answer(error="model unavailable"))

        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))
        state = pipeline.session("s1")

        assert not result.ok
        assert len(result.events) == 1
        assert isinstance(result.events[0], ErrorEvent)
        assert result.events[0].message == msg("delivery.generation_failed")
        assert state.active_responder is None
        assert state.phase == RouterPhase.NO_ACTIVE_RESPONDER
        assert len(state.history) == 0
        assert pipeline.turns_failed == 1

    @pytest.mark.asyncio
    async def test_mid_stream_failure_emits_no_audio(self, build, generation):
        pipeline = build()
        generation.queue("math_specialist", Answer(MATH_ANSWER, error="connection reset", fail_after=45))

        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))

        assert kinds(result) == ["error"]

    @pytest.mark.asyncio
    async def test_failure_keeps_active_responder(self, build, generation):
        """The fast path survives a failed turn."""
        pipeline = build()
        await pipeline.process_turn(TurnRequest("s1", "Fractions?"))
        generation.queue("math_specialist", Answer(error="model unavailable"))

        await pipeline.process_turn(TurnRequest("s1", "And then?"))

        assert pipeline.session("s1").active_responder == "math_specialist"
        assert pipeline.session("s1").turn_count == 1

    @pytest.mark.asyncio
    async def test_synthesis_failures_fall_back_to_single_pass(self, build, generation):
        synthesizer = ShortTextFailingSynthesizer()
        pipeline = build(synthesis=synthesizer)
        generation.queue(
            "math_specialist",
            "One half is a part. One quarter is smaller. Add them with care. The sum is three quarters.",
        )

        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))

        audio = [e for e in result.events if isinstance(e, AudioEvent)]
        assert result.synthesis_mode == SYNTHESIS_FALLBACK
        assert len(audio) == 1
        assert audio[0].audio.startswith(b"<One half is a part.")

    @pytest.mark.asyncio
    async def test_abandoned_turn_leaves_state_untouched(self, registry, synthesizer):
        generation = ScriptedGeneration(delay=0.05)
        pipeline = TutorPipeline(registry, generation, synthesizer, ScriptedValidator(),
                                 policy=RuleBasedSelectionPolicy())

        task = asyncio.create_task(pipeline.process_turn(TurnRequest("s1", "Fractions?")))
        await asyncio.sleep(0.08)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        state = pipeline.session("s1")
        assert state.active_responder is None
        assert len(state.history) == 0

        generation.delay = 0
        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))
        assert result.ok


class TestConcurrency:
    """Tests for turn serialization."""

    @pytest.mark.asyncio
    async def test_same_session_turns_are_sequential(self, registry, synthesizer):
        """The second turn sees the first turn's outcome."""
        generation = ScriptedGeneration(delay=0.005)
        pipeline = TutorPipeline(registry, generation, synthesizer, ScriptedValidator(),
                                 policy=RuleBasedSelectionPolicy())

        first, second = await asyncio.gather(
            pipeline.process_turn(TurnRequest("s1", "Help with fractions")),
            pipeline.process_turn(TurnRequest("s1", "What comes next?")),
        )

        assert first.routing.reason == REASON_SELECTED
        assert second.routing.reason == REASON_CONTINUING
        assert pipeline.router.policy_calls == 1
        assert len(generation.calls_for("math_specialist")[1].history) == 2


class TestRegistryCache:
    """Tests for responder registry reloads."""

    @pytest.mark.asyncio
    async def test_invalidate_reloads_registry(self, registry, generation, synthesizer, registry_file):
        """The edited registry file is picked up after invalidation."""
        path = registry_file([
            {"id": "coordinator", "name": "the coordinator", "role": "coordinator", "skip_validation": True},
            {"id": "assessor", "name": "Quiz Master", "role": "support", "capability": "assessment"},
            {"id": "chemistry_specialist", "name": "Doctor Beaker", "capability": "chemistry",
             "keywords": ["atom", "molecule"]},
        ])
        pipeline = TutorPipeline(registry, generation, synthesizer, ScriptedValidator(),
                                 policy=RuleBasedSelectionPolicy(), registry_path=str(path))

        before = await pipeline.process_turn(TurnRequest("a", "What is an atom?"))
        await pipeline.invalidate_cache()
        after = await pipeline.process_turn(TurnRequest("b", "What is an atom?"))

        assert before.responder_id == "science_specialist"
        assert after.responder_id == "chemistry_specialist"
        assert "chemistry_specialist" in pipeline.router.registry

    @pytest.mark.asyncio
    async def test_reload_missing_assessor_keeps_current_registry(self, registry, generation, synthesizer,
                                                                 registry_file):
        """A reloaded registry without a responder routing can force is rejected."""
        path = registry_file([
            {"id": "coordinator", "name": "the coordinator", "role": "coordinator", "skip_validation": True},
            {"id": "chemistry_specialist", "name": "Doctor Beaker", "capability": "chemistry",
             "keywords": ["atom", "molecule"]},
        ])
        pipeline = TutorPipeline(registry, generation, synthesizer, ScriptedValidator(),
                                 policy=RuleBasedSelectionPolicy(), registry_path=str(path))
        generation.queue("math_specialist", Answer("You finished the lesson. Well done today.", signal=Complete()))

        await pipeline.process_turn(TurnRequest("s1", "Fractions?"))
        await pipeline.invalidate_cache()
        forced = await pipeline.process_turn(TurnRequest("s1", "Am I done?"))

        assert forced.ok
        assert forced.responder_id == "assessor"
        assert "assessor" in pipeline.router.registry
        assert "chemistry_specialist" not in pipeline.router.registry

    def test_registry_without_forced_responders_is_rejected(self, generation, synthesizer, registry_file):
        path = registry_file([
            {"id": "coordinator", "name": "the coordinator", "role": "coordinator"},
            {"id": "math_specialist", "name": "Professor Numbers", "capability": "math"},
        ])

        with pytest.raises(RegistryError, match="assessor"):
            TutorPipeline(ResponderRegistry.load(path), generation, synthesizer, ScriptedValidator())


class TestLifecycle:
    """Tests for starting and stopping the pipeline."""

    @pytest.mark.asyncio
    async def test_start_stop(self, build):
        pipeline = build()

        await pipeline.start()
        assert pipeline.is_running
        await pipeline.process_turn(TurnRequest("s1", "Fractions?"))
        await pipeline.stop()

        assert not pipeline.is_running
        assert pipeline.stats["turns_processed"] == 1
        assert pipeline.background.pending == 0

    @pytest.mark.asyncio
    async def test_observability_events_are_counted(self, build, generation):
        """Fail-safes and synthesis fallbacks reach the pipeline's own handler."""
        pipeline = build(validator=ScriptedValidator("I think it's fine!"), synthesis=ShortTextFailingSynthesizer())
        generation.queue(
            "math_specialist",
            "One half is a part. One quarter is smaller. Add them with care. The sum is three quarters.",
        )

        await pipeline.start()
        result = await pipeline.process_turn(TurnRequest("s1", "Fractions?"))
        await pipeline.stop()

        assert result.failsafe
        assert result.synthesis_mode == SYNTHESIS_FALLBACK
        assert pipeline.stats["observed"] == {"ValidationFailSafeEvent": 1, "SynthesisFallbackEvent": 1}

    @pytest.mark.asyncio
    async def test_end_session(self, build):
        pipeline = build()
        await pipeline.process_turn(TurnRequest("s1", "Fractions?"))

        assert await pipeline.end_session("s1") is True
        assert await pipeline.end_session("missing") is False
        assert pipeline.session("s1") is None

    @pytest.mark.asyncio
    async def test_end_session_waits_for_turn_in_flight(self, registry, synthesizer):
        """Ending a session mid-turn lets that turn finish before the next one starts."""
        pipeline = TutorPipeline(registry, ScriptedGeneration(delay=0.02), synthesizer, ScriptedValidator(),
                                 policy=RuleBasedSelectionPolicy())

        first = asyncio.create_task(pipeline.process_turn(TurnRequest("s1", "Fractions?")))
        await asyncio.sleep(0.01)
        ending = asyncio.create_task(pipeline.end_session("s1"))
        second = asyncio.create_task(pipeline.process_turn(TurnRequest("s1", "Fractions again?")))
        await asyncio.gather(first, ending, second)

        assert first.result().ok
        assert ending.result() is True
        state = pipeline.session("s1")
        assert state.turn_count == 1
        assert [t.user_text for t in state.history] == ["Fractions again?"]
