"""
Synthesis Dispatcher Module

Runs one synthesis job per sentence unit with bounded concurrency and
reassembles the audio strictly in sequence order, whatever order the jobs
finish in.

Job lifecycle (one-directional):
    PENDING -> RUNNING -> SUCCEEDED | FAILED
    PENDING -> CANCELLED

The most recent unit's job is held unstarted until the next unit arrives or
``flush`` is called, so a short trailing leftover is folded into its text and
voiced by the same provider call.

Each job is retried once. When the number of failed jobs reaches the failure
threshold, progressive mode is aborted: later dispatches are cancelled and
``collect`` asks the caller to fall back to one pass over the final text.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, List, Optional, Tuple

from tutor.config import settings
from tutor.core.speech import SynthesisProvider
from tutor.logger import get_logger
from .extractor import SentenceUnit, split_long

logger = get_logger(__name__)


class JobState(Enum):
    """State of one synthesis job."""
    PENDING = auto()
    RUNNING = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    CANCELLED = auto()


_TRANSITIONS = {
    JobState.PENDING: (JobState.RUNNING, JobState.CANCELLED),
    JobState.RUNNING: (JobState.SUCCEEDED, JobState.FAILED),
}


@dataclass
class SynthesisJob:
    """
    Synthesis of one unit's text.

    ``part`` is 0 for a unit's own job; a short leftover arriving after the
    job was flushed is voiced as part 1 of the same sequence index.
    """
    sequence_index: int
    source_text: str
    part: int = 0
    state: JobState = JobState.PENDING
    audio_bytes: bytes = b""
    attempts: int = 0
    error: str = ""
    duration_ms: float = 0.0

    def transition(self, new_state: JobState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"Invalid job transition {self.state.name} -> {new_state.name}")
        self.state = new_state

    @property
    def order_key(self) -> Tuple[int, int]:
        return (self.sequence_index, self.part)

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


@dataclass
class AudioSegment:
    """Audio for one sequence index, in delivery order."""
    index: int
    text: str
    audio: bytes


@dataclass
class CollectedAudio:
    """Reassembled result of a dispatcher."""
    segments: List[AudioSegment] = field(default_factory=list)
    failed_indices: List[int] = field(default_factory=list)
    fallback_required: bool = False

    @property
    def audio(self) -> bytes:
        return b"".join(s.audio for s in self.segments)


class SynthesisDispatcher:
    """
    Concurrency-bounded synthesis for one answer.

    Usage:
        dispatcher = SynthesisDispatcher(provider, voice="en-US-GuyNeural")
        async for unit in extractor.extract(stream):
            await dispatcher.dispatch(unit)
        await dispatcher.flush()
        collected = await dispatcher.collect()
    """

    def __init__(
        self,
        provider: SynthesisProvider,
        voice: Optional[str] = None,
        max_concurrency: Optional[int] = None,
        failure_threshold: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self._provider = provider
        self._voice = voice
        self._max_concurrency = max_concurrency or settings.synthesis.max_concurrency
        self._failure_threshold = failure_threshold or settings.synthesis.failure_threshold
        self._retry_delay = settings.synthesis.retry_delay if retry_delay is None else retry_delay

        self._slots = asyncio.Semaphore(self._max_concurrency)
        self._jobs: Dict[Tuple[int, int], SynthesisJob] = {}
        self._tasks: List[asyncio.Task] = []
        self._last_index: Optional[int] = None
        self._held: Optional[SynthesisJob] = None

        self._running = 0
        self.peak_running = 0
        self._failed = 0
        self._aborted = False
        self._cancelled = False

    # ========================================================================
    # Dispatch
    # ========================================================================

    async def dispatch(self, unit: SentenceUnit) -> SynthesisJob:
        """
        Register a job for ``unit`` and start the previously held job.

        The new job is held until the next dispatch or ``flush``. Suspends
        while the concurrency bound is saturated.
        """
        if unit.merge_into_previous and self._last_index is not None:
            return await self._merge(unit)

        job = SynthesisJob(sequence_index=unit.sequence_index, source_text=unit.text)
        self._jobs[job.order_key] = job
        self._last_index = unit.sequence_index
        if self._aborted or self._cancelled:
            self._drop(job)
            return job

        previous, self._held = self._held, job
        if previous is not None:
            await self._start(previous)
        return job

    async def flush(self) -> None:
        """Start the held job. Called once the unit stream has ended."""
        held, self._held = self._held, None
        if held is not None:
            await self._start(held)

    async def _merge(self, unit: SentenceUnit) -> SynthesisJob:
        if self._held is not None:
            self._held.source_text += unit.text
            return self._held

        previous = self._jobs[(self._last_index, 0)]
        job = SynthesisJob(sequence_index=previous.sequence_index, source_text=unit.text, part=1)
        self._jobs[job.order_key] = job
        await self._start(job)
        return job

    @staticmethod
    def _drop(job: SynthesisJob) -> None:
        if job.state == JobState.PENDING:
            job.transition(JobState.CANCELLED)

    async def _start(self, job: SynthesisJob) -> None:
        if self._aborted or self._cancelled:
            self._drop(job)
            return

        try:
            await self._slots.acquire()
        except asyncio.CancelledError:
            self._drop(job)
            raise

        if self._aborted or self._cancelled or job.state != JobState.PENDING:
            self._slots.release()
            self._drop(job)
            return

        job.transition(JobState.RUNNING)
        self._running += 1
        self.peak_running = max(self.peak_running, self._running)
        self._tasks.append(asyncio.create_task(self._run(job)))

    async def _run(self, job: SynthesisJob) -> None:
        start = time.time()
        try:
            text = job.source_text.strip()
            if not text:
                job.transition(JobState.SUCCEEDED)
                return

            for attempt in (1, 2):
                job.attempts = attempt
                try:
                    job.audio_bytes = await self._provider.synthesize(text, self._voice)
                    job.transition(JobState.SUCCEEDED)
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    job.error = str(e)
                    if attempt == 1:
                        logger.warning(f"Synthesis error on unit {job.sequence_index}, retrying: {e}")
                        await asyncio.sleep(self._retry_delay)

            job.transition(JobState.FAILED)
            self._failed += 1
            logger.error(f"Synthesis failed after retry on unit {job.sequence_index}: {job.error}")
            if self._failed >= self._failure_threshold and not self._aborted:
                self._aborted = True
                logger.warning(
                    f"{self._failed} synthesis jobs failed, aborting progressive synthesis"
                )
        finally:
            job.duration_ms = (time.time() - start) * 1000
            self._running -= 1
            self._slots.release()

    # ========================================================================
    # Collection and cancellation
    # ========================================================================

    async def collect(self) -> CollectedAudio:
        """Flush, wait for every started job and return audio in sequence order."""
        await self.flush()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        segments: Dict[int, AudioSegment] = {}
        failed: List[int] = []
        for key in sorted(self._jobs):
            job = self._jobs[key]
            if job.state == JobState.SUCCEEDED and job.audio_bytes:
                segment = segments.get(job.sequence_index)
                if segment is None:
                    segments[job.sequence_index] = AudioSegment(
                        job.sequence_index, job.source_text.strip(), job.audio_bytes
                    )
                else:
                    segment.audio += job.audio_bytes
                    segment.text = f"{segment.text} {job.source_text.strip()}".strip()
            elif job.state == JobState.FAILED:
                failed.append(job.sequence_index)

        return CollectedAudio(
            segments=[segments[i] for i in sorted(segments)],
            failed_indices=failed,
            fallback_required=self._aborted,
        )

    def cancel(self) -> None:
        """
        Stop dispatching. Pending jobs are cancelled; running jobs finish and
        their results are ignored by the caller.
        """
        self._cancelled = True
        self._held = None
        for job in self._jobs.values():
            if job.state == JobState.PENDING:
                job.transition(JobState.CANCELLED)

    @property
    def jobs(self) -> List[SynthesisJob]:
        return [self._jobs[k] for k in sorted(self._jobs)]

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def failed_count(self) -> int:
        return self._failed

    @property
    def running(self) -> int:
        return self._running


async def synthesize_single_pass(
    provider: SynthesisProvider,
    text: str,
    voice: Optional[str] = None,
    max_chars: Optional[int] = None,
) -> bytes:
    """
    Synthesize a whole answer sequentially, respecting the provider ceiling.

    Raises the provider's exception on the first failure.
    """
    max_chars = max_chars or settings.synthesis.max_chars
    audio = b""
    for piece in split_long(text, max_chars):
        if piece.strip():
            audio += await provider.synthesize(piece.strip(), voice)
    return audio
