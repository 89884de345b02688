"""
Session State Module

Per-session routing state and conversation history, the external session
store interface, and the manager that serializes turns of one session.

State is written in exactly two places: the router's ``advance`` (active
responder and phase) and the delivery assembler (history). Both happen at
the very end of a turn, so an abandoned or crashed turn leaves it untouched.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional

from tutor.core.llm import Message
from tutor.logger import get_logger

logger = get_logger(__name__)


class RouterPhase(Enum):
    """Routing phase of a session."""
    NO_ACTIVE_RESPONDER = auto()
    RESPONDER_ACTIVE = auto()
    AWAITING_ASSESSMENT = auto()


@dataclass
class ConversationTurn:
    """Single delivered turn."""
    turn_id: str
    user_text: str
    agent_text: str
    responder_id: str
    timestamp: float = field(default_factory=time.time)

    def to_messages(self) -> List[Message]:
        """Convert to generation message format."""
        return [
            Message("user", self.user_text),
            Message("assistant", self.agent_text),
        ]


@dataclass
class SessionState:
    """Routing state and bounded history for one session."""
    session_id: str
    active_responder: Optional[str] = None
    phase: RouterPhase = RouterPhase.NO_ACTIVE_RESPONDER
    history: Deque[ConversationTurn] = field(default_factory=lambda: deque(maxlen=20))
    turn_count: int = 0
    # announces the responder forced by the last transition, cleared on the next commit
    pending_handoff_message: Optional[str] = None

    def recent_messages(self, max_turns: int) -> List[Message]:
        messages: List[Message] = []
        if max_turns <= 0:
            return messages
        for turn in list(self.history)[-max_turns:]:
            messages.extend(turn.to_messages())
        return messages


@dataclass
class TurnRecord:
    """Routing outcome persisted after each delivered turn."""
    session_id: str
    turn_id: str
    responder_id: str
    active_responder: Optional[str]
    routing_reason: str
    signal: str
    user_text: str
    agent_text: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class ValidationFailureRecord:
    """An answer that was delivered after exhausting regeneration."""
    session_id: str
    turn_id: str
    responder_id: str
    user_text: str
    display_text: str
    confidence_score: float
    issues: List[str]
    required_fixes: List[str]
    attempts: int
    final_action: str = "delivered_with_disclaimer"
    timestamp: float = field(default_factory=time.time)


class SessionStore(ABC):
    """Durable session records, owned by an external system."""

    @abstractmethod
    async def get_active_responder(self, session_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def record_turn(self, record: TurnRecord) -> None:
        ...

    @abstractmethod
    async def record_validation_failure(self, record: ValidationFailureRecord) -> None:
        ...


class InMemorySessionStore(SessionStore):
    """Session store kept in process memory, for development and tests."""

    def __init__(self):
        self.turns: Dict[str, List[TurnRecord]] = {}
        self.validation_failures: List[ValidationFailureRecord] = []

    async def get_active_responder(self, session_id: str) -> Optional[str]:
        records = self.turns.get(session_id)
        if not records:
            return None
        return records[-1].active_responder

    async def record_turn(self, record: TurnRecord) -> None:
        self.turns.setdefault(record.session_id, []).append(record)

    async def record_validation_failure(self, record: ValidationFailureRecord) -> None:
        self.validation_failures.append(record)


class SessionManager:
    """
    Holds live session states and serializes turns per session.

    A session's lock lives as long as some turn holds or waits for it, so a
    session ended mid-turn still serializes against that turn. States idle
    longer than ``idle_timeout`` are evicted when the next turn starts; they
    resume from the session store.

    Usage:
        async with manager.turn(session_id) as state:
            ...  # at most one turn per session runs here
    """

    def __init__(
        self,
        store: SessionStore,
        coordinator_id: str = "coordinator",
        history_size: int = 20,
        idle_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._coordinator_id = coordinator_id
        self._history_size = history_size
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._states: Dict[str, SessionState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._last_used: Dict[str, float] = {}

    @asynccontextmanager
    async def _hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if not self._users[session_id]:
                del self._users[session_id]
                if session_id not in self._states:
                    self._locks.pop(session_id, None)

    async def _load(self, session_id: str) -> SessionState:
        state = self._states.get(session_id)
        if state is not None:
            return state

        state = SessionState(session_id=session_id, history=deque(maxlen=self._history_size))
        active = await self._store.get_active_responder(session_id)
        # a coordinator record means nobody was teaching yet
        if active and active != self._coordinator_id:
            state.active_responder = active
            state.phase = RouterPhase.RESPONDER_ACTIVE
            logger.info(f"Session {session_id} resumed with {active}")
        self._states[session_id] = state
        return state

    @asynccontextmanager
    async def turn(self, session_id: str) -> AsyncIterator[SessionState]:
        """Hold the session's lock for one whole turn."""
        self.evict_idle()
        async with self._hold(session_id):
            try:
                yield await self._load(session_id)
            finally:
                self._last_used[session_id] = self._clock()

    def evict_idle(self) -> int:
        """Drop live states idle past the timeout. Returns how many went."""
        if not self._idle_timeout:
            return 0

        cutoff = self._clock() - self._idle_timeout
        idle = [
            sid for sid, used in self._last_used.items()
            if used < cutoff and sid not in self._users
        ]
        for sid in idle:
            self._states.pop(sid, None)
            self._locks.pop(sid, None)
            del self._last_used[sid]
        if idle:
            logger.info(f"Evicted {len(idle)} idle session(s)")
        return len(idle)

    def get(self, session_id: str) -> Optional[SessionState]:
        return self._states.get(session_id)

    async def end_session(self, session_id: str) -> bool:
        """
        Destroy a session's state once its in-flight turn has finished.
        Returns False if it was unknown.
        """
        if session_id not in self._states and session_id not in self._users:
            return False
        async with self._hold(session_id):
            self._last_used.pop(session_id, None)
            return self._states.pop(session_id, None) is not None

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def active_sessions(self) -> int:
        return len(self._states)
