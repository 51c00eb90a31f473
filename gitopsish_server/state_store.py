"""
In-memory ledger of pending authorizations (state -> Session).
Used between GET / and GET /callback. Each state is single-use and expires after a TTL;
expired entries are reaped on access and by the periodic sweeper.
"""
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from gitopsish_server.oauth import generate_state

logger = logging.getLogger(__name__)

# TTL seconds for a pending authorization (10 min for the user to log in at GitHub)
SESSION_TTL = 600
MAX_SESSIONS = 10000


class EntropyError(Exception):
    """The system random source could not produce a state token."""


class InvariantViolation(Exception):
    """A session was driven through a transition it does not allow."""


class Stage(str, Enum):
    INITIATED = "initiated"
    CALLBACK_RECEIVED = "callback_received"
    CODE_EXCHANGED = "code_exchanged"
    RELATIONSHIP_RESOLVED = "relationship_resolved"
    RESPONDED = "responded"


class Outcome(str, Enum):
    FOLLOWS = "follows"
    DOES_NOT_FOLLOW = "does_not_follow"
    EXCHANGE_FAILED = "exchange_failed"
    LOOKUP_FAILED = "lookup_failed"
    ABANDONED = "abandoned"


@dataclass
class Session:
    state: str
    created_at: float
    code: str | None = None
    stage: Stage = Stage.INITIATED
    outcome: Outcome | None = None

    def expired(self, now: float, ttl: float) -> bool:
        return (now - self.created_at) > ttl

    def advance(self, stage: Stage) -> None:
        if self.stage is Stage.RESPONDED:
            raise InvariantViolation(f"session already responded; cannot move to {stage.value}")
        self.stage = stage

    def finish(self, outcome: Outcome) -> None:
        """Record the terminal outcome. Set once; never overwritten."""
        if self.outcome is not None:
            raise InvariantViolation(f"outcome already set to {self.outcome.value}")
        self.outcome = outcome
        self.stage = Stage.RESPONDED


class StateLedger:
    """
    Owns every pending Session. issue/consume/sweep are atomic under one lock;
    callers never hold the lock across network I/O.
    """

    def __init__(
        self,
        ttl_seconds: float = SESSION_TTL,
        max_entries: int = MAX_SESSIONS,
        clock: Callable[[], float] = time.monotonic,
        token_factory: Callable[[], str] = generate_state,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._token_factory = token_factory
        # Insertion order is issue order, so the oldest session is always first
        self._sessions: OrderedDict[str, Session] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def issue(self) -> str:
        """Create a pending Session with a fresh random state and return the state."""
        try:
            state = self._token_factory()
        except (OSError, NotImplementedError) as e:
            raise EntropyError("random source unavailable") from e
        with self._lock:
            now = self._clock()
            self._reap(now)
            if state in self._sessions:
                raise InvariantViolation("state collision")
            if len(self._sessions) >= self._max_entries:
                self._sessions.popitem(last=False)
                logger.warning("Session ledger full (%d); evicted oldest pending authorization", self._max_entries)
            self._sessions[state] = Session(state=state, created_at=now)
        return state

    def consume(self, state: str) -> Session | None:
        """Remove and return the Session for state; None if unknown, already used or expired."""
        now = self._clock()
        with self._lock:
            session = self._sessions.pop(state, None)
        if session is None or session.expired(now, self._ttl):
            return None
        return session

    def sweep(self, now: float | None = None) -> int:
        """Drop expired sessions. Returns how many were removed."""
        if now is None:
            now = self._clock()
        with self._lock:
            return self._reap(now)

    def _reap(self, now: float) -> int:
        # Oldest first; stop at the first session still alive
        removed = 0
        while self._sessions:
            state, session = next(iter(self._sessions.items()))
            if not session.expired(now, self._ttl):
                break
            del self._sessions[state]
            removed += 1
        return removed
