import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Tuple

from ..errors import (
    DecodeError,
    IllegalTransitionError,
    InvalidInputError,
    SendFailedError,
    StaleResponseError,
    TransportError,
)
from ..models import Message, MetricSet, Session, WeightVector
from ..services.transport import BackendTransport
from .reconciler import acknowledged, append_pending, reconcile, rollback

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    NO_SESSION = "no_session"
    ACTIVE = "active"
    FINISHED = "finished"


@dataclass(frozen=True)
class TrainerState:
    """Snapshot of the one live session the client holds (if any)."""

    session: Session | None = None

    @property
    def phase(self) -> Phase:
        if self.session is None:
            return Phase.NO_SESSION
        return Phase.ACTIVE if self.session.is_active else Phase.FINISHED

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self.session.messages if self.session is not None else ()

    @property
    def last_metrics(self) -> MetricSet | None:
        return self.session.last_metrics if self.session is not None else None

    @property
    def current_score(self) -> float | None:
        return self.session.current_score if self.session is not None else None


StateListener = Callable[[TrainerState], None]


class SessionStateMachine:
    """Owns the lifecycle ``NO_SESSION -> ACTIVE -> FINISHED`` of a single session.

    Transport-bound transitions (start, send, finish, restore) run one at a
    time under a lock, so the backend sees them in submission order and
    optimistic entries never stack on stale data. Each request is tagged
    with the generation it was issued in; ``abandon`` or a new session bumps
    the generation and late responses for the old one are discarded.
    """

    def __init__(self, transport: BackendTransport) -> None:
        self._transport = transport
        self._state = TrainerState()
        self._lock = asyncio.Lock()
        self._generation = 0
        self._sending = False
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # read accessors

    @property
    def state(self) -> TrainerState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._state.session

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def is_sending(self) -> bool:
        """True while a chat message is waiting for the backend."""
        return self._sending

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with every committed state. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # internals

    def _commit(self, state: TrainerState) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def _replace_session(self, session: Session | None) -> None:
        self._generation += 1
        self._commit(TrainerState(session))

    def _require(self, phase: Phase, action: str) -> None:
        if self.phase is not phase:
            raise IllegalTransitionError(f"cannot {action} while session is {self.phase.value}")

    def _apply(self, generation: int, server: Session, keep_metrics: bool = False) -> Session:
        local = self._state.session
        if generation != self._generation or local is None:
            logger.warning("Discarding late response for superseded session %s", server.id)
            raise StaleResponseError(local.id if local else None, server.id)
        merged = reconcile(local, server, keep_metrics=keep_metrics)
        self._commit(TrainerState(merged))
        return merged

    # ------------------------------------------------------------------
    # transitions

    def check_start(
        self, seller_email: str, persona_key: str, known_personas: Iterable[str]
    ) -> Tuple[str, str]:
        """Validate a start request locally; returns the cleaned (email, persona key)."""
        email = (seller_email or "").strip()
        key = (persona_key or "").strip()
        if not email:
            raise InvalidInputError("seller email is required")
        if not key:
            raise InvalidInputError("persona is required")
        if key not in set(known_personas):
            raise InvalidInputError(f"unknown persona: {key}")
        self._require_not_active()
        return email, key

    async def start(
        self,
        seller_email: str,
        persona_key: str,
        weights: WeightVector,
        known_personas: Iterable[str],
    ) -> Session:
        """Open a new session. Legal from NO_SESSION or FINISHED."""
        email, key = self.check_start(seller_email, persona_key, known_personas)

        async with self._lock:
            self._require_not_active()
            generation = self._generation
            session = await self._transport.start_session(email, key, weights)
            if not session.is_active:
                raise DecodeError(f"backend opened session {session.id} as {session.status.value}")
            if generation != self._generation:
                logger.warning("Discarding started session %s; state changed meanwhile", session.id)
                raise StaleResponseError(None, session.id)
            logger.info("Session %s started for %s with persona %s", session.id, email, key)
            self._replace_session(session)
            return session

    def _require_not_active(self) -> None:
        if self.phase is Phase.ACTIVE:
            raise IllegalTransitionError(
                "a session is already active; finish or abandon it before starting another"
            )

    async def send_message(self, text: str) -> Session:
        """Show ``text`` immediately, then replace the session with the backend's answer.

        On failure the optimistic entry is rolled back and ``SendFailedError``
        carries the text so the caller can offer a retry.
        """
        clean = (text or "").strip()
        if not clean:
            raise InvalidInputError("message text is required")
        self._require(Phase.ACTIVE, "send a message")

        async with self._lock:
            self._require(Phase.ACTIVE, "send a message")
            generation = self._generation
            session = self._state.session
            optimistic, pending = append_pending(session, clean)
            self._sending = True
            self._commit(TrainerState(optimistic))
            try:
                server = await self._transport.send_message(session.id, clean)
                return self._apply(generation, server)
            except (TransportError, StaleResponseError) as e:
                if generation == self._generation and self._state.session is not None:
                    self._commit(TrainerState(rollback(self._state.session, pending)))
                if isinstance(e, StaleResponseError):
                    raise
                raise SendFailedError(str(e), text=clean, status_code=e.status_code) from e
            finally:
                self._sending = False

    async def finish(self) -> Session:
        """Close the active session. Rejected without a network call from any other phase."""
        self._require(Phase.ACTIVE, "finish")

        async with self._lock:
            self._require(Phase.ACTIVE, "finish")
            generation = self._generation
            session = self._state.session
            server = await self._transport.finish_session(session.id)
            if not server.is_finished:
                raise DecodeError(f"backend left session {server.id} {server.status.value}")
            finished = self._apply(generation, server, keep_metrics=True)
            logger.info("Session %s finished (score=%s)", finished.id, finished.current_score)
            return finished

    def abandon(self) -> Session | None:
        """Drop the held session locally. Any response still in flight for it is discarded."""
        previous = self._state.session
        if previous is None:
            return None
        logger.info("Abandoning session %s (%s)", previous.id, previous.status.value)
        self._replace_session(None)
        return previous

    async def restore(self, session: Session) -> Session:
        """Adopt a previously acknowledged session document. Legal from NO_SESSION only."""
        async with self._lock:
            self._require(Phase.NO_SESSION, "restore a session")
            restored = acknowledged(session)
            self._replace_session(restored)
            logger.info("Restored session %s for %s", restored.id, restored.seller_email)
            return restored
