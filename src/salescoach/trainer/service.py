import asyncio
import logging
from typing import TYPE_CHECKING, List, Tuple

from ..errors import InvalidInputError, StaleResponseError
from ..models import (
    DEFAULT_WEIGHTS,
    HistoryEntry,
    Identity,
    LeaderboardEntry,
    LeaderboardPeriod,
    Persona,
    PremiumStatus,
    Session,
    WeightScope,
    WeightVector,
)
from ..services.transport import BackendTransport, get_transport
from ..settings import get_settings
from .eligibility import EligibilityGate
from .session_machine import Phase, SessionStateMachine, TrainerState
from .weights import WeightResolver

if TYPE_CHECKING:
    from ..services.snapshot_service import SnapshotService

logger = logging.getLogger(__name__)


class TrainerService:
    """Everything a trainer view needs: personas, profile, the live session and dashboards.

    Session transitions go through the state machine. Dashboards (history,
    leaderboard, premium status) are independent fetches; whichever answer
    arrives last is what the view shows.
    """

    def __init__(
        self,
        transport: BackendTransport,
        snapshots: "SnapshotService | None" = None,
        leaderboard_period: LeaderboardPeriod = LeaderboardPeriod.MONTH,
    ) -> None:
        self._transport = transport
        self._snapshots = snapshots
        self.machine = SessionStateMachine(transport)
        self.resolver = WeightResolver(transport)
        self.gate = EligibilityGate(transport)

        self.personas: Tuple[Persona, ...] = ()
        self.identity: Identity | None = None
        self.weights: WeightVector = DEFAULT_WEIGHTS
        self.history: List[HistoryEntry] = []
        self.leaderboard: List[LeaderboardEntry] = []
        self.leaderboard_period = leaderboard_period
        self.leaderboard_team: str | None = None

    # ------------------------------------------------------------------
    # read accessors

    @property
    def state(self) -> TrainerState:
        return self.machine.state

    @property
    def session(self) -> Session | None:
        return self.machine.session

    @property
    def backend_url(self) -> str:
        return self._transport.base_url

    @property
    def premium(self) -> PremiumStatus | None:
        return self.gate.latest

    @property
    def persona_keys(self) -> Tuple[str, ...]:
        return tuple(p.key for p in self.personas)

    @property
    def default_persona_key(self) -> str | None:
        return self.personas[0].key if self.personas else None

    def persona(self, key: str) -> Persona | None:
        return next((p for p in self.personas if p.key == key), None)

    def _require_identity(self) -> Identity:
        if self.identity is None or not self.identity.email:
            raise InvalidInputError("save a profile with an email first")
        return self.identity

    # ------------------------------------------------------------------
    # startup and profile

    async def load_personas(self) -> Tuple[Persona, ...]:
        self.personas = tuple(await self._transport.list_personas())
        logger.info("Loaded %d personas", len(self.personas))
        return self.personas

    async def save_profile(self, identity: Identity) -> Identity:
        """Register the identity, then refresh its weights and dashboards."""
        if not identity.email:
            raise InvalidInputError("email is required")
        await self._transport.register(identity)
        if self.identity is not None and self.identity.email != identity.email:
            self.history = []
            self.gate.clear()
        self.identity = identity
        self.weights = await self.resolver.effective(identity)
        await self.refresh_dashboards()
        return identity

    # ------------------------------------------------------------------
    # session lifecycle

    # A lifecycle answer for a superseded session yields None and leaves the
    # held session and its snapshot alone. Start and finish still refresh
    # dashboards.

    async def start_session(
        self, persona_key: str | None = None, weights: WeightVector | None = None
    ) -> Session | None:
        identity = self._require_identity()
        email, key = self.machine.check_start(
            identity.email, persona_key or self.default_persona_key or "", self.persona_keys
        )
        if weights is None:
            weights = await self.resolver.effective(identity)
            self.weights = weights
        try:
            session = await self.machine.start(email, key, weights, self.persona_keys)
        except StaleResponseError as e:
            logger.warning("Started session dropped: %s", e)
            await self.refresh_dashboards()
            return None
        await self._save_snapshot(session)
        await self.refresh_dashboards()
        return session

    async def send_message(self, text: str) -> Session | None:
        try:
            session = await self.machine.send_message(text)
        except StaleResponseError as e:
            logger.warning("Chat reply dropped: %s", e)
            return None
        await self._save_snapshot(session)
        return session

    async def finish_session(self) -> Session | None:
        try:
            session = await self.machine.finish()
        except StaleResponseError as e:
            logger.warning("Finish reply dropped: %s", e)
            await self.refresh_dashboards()
            return None
        await self._discard_snapshot(session.seller_email)
        await self.refresh_dashboards()
        return session

    async def abandon_session(self) -> Session | None:
        previous = self.machine.abandon()
        if previous is not None:
            await self._discard_snapshot(previous.seller_email)
        return previous

    async def resume(self) -> Session | None:
        """Pick up the identity's last active session from the snapshot store, if any."""
        identity = self._require_identity()
        if self._snapshots is None or self.machine.phase is not Phase.NO_SESSION:
            return None
        snapshot = await self._snapshots.load(identity.email)
        if snapshot is None or not snapshot.is_active:
            return None
        return await self.machine.restore(snapshot)

    # ------------------------------------------------------------------
    # scoring weights

    async def save_weights(
        self, scope: WeightScope, target: str | None, vector: WeightVector
    ) -> bool:
        identity = self._require_identity()
        saved = await self.resolver.save(scope, target, vector, actor=identity)
        if saved:
            self.weights = await self.resolver.effective(identity)
        return saved

    # ------------------------------------------------------------------
    # dashboards

    async def refresh_history(self) -> List[HistoryEntry]:
        """Fetch history, then re-evaluate premium status against it."""
        entries = await self._fetch_history()
        await self.refresh_premium()
        return entries

    async def _fetch_history(self) -> List[HistoryEntry]:
        if self.identity is None:
            return self.history
        email = self.identity.email
        entries = await self._transport.fetch_history(email)
        if self.identity is None or self.identity.email != email:
            logger.info("Ignoring history for %s; profile changed meanwhile", email)
            return entries
        self.history = entries
        return entries

    async def refresh_leaderboard(
        self, period: LeaderboardPeriod | None = None, team: str | None = None
    ) -> List[LeaderboardEntry]:
        if period is not None:
            self.leaderboard_period = period
        if team is not None:
            self.leaderboard_team = team or None
        self.leaderboard = await self._transport.fetch_leaderboard(
            self.leaderboard_period, self.leaderboard_team
        )
        return self.leaderboard

    async def refresh_premium(self) -> PremiumStatus | None:
        if self.identity is None:
            return None
        return await self.gate.evaluate(self.identity.email)

    async def refresh_dashboards(self) -> None:
        """Refresh history, leaderboard and premium concurrently. Failures are logged only."""
        names = ("history", "leaderboard", "premium status")
        results = await asyncio.gather(
            self._fetch_history(),
            self.refresh_leaderboard(),
            self.refresh_premium(),
            return_exceptions=True,
        )
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.error("Refreshing %s failed: %s", name, result)

    # ------------------------------------------------------------------
    # snapshots

    async def _save_snapshot(self, session: Session) -> None:
        if self._snapshots is not None:
            await self._snapshots.save(session)

    async def _discard_snapshot(self, seller_email: str) -> None:
        if self._snapshots is not None:
            await self._snapshots.discard(seller_email)

    async def close(self) -> None:
        self._transport.close()
        if self._snapshots is not None:
            await self._snapshots.close()


async def build_trainer_service() -> TrainerService:
    """Build a service from settings; snapshots are enabled when Redis is configured and reachable."""
    from ..services.snapshot_service import get_snapshot_service_async

    settings = get_settings()
    return TrainerService(
        transport=get_transport(),
        snapshots=await get_snapshot_service_async(),
        leaderboard_period=LeaderboardPeriod(settings.leaderboard_period),
    )
