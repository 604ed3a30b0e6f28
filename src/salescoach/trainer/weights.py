import logging
from typing import Dict, Mapping, Tuple

from ..errors import InvalidInputError, TransportError, WeightsUnavailableError
from ..models import DEFAULT_WEIGHTS, Identity, WeightScope, WeightVector
from ..services.transport import BackendTransport

logger = logging.getLogger(__name__)

# Most specific first.
PRECEDENCE: Tuple[WeightScope, ...] = (WeightScope.USER, WeightScope.TEAM, WeightScope.GLOBAL)

CacheKey = Tuple[WeightScope, str | None]


def resolve_weights(overrides: Mapping[WeightScope, WeightVector | None]) -> WeightVector:
    """Pick the most specific vector present: user, then team, then global.

    Raises WeightsUnavailableError when none is present; callers that must
    always produce a vector fall back to ``DEFAULT_WEIGHTS`` themselves.
    """
    for scope in PRECEDENCE:
        vector = overrides.get(scope)
        if vector is not None:
            return vector
    raise WeightsUnavailableError("no scoring weights at user, team or global scope")


def check_target(scope: WeightScope, target: str | None) -> str | None:
    """Validate that ``target`` names what ``scope`` is keyed by."""
    target = target.strip() if target else None
    if scope is WeightScope.USER and not target:
        raise InvalidInputError("user-scoped weights need the seller's email")
    if scope is WeightScope.TEAM and not target:
        raise InvalidInputError("team-scoped weights need a team name")
    if scope is WeightScope.GLOBAL and target:
        raise InvalidInputError("global weights take no target")
    return target


class WeightResolver:
    """Resolves the effective scoring weights for an identity and saves overrides.

    Holds the last vector fetched or saved per (scope, target). A rejected
    save leaves that cache untouched.
    """

    def __init__(self, transport: BackendTransport) -> None:
        self._transport = transport
        self._cache: Dict[CacheKey, WeightVector] = {}

    def cached(self, scope: WeightScope, target: str | None = None) -> WeightVector | None:
        return self._cache.get((scope, target))

    def _remember(self, scope: WeightScope, target: str | None, vector: WeightVector | None) -> None:
        if vector is None:
            self._cache.pop((scope, target), None)
        else:
            self._cache[(scope, target)] = vector

    async def resolve(self, identity: Identity) -> WeightVector:
        if not identity.email:
            raise InvalidInputError("an email is required to resolve weights")

        levels = [(WeightScope.USER, identity.email)]
        if identity.team:
            levels.append((WeightScope.TEAM, identity.team))
        levels.append((WeightScope.GLOBAL, None))

        overrides: Dict[WeightScope, WeightVector | None] = {}
        for scope, target in levels:
            vector = await self._transport.fetch_weights(scope, target)
            self._remember(scope, target, vector)
            overrides[scope] = vector
            if vector is not None:
                break
        return resolve_weights(overrides)

    async def effective(self, identity: Identity) -> WeightVector:
        """Like ``resolve`` but never fails for backend reasons: falls back to the defaults."""
        try:
            return await self.resolve(identity)
        except WeightsUnavailableError:
            logger.warning("No scoring weights configured for %s; using defaults", identity.email)
        except TransportError as e:
            logger.warning("Score config unreachable for %s (%s); using defaults", identity.email, e)
        return DEFAULT_WEIGHTS

    async def save(
        self,
        scope: WeightScope,
        target: str | None,
        vector: WeightVector,
        actor: Identity | None = None,
    ) -> bool:
        """Store ``vector`` at ``scope``. Authorization is the backend's call, not ours.

        Team and global saves carry the actor's capability claim.
        """
        target = check_target(scope, target)
        claim = actor if scope is not WeightScope.USER else None
        try:
            await self._transport.save_weights(scope, target, vector, actor=claim)
        except TransportError as e:
            logger.warning(
                "Saving %s weights for %s was rejected: %s", scope.value, target or "all", e
            )
            return False
        self._remember(scope, target, vector)
        logger.info("Saved %s weights for %s", scope.value, target or "all")
        return True
