import logging

from ..errors import InvalidInputError
from ..models import PremiumStatus
from ..services.transport import BackendTransport

logger = logging.getLogger(__name__)


class EligibilityGate:
    """Premium-access status as the backend computes it.

    The averaging window and threshold are backend policy, so nothing is
    aggregated here; only the latest answer is kept.
    """

    def __init__(self, transport: BackendTransport) -> None:
        self._transport = transport
        self._latest: PremiumStatus | None = None
        self._requested_for: str | None = None

    @property
    def latest(self) -> PremiumStatus | None:
        return self._latest

    def clear(self) -> None:
        self._latest = None
        self._requested_for = None

    async def evaluate(self, seller_email: str) -> PremiumStatus:
        email = (seller_email or "").strip()
        if not email:
            raise InvalidInputError("seller email is required")
        self._requested_for = email
        status = await self._transport.fetch_premium_status(email)
        if self._requested_for != email:
            logger.info("Ignoring premium status for %s; %s was requested since", email, self._requested_for)
            return status
        self._latest = status
        return status
