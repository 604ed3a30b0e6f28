"""HTTP transport to the training backend.

Every call is a single request/response. The blocking ``requests`` session
runs in a worker thread so callers on the event loop never block.
"""

import asyncio
import logging
from typing import Any, Dict, List
from urllib.parse import quote

import requests
from pydantic import BaseModel, TypeAdapter, ValidationError

from ..errors import DecodeError, TransportError
from ..models import (
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
from ..settings import get_settings

logger = logging.getLogger(__name__)

IDENTITY_HEADER = "X-User"

_PERSONAS = TypeAdapter(List[Persona])
_HISTORY = TypeAdapter(List[HistoryEntry])
_LEADERBOARD = TypeAdapter(List[LeaderboardEntry])


def _stored_at(payload: Dict[str, Any], scope: WeightScope, target: str | None) -> bool:
    if payload.get("scope") != scope.value:
        return False
    if scope is WeightScope.USER:
        return payload.get("email") == target
    if scope is WeightScope.TEAM:
        return payload.get("team") == target
    return True


class BackendTransport:
    """Request/response client for the backend's ``/api`` surface."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        http: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._http = http or requests.Session()
        self._http.headers.update({"Content-Type": "application/json"})

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # plumbing

    def _send(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
        body: Dict[str, Any] | None = None,
        identity: Identity | None = None,
        missing_ok: bool = False,
    ) -> Any:
        headers = {IDENTITY_HEADER: identity.assertion()} if identity is not None else None
        try:
            response = self._http.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=body,
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise TransportError(f"{method} {path} failed: {e}") from e

        if missing_ok and response.status_code == 404:
            return None
        if not response.ok:
            logger.error(
                "%s %s returned %s: %s", method, path, response.status_code, response.text[:200]
            )
            raise TransportError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error("%s %s returned a non-JSON body: %s", method, path, e)
            raise DecodeError(
                f"{method} {path} returned a non-JSON body", status_code=response.status_code
            ) from e

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._send, method, path, **kwargs)

    @staticmethod
    def _decode(target: type[BaseModel] | TypeAdapter, payload: Any, what: str) -> Any:
        try:
            if isinstance(target, TypeAdapter):
                return target.validate_python(payload)
            return target.model_validate(payload)
        except ValidationError as e:
            logger.error("Malformed %s payload: %s", what, e)
            raise DecodeError(f"malformed {what} payload") from e

    # ------------------------------------------------------------------
    # reference data and identity

    async def list_personas(self) -> List[Persona]:
        payload = await self._call("GET", "/api/personas")
        return self._decode(_PERSONAS, payload or [], "persona list")

    async def register(self, identity: Identity) -> bool:
        """Create or update the seller profile.

        The capability claim is attached only when registering as a manager.
        """
        await self._call(
            "POST",
            "/api/register",
            body=identity.to_registration(),
            identity=identity if identity.is_manager else None,
        )
        return True

    # ------------------------------------------------------------------
    # scoring weights

    async def fetch_weights(self, scope: WeightScope, target: str | None) -> WeightVector | None:
        """Return the override stored at exactly ``scope``/``target``, or None.

        The backend resolves precedence itself and answers with whichever
        document it found first, or with an unscoped built-in default when it
        has none. Only a document stored at the requested scope and target
        counts as that scope's override.
        """
        params: Dict[str, Any] = {"scope": scope.value}
        if scope is WeightScope.USER:
            params["email"] = target
        elif scope is WeightScope.TEAM:
            params["team"] = target
        payload = await self._call("GET", "/api/score-config", params=params, missing_ok=True)
        if not isinstance(payload, dict) or not payload.get("weights"):
            return None
        if not _stored_at(payload, scope, target):
            logger.debug("score-config answer %s is not a %s override", payload.get("scope"), scope.value)
            return None
        return self._decode(WeightVector, payload["weights"], "score config")

    async def save_weights(
        self,
        scope: WeightScope,
        target: str | None,
        weights: WeightVector,
        actor: Identity | None = None,
    ) -> bool:
        body = {
            "scope": scope.value,
            "team": target if scope is WeightScope.TEAM else None,
            "email": target if scope is WeightScope.USER else None,
            "weights": weights.as_dict(),
        }
        await self._call("POST", "/api/score-config", body=body, identity=actor)
        return True

    # ------------------------------------------------------------------
    # sessions

    async def start_session(
        self, seller_email: str, persona_key: str, weights: WeightVector
    ) -> Session:
        payload = await self._call(
            "POST",
            "/api/sessions/start",
            body={
                "seller_email": seller_email,
                "persona_key": persona_key,
                "weights": weights.as_dict(),
            },
        )
        return self._decode(Session, payload, "session")

    async def send_message(self, session_id: str, text: str) -> Session:
        payload = await self._call(
            "POST", f"/api/sessions/{quote(session_id, safe='')}/message", body={"text": text}
        )
        return self._decode(Session, payload, "session")

    async def finish_session(self, session_id: str) -> Session:
        payload = await self._call(
            "POST", f"/api/sessions/{quote(session_id, safe='')}/finish", body={}
        )
        return self._decode(Session, payload, "session")

    # ------------------------------------------------------------------
    # dashboards

    async def fetch_history(self, seller_email: str) -> List[HistoryEntry]:
        payload = await self._call("GET", "/api/history", params={"seller_email": seller_email})
        return self._decode(_HISTORY, payload or [], "history")

    async def fetch_leaderboard(
        self, period: LeaderboardPeriod, team: str | None = None
    ) -> List[LeaderboardEntry]:
        payload = await self._call(
            "GET", "/api/leaderboard", params={"period": period.value, "team": team}
        )
        return self._decode(_LEADERBOARD, payload or [], "leaderboard")

    async def fetch_premium_status(self, seller_email: str) -> PremiumStatus:
        payload = await self._call(
            "GET", "/api/premium-status", params={"seller_email": seller_email}
        )
        return self._decode(PremiumStatus, payload, "premium status")


def get_transport() -> BackendTransport:
    """Build a transport from the configured backend URL and timeout."""
    settings = get_settings()
    return BackendTransport(
        base_url=settings.backend_url,
        timeout_seconds=settings.request_timeout_seconds,
    )
