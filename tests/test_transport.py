import json
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from salescoach.errors import DecodeError, TransportError
from salescoach.models import (
    DEFAULT_WEIGHTS,
    Identity,
    LeaderboardPeriod,
    Role,
    SessionStatus,
    WeightScope,
    WeightVector,
)
from salescoach.services.transport import IDENTITY_HEADER, BackendTransport, get_transport
from salescoach.trainer.weights import WeightResolver


def _response(status: int = 200, payload: Any = None, raw: bytes | None = None) -> MagicMock:
    r = MagicMock()
    r.status_code = status
    r.ok = 200 <= status < 400
    if raw is None:
        raw = b"" if payload is None else json.dumps(payload).encode()
    r.content = raw
    r.text = raw.decode(errors="replace")
    if payload is not None:
        r.json.return_value = payload
    else:
        r.json.side_effect = ValueError("no JSON")
    return r


@pytest.fixture
def http() -> MagicMock:
    """requests.Session stand-in."""
    m = MagicMock(spec=requests.Session)
    m.headers = {}
    return m


@pytest.fixture
def backend(http: MagicMock) -> BackendTransport:
    return BackendTransport("http://backend.test/", timeout_seconds=5.0, http=http)


@pytest.mark.asyncio
async def test_list_personas(backend: BackendTransport, http: MagicMock) -> None:
    http.request.return_value = _response(
        payload=[{"key": "skeptical_buyer", "name": "Skeptical", "traits": ["cautious"]}]
    )
    personas = await backend.list_personas()
    assert [p.key for p in personas] == ["skeptical_buyer"]
    assert personas[0].traits == ("cautious",)
    method, url = http.request.call_args[0]
    assert method == "GET"
    assert url == "http://backend.test/api/personas"
    assert http.request.call_args[1]["timeout"] == 5.0


@pytest.mark.asyncio
async def test_start_session_posts_weights(backend: BackendTransport, http: MagicMock) -> None:
    http.request.return_value = _response(
        payload={"id": "S1", "seller_email": "a@x.com", "persona_key": "skeptical_buyer", "status": "active", "messages": []}
    )
    weights = WeightVector(rapport=0.3, discovery=0.2, objection=0.3, closing=0.2)
    session = await backend.start_session("a@x.com", "skeptical_buyer", weights)
    assert session.id == "S1"
    assert session.status is SessionStatus.ACTIVE
    body = http.request.call_args[1]["json"]
    assert body == {
        "seller_email": "a@x.com",
        "persona_key": "skeptical_buyer",
        "weights": {"rapport": 0.3, "discovery": 0.2, "objection": 0.3, "closing": 0.2},
    }
    assert http.request.call_args[1]["headers"] is None


@pytest.mark.asyncio
async def test_send_message_quotes_session_id(backend: BackendTransport, http: MagicMock) -> None:
    http.request.return_value = _response(
        payload={"id": "a/b", "seller_email": "a@x.com", "persona_key": "k", "messages": []}
    )
    await backend.send_message("a/b", "Oi")
    method, url = http.request.call_args[0]
    assert method == "POST"
    assert url == "http://backend.test/api/sessions/a%2Fb/message"
    assert http.request.call_args[1]["json"] == {"text": "Oi"}


@pytest.mark.asyncio
async def test_non_success_status_raises(backend: BackendTransport, http: MagicMock) -> None:
    http.request.return_value = _response(status=400, payload={"detail": "Session already finished"})
    with pytest.raises(TransportError) as exc:
        await backend.finish_session("S1")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_network_fault_raises_transport_error(backend: BackendTransport, http: MagicMock) -> None:
    http.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(TransportError):
        await backend.list_personas()


@pytest.mark.asyncio
async def test_non_json_body_is_decode_error(backend: BackendTransport, http: MagicMock) -> None:
    http.request.return_value = _response(raw=b"<html>oops</html>")
    with pytest.raises(DecodeError):
        await backend.fetch_history("a@x.com")


@pytest.mark.asyncio
async def test_malformed_session_is_decode_error(backend: BackendTransport, http: MagicMock) -> None:
    http.request.return_value = _response(payload={"status": "active"})
    with pytest.raises(DecodeError):
        await backend.send_message("S1", "hi")


@pytest.mark.asyncio
async def test_register_attaches_assertion_for_managers_only(
    backend: BackendTransport, http: MagicMock
) -> None:
    http.request.return_value = _response(payload={"status": "ok"})

    await backend.register(Identity(email="s@x.com", display_name="Sam"))
    assert http.request.call_args[1]["headers"] is None

    await backend.register(Identity(email="m@x.com", role=Role.MANAGER, team="North"))
    assert http.request.call_args[1]["headers"] == {IDENTITY_HEADER: "m@x.com|manager|North"}
    assert http.request.call_args[1]["json"]["role"] == "manager"


@pytest.mark.asyncio
async def test_fetch_weights_by_scope(backend: BackendTransport, http: MagicMock) -> None:
    weights = {"rapport": 0.4, "discovery": 0.2, "objection": 0.2, "closing": 0.2}
    http.request.return_value = _response(payload={"scope": "team", "team": "North", "weights": weights})

    vector = await backend.fetch_weights(WeightScope.TEAM, "North")
    assert vector == WeightVector(**weights)
    assert http.request.call_args[1]["params"] == {"scope": "team", "team": "North"}


@pytest.mark.asyncio
async def test_fetch_weights_absent(backend: BackendTransport, http: MagicMock) -> None:
    http.request.return_value = _response(status=404, payload={"detail": "not found"})
    assert await backend.fetch_weights(WeightScope.USER, "a@x.com") is None

    http.request.return_value = _response(payload={})
    assert await backend.fetch_weights(WeightScope.GLOBAL, None) is None


@pytest.mark.asyncio
async def test_fetch_weights_ignores_other_scope(backend: BackendTransport, http: MagicMock) -> None:
    """A fallback document from a broader scope is not this scope's override."""
    http.request.return_value = _response(
        payload={"scope": "global", "weights": {"rapport": 1, "discovery": 1, "objection": 1, "closing": 1}}
    )
    assert await backend.fetch_weights(WeightScope.USER, "a@x.com") is None


@pytest.mark.asyncio
async def test_save_weights_body_and_claim(backend: BackendTransport, http: MagicMock) -> None:
    http.request.return_value = _response(payload={"status": "ok"})
    manager = Identity(email="m@x.com", role=Role.MANAGER, team="North")
    vector = WeightVector(rapport=0.25, discovery=0.25, objection=0.25, closing=0.25)

    assert await backend.save_weights(WeightScope.TEAM, "North", vector, actor=manager) is True
    kwargs = http.request.call_args[1]
    assert kwargs["json"] == {
        "scope": "team",
        "team": "North",
        "email": None,
        "weights": vector.as_dict(),
    }
    assert kwargs["headers"] == {IDENTITY_HEADER: "m@x.com|manager|North"}


@pytest.mark.asyncio
async def test_dashboard_calls(backend: BackendTransport, http: MagicMock) -> None:
    http.request.return_value = _response(payload=[{"seller_email": "a@x.com", "avg_score": 80.0, "sessions": 3}])
    rows = await backend.fetch_leaderboard(LeaderboardPeriod.WEEK, team="North")
    assert rows[0].session_count == 3
    assert http.request.call_args[1]["params"] == {"period": "7d", "team": "North"}

    http.request.return_value = _response(payload={"eligible": True, "average": 85.2, "last_n": 5})
    status = await backend.fetch_premium_status("a@x.com")
    assert status.eligible is True
    assert status.sample_size == 5
    assert http.request.call_args[1]["params"] == {"seller_email": "a@x.com"}


def test_get_transport_uses_settings() -> None:
    with patch("salescoach.services.transport.get_settings") as get_settings:
        get_settings.return_value = MagicMock(
            backend_url="http://coach.example:9000/", request_timeout_seconds=3.0
        )
        t = get_transport()
        assert t.base_url == "http://coach.example:9000"


class ScoreConfigHttp:
    """``requests.Session`` stand-in answering GET /api/score-config like the backend does.

    The ``scope`` query is ignored: the backend walks user, team, global
    itself and falls back to an unscoped built-in vector.
    """

    BUILT_IN = {"rapport": 0.25, "discovery": 0.25, "objection": 0.3, "closing": 0.2}

    def __init__(self) -> None:
        self.docs: list[dict] = []
        self.headers: dict = {}

    def _find(self, **match: Any) -> dict | None:
        return next((d for d in self.docs if all(d.get(k) == v for k, v in match.items())), None)

    def request(self, method: str, url: str, params: dict | None = None, **kwargs: Any) -> MagicMock:
        params = params or {}
        doc = None
        if params.get("email"):
            doc = self._find(scope="user", email=params["email"])
        if not doc and params.get("team"):
            doc = self._find(scope="team", team=params["team"])
        if not doc:
            doc = self._find(scope="global")
        return _response(payload={"id": "cfg", **doc} if doc else {"weights": self.BUILT_IN})

    def close(self) -> None:
        pass


@pytest.fixture
def score_http() -> ScoreConfigHttp:
    return ScoreConfigHttp()


@pytest.fixture
def score_resolver(score_http: ScoreConfigHttp) -> WeightResolver:
    return WeightResolver(BackendTransport("http://backend.test", http=score_http))  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_built_in_backend_vector_is_not_an_override(
    score_http: ScoreConfigHttp, score_resolver: WeightResolver
) -> None:
    assert await score_resolver.effective(Identity(email="a@x.com", team="North")) == DEFAULT_WEIGHTS


@pytest.mark.asyncio
async def test_team_override_reached_through_backend_precedence(
    score_http: ScoreConfigHttp, score_resolver: WeightResolver
) -> None:
    team = {"rapport": 0.4, "discovery": 0.3, "objection": 0.2, "closing": 0.1}
    score_http.docs.append({"scope": "team", "team": "North", "email": None, "weights": team})

    assert await score_resolver.effective(Identity(email="a@x.com", team="North")) == WeightVector(**team)
    assert score_resolver.cached(WeightScope.USER, "a@x.com") is None


@pytest.mark.asyncio
async def test_other_users_and_teams_documents_are_ignored(
    score_http: ScoreConfigHttp, score_resolver: WeightResolver
) -> None:
    glob = {"rapport": 0.1, "discovery": 0.2, "objection": 0.3, "closing": 0.4}
    score_http.docs.append({"scope": "global", "team": None, "email": None, "weights": glob})

    assert await score_resolver.effective(Identity(email="a@x.com", team="South")) == WeightVector(**glob)
    assert score_resolver.cached(WeightScope.TEAM, "South") is None


@pytest.mark.asyncio
async def test_fetch_weights_requires_matching_target(backend: BackendTransport, http: MagicMock) -> None:
    weights = {"rapport": 0.4, "discovery": 0.2, "objection": 0.2, "closing": 0.2}
    http.request.return_value = _response(payload={"scope": "user", "email": "b@x.com", "weights": weights})
    assert await backend.fetch_weights(WeightScope.USER, "a@x.com") is None

    http.request.return_value = _response(payload={"scope": "team", "team": "South", "weights": weights})
    assert await backend.fetch_weights(WeightScope.TEAM, "North") is None

    http.request.return_value = _response(payload={"weights": weights})
    assert await backend.fetch_weights(WeightScope.GLOBAL, None) is None


@pytest.mark.asyncio
async def test_send_message_accepts_full_score_with_float_drift(
    backend: BackendTransport, http: MagicMock
) -> None:
    http.request.return_value = _response(
        payload={
            "id": "S1",
            "seller_email": "a@x.com",
            "persona_key": "skeptical_buyer",
            "status": "active",
            "current_score": 100.00000000000001,
            "messages": [
                {"role": "seller", "text": "Entendo, qual o orçamento? Podemos fechar hoje.", "ts": "2026-10-17T12:00:00+00:00"},
                {"role": "ai", "text": "Talvez.", "ts": "2026-10-17T12:00:01+00:00"},
            ],
            "last_metrics": {
                "rapport": 100.0,
                "discovery": 100.0,
                "objection": 100.0,
                "closing": 100.0,
                "overall": 100.00000000000001,
            },
        }
    )
    session = await backend.send_message("S1", "Entendo, qual o orçamento? Podemos fechar hoje.")
    assert len(session.messages) == 2
    assert session.last_metrics is not None and session.last_metrics.overall == 100.0
