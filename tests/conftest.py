import sys
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from salescoach.models import Persona, PremiumStatus, Session  # noqa: E402
from salescoach.services.transport import BackendTransport  # noqa: E402

PERSONAS = [
    Persona(key="skeptical_buyer", name="Skeptical Buyer"),
    Persona(key="price_objector", name="Price Objector"),
]


def make_session(**overrides: Any) -> Session:
    """Session document as the backend would return it."""
    data: dict[str, Any] = {
        "id": "S1",
        "seller_email": "a@x.com",
        "persona_key": "skeptical_buyer",
        "status": "active",
        "messages": [],
        "current_score": 0.0,
    }
    data.update(overrides)
    return Session.model_validate(data)


def exchange(text: str, reply: str, ts: str = "2026-10-17T12:00:00+00:00") -> list[dict[str, str]]:
    return [
        {"role": "seller", "text": text, "ts": ts},
        {"role": "ai", "text": reply, "ts": ts},
    ]


METRICS = {"rapport": 100.0, "discovery": 0.0, "objection": 0.0, "closing": 0.0, "overall": 30.0}


@pytest.fixture
def transport() -> MagicMock:
    """Backend transport with every call mocked."""
    m = MagicMock(spec=BackendTransport)
    m.base_url = "http://backend.test"
    m.list_personas = AsyncMock(return_value=list(PERSONAS))
    m.register = AsyncMock(return_value=True)
    m.fetch_weights = AsyncMock(return_value=None)
    m.save_weights = AsyncMock(return_value=True)
    m.start_session = AsyncMock(return_value=make_session())
    m.send_message = AsyncMock()
    m.finish_session = AsyncMock()
    m.fetch_history = AsyncMock(return_value=[])
    m.fetch_leaderboard = AsyncMock(return_value=[])
    m.fetch_premium_status = AsyncMock(
        return_value=PremiumStatus(eligible=False, sample_size=5, reason="Complete 5 more sessions")
    )
    return m


@pytest.fixture
def persona_keys() -> list[str]:
    return [p.key for p in PERSONAS]
