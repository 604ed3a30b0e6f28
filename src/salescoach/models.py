from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SELLER = "seller"
    MANAGER = "manager"


class WeightScope(str, Enum):
    USER = "user"
    TEAM = "team"
    GLOBAL = "global"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    FINISHED = "finished"


class MessageRole(str, Enum):
    SELLER = "seller"
    COUNTERPART = "counterpart"


class LeaderboardPeriod(str, Enum):
    WEEK = "7d"
    MONTH = "30d"
    ALL = "all"


# Spellings the backend uses for the simulated buyer's turns.
_COUNTERPART_ALIASES = {"ai", "assistant", "buyer", "client", "counterpart"}


class Identity(BaseModel):
    """The trainee (or manager) acting in this client."""

    model_config = ConfigDict(frozen=True)

    email: str
    display_name: str = ""
    team: str | None = None
    role: Role = Role.SELLER

    @field_validator("email", "display_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("team")
    @classmethod
    def _blank_team_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @property
    def is_manager(self) -> bool:
        return self.role is Role.MANAGER

    def assertion(self) -> str:
        """Capability claim sent out-of-band as ``email|role|team``."""
        return f"{self.email}|{self.role.value}|{self.team or ''}"

    def to_registration(self) -> Dict[str, Any]:
        return {
            "name": self.display_name or self.email,
            "email": self.email,
            "team": self.team,
            "role": self.role.value,
        }


class Persona(BaseModel):
    """Simulated-buyer profile. Reference data, read once at startup."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    key: str
    name: str
    description: str = ""
    traits: Tuple[str, ...] = ()
    difficulty: str | None = None
    disc_profile: str | None = None
    triggers: Tuple[str, ...] = ()


class Message(BaseModel):
    """One chat turn.

    ``pending`` and ``client_ref`` only exist on the client: they mark an
    optimistic entry the backend has not acknowledged yet.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    role: MessageRole
    text: str
    timestamp: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("timestamp", "ts"),
    )
    pending: bool = Field(default=False, exclude=True)
    client_ref: str | None = Field(default=None, exclude=True)

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() in _COUNTERPART_ALIASES:
            return MessageRole.COUNTERPART
        return value

    @field_validator("text")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message text must not be empty")
        return value


METRIC_DECIMALS = 6


class MetricSet(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    rapport: float = Field(default=0.0, ge=0.0, le=100.0)
    discovery: float = Field(default=0.0, ge=0.0, le=100.0)
    objection: float = Field(default=0.0, ge=0.0, le=100.0)
    closing: float = Field(default=0.0, ge=0.0, le=100.0)
    overall: float | None = Field(default=None, ge=0.0, le=100.0)

    @field_validator("rapport", "discovery", "objection", "closing", "overall", mode="before")
    @classmethod
    def _absorb_float_noise(cls, value: Any) -> Any:
        # float drift from weight normalization, e.g. 100.00000000000001
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return round(float(value), METRIC_DECIMALS)
        return value


class WeightVector(BaseModel):
    """Coefficients combining the four sub-metrics into an overall score."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    rapport: float = Field(ge=0.0)
    discovery: float = Field(ge=0.0)
    objection: float = Field(ge=0.0)
    closing: float = Field(ge=0.0)

    @property
    def total(self) -> float:
        return self.rapport + self.discovery + self.objection + self.closing

    def normalized(self) -> "WeightVector":
        total = self.total
        if total <= 0:
            return self
        return WeightVector(
            rapport=self.rapport / total,
            discovery=self.discovery / total,
            objection=self.objection / total,
            closing=self.closing / total,
        )

    def as_dict(self) -> Dict[str, float]:
        return self.model_dump()


DEFAULT_WEIGHTS = WeightVector(rapport=0.3, discovery=0.2, objection=0.3, closing=0.2)


class Session(BaseModel):
    """A roleplay session document as the backend returns it."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id", "session_id"))
    seller_email: str
    persona_key: str
    status: SessionStatus = SessionStatus.ACTIVE
    messages: Tuple[Message, ...] = ()
    current_score: float | None = None
    last_metrics: MetricSet | None = None
    scoring_weights: WeightVector | None = None

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    @property
    def is_finished(self) -> bool:
        return self.status is SessionStatus.FINISHED

    @property
    def has_pending(self) -> bool:
        return any(m.pending for m in self.messages)


class PremiumStatus(BaseModel):
    """Server verdict on premium access.

    ``sample_size`` is the averaging window the server applies (its ``last_n``),
    i.e. how many recent sessions are required and averaged, not how many the
    seller has completed so far. ``reason`` says how many are still missing.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    eligible: bool = False
    average: float = 0.0
    sample_size: int = Field(
        default=0,
        validation_alias=AliasChoices("sample_size", "last_n"),
        description="Averaging window (number of recent sessions) used by the server.",
    )
    reason: str | None = None


class HistoryEntry(BaseModel):
    """Summary of one finished session."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    session_id: str | None = None
    seller_email: str
    persona_key: str
    final_score: float = 0.0
    created_at: datetime | None = None
    feedback: str | None = None


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    seller_email: str
    session_count: int = Field(
        default=0, validation_alias=AliasChoices("session_count", "sessions", "count")
    )
    average_score: float = Field(
        default=0.0, validation_alias=AliasChoices("average_score", "avg_score")
    )
