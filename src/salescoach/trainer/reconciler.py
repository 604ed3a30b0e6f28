"""Optimistic chat updates and their reconciliation with the backend.

The seller's message is shown before the backend answers. The entry is
tagged ``pending`` with a ``client_ref`` so it can be told apart from
acknowledged messages. When the backend answers, its session document
replaces the local one wholesale; when it fails, the pending entry is
removed again so the visible log only holds acknowledged messages.
"""

from datetime import datetime
from typing import Tuple
from uuid import uuid4

from ..errors import StaleResponseError
from ..models import Message, MessageRole, Session, utcnow


def append_pending(
    session: Session, text: str, now: datetime | None = None
) -> Tuple[Session, Message]:
    """Return ``session`` with a speculative seller message appended, plus that message."""
    message = Message(
        role=MessageRole.SELLER,
        text=text,
        timestamp=now or utcnow(),
        pending=True,
        client_ref=uuid4().hex,
    )
    return session.model_copy(update={"messages": session.messages + (message,)}), message


def reconcile(local: Session, authoritative: Session, keep_metrics: bool = False) -> Session:
    """Replace the local document with the backend's.

    No merge: optimistic entries disappear and the backend's log is taken
    as is. With ``keep_metrics`` the previous metrics survive a response
    that carries none (the finish call does not always recompute them).
    """
    if authoritative.id != local.id:
        raise StaleResponseError(local.id, authoritative.id)
    if keep_metrics and authoritative.last_metrics is None and local.last_metrics is not None:
        return authoritative.model_copy(update={"last_metrics": local.last_metrics})
    return authoritative


def rollback(session: Session, pending: Message) -> Session:
    """Drop the optimistic entry identified by ``pending.client_ref``."""
    if pending.client_ref is None:
        return session
    remaining = tuple(m for m in session.messages if m.client_ref != pending.client_ref)
    return session.model_copy(update={"messages": remaining})


def acknowledged(session: Session) -> Session:
    """The session without any pending entries."""
    if not session.has_pending:
        return session
    return session.model_copy(
        update={"messages": tuple(m for m in session.messages if not m.pending)}
    )
