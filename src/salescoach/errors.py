"""Exception hierarchy for the trainer client.

Validation errors are raised before anything reaches the backend.
Transport errors cover non-success responses, network faults and
undecodable bodies; callers treat all of them as "the operation did not
happen".
"""


class SalesCoachError(Exception):
    """Base class for every error raised by salescoach."""


class InvalidInputError(SalesCoachError, ValueError):
    """A required field is missing or malformed. Never sent to the backend."""


class IllegalTransitionError(InvalidInputError):
    """The requested operation is not legal in the current session phase."""


class TransportError(SalesCoachError):
    """The backend answered with a non-success status or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecodeError(TransportError):
    """The backend answered with a body that does not match the expected shape."""


class SendFailedError(TransportError):
    """A chat message was not acknowledged; ``text`` is what the seller typed."""

    def __init__(self, message: str, text: str, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.text = text


class WeightsUnavailableError(SalesCoachError):
    """No scoring weights exist at user, team or global scope."""


class StaleResponseError(SalesCoachError):
    """A response arrived for a session that is no longer the active one."""

    def __init__(self, expected_id: str | None, received_id: str | None) -> None:
        super().__init__(
            f"response for session {received_id!r} does not match active session {expected_id!r}"
        )
        self.expected_id = expected_id
        self.received_id = received_id
