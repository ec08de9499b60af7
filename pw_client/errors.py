# =============================================================================
# PW Client -- Error Types
# =============================================================================

from __future__ import annotations

from typing import Any


class PWError(Exception):
    """Base exception for all PW client errors."""


class CredentialError(PWError):
    """No usable join key could be obtained. Never retried."""


class ConnectionExhaustedError(PWError):
    """Every connect attempt in the current window failed."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Unable to (re)connect after {attempts} attempts")


class ProtocolCloseError(PWError):
    """The server closed the socket before sending the init packet."""

    def __init__(self, code: int, reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Connection closed with code {code}: {reason!r}")


class HandlerError(PWError):
    """A hook or callback raised while handling an event.

    Delivered as the payload of ``error`` events; never raised by the
    client itself.

    Attributes:
        kind: Event kind that was being dispatched.
        error: The exception the handler raised.
        stage: ``"hook"`` or ``"callback"``.
    """

    def __init__(self, kind: str, error: BaseException, stage: str = "callback") -> None:
        self.kind = kind
        self.error = error
        self.stage = stage
        super().__init__(f"{stage} failed for '{kind}': {error!r}")


class UnknownFrameError(PWError):
    """A frame decoded to a kind this client does not know.

    Delivered as the payload of ``unknown`` events, not raised.
    """

    def __init__(self, kind: str | None, payload: Any = None) -> None:
        self.kind = kind
        self.payload = payload
        super().__init__(f"Unknown packet kind: {kind!r}")


class SessionStateError(PWError):
    """Operation not valid in the session's current state."""


class APIError(PWError):
    """HTTP API request failed or returned unusable data."""

    def __init__(self, message: str, code: str | int | None = None, data: Any = None) -> None:
        self.code = code
        self.data = data
        super().__init__(message)
