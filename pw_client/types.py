# =============================================================================
# PW Client -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

from .constants import (
    ENDPOINT_API,
    ENDPOINT_GAME_HTTP,
    ENDPOINT_GAME_WS,
    HANDLE_PING,
    INIT_REDELIVERY_DELAY,
    INIT_TIMEOUT,
    RECONNECT_ATTEMPT_WINDOW,
    RECONNECT_INTERVAL,
    RECONNECT_MAX_ATTEMPTS,
)

# Returned by a callback to skip the remaining callbacks of one dispatch
STOP: Final = "STOP"


class ConnectionState(str, Enum):
    """Lifecycle state of a :class:`~pw_client.session.ConnectionSession`.

    Typical flow: IDLE -> CONNECTING -> CONNECTED -> CLOSING -> CLOSED.
    CONNECTED may fall back to CONNECTING after an unexpected drop.
    CLOSED is terminal.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class WorldPacket:
    """A decoded frame from the game server.

    Attributes:
        kind: Packet kind, e.g. ``"player_chat"``. ``None`` if the frame
            carried no kind at all.
        payload: Packet data. Callbacks may patch it in place.
        known: False when *kind* is not in the codec's packet table.
    """

    kind: str | None
    payload: dict[str, Any]
    known: bool = True


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one callback-stage run."""

    count: int = 0
    stopped: bool = False


@dataclass(slots=True)
class LatencyRef:
    """Simulated network latency in seconds, shared between buckets."""

    latency: float = 0.0


@dataclass
class GameClientSettings:
    """Configuration consumed when a game client is constructed.

    Attributes:
        reconnectable: Rejoin automatically after failures and drops.
        max_reconnect_attempts: Retries allowed inside one attempt window.
        retry_interval: Seconds to wait between attempts.
        attempt_window: Seconds after which the attempt counter resets.
        handled_packets: Packets answered automatically: ``"PING"``
            echoes pings, ``"INIT"`` acknowledges the init packet.
        init_timeout: Seconds to wait for the init packet after the
            socket opens before the attempt counts as failed.
        init_redelivery_delay: Seconds before the init event is
            dispatched a second time.
        endpoint: Base ``wss://`` URL of the game server.
    """

    reconnectable: bool = True
    max_reconnect_attempts: int = RECONNECT_MAX_ATTEMPTS
    retry_interval: float = RECONNECT_INTERVAL
    attempt_window: float = RECONNECT_ATTEMPT_WINDOW
    handled_packets: frozenset[str] = field(
        default_factory=lambda: frozenset({HANDLE_PING})
    )
    init_timeout: float = INIT_TIMEOUT
    init_redelivery_delay: float = INIT_REDELIVERY_DELAY
    endpoint: str = ENDPOINT_GAME_WS


@dataclass(slots=True)
class ReconnectPolicy:
    """Retry policy of one session.

    Only *enabled* changes after construction, through ``disconnect()``.
    """

    enabled: bool
    max_attempts: int
    retry_interval: float
    attempt_window: float

    @classmethod
    def from_settings(cls, settings: GameClientSettings) -> ReconnectPolicy:
        return cls(
            enabled=settings.reconnectable,
            max_attempts=settings.max_reconnect_attempts,
            retry_interval=settings.retry_interval,
            attempt_window=settings.attempt_window,
        )


@dataclass(slots=True)
class AttemptWindow:
    """Connect attempts counted since *started_at* (``time.monotonic()``)."""

    started_at: float = float("-inf")
    count: int = 0

    def roll(self, now: float, window: float) -> bool:
        """Reset the counter if *window* seconds have passed. Returns True on reset."""
        if self.started_at + window < now:
            self.started_at = now
            self.count = 0
            return True
        return False


@dataclass
class ApiClientOptions:
    """Endpoint URLs used by :class:`~pw_client.api.PWApiClient`."""

    api: str = ENDPOINT_API
    game_http: str = ENDPOINT_GAME_HTTP
    game_ws: str = ENDPOINT_GAME_WS
