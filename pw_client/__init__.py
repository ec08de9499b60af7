"""PW Python client for real-time game worlds.

Usage::

    from pw_client import PWApiClient

    async with PWApiClient(email="me@example.com", password="...") as api:
        await api.authenticate()
        client = await api.join_world("legacy:abcdef")

        @client.on("player_chat")
        async def chat(data, state):
            if data["message"] == "!ping":
                client.send("player_chat", {"message": "pong"})

Joining with a key obtained elsewhere::

    from pw_client import GameClient

    client = await GameClient.join_with_key(join_key)
"""

from ._version import __version__
from .api import BlockCache, PWApiClient
from .client import GameClient
from .errors import (
    APIError,
    ConnectionExhaustedError,
    CredentialError,
    HandlerError,
    ProtocolCloseError,
    PWError,
    SessionStateError,
    UnknownFrameError,
)
from .pipeline import DispatchPipeline
from .protocol import PacketCodec
from .rate_limiter import TokenBucket
from .session import ConnectionSession
from .types import (
    STOP,
    ApiClientOptions,
    ConnectionState,
    GameClientSettings,
    LatencyRef,
    WorldPacket,
)


async def join_world(
    room_id: str,
    *,
    token: str | None = None,
    email: str | None = None,
    password: str | None = None,
    join_data: dict | None = None,
    settings: GameClientSettings | None = None,
) -> GameClient:
    """Log in and join a world in one call.

    Args:
        room_id: World id, e.g. ``"legacy:abcdef"``.
        token: Account token. Takes precedence over email/password.
        email: Account email.
        password: Account password.
        join_data: Extra data sent with the join request.
        settings: Game client settings.

    Returns:
        A joined :class:`GameClient`. Its API client stays open for
        reconnects.

    Raises:
        APIError: If authentication fails.
        CredentialError: If no join key could be obtained.
    """
    api = PWApiClient(token, email=email, password=password)
    if token is None:
        await api.authenticate()
    return await api.join_world(room_id, join_data, settings)


__all__ = [
    "__version__",
    "join_world",
    "GameClient",
    "PWApiClient",
    "BlockCache",
    "ConnectionSession",
    "DispatchPipeline",
    "PacketCodec",
    "TokenBucket",
    "STOP",
    "ApiClientOptions",
    "ConnectionState",
    "GameClientSettings",
    "LatencyRef",
    "WorldPacket",
    "PWError",
    "APIError",
    "CredentialError",
    "ConnectionExhaustedError",
    "ProtocolCloseError",
    "HandlerError",
    "UnknownFrameError",
    "SessionStateError",
]
