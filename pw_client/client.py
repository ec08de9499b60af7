# =============================================================================
# PW Client -- Game Client
# =============================================================================
#
# Primary public API.  Holds the hooks and callbacks, the settings and the
# attempt counter, and creates one ConnectionSession per join.  Handlers
# registered here survive reconnects and rejoins.
# =============================================================================

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from ._logging import logger
from .errors import SessionStateError
from .pipeline import Callback, DispatchPipeline, Hook
from .protocol import PacketCodec
from .session import ConnectionSession, Connector
from .types import AttemptWindow, ConnectionState, GameClientSettings, LatencyRef

if TYPE_CHECKING:
    from .api import PWApiClient


class GameClient:
    """Async client for one game world connection at a time.

    Args:
        api: Logged-in API client used to fetch join keys. Without one the
            client can only join through :meth:`join_with_key`.
        settings: Reconnect and packet-handling configuration.
        codec: Packet codec shared by every session.
        connector: Coroutine function opening a WebSocket for a URL.
        latency_ref: Simulated latency applied to outbound pacing.

    Example::

        api = PWApiClient(email="me@example.com", password="...")
        await api.authenticate()
        client = GameClient(api)

        @client.on("player_chat")
        async def chat(data, state):
            print(data["message"])

        await client.join("legacy:abcdef")
    """

    def __init__(
        self,
        api: PWApiClient | None = None,
        settings: GameClientSettings | None = None,
        *,
        codec: PacketCodec | None = None,
        connector: Connector | None = None,
        latency_ref: LatencyRef | None = None,
    ) -> None:
        self.api = api
        self.settings = settings or GameClientSettings()
        self.latency_ref = latency_ref or LatencyRef()

        self._pipeline = DispatchPipeline()
        self._attempts = AttemptWindow()
        self._codec = codec or PacketCodec()
        self._connector = connector
        self._session: ConnectionSession | None = None
        self._state_listeners: list[Callable[[ConnectionState], Any]] = []

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> GameClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    # -- Properties -----------------------------------------------------------

    @property
    def session(self) -> ConnectionSession | None:
        """The current session, if :meth:`join` was called."""
        return self._session

    @property
    def state(self) -> ConnectionState:
        if self._session is None:
            return ConnectionState.IDLE
        return self._session.state

    @property
    def connected(self) -> bool:
        return self._session is not None and self._session.connected

    @property
    def pipeline(self) -> DispatchPipeline:
        return self._pipeline

    # -- Join -----------------------------------------------------------------

    async def join(self, room_id: str, join_data: dict[str, Any] | None = None) -> GameClient:
        """Join world *room_id* and wait until the init packet arrives.

        A previous session is closed first.

        Raises:
            SessionStateError: No API client, or a join is already running.
            CredentialError: No join key could be obtained.
            ConnectionExhaustedError: Every attempt in the window failed.
            ProtocolCloseError: The server closed before init and
                reconnecting is disabled.
        """
        if self.api is None:
            raise SessionStateError("join() needs an API client, use join_with_key() instead")
        session = await self._replace_session(self._join_key_for)
        await session.join(room_id, join_data)
        return self

    @classmethod
    async def join_with_key(
        cls,
        join_key: str,
        join_data: dict[str, Any] | None = None,
        settings: GameClientSettings | None = None,
        **kwargs: Any,
    ) -> GameClient:
        """Create a client and join with a key obtained elsewhere.

        The resulting client cannot rejoin after a drop, since join keys are
        single use. Extra keyword arguments go to the constructor.
        """
        client = cls(None, settings, **kwargs)
        session = await client._replace_session(None)
        await session.join_with_key(join_key, join_data)
        return client

    async def _replace_session(self, provider: Any) -> ConnectionSession:
        old = self._session
        if old is not None:
            if old.state == ConnectionState.CONNECTING:
                raise SessionStateError("Already trying to connect")
            if old.state != ConnectionState.CLOSED:
                logger.info("Leaving %s before joining another world", old.target or "world")
                await old.disconnect(False)

        self._session = ConnectionSession(
            self._pipeline,
            self.settings,
            credential_provider=provider,
            attempts=self._attempts,
            codec=self._codec,
            connector=self._connector,
            latency_ref=self.latency_ref,
            on_state_change=self._on_state_change,
        )
        return self._session

    async def _join_key_for(self, room_id: str) -> str:
        api = self.api
        if api is None:
            raise SessionStateError("API client was removed while joining")
        room_type = await api.get_room_type()
        return await api.get_join_key(room_type, room_id)

    # -- Send / Disconnect ----------------------------------------------------

    def send(self, kind: str, payload: dict[str, Any] | None = None, direct: bool = False) -> None:
        """Queue a packet for the server. Does nothing while not joined."""
        if self._session is None:
            logger.debug("Not sending '%s', never joined", kind)
            return
        self._session.send(kind, payload, direct)

    async def disconnect(self, reconnect: bool | float = False) -> bool:
        """Close the connection.

        Args:
            reconnect: False closes for good. True rejoins right away,
                a number of seconds rejoins after that delay.

        Returns:
            True if the socket is closed when this returns.
        """
        if self._session is None:
            return True
        return await self._session.disconnect(reconnect)

    # -- Handler registration -------------------------------------------------

    def add_hook(self, hook: Hook) -> GameClient:
        """Add a hook that runs for every packet before its callbacks.

        A hook returns a dict merged into the state passed to callbacks,
        or None. Hooks cannot be removed.
        """
        self._pipeline.add_hook(hook)
        return self

    def add_callback(self, kind: str, *callbacks: Callback) -> GameClient:
        """Append callbacks for packet *kind* (or ``debug``, ``raw``,
        ``unknown``, ``error``)."""
        self._pipeline.add_callback(kind, *callbacks)
        return self

    def prepend_callback(self, kind: str, *callbacks: Callback) -> GameClient:
        self._pipeline.prepend_callback(kind, *callbacks)
        return self

    def remove_callback(self, kind: str, callback: Callback | None = None) -> Callback | None:
        """Remove one callback by identity, or every callback for *kind*."""
        return self._pipeline.remove_callback(kind, callback)

    def on(self, kind: str) -> Callable[[Callback], Callback]:
        """Decorator form of :meth:`add_callback`.

        Example::

            @client.on("player_joined")
            def joined(data, state):
                print(data["properties"]["username"])
        """

        def decorator(fn: Callback) -> Callback:
            self._pipeline.add_callback(kind, fn)
            return fn

        return decorator

    def on_state_change(self, fn: Callable[[ConnectionState], Any]) -> Callable[[ConnectionState], Any]:
        """Register a listener for session state transitions."""
        self._state_listeners.append(fn)
        return fn

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "state": self.state.value,
            "hooks": len(self._pipeline.hooks),
            "callback_kinds": self._pipeline.callbacks.kinds(),
        }
        if self._session is not None:
            stats["session"] = self._session.get_stats()
        return stats

    # -- Internal -------------------------------------------------------------

    def _on_state_change(self, state: ConnectionState) -> None:
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")
