# =============================================================================
# PW Client -- Connection Session
# =============================================================================
#
# One join attempt sequence against the game server: open the socket, wait
# for the init packet, retry within the attempt budget, rejoin after an
# unexpected drop, and pace outbound packets through two token buckets.
# =============================================================================

from __future__ import annotations

import asyncio
import base64
import copy
import time

from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import orjson
import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed

from ._logging import logger
from .constants import (
    BUCKET_INTERVAL,
    BULK_TOKEN_LIMIT,
    CHAT_PACKET,
    CHAT_TOKEN_LIMIT,
    CONNECTION_TIMEOUT,
    HANDLE_INIT,
    HANDLE_PING,
    INIT_ACK_PACKET,
    INIT_PACKET,
    MAX_MESSAGE_SIZE,
    OWNER_BULK_TOKEN_LIMIT,
    OWNER_CHAT_TOKEN_LIMIT,
    PING_PACKET,
    PLAYER_BULK_TOKEN_LIMIT,
    PLAYER_CHAT_TOKEN_LIMIT,
    WS_CLOSE_ABNORMAL,
    WS_CLOSE_NORMAL,
)
from .errors import (
    APIError,
    ConnectionExhaustedError,
    CredentialError,
    ProtocolCloseError,
    SessionStateError,
    UnknownFrameError,
)
from .pipeline import DispatchPipeline
from .protocol import PacketCodec
from .rate_limiter import TokenBucket
from .types import (
    AttemptWindow,
    ConnectionState,
    GameClientSettings,
    LatencyRef,
    ReconnectPolicy,
    WorldPacket,
)

CredentialProvider = Callable[[str], Awaitable[str]]
Connector = Callable[[str], Awaitable[Any]]


async def _default_connector(url: str) -> websockets.asyncio.client.ClientConnection:
    return await websockets.asyncio.client.connect(
        url,
        max_size=MAX_MESSAGE_SIZE,
        open_timeout=None,  # asyncio.wait_for handles timeout
    )


def _close_details(exc: ConnectionClosed) -> tuple[int, str]:
    if exc.rcvd is not None:
        return exc.rcvd.code, exc.rcvd.reason
    return WS_CLOSE_ABNORMAL, ""


class ConnectionSession:
    """A single session with the game server.

    The session moves IDLE -> CONNECTING -> CONNECTED and ends in CLOSED,
    which is terminal. Hooks and callbacks live in *pipeline*, which the
    owning client shares with every session it creates.

    Args:
        pipeline: Dispatch pipeline that receives inbound packets.
        settings: Reconnect and packet-handling configuration.
        credential_provider: Coroutine function returning a fresh join key
            for a room id. Without one the session can only be joined with
            :meth:`join_with_key` and never rejoins after a drop.
        attempts: Attempt counter shared across sessions of one client.
        codec: Packet codec (default :class:`PacketCodec`).
        connector: Coroutine function opening a WebSocket for a URL.
        latency_ref: Simulated latency shared by both buckets.
        on_state_change: Called with the new state on every transition.
    """

    def __init__(
        self,
        pipeline: DispatchPipeline,
        settings: GameClientSettings | None = None,
        *,
        credential_provider: CredentialProvider | None = None,
        attempts: AttemptWindow | None = None,
        codec: PacketCodec | None = None,
        connector: Connector | None = None,
        latency_ref: LatencyRef | None = None,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._settings = settings or GameClientSettings()
        self._policy = ReconnectPolicy.from_settings(self._settings)
        self._attempts = attempts if attempts is not None else AttemptWindow()
        self._credential_provider = credential_provider
        self._codec = codec or PacketCodec()
        self._connector = connector or _default_connector
        self._on_state_change = on_state_change

        latency_ref = latency_ref or LatencyRef()
        self.bulk_bucket = TokenBucket(BULK_TOKEN_LIMIT, BUCKET_INTERVAL, latency_ref=latency_ref)
        self.chat_bucket = TokenBucket(CHAT_TOKEN_LIMIT, BUCKET_INTERVAL, latency_ref=latency_ref)

        # State
        self._state = ConnectionState.IDLE
        self._ws: Any | None = None
        self._target: str | None = None
        self._join_data: dict[str, Any] | None = None
        self._join_key: str | None = None
        self._rejoin_delay = 0.0
        self._dispatch_lock = asyncio.Lock()
        self._messages_received = 0
        self._messages_sent = 0

        # Tasks
        self._connect_task: asyncio.Task[None] | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._redelivery: asyncio.TimerHandle | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._state == ConnectionState.CONNECTED

    @property
    def target(self) -> str | None:
        return self._target

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def attempts(self) -> AttemptWindow:
        return self._attempts

    # -- Join -----------------------------------------------------------------

    async def join(self, target: str, join_data: dict[str, Any] | None = None) -> ConnectionSession:
        """Join room *target* and wait for the init packet.

        Raises:
            CredentialError: No join key could be obtained.
            ConnectionExhaustedError: Every attempt in the window failed.
            ProtocolCloseError: The server closed before init and
                reconnecting is disabled.
        """
        if self._credential_provider is None:
            raise SessionStateError(
                "join() needs a credential provider, use join_with_key() instead"
            )
        self._begin(target, join_data)
        await self._run_connect()
        return self

    async def join_with_key(
        self,
        join_key: str,
        join_data: dict[str, Any] | None = None,
    ) -> ConnectionSession:
        """Join with a join key obtained elsewhere.

        The key is reused for retries before init; the session will not
        rejoin after a drop since join keys are single use.
        """
        if not join_key:
            raise CredentialError("Join key is empty")
        self._join_key = join_key
        self._begin(None, join_data)
        await self._run_connect()
        return self

    def _begin(self, target: str | None, join_data: dict[str, Any] | None) -> None:
        if self._state != ConnectionState.IDLE:
            raise SessionStateError(f"Cannot join from state {self._state.value}")
        self._target = target
        self._join_data = join_data
        self._set_state(ConnectionState.CONNECTING)

    async def _run_connect(self) -> None:
        self._connect_task = asyncio.ensure_future(self._connect_sequence())
        try:
            await self._connect_task
        except asyncio.CancelledError:
            if self._state == ConnectionState.CLOSED and not self._policy.enabled:
                raise SessionStateError("Session was disconnected while joining") from None
            raise
        finally:
            self._connect_task = None

    async def _connect_sequence(self) -> None:
        """Attempt to connect until init arrives or the budget runs out."""
        policy = self._policy
        if self._attempts.roll(time.monotonic(), policy.attempt_window):
            logger.debug("Attempt window expired, counter reset")

        last_error: BaseException | None = None
        try:
            while True:
                if self._attempts.count > policy.max_attempts:
                    self._mark_closed()
                    raise ConnectionExhaustedError(self._attempts.count, last_error)
                self._attempts.count += 1
                self._set_state(ConnectionState.CONNECTING)

                try:
                    await self._attempt()
                    return
                except CredentialError:
                    self._mark_closed()
                    raise
                except ProtocolCloseError as exc:
                    last_error = exc
                    if not policy.enabled:
                        self._mark_closed()
                        raise

                self._debug(
                    f"Failed to connect ({last_error}), retrying in "
                    f"{policy.retry_interval:.1f}s "
                    f"(attempt {self._attempts.count}/{policy.max_attempts + 1})."
                )
                await asyncio.sleep(policy.retry_interval)
        except (asyncio.CancelledError, Exception):
            if self._state != ConnectionState.CLOSED:
                self._mark_closed()
            raise

    async def _attempt(self) -> None:
        """One socket: open it and wait for the init packet."""
        join_key = await self._obtain_join_key()
        url = self._build_url(join_key)

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        try:
            ws = await asyncio.wait_for(self._connector(url), timeout=CONNECTION_TIMEOUT)
        except asyncio.TimeoutError:
            raise ProtocolCloseError(
                WS_CLOSE_ABNORMAL, f"Connection timed out after {CONNECTION_TIMEOUT}s"
            ) from None
        except Exception as exc:
            raise ProtocolCloseError(WS_CLOSE_ABNORMAL, f"Failed to connect: {exc}") from exc

        self._ws = ws
        self._debug("Connected successfully, waiting for init packet.")
        self._recv_task = asyncio.ensure_future(self._recv_loop(ws, waiter))

        try:
            await asyncio.wait_for(waiter, timeout=self._settings.init_timeout)
        except asyncio.TimeoutError:
            self._discard_socket()
            raise ProtocolCloseError(
                WS_CLOSE_ABNORMAL,
                f"No init packet within {self._settings.init_timeout}s",
            ) from None
        except asyncio.CancelledError:
            self._discard_socket()
            raise

    async def _obtain_join_key(self) -> str:
        if self._credential_provider is None:
            join_key = self._join_key
        else:
            try:
                join_key = await self._credential_provider(self._target or "")
            except APIError as exc:
                raise CredentialError(f"Unable to secure a join key: {exc}") from exc
        if not join_key:
            raise CredentialError("Unable to secure a join key - are the account details valid?")
        return join_key

    def _build_url(self, join_key: str) -> str:
        params = {"joinKey": join_key}
        if self._join_data is not None:
            params["joinData"] = base64.b64encode(orjson.dumps(self._join_data)).decode()
        return f"{self._settings.endpoint}/ws?{urlencode(params)}"

    # -- Disconnect -----------------------------------------------------------

    async def disconnect(self, reconnect: bool | float = False) -> bool:
        """Close the socket.

        Args:
            reconnect: False (default) disables reconnecting and closes the
                session for good. True keeps reconnecting enabled so the
                session rejoins right after the close; a number of seconds
                rejoins after that delay.

        Returns:
            True if the socket is closed when this returns.
        """
        if isinstance(reconnect, bool):
            self._policy.enabled = reconnect
            self._rejoin_delay = 0.0
        else:
            self._policy.enabled = True
            self._rejoin_delay = max(0.0, float(reconnect))

        if not self._policy.enabled:
            self._cancel_tasks()

        ws = self._ws
        if ws is None:
            if not self._policy.enabled:
                self._mark_closed()
            return True

        recv_task = self._recv_task
        self._set_state(ConnectionState.CLOSING)
        try:
            await ws.close(WS_CLOSE_NORMAL, "Client disconnect")
        except Exception as exc:
            logger.debug("Close failed: %s", exc)

        if recv_task is not None and recv_task is not asyncio.current_task():
            await asyncio.gather(recv_task, return_exceptions=True)
        return self._ws is not ws

    def _cancel_tasks(self) -> None:
        for task in (self._connect_task, self._reconnect_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._reconnect_task = None

    # -- Send -----------------------------------------------------------------

    def send(self, kind: str, payload: dict[str, Any] | None = None, direct: bool = False) -> None:
        """Queue a packet for the server.

        Chat packets go through the chat bucket, everything else through
        the bulk bucket. *direct* skips both. Does nothing without an
        open socket; check :attr:`connected` for feedback.
        """
        if self._ws is None:
            logger.debug("Not sending '%s', no open socket", kind)
            return

        frame = self._codec.encode(kind, payload)
        logger.debug(
            "Sent %s with %d parameters", kind, 0 if payload is None else len(payload)
        )
        if direct:
            self._fire_task(self._transport_send(frame))
            return

        bucket = self.chat_bucket if kind == CHAT_PACKET else self.bulk_bucket
        bucket.queue(lambda: self._transport_send(frame))

    async def _transport_send(self, frame: bytes) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(frame)
            self._messages_sent += 1
        except ConnectionClosed:
            logger.debug("Send failed: connection closed")

    # -- Internal: receive loop -----------------------------------------------

    async def _recv_loop(self, ws: Any, waiter: asyncio.Future[None]) -> None:
        """Read frames until the socket closes, one dispatch at a time."""
        code, reason = WS_CLOSE_ABNORMAL, ""
        try:
            async for message in ws:
                await self._handle_frame(message, waiter)
            code = ws.close_code if ws.close_code is not None else WS_CLOSE_NORMAL
            reason = ws.close_reason or ""
        except ConnectionClosed as exc:
            code, reason = _close_details(exc)
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)
        self._on_socket_closed(ws, waiter, code, reason)

    async def _handle_frame(self, data: Any, waiter: asyncio.Future[None]) -> None:
        self._messages_received += 1
        packet = self._codec.decode(data)
        if packet is None:
            return
        logger.debug("Received %s", packet.kind)

        async with self._dispatch_lock:
            await self._emit("raw", packet)
            if not packet.known:
                await self._emit("unknown", UnknownFrameError(packet.kind, packet.payload))
                return

            if packet.kind == INIT_PACKET:
                self._handle_init(packet, waiter)
            elif packet.kind == PING_PACKET and HANDLE_PING in self._settings.handled_packets:
                # The server expects its ping echoed back unpaced
                self.send(PING_PACKET, direct=True)

            await self._dispatch(packet)

    def _handle_init(self, packet: WorldPacket, waiter: asyncio.Future[None]) -> None:
        props = packet.payload.get("player_properties")
        if isinstance(props, dict) and props.get("is_world_owner"):
            self.bulk_bucket.token_limit = OWNER_BULK_TOKEN_LIMIT
            self.chat_bucket.token_limit = OWNER_CHAT_TOKEN_LIMIT
        else:
            self.bulk_bucket.token_limit = PLAYER_BULK_TOKEN_LIMIT
            self.chat_bucket.token_limit = PLAYER_CHAT_TOKEN_LIMIT

        if HANDLE_INIT in self._settings.handled_packets:
            self.send(INIT_ACK_PACKET)

        if waiter.done():
            return
        self._set_state(ConnectionState.CONNECTED)
        waiter.set_result(None)
        logger.info("Joined %s", self._target or "world")

        # Listeners attached right after join() returns would miss the first
        # dispatch, so the init packet is delivered once more later.
        replay = WorldPacket(packet.kind, copy.deepcopy(packet.payload), packet.known)
        self._redelivery = asyncio.get_running_loop().call_later(
            self._settings.init_redelivery_delay, self._start_redelivery, replay
        )

    def _start_redelivery(self, packet: WorldPacket) -> None:
        self._redelivery = None
        self._fire_task(self._redeliver(packet))

    async def _redeliver(self, packet: WorldPacket) -> None:
        async with self._dispatch_lock:
            if self._state == ConnectionState.CLOSED:
                return
            await self._dispatch(packet)

    async def _dispatch(self, packet: WorldPacket) -> None:
        try:
            await self._pipeline.dispatch(packet)
        except Exception:
            logger.exception("Unhandled error while dispatching '%s'", packet.kind)

    async def _emit(self, kind: str, data: Any) -> None:
        try:
            await self._pipeline.invoke(kind, data)
        except Exception:
            logger.exception("Unhandled error in '%s' callbacks", kind)

    def _debug(self, message: str) -> None:
        logger.debug(message)
        if self._pipeline.has_callbacks("debug"):
            self._fire_task(self._emit("debug", message))

    # -- Internal: close handling ---------------------------------------------

    def _on_socket_closed(
        self,
        ws: Any,
        waiter: asyncio.Future[None],
        code: int,
        reason: str,
    ) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._recv_task = None
        self._cancel_redelivery()
        self._debug(f'Server closed connection due to code {code}, reason: "{reason}".')

        if not waiter.done():
            # Still joining; the attempt loop decides whether to retry
            waiter.set_exception(ProtocolCloseError(code, reason))
            return

        if not self._policy.enabled:
            self._mark_closed()
            return

        if self._credential_provider is None:
            self._debug("Not attempting to reconnect as this session was created with a join key.")
            self._mark_closed()
            return

        if self._target is None:
            self._debug("Warning: socket closed but no previous room id was kept, not reconnecting.")
            self._mark_closed()
            return

        self._set_state(ConnectionState.CONNECTING)
        self._reconnect_task = asyncio.ensure_future(self._rejoin(self._rejoin_delay))
        self._rejoin_delay = 0.0

    async def _rejoin(self, delay: float) -> None:
        """Start a fresh attempt sequence for the remembered room."""
        if delay > 0:
            await asyncio.sleep(delay)
        self._debug("Attempting to reconnect.")
        try:
            await self._connect_sequence()
        except (ConnectionExhaustedError, CredentialError, ProtocolCloseError) as exc:
            logger.warning("Reconnect to %s failed: %s", self._target, exc)
            self._debug(f"Reconnect failed: {exc}")
        except Exception:
            logger.exception("Reconnect to %s failed", self._target)
        else:
            logger.info("Reconnected to %s", self._target)

    def _discard_socket(self) -> None:
        ws = self._ws
        self._ws = None
        if self._recv_task is not None and self._recv_task is not asyncio.current_task():
            self._recv_task.cancel()
        self._recv_task = None
        if ws is not None:
            self._fire_task(self._close_quietly(ws))

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close(WS_CLOSE_NORMAL, "Client disconnect")
        except Exception as exc:
            logger.debug("Close failed: %s", exc)

    def _cancel_redelivery(self) -> None:
        if self._redelivery is not None:
            self._redelivery.cancel()
            self._redelivery = None

    def _mark_closed(self) -> None:
        self._cancel_redelivery()
        self._discard_socket()
        self.bulk_bucket.clear()
        self.chat_bucket.clear()
        self._set_state(ConnectionState.CLOSED)

    # -- State management -----------------------------------------------------

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)
        if self._on_state_change:
            self._on_state_change(new_state)

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "target": self._target,
            "attempts": self._attempts.count,
            "messages_received": self._messages_received,
            "messages_sent": self._messages_sent,
            "bulk_bucket": self.bulk_bucket.get_stats(),
            "chat_bucket": self.chat_bucket.get_stats(),
        }
