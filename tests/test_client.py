"""Tests for GameClient (mocked API client, scripted sockets)."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeConnector, FakeWebSocket, wait_until
from pw_client.client import GameClient
from pw_client.errors import SessionStateError
from pw_client.types import ConnectionState


@pytest.fixture
def api():
    api = MagicMock()
    api.get_room_type = AsyncMock(return_value="pixelwalker4")
    api.get_join_key = AsyncMock(return_value="join-key")
    return api


class TestProperties:
    def test_idle_before_join(self):
        client = GameClient()
        assert client.state == ConnectionState.IDLE
        assert client.connected is False
        assert client.session is None

    def test_send_before_join_is_noop(self):
        GameClient().send("player_chat", {"message": "hi"})

    @pytest.mark.asyncio
    async def test_disconnect_before_join(self):
        assert await GameClient().disconnect() is True

    def test_stats_before_join(self):
        client = GameClient()
        client.add_hook(lambda p: None)
        client.add_callback("player_chat", lambda data, state: None)
        assert client.get_stats() == {
            "state": "idle",
            "hooks": 1,
            "callback_kinds": ["player_chat"],
        }


class TestRegistration:
    def test_chaining(self):
        client = GameClient()
        cb = lambda data, state: None  # noqa: E731
        assert client.add_hook(lambda p: None) is client
        assert client.add_callback("player_chat", cb) is client
        assert client.prepend_callback("player_chat", cb) is client
        assert client.remove_callback("player_chat", cb) is cb

    def test_on_decorator(self):
        client = GameClient()

        @client.on("player_joined")
        def joined(data, state):
            pass

        assert client.pipeline.callbacks.get("player_joined") == [joined]


class TestJoin:
    @pytest.mark.asyncio
    async def test_join_without_api(self):
        with pytest.raises(SessionStateError):
            await GameClient().join("room-1")

    @pytest.mark.asyncio
    async def test_join_fetches_key_for_room(self, api, fast_settings):
        connector = FakeConnector(FakeWebSocket.joined())
        client = GameClient(api, fast_settings, connector=connector)

        assert await client.join("room-1") is client
        assert client.connected is True
        assert client.state == ConnectionState.CONNECTED
        api.get_join_key.assert_awaited_once_with("pixelwalker4", "room-1")
        await client.disconnect()
        assert client.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_handlers_survive_rejoin(self, api, fast_settings):
        first = FakeWebSocket.joined()
        second = FakeWebSocket.joined()
        connector = FakeConnector(first, second)
        client = GameClient(api, fast_settings, connector=connector)
        inits = []
        client.add_callback("player_init", lambda data, state: inits.append(data))

        await client.join("room-1")
        old_session = client.session
        await client.join("room-2")

        assert client.session is not old_session
        assert old_session.state == ConnectionState.CLOSED
        assert first.closed is True
        assert len(inits) == 2
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_state_listeners(self, api, fast_settings):
        client = GameClient(api, fast_settings, connector=FakeConnector(FakeWebSocket.joined()))
        states = []
        client.on_state_change(states.append)

        await client.join("room-1")
        await client.disconnect()
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.CLOSING,
            ConnectionState.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_send_reaches_socket(self, api, fast_settings):
        ws = FakeWebSocket.joined()
        client = GameClient(api, fast_settings, connector=FakeConnector(ws))
        await client.join("room-1")

        client.send("player_chat", {"message": "hello"})
        await wait_until(lambda: ws.sent_kinds() == ["player_chat"])
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_context_manager_disconnects(self, api, fast_settings):
        ws = FakeWebSocket.joined()
        async with GameClient(api, fast_settings, connector=FakeConnector(ws)) as client:
            await client.join("room-1")
        assert ws.closed is True
        assert client.state == ConnectionState.CLOSED


class TestJoinWithKey:
    @pytest.mark.asyncio
    async def test_join_with_key(self, fast_settings):
        ws = FakeWebSocket.joined()
        connector = FakeConnector(ws)
        client = await GameClient.join_with_key(
            "given-key", {"spawn": [0, 0]}, fast_settings, connector=connector
        )
        assert client.connected is True
        assert "joinKey=given-key" in connector.urls[0]

        ws.drop(1006)
        await wait_until(lambda: client.state == ConnectionState.CLOSED)
        assert connector.calls == 1
