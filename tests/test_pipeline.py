"""Tests for the hook chain and callback registry."""

import pytest

from pw_client.errors import HandlerError
from pw_client.pipeline import CallbackRegistry, DispatchPipeline
from pw_client.types import STOP, WorldPacket


def packet(kind="player_chat", **payload):
    return WorldPacket(kind, payload)


class TestHooks:
    @pytest.mark.asyncio
    async def test_state_merged_in_registration_order(self, pipeline):
        seen = []
        pipeline.add_hook(lambda p: {"a": 1, "b": 1})
        pipeline.add_hook(lambda p: {"b": 2})
        pipeline.add_hook(lambda p: None)
        pipeline.add_callback("player_chat", lambda data, state: seen.append(state))

        await pipeline.dispatch(packet())
        assert seen == [{"a": 1, "b": 2}]

    @pytest.mark.asyncio
    async def test_async_hooks(self, pipeline):
        seen = []

        async def hook(p):
            return {"player": p.payload["player_id"]}

        pipeline.add_hook(hook)
        pipeline.add_callback("player_chat", lambda data, state: seen.append(state["player"]))
        await pipeline.dispatch(packet(player_id=7))
        assert seen == [7]

    @pytest.mark.asyncio
    async def test_order_survives_callback_churn(self, pipeline):
        order = []
        pipeline.add_hook(lambda p: order.append("h1"))
        pipeline.add_hook(lambda p: order.append("h2"))

        cb = lambda data, state: None  # noqa: E731
        pipeline.add_callback("player_chat", cb)
        await pipeline.dispatch(packet())
        pipeline.remove_callback("player_chat", cb)
        pipeline.prepend_callback("player_chat", cb)
        await pipeline.dispatch(packet())

        assert order == ["h1", "h2", "h1", "h2"]

    @pytest.mark.asyncio
    async def test_throwing_hook_gives_empty_state(self, pipeline):
        seen = []
        errors = []

        def broken(p):
            raise ValueError("bad hook")

        pipeline.add_hook(lambda p: {"a": 1})
        pipeline.add_hook(broken)
        pipeline.add_callback("player_chat", lambda data, state: seen.append(state))
        pipeline.add_callback("error", errors.append)

        await pipeline.dispatch(packet())
        assert seen == [{}]
        assert len(errors) == 1
        assert isinstance(errors[0], HandlerError)
        assert errors[0].stage == "hook"
        assert isinstance(errors[0].error, ValueError)

    @pytest.mark.asyncio
    async def test_throwing_hook_without_error_handler_raises_after_callbacks(self, pipeline):
        seen = []

        def broken(p):
            raise ValueError("bad hook")

        pipeline.add_hook(broken)
        pipeline.add_callback("player_chat", lambda data, state: seen.append(state))

        with pytest.raises(ValueError, match="bad hook"):
            await pipeline.dispatch(packet())
        assert seen == [{}]


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_stop_halts_only_current_dispatch(self, pipeline):
        calls = []

        def first(data, state):
            calls.append("first")
            if data.get("stop"):
                return STOP

        pipeline.add_callback("player_chat", first, lambda data, state: calls.append("second"))

        result = await pipeline.dispatch(packet(stop=True))
        assert calls == ["first"]
        assert result.stopped is True

        result = await pipeline.dispatch(packet())
        assert calls == ["first", "first", "second"]
        assert result.stopped is False
        assert result.count == 2

    @pytest.mark.asyncio
    async def test_dict_result_patches_payload(self, pipeline):
        seen = []
        pipeline.add_callback(
            "player_chat",
            lambda data, state: {"message": data["message"].upper()},
            lambda data, state: seen.append(data["message"]),
        )
        pkt = packet(message="hi")
        await pipeline.dispatch(pkt)
        assert seen == ["HI"]
        assert pkt.payload["message"] == "HI"

    @pytest.mark.asyncio
    async def test_failing_callback_becomes_error_event(self, pipeline):
        calls = []
        errors = []

        def broken(data, state):
            raise KeyError("missing")

        pipeline.add_callback("player_chat", broken, lambda data, state: calls.append("sibling"))
        pipeline.add_callback("error", errors.append)

        result = await pipeline.dispatch(packet())
        assert calls == ["sibling"]
        assert result.count == 1
        assert errors[0].kind == "player_chat"
        assert errors[0].stage == "callback"
        assert isinstance(errors[0].error, KeyError)

    @pytest.mark.asyncio
    async def test_unhandled_failure_reraised_after_siblings(self, pipeline):
        calls = []

        def broken(data, state):
            raise RuntimeError("boom")

        pipeline.add_callback("player_chat", broken, lambda data, state: calls.append("sibling"))

        with pytest.raises(RuntimeError, match="boom"):
            await pipeline.dispatch(packet())
        assert calls == ["sibling"]

    @pytest.mark.asyncio
    async def test_failing_error_handler_reraises_original(self, pipeline):
        def broken(data, state):
            raise RuntimeError("original")

        def broken_handler(err):
            raise ValueError("handler")

        pipeline.add_callback("player_chat", broken)
        pipeline.add_callback("error", broken_handler)

        with pytest.raises(RuntimeError, match="original"):
            await pipeline.dispatch(packet())

    @pytest.mark.asyncio
    async def test_error_event_without_handlers_raises(self, pipeline):
        with pytest.raises(LookupError):
            await pipeline.invoke("error", HandlerError("x", LookupError("gone")))

    @pytest.mark.asyncio
    async def test_custom_events_receive_data_only(self, pipeline):
        seen = []
        pipeline.add_callback("raw", seen.append)
        pkt = packet()
        await pipeline.invoke("raw", pkt)
        assert seen == [pkt]

    @pytest.mark.asyncio
    async def test_async_callbacks(self, pipeline):
        seen = []

        async def cb(data, state):
            seen.append(data["x"])

        pipeline.add_callback("player_chat", cb)
        await pipeline.dispatch(packet(x=3))
        assert seen == [3]

    @pytest.mark.asyncio
    async def test_no_callbacks_is_noop(self, pipeline):
        result = await pipeline.dispatch(packet())
        assert result.count == 0
        assert result.stopped is False


class TestCallbackRegistry:
    def test_prepend_puts_callbacks_first(self):
        registry = CallbackRegistry()
        a, b, c = object(), object(), object()
        registry.add("k", a)
        registry.prepend("k", b, c)
        assert registry.get("k") == [b, c, a]

    def test_remove_by_identity(self):
        registry = CallbackRegistry()
        a, b = object(), object()
        registry.add("k", a, b)
        assert registry.remove("k", a) is a
        assert registry.get("k") == [b]
        assert registry.remove("k", a) is None

    def test_remove_without_callback_clears_kind(self):
        registry = CallbackRegistry()
        registry.add("k", object(), object())
        assert registry.remove("k") is None
        assert registry.get("k") == []
        assert registry.kinds() == []

    def test_remove_unknown_kind(self):
        assert CallbackRegistry().remove("nope", object()) is None

    def test_get_returns_snapshot(self):
        registry = CallbackRegistry()
        a = object()
        registry.add("k", a)
        snapshot = registry.get("k")
        registry.add("k", object())
        assert snapshot == [a]

    def test_has_callbacks(self):
        pipeline = DispatchPipeline()
        assert pipeline.has_callbacks("player_chat") is False
        pipeline.add_callback("player_chat", lambda data, state: None)
        assert pipeline.has_callbacks("player_chat") is True
