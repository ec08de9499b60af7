# =============================================================================
# PW Client -- Dispatch Pipeline
# =============================================================================
#
# Two ordered handler lists per inbound packet:
#
#   hooks      run for every packet, in registration order, and contribute
#              keys to a per-packet state dict
#   callbacks  run for one packet kind, may patch the packet payload in place
#              and may return STOP to skip the rest of that dispatch
#
# Handler failures are turned into ``error`` events.  If no ``error``
# callback takes the event, or one of them raises, the original exception is
# re-raised after the remaining callbacks have run.  ``error`` is never
# reported through itself.
# =============================================================================

from __future__ import annotations

import inspect

from collections.abc import MutableMapping
from typing import Any, Awaitable, Callable

from ._logging import logger
from .errors import HandlerError
from .types import STOP, DispatchResult, WorldPacket

Hook = Callable[[WorldPacket], "dict[str, Any] | None | Awaitable[dict[str, Any] | None]"]
Callback = Callable[..., Any]

# Client-side event kinds; their callbacks receive the data only, no state
CUSTOM_EVENTS = frozenset({"debug", "raw", "unknown", "error"})


async def _resolve(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class HookChain:
    """Append-only list of hooks. Hooks cannot be removed once added."""

    def __init__(self) -> None:
        self._hooks: list[Hook] = []

    def __len__(self) -> int:
        return len(self._hooks)

    def add(self, hook: Hook) -> None:
        self._hooks.append(hook)

    async def run(self, packet: WorldPacket) -> dict[str, Any]:
        """Run every hook in order and merge their dict results.

        Later hooks overwrite keys set by earlier ones. Exceptions from a
        hook propagate; the caller decides what to do with partial state.
        """
        state: dict[str, Any] = {}
        for hook in list(self._hooks):
            result = await _resolve(hook(packet))
            if isinstance(result, dict):
                state.update(result)
        return state


class CallbackRegistry:
    """Per-kind ordered callback lists."""

    def __init__(self) -> None:
        self._callbacks: dict[str, list[Callback]] = {}

    def get(self, kind: str) -> list[Callback]:
        """Snapshot of the callbacks for *kind*."""
        return list(self._callbacks.get(kind, ()))

    def kinds(self) -> list[str]:
        return [kind for kind, cbs in self._callbacks.items() if cbs]

    def add(self, kind: str, *callbacks: Callback) -> None:
        self._callbacks.setdefault(kind, []).extend(callbacks)

    def prepend(self, kind: str, *callbacks: Callback) -> None:
        cbs = self._callbacks.setdefault(kind, [])
        cbs[:0] = callbacks

    def remove(self, kind: str, callback: Callback | None = None) -> Callback | None:
        """Remove *callback* from *kind*, or clear *kind* if none given.

        Returns the removed callback, or None when clearing or not found.
        """
        cbs = self._callbacks.get(kind)
        if cbs is None:
            return None
        if callback is None:
            cbs.clear()
            return None
        for i, cb in enumerate(cbs):
            if cb is callback:
                return cbs.pop(i)
        return None


def _patch(data: Any, changes: dict[str, Any]) -> None:
    """Merge a callback's returned dict into the event data in place."""
    if isinstance(data, MutableMapping):
        data.update(changes)
        return
    for key, value in changes.items():
        setattr(data, key, value)


class DispatchPipeline:
    """Hook chain plus callback registry, shared by every session of a client."""

    def __init__(self) -> None:
        self.hooks = HookChain()
        self.callbacks = CallbackRegistry()

    # -- Registration ---------------------------------------------------------

    def add_hook(self, hook: Hook) -> None:
        self.hooks.add(hook)

    def add_callback(self, kind: str, *callbacks: Callback) -> None:
        self.callbacks.add(kind, *callbacks)

    def prepend_callback(self, kind: str, *callbacks: Callback) -> None:
        self.callbacks.prepend(kind, *callbacks)

    def remove_callback(self, kind: str, callback: Callback | None = None) -> Callback | None:
        return self.callbacks.remove(kind, callback)

    def has_callbacks(self, kind: str) -> bool:
        return bool(self.callbacks.get(kind))

    # -- Dispatch -------------------------------------------------------------

    async def run_hooks(self, packet: WorldPacket) -> tuple[dict[str, Any], BaseException | None]:
        """Run the hook stage for *packet*.

        On failure the accumulated state is discarded and an ``error``
        event is emitted. Returns the state and, if emitting that error
        event failed too, the exception to re-raise later.
        """
        if not len(self.hooks):
            return {}, None
        try:
            return await self.hooks.run(packet), None
        except Exception as exc:
            logger.debug("Unable to execute all hooks safely for '%s'", packet.kind)
            return {}, await self._report(packet.kind or "unknown", exc, "hook")

    async def dispatch(self, packet: WorldPacket) -> DispatchResult:
        """Run hooks, then the callbacks for ``packet.kind``."""
        state, pending = await self.run_hooks(packet)
        result = await self.invoke(packet.kind or "unknown", packet.payload, state)
        if pending is not None:
            raise pending
        return result

    async def invoke(
        self,
        kind: str,
        data: Any,
        state: dict[str, Any] | None = None,
    ) -> DispatchResult:
        """Run the callbacks registered for *kind* in order.

        Raises:
            Exception: The original failure, when an ``error`` event could
                not be handled (no ``error`` callbacks, or one of them raised).
        """
        result = DispatchResult()
        callbacks = self.callbacks.get(kind)

        if not callbacks:
            if kind == "error":
                raise _original(data)
            return result

        pending: BaseException | None = None
        for callback in callbacks:
            try:
                if kind in CUSTOM_EVENTS:
                    res = await _resolve(callback(data))
                else:
                    res = await _resolve(callback(data, state if state is not None else {}))
            except Exception as exc:
                if kind == "error":
                    raise _original(data) from exc
                failure = await self._report(kind, exc, "callback")
                if pending is None:
                    pending = failure
                continue

            result.count += 1
            if isinstance(res, dict):
                _patch(data, res)
            elif res == STOP:
                result.stopped = True
                break

        if pending is not None:
            raise pending
        return result

    async def _report(self, kind: str, exc: BaseException, stage: str) -> BaseException | None:
        """Emit an ``error`` event; return the exception if nobody handled it."""
        try:
            await self.invoke("error", HandlerError(kind, exc, stage))
        except Exception as unhandled:
            return unhandled
        return None


def _original(data: Any) -> BaseException:
    if isinstance(data, HandlerError):
        return data.error
    if isinstance(data, BaseException):
        return data
    return RuntimeError(f"Unhandled error event: {data!r}")
