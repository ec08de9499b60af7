# =============================================================================
# PW Client -- Wire Protocol Codec
# =============================================================================
#
# Every frame in either direction is a binary msgpack map:
#
#   {"t": <packet kind>, "p": <payload map>}
#
# Unknown kinds decode to a WorldPacket with known=False instead of raising;
# frames that are not a msgpack map are dropped.
# =============================================================================

from __future__ import annotations

from typing import Any

import msgpack

from ._logging import logger
from .constants import MAX_MESSAGE_SIZE
from .types import WorldPacket

PACKET_KINDS = frozenset(
    {
        "ping",
        "global_switch_changed",
        "global_switch_reset",
        "system_message",
        "old_chat_messages",
        "player_init",
        "player_init_received",
        "player_joined",
        "player_left",
        "player_chat",
        "player_direct_message",
        "player_moved",
        "player_face",
        "player_god_mode",
        "player_mod_mode",
        "player_enter_second_layer",
        "player_teleported",
        "player_reset",
        "player_respawn",
        "player_touch_block",
        "player_team_update",
        "player_counter_transaction",
        "player_local_switch_changed",
        "player_local_switch_reset",
        "player_update_rights",
        "world_block_placed",
        "world_block_filled",
        "world_reloaded",
        "world_cleared",
        "world_meta_update",
    }
)


class PacketCodec:
    """Encode and decode game packets.

    Args:
        kinds: Packet kinds treated as known. Defaults to
            :data:`PACKET_KINDS`.
    """

    def __init__(self, kinds: frozenset[str] = PACKET_KINDS) -> None:
        self._kinds = kinds

    def is_known(self, kind: str | None) -> bool:
        return kind in self._kinds

    def encode(self, kind: str, payload: dict[str, Any] | None = None) -> bytes:
        """Encode an outgoing packet as a binary frame."""
        return msgpack.packb({"t": kind, "p": payload or {}}, use_bin_type=True)

    def decode(self, data: bytes | bytearray | memoryview | str) -> WorldPacket | None:
        """Decode an incoming frame.

        Returns None for frames that cannot be decoded at all.
        """
        if isinstance(data, str):
            logger.warning("Received text frame on a binary protocol, dropping")
            return None
        if len(data) > MAX_MESSAGE_SIZE:
            logger.warning("Frame exceeds max size (%d bytes), dropping", len(data))
            return None

        try:
            parsed = msgpack.unpackb(data, raw=False)
        except (msgpack.UnpackException, ValueError, TypeError) as exc:
            logger.warning("Failed to unpack frame: %s", exc)
            return None

        if not isinstance(parsed, dict):
            logger.warning("Frame is not a map (%s), dropping", type(parsed).__name__)
            return None

        kind = parsed.get("t")
        if kind is not None and not isinstance(kind, str):
            kind = str(kind)
        payload = parsed.get("p")
        if payload is None:
            payload = {}
        elif not isinstance(payload, dict):
            payload = {"data": payload}

        return WorldPacket(kind=kind, payload=payload, known=self.is_known(kind))
