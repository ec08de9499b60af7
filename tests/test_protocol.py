"""Tests for the msgpack packet codec."""

import msgpack

from pw_client.constants import MAX_MESSAGE_SIZE
from pw_client.protocol import PACKET_KINDS, PacketCodec


class TestEncode:
    def test_frame_layout(self):
        codec = PacketCodec()
        data = codec.encode("player_chat", {"message": "hello"})
        assert isinstance(data, bytes)
        assert msgpack.unpackb(data, raw=False) == {"t": "player_chat", "p": {"message": "hello"}}

    def test_missing_payload_is_empty_map(self):
        data = PacketCodec().encode("ping")
        assert msgpack.unpackb(data, raw=False) == {"t": "ping", "p": {}}

    def test_binary_values_kept(self):
        data = PacketCodec().encode("world_block_placed", {"extra": b"\x00\x01"})
        assert msgpack.unpackb(data, raw=False)["p"]["extra"] == b"\x00\x01"


class TestDecode:
    def test_known_packet(self):
        codec = PacketCodec()
        packet = codec.decode(codec.encode("player_joined", {"player_id": 3}))
        assert packet.kind == "player_joined"
        assert packet.payload == {"player_id": 3}
        assert packet.known is True

    def test_unknown_kind_is_flagged(self):
        codec = PacketCodec()
        packet = codec.decode(msgpack.packb({"t": "brand_new_packet", "p": {"x": 1}}))
        assert packet.kind == "brand_new_packet"
        assert packet.known is False

    def test_missing_kind(self):
        packet = PacketCodec().decode(msgpack.packb({"p": {}}))
        assert packet.kind is None
        assert packet.known is False

    def test_non_map_payload_wrapped(self):
        packet = PacketCodec().decode(msgpack.packb({"t": "ping", "p": [1, 2]}))
        assert packet.payload == {"data": [1, 2]}

    def test_missing_payload(self):
        packet = PacketCodec().decode(msgpack.packb({"t": "ping"}))
        assert packet.payload == {}

    def test_text_frame_dropped(self):
        assert PacketCodec().decode('{"t": "ping"}') is None

    def test_garbage_dropped(self):
        assert PacketCodec().decode(b"\xc1\xc1\xc1") is None

    def test_non_map_frame_dropped(self):
        assert PacketCodec().decode(msgpack.packb([1, 2, 3])) is None

    def test_oversize_frame_dropped(self):
        assert PacketCodec().decode(b"\x00" * (MAX_MESSAGE_SIZE + 1)) is None

    def test_custom_kind_table(self):
        codec = PacketCodec(frozenset({"custom"}))
        assert codec.is_known("custom") is True
        assert codec.is_known("ping") is False


class TestPacketKinds:
    def test_core_kinds_present(self):
        for kind in ("ping", "player_init", "player_init_received", "player_chat"):
            assert kind in PACKET_KINDS
