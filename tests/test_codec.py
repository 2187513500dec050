"""
test_codec.py - Tests for the entity codec and sync stream frames.
"""

import uuid
from datetime import datetime, timezone

import msgpack
import pytest

from chat_sync.codec import (
    decode_entity,
    encode_entity,
    from_micros,
    pack_dict,
    to_micros,
    unpack_dict,
)
from chat_sync.entities import Message, Peer
from chat_sync.errors import ServerError, ValidationError
from chat_sync.protocol import (
    DownloadComplete,
    DownloadError,
    SyncStart,
    UploadComplete,
    decode_download,
    decode_upload,
    encode_download,
    encode_upload,
)


APP_ID = uuid.UUID("11111111-1111-4111-8111-111111111111")


class TestEntityCodec:

    def test_message_fields_become_primitives(self):
        message = Message(
            chatroom="general",
            text="hi",
            app_id=APP_ID,
            timestamp=datetime(1970, 1, 1, 0, 0, 1, 500, tzinfo=timezone.utc),
            sender="alice",
            latitude=52.5,
        )

        encoded = encode_entity(message)

        assert encoded["app_id"] == "11111111-1111-4111-8111-111111111111"
        assert encoded["timestamp"] == 1_000_500
        assert encoded["seq_num"] == 0
        assert encoded["longitude"] is None
        assert decode_entity(Message, encoded) == message

    def test_decode_ignores_unknown_keys_and_uses_defaults(self):
        peer = decode_entity(Peer, {"name": "bob", "timestamp": 0, "extra": "x"})

        assert peer == Peer("bob", datetime(1970, 1, 1, tzinfo=timezone.utc))

    def test_decode_rejects_bad_values(self):
        with pytest.raises(ValidationError):
            decode_entity(Peer, {"name": "bob", "timestamp": "yesterday"})

        with pytest.raises(ValidationError):
            decode_entity(Peer, {"name": "bob"})

        with pytest.raises(ValidationError):
            decode_entity(Message, {
                "chatroom": "general", "text": "hi", "app_id": "not-a-uuid",
                "timestamp": 0, "sender": "alice",
            })

    def test_naive_datetime_taken_as_utc(self):
        naive = datetime(2024, 5, 1, 12, 30)
        assert from_micros(to_micros(naive)) == naive.replace(tzinfo=timezone.utc)


class TestCanonicalFraming:

    def test_key_order_does_not_change_bytes(self):
        a = pack_dict({"b": 1, "a": {"y": 2, "x": 3}})
        b = pack_dict({"a": {"x": 3, "y": 2}, "b": 1})
        assert a == b

    def test_unpack_rejects_non_dict(self):
        with pytest.raises(ValidationError):
            unpack_dict(msgpack.packb([1, 2, 3]))

        with pytest.raises(ValidationError):
            pack_dict([1, 2, 3])


class TestSyncFrames:

    def test_start_frame_layout(self):
        frame = unpack_dict(encode_upload(SyncStart(last_seq_num=7, latitude=1.5)))

        assert frame == {
            "type": "start",
            "payload": {"last_seq_num": 7, "latitude": 1.5, "longitude": None},
        }

    def test_completion_frames_have_no_payload(self):
        assert unpack_dict(encode_upload(UploadComplete())) == {
            "type": "upload_complete", "payload": None,
        }
        assert decode_download(encode_download(DownloadComplete())) == DownloadComplete()

    def test_error_frame_maps_to_server_error(self):
        event = decode_download(encode_download(DownloadError(code=503, message="busy")))

        error = event.to_exception()
        assert isinstance(error, ServerError)
        assert error.code == 503

    def test_upload_kind_is_not_a_download_kind(self):
        with pytest.raises(ServerError):
            decode_download(encode_upload(SyncStart(last_seq_num=0)))

    def test_malformed_frames_raise_server_error(self):
        with pytest.raises(ServerError):
            decode_upload(b"\xc1garbage")

        with pytest.raises(ServerError):
            decode_upload(pack_dict({"type": "message", "payload": {"text": "no fields"}}))

        with pytest.raises(ServerError):
            decode_upload(pack_dict({"type": "message", "payload": [1]}))
