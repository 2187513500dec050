"""
test_store.py - Tests for the local chat store.

These tests verify the outbound queue, the watermark and the
upsert rule applied to downloaded messages.
"""

import os
import tempfile
import uuid
from datetime import datetime, timezone

import pytest

from chat_sync import ChatStore
from chat_sync.db.migrations import get_schema_version
from chat_sync.entities import Chatroom, Message, Peer
from chat_sync.errors import SchemaError, ServerError, ValidationError


OWN_APP_ID = uuid.UUID("11111111-1111-4111-8111-111111111111")
OTHER_APP_ID = uuid.UUID("22222222-2222-4222-8222-222222222222")


def make_message(text, app_id=OWN_APP_ID, chatroom="general", seq_num=0, id=None, sender="alice"):
    return Message(
        chatroom=chatroom,
        text=text,
        app_id=app_id,
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        sender=sender,
        seq_num=seq_num,
        id=id,
    )


class TestInitialization:
    """Tests for table creation."""

    def test_initialize_is_idempotent(self, store):
        assert store.initialize() == 1
        assert store.initialize() == 1
        assert get_schema_version(store.connection) == 1

    def test_app_id_generated_once_with_tables(self, store):
        app_id = store.get_metadata("app_id")

        assert uuid.UUID(app_id)
        store.initialize()
        assert store.get_metadata("app_id") == app_id

    def test_queries_before_initialize_raise_schema_error(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = ChatStore(os.path.join(tmpdir, "empty.db"))
            with pytest.raises(SchemaError):
                store.get_all_chatrooms()
            store.close()

    def test_watermark_missing_until_registration(self, store):
        with pytest.raises(SchemaError):
            store.get_last_seq_num()

        store.init_last_seq_num()
        store.init_last_seq_num()
        assert store.get_last_seq_num() == 0


class TestOutboundQueue:
    """Tests for locally authored messages."""

    def test_insert_message_assigns_id_and_creates_chatroom(self, store):
        stored = store.insert_message(make_message("hi"))

        assert stored.id is not None
        assert stored.seq_num == 0
        assert [c.name for c in store.get_all_chatrooms()] == ["general"]
        assert store.get_message(stored.id) == stored

    def test_unsent_messages_in_local_order(self, store):
        first = store.insert_message(make_message("one"))
        second = store.insert_message(make_message("two", chatroom="random"))

        assert [m.id for m in store.get_unsent_messages()] == [first.id, second.id]
        assert store.count_unsent_messages() == 2

    def test_update_seq_num_settles_only_unsent_rows(self, store):
        stored = store.insert_message(make_message("hi"))

        assert store.update_seq_num(stored.id, 7) is True
        assert store.get_message(stored.id).seq_num == 7
        assert store.count_unsent_messages() == 0

        # A second acknowledgement does not move the message
        assert store.update_seq_num(stored.id, 9) is False
        assert store.get_message(stored.id).seq_num == 7

    def test_display_order_puts_unsent_last(self, store):
        store.init_last_seq_num()
        unsent = store.insert_message(make_message("pending"))
        store.apply_downloaded_message(
            OWN_APP_ID, make_message("late", app_id=OTHER_APP_ID, seq_num=5, id=3, sender="bob")
        )
        store.apply_downloaded_message(
            OWN_APP_ID, make_message("early", app_id=OTHER_APP_ID, seq_num=2, id=1, sender="bob")
        )

        texts = [m.text for m in store.get_messages()]
        assert texts == ["early", "late", "pending"]
        assert store.get_messages("general")[-1].id == unsent.id
        assert store.get_messages("nowhere") == []


class TestDownloadedMessages:
    """Tests for the upsert rule and the watermark."""

    def test_own_echo_updates_row_in_place(self, registered_store):
        store = registered_store
        stored = store.insert_message(make_message("hi"))

        watermark = store.apply_downloaded_message(OWN_APP_ID, stored.with_seq_num(7))

        messages = store.get_messages()
        assert len(messages) == 1
        assert messages[0].id == stored.id
        assert messages[0].seq_num == 7
        assert watermark == 7

    def test_foreign_message_gets_fresh_local_id(self, registered_store):
        store = registered_store
        mine = store.insert_message(make_message("hi"))

        # Same local id as our row, but from another device
        store.apply_downloaded_message(
            OWN_APP_ID,
            make_message("yo", app_id=OTHER_APP_ID, seq_num=8, id=mine.id, sender="bob"),
        )

        messages = {m.text: m for m in store.get_messages()}
        assert messages["hi"].seq_num == 0
        assert messages["yo"].id != mine.id
        assert messages["yo"].seq_num == 8
        assert store.get_last_seq_num() == 8

    def test_redownload_is_idempotent(self, registered_store):
        store = registered_store
        foreign = make_message("yo", app_id=OTHER_APP_ID, seq_num=3, id=1, sender="bob")

        store.apply_downloaded_message(OWN_APP_ID, foreign)
        store.apply_downloaded_message(OWN_APP_ID, foreign)

        assert len(store.get_messages()) == 1
        assert store.get_last_seq_num() == 3

    def test_echo_without_unsent_row_still_advances_watermark(self, registered_store):
        store = registered_store
        echo = make_message("gone", seq_num=4, id=99)

        assert store.apply_downloaded_message(OWN_APP_ID, echo) == 4
        assert store.get_messages() == []

    def test_watermark_is_running_maximum(self, registered_store):
        store = registered_store
        for seq_num in (5, 3, 6, 1):
            store.apply_downloaded_message(
                OWN_APP_ID,
                make_message(f"m{seq_num}", app_id=OTHER_APP_ID, seq_num=seq_num, id=seq_num),
            )

        assert store.get_last_seq_num() == 6
        assert store.advance_last_seq_num(2) == 6

    def test_foreign_message_without_seq_num_is_rejected(self, registered_store):
        store = registered_store
        unsequenced = make_message("yo", app_id=OTHER_APP_ID, seq_num=0, id=5, sender="bob")

        with pytest.raises(ServerError):
            store.apply_downloaded_message(OWN_APP_ID, unsequenced)

        assert store.get_unsent_messages() == []
        assert store.get_messages() == []
        assert store.get_all_chatrooms() == []
        assert store.get_last_seq_num() == 0

    def test_download_without_watermark_rolls_back(self, store):
        foreign = make_message("yo", app_id=OTHER_APP_ID, seq_num=3, id=1, sender="bob")

        with pytest.raises(SchemaError):
            store.apply_downloaded_message(OWN_APP_ID, foreign)

        assert store.get_messages() == []


class TestPeersAndChatrooms:

    def test_peer_upsert_overwrites_last_sighting(self, store):
        first = datetime(2024, 1, 1, tzinfo=timezone.utc)
        later = datetime(2024, 2, 1, tzinfo=timezone.utc)

        peer_id = store.upsert_peer(Peer("bob", first, 1.0, 2.0))
        assert store.upsert_peer(Peer("bob", later, 3.0, None)) == peer_id

        peer = store.get_peer("bob")
        assert peer.timestamp == later
        assert peer.latitude == 3.0
        assert peer.longitude is None
        assert len(store.get_all_peers()) == 1

    def test_duplicate_chatroom_is_ignored(self, store):
        store.insert_chatroom(Chatroom("general"))
        store.insert_chatroom(Chatroom("general"))

        assert store.get_all_chatrooms() == [Chatroom("general")]

    def test_empty_chatroom_name_rejected(self):
        with pytest.raises(ValidationError):
            Chatroom("")


class TestTransactions:

    def test_failed_operation_rolls_back(self, store):
        def insert_then_fail(conn):
            conn.execute("INSERT INTO chatroom (name) VALUES ('doomed')")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.transaction(insert_then_fail)

        assert store.get_all_chatrooms() == []

    def test_seed_registration_writes_everything(self, store):
        store.seed_registration(
            Peer("alice", datetime(2024, 1, 1, tzinfo=timezone.utc)),
            Chatroom("_default"),
            {"chat_name": "alice", "server_uri": "http://relay"},
        )

        assert store.get_last_seq_num() == 0
        assert store.get_peer("alice") is not None
        assert store.get_all_chatrooms() == [Chatroom("_default")]
        assert store.get_metadata("chat_name") == "alice"
        assert store.get_metadata("server_uri") == "http://relay"
