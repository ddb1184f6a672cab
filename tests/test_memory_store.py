"""Tests for the in-memory message store and its JSON snapshot."""

from datetime import datetime, timedelta

import pytest

from formfind.storage.errors import ConstraintViolation, DuplicateIdError
from formfind.storage.memory import MemoryStore
from formfind.storage.models import LegacyMessage, Message


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def owner(store):
    return store.create_user("owner@example.com")


def _msg(chat_id, msg_id, role="user", text="hi", created_at=None):
    return Message(
        id=msg_id,
        chat_id=chat_id,
        role=role,
        parts=[{"type": "text", "text": text}],
        created_at=created_at or datetime.utcnow(),
    )


class TestUsersAndSessions:
    def test_duplicate_email_rejected(self, store, owner):
        with pytest.raises(ConstraintViolation):
            store.create_user("owner@example.com")
        assert store.get_user_by_email("owner@example.com").id == owner.id

    def test_session_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session("missing-user")

    def test_revoke_session(self, store, owner):
        session = store.create_session(owner.id)
        assert store.get_session(session.id).user_id == owner.id
        store.revoke_session(session.id)
        assert store.get_session(session.id) is None


class TestChats:
    def test_save_chat_rejects_duplicate_id(self, store, owner):
        store.save_chat("c1", owner.id, "first")
        with pytest.raises(DuplicateIdError):
            store.save_chat("c1", owner.id, "second")
        assert store.get_chat("c1").title == "first"

    def test_save_chat_requires_owner(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_chat("c1", "ghost", "title")

    def test_list_chats_newest_first_and_scoped(self, store, owner):
        other = store.create_user("other@example.com")
        store.save_chat("old", owner.id, "old")
        store.chats["old"].created_at = datetime.utcnow() - timedelta(hours=1)
        store.save_chat("new", owner.id, "new")
        store.save_chat("foreign", other.id, "foreign")
        assert [c.id for c in store.list_chats(owner.id)] == ["new", "old"]
        assert [c.id for c in store.list_chats(owner.id, limit=1)] == ["new"]


class TestMessages:
    def test_save_messages_is_all_or_nothing(self, store, owner):
        store.save_chat("c1", owner.id, "t")
        store.save_messages([_msg("c1", "m1")])
        with pytest.raises(DuplicateIdError):
            store.save_messages([_msg("c1", "m2"), _msg("c1", "m1")])
        assert [m.id for m in store.get_messages_by_chat_id("c1")] == ["m1"]

    def test_message_ids_unique_across_generations(self, store, owner):
        store.save_chat("c1", owner.id, "t")
        store.legacy_messages["c1"] = [LegacyMessage(id="old-1", chat_id="c1", role="user", content="x")]
        with pytest.raises(DuplicateIdError):
            store.save_messages([_msg("c1", "old-1")])

    def test_save_messages_rejects_unknown_chat_and_role(self, store, owner):
        with pytest.raises(ConstraintViolation):
            store.save_messages([_msg("nope", "m1")])
        store.save_chat("c1", owner.id, "t")
        with pytest.raises(ConstraintViolation):
            store.save_messages([_msg("c1", "m1", role="narrator")])

    def test_history_merges_generations_in_order(self, store, owner):
        store.save_chat("c1", owner.id, "t")
        base = datetime.utcnow() - timedelta(minutes=10)
        store.legacy_messages["c1"] = [
            LegacyMessage(id="l1", chat_id="c1", role="user", content="legacy q", created_at=base),
            LegacyMessage(
                id="l2", chat_id="c1", role="assistant", content="legacy a",
                created_at=base + timedelta(minutes=1),
            ),
        ]
        store.save_messages([_msg("c1", "m1", text="new q")])
        history = store.get_messages_by_chat_id("c1")
        assert [m.id for m in history] == ["l1", "l2", "m1"]
        assert history[1].parts == [{"type": "text", "text": "legacy a"}]
        assert history[1].attachments == []

    def test_parts_normalized_on_write(self, store, owner):
        store.save_chat("c1", owner.id, "t")
        message = Message(
            id="m1",
            chat_id="c1",
            role="user",
            parts=[{"type": "text", "text": "ok", "x": 1}, {"type": "weird"}],
            attachments=[{"url": "https://x/a.png", "junk": True}, {"name": "no-url"}],
        )
        stored = store.save_messages([message])[0]
        assert stored.parts == [{"type": "text", "text": "ok"}]
        assert stored.attachments == [{"url": "https://x/a.png"}]


class TestVotesAndDeletion:
    def test_votes_land_in_message_generation(self, store, owner):
        store.save_chat("c1", owner.id, "t")
        store.legacy_messages["c1"] = [LegacyMessage(id="l1", chat_id="c1", role="assistant", content="x")]
        store.save_messages([_msg("c1", "m1", role="assistant")])

        assert store.vote_message("c1", "l1", True).generation == "legacy"
        assert store.vote_message("c1", "m1", False).generation == "current"
        assert ("c1", "l1") in store.legacy_votes
        assert ("c1", "m1") in store.votes

        # re-vote overwrites
        store.vote_message("c1", "m1", True)
        votes = {v.message_id: v.is_upvote for v in store.get_votes_by_chat_id("c1")}
        assert votes == {"l1": True, "m1": True}

    def test_vote_on_unknown_message(self, store, owner):
        store.save_chat("c1", owner.id, "t")
        with pytest.raises(ConstraintViolation):
            store.vote_message("c1", "missing", True)

    def test_delete_cascades_both_generations(self, store, owner):
        store.save_chat("c1", owner.id, "t")
        store.save_chat("c2", owner.id, "keep")
        store.legacy_messages["c1"] = [LegacyMessage(id="l1", chat_id="c1", role="user", content="x")]
        store.save_messages([_msg("c1", "m1"), _msg("c2", "keep-1")])
        store.vote_message("c1", "l1", True)
        store.vote_message("c1", "m1", True)

        assert store.delete_chat("c1") is True
        assert store.get_chat("c1") is None
        assert store.get_messages_by_chat_id("c1") == []
        assert store.get_votes_by_chat_id("c1") == []
        assert [m.id for m in store.get_messages_by_chat_id("c2")] == ["keep-1"]
        assert store.delete_chat("c1") is False


def test_snapshot_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com")
    store.save_chat("c1", user.id, "kept")
    store.legacy_messages["c1"] = [LegacyMessage(id="l1", chat_id="c1", role="user", content="x")]
    store.save_messages([_msg("c1", "m1")])
    store.vote_message("c1", "l1", False)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_chat("c1").title == "kept"
    assert [m.id for m in reloaded.get_messages_by_chat_id("c1")] == ["l1", "m1"]
    votes = reloaded.get_votes_by_chat_id("c1")
    assert len(votes) == 1 and votes[0].generation == "legacy"
