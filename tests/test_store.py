"""Tests for relaybot.memory.store."""

from datetime import datetime, timedelta, timezone

import pytest

from relaybot.memory.store import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path / "test.db"), default_quota=1000)


def _iso(delta: timedelta) -> str:
    return (datetime.now(timezone.utc) + delta).isoformat()


# ── Users ───────────────────────────────────────────────────


def test_get_or_create_user(store):
    assert store.get_or_create_user("tg_1", name="Alice", source="telegram") == "tg_1"
    # Second call keeps the first record
    store.get_or_create_user("tg_1", name="Other")
    user = store.get_user("tg_1")
    assert user["name"] == "Alice"
    assert user["source"] == "telegram"
    assert user["token_quota"] == 1000


def test_user_exists_and_delete(store):
    assert not store.user_exists("tg_1")
    store.get_or_create_user("tg_1")
    store.get_or_create_session("s1", "tg_1")
    store.append_messages([{"user_id": "tg_1", "session_id": "s1", "role": "human", "content": "hi"}])
    assert store.user_exists("tg_1")

    assert store.delete_user("tg_1") is True
    assert not store.user_exists("tg_1")
    assert store.get_messages("tg_1", "s1") == []
    assert store.delete_user("tg_1") is False


# ── Token usage ─────────────────────────────────────────────


def test_token_stats_unknown_user(store):
    stats = store.get_token_stats("nobody")
    assert stats == {"quota": 1000, "used": 0, "remaining": 1000, "messages": 0, "subscription": "free"}


def test_record_usage(store):
    store.get_or_create_user("tg_1")
    store.record_usage("tg_1", 300)
    store.record_usage("tg_1", 900)
    stats = store.get_token_stats("tg_1")
    assert stats["used"] == 1200
    assert stats["remaining"] == 0
    assert stats["messages"] == 2
    assert store.get_user("tg_1")["last_active"] is not None


# ── Auth tokens ─────────────────────────────────────────────


def test_auth_token_validity(store):
    store.get_or_create_user("tg_1")
    assert not store.has_valid_auth_token("tg_1")

    store.store_auth_tokens("tg_1", "acc", "ref", _iso(timedelta(hours=1)), _iso(timedelta(days=1)))
    assert store.has_valid_auth_token("tg_1")

    store.store_auth_tokens("tg_1", "acc2", None, _iso(timedelta(hours=-1)))
    assert not store.has_valid_auth_token("tg_1")
    tokens = store.get_auth_tokens("tg_1")
    assert tokens["access_token"] == "acc2"
    # Refresh token survives an access-only update
    assert tokens["refresh_token"] == "ref"


def test_revoke_auth_tokens(store):
    store.get_or_create_user("tg_1")
    store.store_auth_tokens("tg_1", "acc", "ref", _iso(timedelta(hours=1)))
    store.revoke_auth_tokens("tg_1")
    assert store.get_auth_tokens("tg_1") is None


# ── Sessions ────────────────────────────────────────────────


def test_session_metadata_merge(store):
    store.get_or_create_user("tg_1")
    store.get_or_create_session("s1", "tg_1", channel="telegram", chat_id="1", metadata={"deployment": "d1"})
    store.get_or_create_session("s1", "tg_1", channel="webapp", metadata={"webapp_session_id": "w9"})

    session = store.get_session("s1")
    assert session["channel"] == "telegram"
    assert session["metadata"] == {"deployment": "d1", "webapp_session_id": "w9"}
    assert store.get_session("missing") is None


def test_get_user_sessions(store):
    store.get_or_create_user("tg_1")
    store.get_or_create_session("s1", "tg_1")
    store.get_or_create_session("s2", "tg_1")
    ids = {s["session_id"] for s in store.get_user_sessions("tg_1")}
    assert ids == {"s1", "s2"}


# ── Messages ────────────────────────────────────────────────


def test_messages_order_and_metadata(store):
    store.get_or_create_user("tg_1")
    store.get_or_create_session("s1", "tg_1")
    written = store.append_messages(
        [
            {"user_id": "tg_1", "session_id": "s1", "role": "human", "content": "q", "turn_id": "t1"},
            {"user_id": "tg_1", "session_id": "s1", "role": "ai", "content": "a", "turn_id": "t1", "mode": "rag"},
        ]
    )
    assert written == 2

    msgs = store.get_messages("tg_1", "s1")
    assert [m["role"] for m in msgs] == ["human", "ai"]
    assert msgs[1]["metadata"] == {"turn_id": "t1", "mode": "rag"}


def test_messages_limit_keeps_latest(store):
    store.get_or_create_user("tg_1")
    store.get_or_create_session("s1", "tg_1")
    store.append_messages(
        [{"user_id": "tg_1", "session_id": "s1", "role": "human", "content": str(i)} for i in range(5)]
    )
    assert [m["content"] for m in store.get_messages("tg_1", "s1", limit=2)] == ["3", "4"]


def test_append_empty(store):
    assert store.append_messages([]) == 0


def test_clear_messages(store):
    store.get_or_create_user("tg_1")
    store.get_or_create_session("s1", "tg_1")
    store.append_messages([{"user_id": "tg_1", "session_id": "s1", "role": "human", "content": "x"}])
    assert store.clear_messages("tg_1", "s1") == 1
    assert store.get_messages("tg_1", "s1") == []


def test_counts(store):
    store.get_or_create_user("tg_1")
    store.get_or_create_session("s1", "tg_1")
    store.append_messages([{"user_id": "tg_1", "session_id": "s1", "role": "human", "content": "x"}])
    assert store.counts() == {"users": 1, "sessions": 1, "messages": 1}
