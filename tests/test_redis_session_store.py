"""RedisSessionStore key layout and script calls, with a mocked client."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from framegate.service.runtime import reset_runtime_for_tests
from framegate.storage.common import hash_token
from framegate.storage.models import utcnow
from framegate.storage.redis_cache import RedisCache, RedisSessionStore, _to_epoch_ms


@pytest.fixture
def client():
    client = MagicMock()
    client.register_script.side_effect = [MagicMock(name="save"), MagicMock(name="delete"), MagicMock(name="delete_user")]
    return client


@pytest.fixture
def store(client):
    return RedisSessionStore(client=client, max_refresh_tokens_per_user=3)


def _hash_fields(user_id="u1", session_id="s1", expires_in=timedelta(days=1)):
    now = utcnow()
    return {
        "id": session_id,
        "user_id": user_id,
        "created_at": str(_to_epoch_ms(now)),
        "expires_at": str(_to_epoch_ms(now + expires_in)),
        "user_agent": "",
        "ip_addr": "10.0.0.1",
    }


def test_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisSessionStore()


class TestSave:
    def test_script_receives_hashed_keys_and_limit(self, store):
        store._save.return_value = 0
        record = store.save_refresh_token(
            "u1", "raw-token", utcnow() + timedelta(days=7), session_id="s1", ip_addr="10.0.0.1"
        )
        kwargs = store._save.call_args.kwargs
        token_hash = hash_token("raw-token")
        assert kwargs["keys"] == [f"auth:refresh:{token_hash}", "auth:user_refresh:u1"]
        args = kwargs["args"]
        assert args[0] == token_hash
        assert args[3] == 3
        assert args[5] == "auth:refresh:"
        assert "raw-token" not in args
        assert record.id == "s1" and record.ip_addr == "10.0.0.1"

    def test_invalid_ip_is_dropped(self, store):
        store._save.return_value = 1
        record = store.save_refresh_token("u1", "rt", utcnow() + timedelta(days=1), ip_addr="bogus")
        assert record.ip_addr is None


class TestRead:
    def test_get_decodes_hash(self, store, client):
        client.hgetall.return_value = _hash_fields()
        record = store.get_refresh_token("rt")
        assert record.user_id == "u1"
        assert record.user_agent is None
        client.hgetall.assert_called_with(f"auth:refresh:{hash_token('rt')}")

    def test_get_missing_or_expired(self, store, client):
        client.hgetall.return_value = {}
        assert store.get_refresh_token("rt") is None
        client.hgetall.return_value = _hash_fields(expires_in=timedelta(seconds=-5))
        assert store.get_refresh_token("rt") is None

    def test_list_skips_vanished_records(self, store, client):
        client.zrevrange.return_value = ["h2", "h1", "h0"]
        pipe = MagicMock()
        pipe.execute.return_value = [
            _hash_fields(session_id="s2"),
            {},
            _hash_fields(session_id="s0"),
        ]
        client.pipeline.return_value = pipe
        records = store.list_user_refresh_tokens("u1")
        assert [r.id for r in records] == ["s2", "s0"]
        assert [r.token_hash for r in records] == ["h2", "h0"]


class TestDelete:
    def test_delete_reports_single_winner(self, store):
        store._delete.side_effect = [1, 0]
        assert store.delete_refresh_token("rt") is True
        assert store.delete_refresh_token("rt") is False
        assert store._delete.call_args.kwargs["args"] == ["auth:user_refresh:", hash_token("rt")]

    def test_delete_by_session_id(self, store, client):
        client.zrevrange.return_value = ["h1"]
        pipe = MagicMock()
        pipe.execute.return_value = [_hash_fields(session_id="s1")]
        client.pipeline.return_value = pipe
        store._delete.return_value = 1
        assert store.delete_refresh_token_by_id("u1", "other") is False
        assert store.delete_refresh_token_by_id("u1", "s1") is True
        assert store._delete.call_args.kwargs["keys"] == ["auth:refresh:h1"]

    def test_delete_all_for_user(self, store):
        store._delete_user.return_value = 4
        assert store.delete_user_refresh_tokens("u1") == 4
        assert store._delete_user.call_args.kwargs["keys"] == ["auth:user_refresh:u1"]

    def test_purge_drops_dangling_index_entries(self, store, client):
        client.scan_iter.return_value = ["auth:user_refresh:u1"]
        client.zrange.return_value = ["alive", "gone"]
        client.exists.side_effect = lambda key: key.endswith("alive")
        client.zrem.return_value = 1
        assert store.purge_expired_refresh_tokens() == 1
        client.zrem.assert_called_once_with("auth:user_refresh:u1", "gone")


class TestRateCache:
    async def test_hit_window_hashes_subject(self, monkeypatch):
        fake_client = MagicMock()
        script = AsyncMock(return_value=[3, 1200])
        fake_client.register_script.return_value = script
        monkeypatch.setattr(
            "framegate.storage.redis_cache.aioredis.from_url", lambda *a, **kw: fake_client
        )
        cache = RedisCache("redis://localhost:6379/0")
        assert await cache.hit_window("auth:10.0.0.1", 900) == (3, 1200)
        kwargs = script.await_args.kwargs
        assert kwargs["keys"][0].startswith("rate:")
        assert "10.0.0.1" not in kwargs["keys"][0]
        assert kwargs["args"] == [900000]


class TestShutdown:
    def test_close_releases_connections(self, store, client):
        store.close()
        client.close.assert_called_once_with()
        client.connection_pool.disconnect.assert_called_once_with()

    async def test_runtime_close_closes_session_store(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6399/0")
        monkeypatch.setenv("SESSION_BACKEND", "redis")
        monkeypatch.setattr(
            RedisCache, "verify_connection", MagicMock(side_effect=ConnectionError("refused"))
        )
        runtime = reset_runtime_for_tests()
        assert isinstance(runtime.sessions, RedisSessionStore)
        close = MagicMock()
        monkeypatch.setattr(runtime.sessions, "close", close)
        await runtime.close()
        close.assert_called_once_with()
