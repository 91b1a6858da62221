"""MemoryStore behaviour shared by every backend: accounts, lockout, tokens."""

import threading
from datetime import timedelta

import pytest

from framegate.storage.common import hash_token, next_lockout_state, validate_user_updates
from framegate.storage.errors import ConstraintViolation
from framegate.storage.memory import MemoryStore
from framegate.storage.models import RefreshTokenRecord, Role, TokenPurpose, utcnow


def _user(store: MemoryStore, email: str = "owner@example.com"):
    return store.create_user(email, "hash", first_name="Olive", last_name="Owner")


class TestAccounts:
    def test_email_is_normalised_and_unique(self, memory_store):
        user = _user(memory_store, "  Owner@Example.COM ")
        assert user.email == "owner@example.com"
        assert memory_store.get_user_by_email("OWNER@example.com").id == user.id
        with pytest.raises(ConstraintViolation):
            _user(memory_store, "owner@EXAMPLE.com")

    def test_new_user_defaults(self, memory_store):
        user = _user(memory_store)
        assert user.role is Role.OWNER
        assert user.is_active and not user.is_email_verified
        assert user.login_attempts == 0 and user.lock_until is None

    def test_update_rejects_unknown_fields(self, memory_store):
        user = _user(memory_store)
        with pytest.raises(ConstraintViolation):
            memory_store.update_user(user.id, is_superuser=True)

    def test_update_coerces_role(self, memory_store):
        user = _user(memory_store)
        updated = memory_store.update_user(user.id, role="viewer")
        assert updated.role is Role.VIEWER

    def test_update_email_conflict(self, memory_store):
        first = _user(memory_store, "a@example.com")
        _user(memory_store, "b@example.com")
        with pytest.raises(ConstraintViolation):
            memory_store.update_user(first.id, email="B@example.com")

    def test_update_missing_user(self, memory_store):
        assert memory_store.update_user("nope", first_name="x") is None

    def test_delete_cascades_tokens(self, memory_store):
        user = _user(memory_store)
        memory_store.save_refresh_token(user.id, "rt-1", utcnow() + timedelta(days=1))
        memory_store.create_one_time_token(user.id, TokenPurpose.PASSWORD_RESET, 3600)
        assert memory_store.delete_user(user.id) is True
        assert memory_store.refresh_tokens == {}
        assert memory_store.one_time_tokens == {}
        assert memory_store.delete_user(user.id) is False


class TestLockout:
    def test_lock_on_threshold(self, memory_store):
        user = _user(memory_store)
        for expected in range(1, 5):
            state = memory_store.increment_login_attempts(
                user.id, max_attempts=5, lockout_seconds=7200
            )
            assert state.login_attempts == expected
            assert state.lock_until is None
        locked = memory_store.increment_login_attempts(user.id, max_attempts=5, lockout_seconds=7200)
        assert locked.login_attempts == 5
        assert locked.is_locked()
        remaining = locked.lock_until - utcnow()
        assert timedelta(minutes=119) < remaining <= timedelta(minutes=120)

    def test_running_lock_is_not_extended(self):
        now = utcnow()
        lock = now + timedelta(minutes=30)
        attempts, lock_until = next_lockout_state(
            5, lock, max_attempts=5, lockout=timedelta(hours=2), now=now
        )
        assert attempts == 6
        assert lock_until == lock

    def test_expired_lock_restarts_count(self):
        now = utcnow()
        attempts, lock_until = next_lockout_state(
            7, now - timedelta(seconds=1), max_attempts=5, lockout=timedelta(hours=2), now=now
        )
        assert (attempts, lock_until) == (1, None)

    def test_reset_clears_lock_and_stamps_login(self, memory_store):
        user = _user(memory_store)
        for _ in range(5):
            memory_store.increment_login_attempts(user.id, max_attempts=5, lockout_seconds=60)
        reset = memory_store.reset_login_attempts(user.id)
        assert reset.login_attempts == 0
        assert reset.lock_until is None
        assert reset.last_login is not None

    def test_concurrent_failures_are_all_counted(self, memory_store):
        user = _user(memory_store)
        barrier = threading.Barrier(8)

        def fail():
            barrier.wait()
            for _ in range(25):
                memory_store.increment_login_attempts(
                    user.id, max_attempts=1000, lockout_seconds=60
                )

        threads = [threading.Thread(target=fail) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert memory_store.get_user(user.id).login_attempts == 200

    def test_validate_user_updates_normalises(self):
        cleaned = validate_user_updates({"email": " X@Y.COM ", "role": "admin"})
        assert cleaned == {"email": "x@y.com", "role": Role.ADMIN}


class TestRefreshTokens:
    def test_raw_token_never_stored(self, memory_store):
        user = _user(memory_store)
        memory_store.save_refresh_token(user.id, "raw-token", utcnow() + timedelta(days=1))
        assert "raw-token" not in memory_store.refresh_tokens
        assert hash_token("raw-token") in memory_store.refresh_tokens

    def test_expiry_boundary(self, memory_store):
        user = _user(memory_store)
        memory_store.save_refresh_token(user.id, "live", utcnow() + timedelta(seconds=1))
        memory_store.save_refresh_token(user.id, "dead", utcnow() - timedelta(seconds=1))
        assert memory_store.get_refresh_token("live") is not None
        assert memory_store.get_refresh_token("dead") is None

    def test_delete_is_single_use(self, memory_store):
        user = _user(memory_store)
        memory_store.save_refresh_token(user.id, "rt", utcnow() + timedelta(days=1))
        assert memory_store.delete_refresh_token("rt") is True
        assert memory_store.delete_refresh_token("rt") is False
        assert memory_store.get_refresh_token("rt") is None

    def test_keeps_newest_five(self, memory_store):
        user = _user(memory_store)
        for i in range(7):
            memory_store.save_refresh_token(user.id, f"rt-{i}", utcnow() + timedelta(days=1))
        kept = memory_store.list_user_refresh_tokens(user.id)
        assert len(kept) == 5
        assert memory_store.get_refresh_token("rt-0") is None
        assert memory_store.get_refresh_token("rt-1") is None
        assert memory_store.get_refresh_token("rt-6") is not None

    def test_unknown_user_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_refresh_token("ghost", "rt", utcnow() + timedelta(days=1))

    def test_revoke_by_session_id_is_owner_scoped(self, memory_store):
        alice = _user(memory_store, "alice@example.com")
        bob = _user(memory_store, "bob@example.com")
        record = memory_store.save_refresh_token(
            alice.id, "rt", utcnow() + timedelta(days=1), session_id="sess-a"
        )
        assert record.id == "sess-a"
        assert memory_store.delete_refresh_token_by_id(bob.id, "sess-a") is False
        assert memory_store.delete_refresh_token_by_id(alice.id, "sess-a") is True

    def test_delete_all_for_user(self, memory_store):
        alice = _user(memory_store, "alice@example.com")
        bob = _user(memory_store, "bob@example.com")
        for i in range(3):
            memory_store.save_refresh_token(alice.id, f"a-{i}", utcnow() + timedelta(days=1))
        memory_store.save_refresh_token(bob.id, "b-0", utcnow() + timedelta(days=1))
        assert memory_store.delete_user_refresh_tokens(alice.id) == 3
        assert memory_store.get_refresh_token("b-0") is not None

    def test_purge_expired(self, memory_store):
        user = _user(memory_store)
        memory_store.save_refresh_token(user.id, "live", utcnow() + timedelta(days=1))
        stale = RefreshTokenRecord.new(user.id, hash_token("stale"), utcnow() - timedelta(minutes=1))
        memory_store.refresh_tokens[stale.token_hash] = stale
        assert memory_store.purge_expired_refresh_tokens() == 1
        assert memory_store.get_refresh_token("live") is not None

    def test_ip_is_normalised(self, memory_store):
        user = _user(memory_store)
        record = memory_store.save_refresh_token(
            user.id, "rt", utcnow() + timedelta(days=1), ip_addr="not-an-ip"
        )
        assert record.ip_addr is None


class TestOneTimeTokens:
    def test_apply_consumes_token(self, memory_store):
        user = _user(memory_store)
        token = memory_store.create_one_time_token(user.id, TokenPurpose.EMAIL_VERIFICATION, 60)
        updated = memory_store.apply_one_time_token(
            TokenPurpose.EMAIL_VERIFICATION, token, {"is_email_verified": True}
        )
        assert updated.is_email_verified
        assert (
            memory_store.apply_one_time_token(
                TokenPurpose.EMAIL_VERIFICATION, token, {"is_email_verified": True}
            )
            is None
        )

    def test_purpose_must_match(self, memory_store):
        user = _user(memory_store)
        token = memory_store.create_one_time_token(user.id, TokenPurpose.EMAIL_VERIFICATION, 60)
        assert (
            memory_store.apply_one_time_token(
                TokenPurpose.PASSWORD_RESET, token, {"password_hash": "x"}
            )
            is None
        )
        assert memory_store.get_user(user.id).password_hash == "hash"

    def test_expired_token_is_refused(self, memory_store):
        user = _user(memory_store)
        token = memory_store.create_one_time_token(user.id, TokenPurpose.PASSWORD_RESET, -1)
        assert (
            memory_store.apply_one_time_token(
                TokenPurpose.PASSWORD_RESET, token, {"password_hash": "x"}
            )
            is None
        )

    def test_new_token_replaces_previous(self, memory_store):
        user = _user(memory_store)
        first = memory_store.create_one_time_token(user.id, TokenPurpose.PASSWORD_RESET, 60)
        second = memory_store.create_one_time_token(user.id, TokenPurpose.PASSWORD_RESET, 60)
        assert memory_store.apply_one_time_token(TokenPurpose.PASSWORD_RESET, first, {}) is None
        assert memory_store.apply_one_time_token(TokenPurpose.PASSWORD_RESET, second, {}) is not None


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(str(tmp_path))
        user = store.create_user("persist@example.com", "hash", business_name="Frames & Co")
        store.save_refresh_token(user.id, "rt", utcnow() + timedelta(days=1), session_id="s1")
        store.increment_login_attempts(user.id, max_attempts=5, lockout_seconds=60)

        reloaded = MemoryStore(str(tmp_path))
        again = reloaded.get_user_by_email("persist@example.com")
        assert again.id == user.id
        assert again.business_name == "Frames & Co"
        assert again.login_attempts == 1
        assert reloaded.get_refresh_token("rt").id == "s1"
        assert (tmp_path / "memory_store.json").exists()
