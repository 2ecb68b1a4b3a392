"""In-memory store: constraints, copy semantics and on-disk persistence."""

from datetime import timedelta

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import BlockedIp, RefreshToken, UserSession, utcnow


@pytest.fixture
def store():
    return MemoryStore()


class TestUsers:
    def test_username_and_email_unique_case_insensitive(self, store):
        store.create_user("alice", "alice@example.com")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user("ALICE", "new@example.com")
        assert exc.value.detail == {"field": "username"}
        with pytest.raises(ConstraintViolation):
            store.create_user("alice2", "Alice@Example.com")

    def test_returned_rows_are_copies(self, store):
        user = store.create_user("alice", "alice@example.com")
        user.is_active = False
        assert store.get_user(user.id).is_active is True

    def test_security_stamp_rotation(self, store):
        user = store.create_user("alice", "alice@example.com")
        stamp = store.update_security_stamp(user.id)
        assert stamp != user.security_stamp
        assert store.get_user(user.id).security_stamp == stamp
        assert store.update_security_stamp("missing") is None

    def test_role_permissions_union(self, store):
        perms = store.get_role_permissions(["admin", "user"])
        assert "sessions.self.manage" in perms
        assert "users.manage" in perms
        assert perms == sorted(set(perms))

    def test_save_password_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")


class TestRefreshTokenRows:
    def test_rotate_is_conditional(self, store):
        user = store.create_user("alice", "alice@example.com")
        old = store.add_refresh_token(RefreshToken.new(user.id, "v1", "j1", 7))
        successor = RefreshToken.new(user.id, "v2", "j2", 7)

        assert store.rotate_refresh_token(old.id, successor) is not None
        again = RefreshToken.new(user.id, "v3", "j3", 7)
        assert store.rotate_refresh_token(old.id, again) is None
        assert store.get_refresh_token("v3") is None

    def test_duplicate_value_rejected(self, store):
        user = store.create_user("alice", "alice@example.com")
        store.add_refresh_token(RefreshToken.new(user.id, "v1", "j1", 7))
        with pytest.raises(ConstraintViolation):
            store.add_refresh_token(RefreshToken.new(user.id, "v1", "j2", 7))


class TestBlocks:
    def test_one_active_block_per_ip(self, store):
        store.create_block(BlockedIp.new("203.0.113.5", "manual", None))
        with pytest.raises(ConstraintViolation):
            store.create_block(BlockedIp.new("203.0.113.5", "again", 10))

    def test_reblock_after_deactivation(self, store):
        first = store.create_block(BlockedIp.new("203.0.113.5", "manual", 10))
        assert store.deactivate_block(first.id)
        store.create_block(BlockedIp.new("203.0.113.5", "again", 10))
        assert store.count_active_blocks() == 1


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("alice", "alice@example.com", roles=["admin"])
        store.save_password(user.id, "hash", "argon2id")
        store.add_refresh_token(RefreshToken.new(user.id, "v1", "j1", 7))
        session = UserSession.new(user.id, 60, ip_address="10.0.0.1", jwt_id="j1")
        store.create_session_with_limit(session, 5)
        store.create_block(BlockedIp.new("203.0.113.5", "manual", None))
        store.set_system_settings({"session.max_concurrent_sessions": 3})

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user_by_username("alice").roles == ["admin"]
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        token = reloaded.get_refresh_token("v1")
        assert token.jwt_id == "j1"
        assert token.expiry_date > utcnow() + timedelta(days=6)
        assert reloaded.get_session_by_jwt_id("j1").ip_address == "10.0.0.1"
        assert reloaded.get_active_block("203.0.113.5").is_permanent
        assert reloaded.get_system_settings() == {"session.max_concurrent_sessions": 3}

    def test_fresh_directory_starts_empty(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "new"))
        assert store.users == {}
        assert (tmp_path / "new").is_dir()
