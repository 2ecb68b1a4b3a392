"""Token slot cache and request-context map, in-process and over a shared backend."""

from datetime import timedelta

from authcore.service.token_cache import DEFAULT_DEVICE, CachedToken, DistributedTokenCache
from authcore.storage.models import utcnow


class BrokenBackend:
    """Every Redis call fails; the cache must degrade to misses."""

    async def get_token_slot(self, key):
        raise ConnectionError("redis down")

    async def set_token_slot(self, key, value, expires_at):
        raise ConnectionError("redis down")

    async def delete_token_slot(self, *keys):
        raise ConnectionError("redis down")

    async def list_token_slots(self, pattern):
        raise ConnectionError("redis down")

    async def resolve_context(self, context_id):
        raise ConnectionError("redis down")

    async def drop_user_contexts(self, user_id):
        raise ConnectionError("redis down")


class DictBackend:
    """Dict-backed stand-in for the Redis cache interface."""

    def __init__(self):
        self.slots = {}
        self.contexts = {}

    async def get_token_slot(self, key):
        return self.slots.get(key)

    async def set_token_slot(self, key, value, expires_at):
        self.slots[key] = (value, expires_at)

    async def delete_token_slot(self, *keys):
        return sum(1 for key in keys if self.slots.pop(key, None) is not None)

    async def list_token_slots(self, pattern):
        prefix = pattern.rstrip("*")
        return [key for key in self.slots if key.startswith(prefix)]

    async def register_context(self, context_id, slot_key, ttl_seconds):
        self.contexts[context_id] = slot_key

    async def resolve_context(self, context_id):
        return self.contexts.get(context_id)

    async def unregister_context(self, context_id):
        return self.contexts.pop(context_id, None) is not None

    async def drop_user_contexts(self, user_id):
        stale = [c for c, slot in self.contexts.items() if slot.startswith(f"{user_id}:")]
        for context_id in stale:
            del self.contexts[context_id]
        return len(stale)


class TestTokenSlots:
    async def test_update_and_read_pair(self):
        cache = DistributedTokenCache()
        expires = utcnow() + timedelta(minutes=5)

        await cache.update(
            "u1",
            jwt="access",
            jwt_expires_at=expires,
            refresh="refresh",
            refresh_expires_at=expires + timedelta(days=7),
            device_id="phone",
        )

        assert (await cache.get_jwt("u1", "phone")).value == "access"
        assert (await cache.get_refresh("u1", "phone")).value == "refresh"
        assert await cache.get_jwt("u1", "laptop") is None
        assert await cache.get_jwt("u1") is None

    async def test_expired_entry_is_a_miss(self):
        cache = DistributedTokenCache()
        await cache.set_jwt("u1", "stale", utcnow() - timedelta(seconds=1))
        assert await cache.get_jwt("u1") is None

    async def test_remove_device_slot(self):
        cache = DistributedTokenCache()
        expires = utcnow() + timedelta(minutes=5)
        await cache.set_jwt("u1", "a", expires, "phone")
        await cache.set_refresh("u1", "r", expires, "phone")
        await cache.set_jwt("u1", "b", expires, "laptop")

        assert await cache.remove("u1", "phone") == 2
        assert await cache.get_jwt("u1", "phone") is None
        assert (await cache.get_jwt("u1", "laptop")).value == "b"

    async def test_remove_user_clears_slots_and_contexts(self):
        cache = DistributedTokenCache()
        expires = utcnow() + timedelta(minutes=5)
        await cache.set_jwt("u1", "a", expires, "phone")
        await cache.set_jwt("u1", "b", expires, "laptop")
        await cache.set_jwt("u2", "c", expires)
        await cache.register_context("ctx-1", "u1", "phone")

        assert await cache.remove_user("u1") == 2
        assert await cache.resolve_context("ctx-1") is None
        assert (await cache.get_jwt("u2")).value == "c"

    async def test_cleanup_evicts_expired_entries(self):
        cache = DistributedTokenCache()
        await cache.set_jwt("u1", "old", utcnow() + timedelta(seconds=5))
        await cache.set_jwt("u2", "new", utcnow() + timedelta(hours=1))

        assert await cache.cleanup(now=utcnow() + timedelta(minutes=1)) == 1
        assert (await cache.get_jwt("u2")).value == "new"

    def test_near_expiry(self):
        now = utcnow()
        entry = CachedToken("t", now + timedelta(seconds=20))
        assert DistributedTokenCache.near_expiry(entry, 30, now=now)
        assert not DistributedTokenCache.near_expiry(entry, 10, now=now)

    def test_slot_key_defaults_device(self):
        assert DistributedTokenCache.slot_key("u1", "jwt") == f"token:u1:jwt:{DEFAULT_DEVICE}"


class TestContextMap:
    async def test_register_resolve_unregister(self):
        cache = DistributedTokenCache()
        slot = await cache.register_context("ctx-1", "u1", "phone")

        assert slot == "u1:phone"
        assert await cache.resolve_context("ctx-1") == ("u1", "phone")
        assert await cache.unregister_context("ctx-1") is True
        assert await cache.resolve_context("ctx-1") is None
        assert await cache.unregister_context("ctx-1") is False

    async def test_contexts_share_a_slot(self):
        cache = DistributedTokenCache()
        await cache.register_context("ctx-1", "u1")
        await cache.register_context("ctx-2", "u1")
        assert await cache.resolve_context("ctx-1") == await cache.resolve_context("ctx-2")


class TestBackendFailures:
    async def test_failures_degrade_to_misses(self):
        cache = DistributedTokenCache(BrokenBackend())
        expires = utcnow() + timedelta(minutes=5)

        await cache.set_jwt("u1", "a", expires)
        assert await cache.get_jwt("u1") is None
        assert await cache.remove("u1") == 0
        assert await cache.remove_user("u1") == 0
        assert await cache.resolve_context("ctx") is None
        assert await cache.cleanup() == 0


class TestSharedBackend:
    async def test_remove_user_clears_slots_and_contexts(self):
        backend = DictBackend()
        cache = DistributedTokenCache(backend)
        expires = utcnow() + timedelta(minutes=5)
        await cache.set_jwt("u1", "a", expires, "phone")
        await cache.set_jwt("u2", "c", expires)
        await cache.register_context("ctx-1", "u1", "phone")
        await cache.register_context("ctx-2", "u2")

        assert await cache.remove_user("u1") == 1
        assert await cache.resolve_context("ctx-1") is None
        assert await cache.resolve_context("ctx-2") == ("u2", DEFAULT_DEVICE)
        assert (await cache.get_jwt("u2")).value == "c"
