import asyncio

import pytest

from crm_agent.domain.errors import AuthError
from crm_agent.infrastructure.security.session_resolver import (
    Credentials,
    SessionCache,
    SessionIdentity,
    SessionResolver,
    StaticSessionBackend,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now



class GatedBackend(StaticSessionBackend):
    """Holds lookups for gated tokens until released"""

    def __init__(self, gated):
        super().__init__()
        self.gated = set(gated)
        self.release = asyncio.Event()

    async def lookup(self, credentials):
        if credentials.token() in self.gated:
            await self.release.wait()
        return await super().lookup(credentials)

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    backend = StaticSessionBackend()
    backend.add_session("tok_demo", SessionIdentity(user_id="user_demo", organization_id="org_demo", role="admin"))
    backend.add_session("cookie_demo", SessionIdentity(user_id="user_cookie", organization_id="org_demo"))
    return backend


@pytest.fixture
def resolver(backend, clock):
    return SessionResolver(backend, SessionCache(ttl_seconds=5.0, max_entries=2, clock=clock))


class TestCredentials:

    def test_bearer_wins_over_cookie(self):
        credentials = Credentials(cookie="cookie_demo", authorization="Bearer tok_demo")
        assert credentials.token() == "tok_demo"

    def test_cookie_used_without_bearer(self):
        assert Credentials(cookie="cookie_demo", authorization="Basic abc").token() == "cookie_demo"
        assert Credentials(authorization="Bearer   ").token() is None

    def test_cache_key_is_hashed(self):
        key = Credentials(authorization="Bearer tok_demo").cache_key()
        assert len(key) == 64
        assert "tok_demo" not in key
        assert key != Credentials(cookie="tok_demo").cache_key()


class TestSessionCache:

    def test_entries_expire(self, clock):
        cache = SessionCache(ttl_seconds=5.0, clock=clock)
        identity = SessionIdentity(user_id="u", organization_id="o")
        cache.set("k", identity)

        clock.now += 4
        assert cache.get("k") == identity
        clock.now += 1
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_oldest_entry_evicted(self, clock):
        cache = SessionCache(max_entries=2, clock=clock)
        for key in ("a", "b", "c"):
            cache.set(key, SessionIdentity(user_id=key, organization_id="o"))

        assert cache.get("a") is None
        assert cache.get("b").user_id == "b"
        assert cache.get("c").user_id == "c"


class TestSessionResolver:

    async def test_resolves_identity_with_page_context(self, resolver):
        context = await resolver.resolve(
            Credentials(authorization="Bearer tok_demo"),
            current_page="/orders/ORD-00003",
            active_entity_id="ORD-00003",
            active_entity_type="order"
        )

        assert context.user_id == "user_demo"
        assert context.organization_id == "org_demo"
        assert context.role == "admin"
        assert context.active_entity_id == "ORD-00003"

    async def test_repeat_lookups_are_cached(self, resolver, backend, clock):
        credentials = Credentials(authorization="Bearer tok_demo")
        await resolver.resolve(credentials)
        await resolver.resolve(credentials)
        assert backend.lookups == 1

        clock.now += 5.0
        await resolver.resolve(credentials)
        assert backend.lookups == 2

    async def test_revoked_session_survives_until_ttl(self, resolver, backend, clock):
        credentials = Credentials(cookie="cookie_demo")
        await resolver.resolve(credentials)
        backend.revoke("cookie_demo")

        assert (await resolver.resolve(credentials)).user_id == "user_cookie"
        clock.now += 6
        with pytest.raises(AuthError):
            await resolver.resolve(credentials)

    async def test_missing_credentials(self, resolver, backend):
        with pytest.raises(AuthError, match="Authentication required"):
            await resolver.resolve(Credentials())
        assert backend.lookups == 0

    async def test_unknown_token(self, resolver):
        with pytest.raises(AuthError) as excinfo:
            await resolver.resolve(Credentials(authorization="Bearer nope"))
        assert excinfo.value.code == "UNAUTHORIZED"

    async def test_slow_lookup_does_not_block_other_credentials(self, clock):
        backend = GatedBackend(gated={"tok_slow"})
        backend.add_session("tok_slow", SessionIdentity(user_id="user_slow", organization_id="org_demo"))
        backend.add_session("tok_fast", SessionIdentity(user_id="user_fast", organization_id="org_demo"))
        resolver = SessionResolver(backend, SessionCache(ttl_seconds=5.0, clock=clock))

        slow = asyncio.ensure_future(resolver.resolve(Credentials(authorization="Bearer tok_slow")))
        await asyncio.sleep(0)
        fast = await asyncio.wait_for(resolver.resolve(Credentials(authorization="Bearer tok_fast")), 1)

        assert fast.user_id == "user_fast"
        assert not slow.done()
        backend.release.set()
        assert (await slow).user_id == "user_slow"

    async def test_concurrent_lookups_for_one_credential_hit_backend_once(self, clock):
        backend = GatedBackend(gated={"tok_slow"})
        backend.add_session("tok_slow", SessionIdentity(user_id="user_slow", organization_id="org_demo"))
        resolver = SessionResolver(backend, SessionCache(ttl_seconds=5.0, clock=clock))
        credentials = Credentials(authorization="Bearer tok_slow")

        pending = [asyncio.ensure_future(resolver.resolve(credentials)) for _ in range(3)]
        await asyncio.sleep(0)
        backend.release.set()
        resolved = await asyncio.gather(*pending)

        assert {context.user_id for context in resolved} == {"user_slow"}
        assert backend.lookups == 1
        assert resolver._locks == {}
