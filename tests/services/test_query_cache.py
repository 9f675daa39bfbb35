import pytest

from plato.services.query_cache import QueryCache, QueryCacheRegistry


def test_set_and_get():
    cache = QueryCache()
    cache.set("/auth/user", {"id": "user-1"})

    assert "/auth/user" in cache
    assert cache.get("/auth/user") == {"id": "user-1"}
    assert cache.get("/organizations/current") is None


def test_invalidate_drops_exact_key_and_children():
    cache = QueryCache()
    cache.set("/companies/team", [])
    cache.set("/companies/team/42", {})
    cache.set("/companies/teams", [])
    cache.set("/auth/user", {})

    dropped = cache.invalidate("/companies/team")

    assert dropped == 2
    assert "/companies/team" not in cache
    assert "/companies/team/42" not in cache
    assert "/companies/teams" in cache
    assert "/auth/user" in cache


def test_invalidate_several_prefixes():
    cache = QueryCache()
    cache.set("/organizations/current", {"id": "org1"})
    cache.set("/auth/user", {"id": "user-1"})

    assert cache.invalidate("/organizations/current", "/auth/user") == 2
    assert cache.invalidate("/organizations/current") == 0


def test_clear():
    cache = QueryCache()
    cache.set("/auth/user", {})
    cache.clear()

    assert "/auth/user" not in cache


@pytest.mark.anyio
async def test_fetch_loads_once():
    cache = QueryCache()
    calls = []

    async def loader():
        calls.append(1)
        return {"id": "org1"}

    assert await cache.fetch("/organizations/current", loader) == {"id": "org1"}
    assert await cache.fetch("/organizations/current", loader) == {"id": "org1"}
    assert len(calls) == 1


@pytest.mark.anyio
async def test_fetch_does_not_cache_failures():
    cache = QueryCache()

    async def failing():
        raise RuntimeError("backend down")

    with pytest.raises(RuntimeError):
        await cache.fetch("/organizations/current", failing)

    assert "/organizations/current" not in cache


def test_registry_keeps_one_cache_per_client():
    registry = QueryCacheRegistry()

    first = registry.for_client("a")
    assert registry.for_client("a") is first
    assert registry.for_client("b") is not first

    registry.discard("a")
    registry.discard("missing")
    assert registry.for_client("a") is not first


def test_registry_is_bounded():
    registry = QueryCacheRegistry(max_clients=2, ttl_seconds=60)

    for client_id in ("a", "b", "c", "d"):
        registry.for_client(client_id)

    assert len(registry) == 2


def test_registry_limits_from_environment(monkeypatch):
    monkeypatch.setenv("QUERY_CACHE_MAX_CLIENTS", "1")

    registry = QueryCacheRegistry()
    registry.for_client("a")
    registry.for_client("b")

    assert len(registry) == 1
