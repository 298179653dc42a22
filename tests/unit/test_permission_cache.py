from __future__ import annotations

import pytest

from app.services import permission_cache as cache_module


@pytest.mark.unit
def test_key_builders_use_global_scope() -> None:
    assert cache_module.computed_key("u1", None) == "perm:computed:u1:global"
    assert cache_module.computed_key("u1", "p1") == "perm:computed:u1:p1"
    assert cache_module.user_permissions_key("u1", "") == "perm:user:u1:global"
    assert cache_module.property_access_key("u1", "p1") == "access:prop:u1:p1"
    assert cache_module.user_properties_key("u1") == "props:user:u1"
    assert cache_module.role_permissions_key("staff") == "perm:role:staff"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_invalidate_user_clears_every_scope_of_that_user_only(permission_cache) -> None:
    await permission_cache.set_user_permissions("u1", None, ["a"])
    await permission_cache.set_user_permissions("u1", "p1", ["a"])
    await permission_cache.set_computed("u1", "p2", {"x": 1})
    await permission_cache.set_property_access("u1", "p1", can_access=True, access_level="management")
    await permission_cache.set_user_properties("u1", ["p1"])
    await permission_cache.set_user_permissions("u2", None, ["b"])

    deleted = await permission_cache.invalidate_user("u1")

    assert deleted == 4
    assert await permission_cache.get_user_permissions("u1", None) is None
    assert await permission_cache.get_user_permissions("u1", "p1") is None
    assert await permission_cache.get_computed("u1", "p2") is None
    assert await permission_cache.get_property_access("u1", "p1") is None
    assert await permission_cache.get_user_properties("u1") is None
    assert await permission_cache.get_user_permissions("u2", None) == ["b"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_invalidate_role_clears_role_key_and_holders(permission_cache, store) -> None:
    store.add_user("u1", "staff")
    store.add_user("u2", "staff")
    store.add_user("u3", "viewer")
    await permission_cache.set_role_permissions("staff", ["x"])
    for user_id in ("u1", "u2", "u3"):
        await permission_cache.set_user_permissions(user_id, None, ["x"])

    await permission_cache.invalidate_role("staff")

    assert await permission_cache.get_role_permissions("staff") is None
    assert await permission_cache.get_user_permissions("u1", None) is None
    assert await permission_cache.get_user_permissions("u2", None) is None
    assert await permission_cache.get_user_permissions("u3", None) == ["x"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_invalidate_property_only_touches_that_property(permission_cache) -> None:
    await permission_cache.set_user_permissions("u1", "p1", ["a"])
    await permission_cache.set_user_permissions("u1", "p2", ["a"])
    await permission_cache.set_property_access("u2", "p1", can_access=False, access_level=None)

    assert await permission_cache.invalidate_property("p1") == 2
    assert await permission_cache.get_user_permissions("u1", "p1") is None
    assert await permission_cache.get_user_permissions("u1", "p2") == ["a"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_clear_all_and_stats(permission_cache) -> None:
    await permission_cache.set_user_permissions("u1", None, ["a"])
    await permission_cache.set_computed("u1", None, {"permissions": ["a"]})
    await permission_cache.set_role_permissions("staff", ["a"])
    await permission_cache.client.set("unrelated", "1")

    stats = await permission_cache.get_stats()
    assert stats == {
        "computed_keys": 1,
        "user_permission_keys": 1,
        "role_permission_keys": 1,
        "property_access_keys": 0,
        "user_property_keys": 0,
        "total_keys": 3,
    }

    assert await permission_cache.clear_all() == 3
    assert (await permission_cache.get_stats())["total_keys"] == 0
    assert await permission_cache.client.get("unrelated") == "1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unparsable_value_is_a_miss(permission_cache) -> None:
    await permission_cache.client.set("perm:computed:u1:global", "{not json")

    assert await permission_cache.get_computed("u1", None) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delete_pattern_treats_plain_text_as_prefix(permission_cache) -> None:
    await permission_cache.set("perm:user:u1:global", {"permissions": []})
    await permission_cache.set("perm:user:u2:global", {"permissions": []})

    assert await permission_cache.delete_pattern("perm:user:") == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_entries_expire_after_ttl(permission_cache, clock) -> None:
    await permission_cache.set_user_permissions("u1", None, ["a"])

    clock.advance(permission_cache.ttl_seconds)

    assert await permission_cache.get_user_permissions("u1", None) is None
