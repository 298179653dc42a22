from __future__ import annotations

import pytest

from app.services import access_levels


@pytest.mark.unit
def test_access_levels_are_monotonic() -> None:
    order = access_levels.ACCESS_LEVEL_ORDER
    for i, lower in enumerate(order):
        for higher in order[i + 1 :]:
            assert access_levels.access_level_permissions(lower) <= access_levels.access_level_permissions(higher)


@pytest.mark.unit
def test_owner_level_adds_property_permission_management() -> None:
    owner = access_levels.access_level_permissions("owner")
    full_control = access_levels.access_level_permissions("full_control")

    assert owner - full_control == {
        "analytics.export",
        "users.property.create",
        "users.property.delete",
        "permissions.property.grant",
        "permissions.property.revoke",
    }


@pytest.mark.unit
def test_read_only_level_permissions() -> None:
    assert access_levels.access_level_permissions("read_only") == {
        "financial.daily_summary.read",
        "reports.basic.read",
        "outlets.read",
        "dashboard.view",
    }
    assert access_levels.access_level_permissions("superuser") == frozenset()


@pytest.mark.unit
def test_has_required_access_level() -> None:
    assert access_levels.has_required_access_level("management", "data_entry") is True
    assert access_levels.has_required_access_level("management", "management") is True
    assert access_levels.has_required_access_level("read_only", "owner") is False
    assert access_levels.has_required_access_level("bogus", "read_only") is False
    assert access_levels.is_access_level("full_control") is True
