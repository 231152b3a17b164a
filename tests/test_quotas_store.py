# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

import pytest

from quotactl.core.exceptions import InconsistentQuotasError
from quotactl.quota.group import QuotaGroup, new_group
from quotactl.servicestate.quotas import (
    QUOTAS_KEY,
    all_quotas,
    get_quota,
    patch_quotas,
    replace_quotas,
    set_quota,
)
from quotactl.servicestate.service_options import snap_service_options

MiB = 1024 * 1024


def test_all_quotas_empty(bare_state):
    """Test that no stored quotas reads as an empty set"""
    assert all_quotas(bare_state) == {}
    assert get_quota(bare_state, "web") is None


def test_set_and_get_quota(bare_state):
    grp = new_group("web", 64 * MiB)
    grp.snaps = ["svc-a"]
    set_quota(bare_state, grp)

    loaded = get_quota(bare_state, "web")
    assert loaded.snaps == ["svc-a"]
    assert loaded.memory_limit == 64 * MiB
    assert loaded.path == ["web"]


def test_loaded_groups_are_copies(bare_state):
    """Test that mutating a loaded group does not touch the store"""
    set_quota(bare_state, new_group("web", 64 * MiB))

    loaded = get_quota(bare_state, "web")
    loaded.snaps.append("svc-a")

    assert get_quota(bare_state, "web").snaps == []


def test_patch_quotas_returns_passed_objects(bare_state):
    """Test that the returned set holds the patched groups themselves"""
    web = new_group("web", 64 * MiB)
    set_quota(bare_state, web)

    web = get_quota(bare_state, "web")
    api = web.new_sub_group("api", 32 * MiB)
    result = patch_quotas(bare_state, web, api)

    assert result["api"] is api
    assert result["web"] is web
    assert api.path == ["web", "api"]
    assert get_quota(bare_state, "web").sub_groups == ["api"]


def test_inconsistent_patch_is_not_written(bare_state):
    """Test that a patch failing resolution leaves the stored set alone"""
    set_quota(bare_state, new_group("web", 64 * MiB))

    orphan = QuotaGroup(name="api", parent_group="web", memory_limit=32 * MiB)
    with pytest.raises(InconsistentQuotasError):
        patch_quotas(bare_state, orphan)

    assert sorted(all_quotas(bare_state)) == ["web"]


def test_replace_quotas_writes_sorted_records(bare_state):
    groups = {
        "web": new_group("web", 64 * MiB),
        "batch": new_group("batch", 16 * MiB),
    }
    replace_quotas(bare_state, groups)

    raw = bare_state.get(QUOTAS_KEY)
    assert list(raw) == ["batch", "web"]
    assert raw["web"]["memory-limit"] == 64 * MiB


def test_stored_set_must_be_mapping(bare_state):
    bare_state.set(QUOTAS_KEY, ["web"])

    with pytest.raises(InconsistentQuotasError, match="not a mapping"):
        all_quotas(bare_state)


def test_snap_service_options_follow_hierarchy(bare_state):
    """Test that a snap in a sub-group gets every ancestor slice"""
    web = new_group("web", 64 * MiB)
    api = web.new_sub_group("api", 32 * MiB)
    api.snaps = ["svc-b"]
    web.snaps = ["svc-a"]
    patch_quotas(bare_state, web, api)

    opts = snap_service_options(bare_state, "svc-b")
    assert [g.name for g in opts.quota_path] == ["web", "api"]
    assert opts.quota_group.name == "api"

    opts = snap_service_options(bare_state, "svc-a")
    assert [g.name for g in opts.quota_path] == ["web"]

    opts = snap_service_options(bare_state, "svc-c")
    assert opts.quota_path == []
    assert opts.quota_group is None
