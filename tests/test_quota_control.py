# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Tests for quota group mutations

Tests:
- Create, update, remove and remove-snap against in-memory state
- Validation failures leave the stored groups untouched
- Units and restarts that follow each mutation
"""

import pytest

from quotactl.core.exceptions import (
    ConflictingUpdateError,
    FeatureDisabledError,
    InvalidQuotaGroupError,
    QuotaGroupExistsError,
    QuotaGroupNotFoundError,
    QuotaGroupNotLeafError,
    QuotaValidationError,
    SnapAlreadyInGroupError,
    SnapNotInGroupError,
    SystemdError,
    SystemdTooOldError,
)
from quotactl.core.features import QUOTA_GROUPS, set_flag
from quotactl.core.state import State
from quotactl.servicestate.quota_control import (
    AddSnaps,
    Orphan,
    QuotaGroupUpdate,
    Reparent,
    ReplaceSnaps,
    Resize,
    create_quota,
    remove_quota,
    remove_snap_from_quota,
    update_quota,
)
from quotactl.servicestate.quotas import QUOTAS_KEY, all_quotas, get_quota

from conftest import register_snaps

MiB = 1024 * 1024


def stored(st):
    """Raw persisted group set"""
    return st.get(QUOTAS_KEY) if QUOTAS_KEY in st.keys() else None


@pytest.fixture
def web_api(st, backend, systemctl):
    """web (svc-a) with sub-group api (svc-b), plus top-level batch (svc-c)"""
    create_quota(st, "web", "", ["svc-a"], 64 * MiB)
    create_quota(st, "api", "web", ["svc-b"], 32 * MiB)
    create_quota(st, "batch", "", ["svc-c"], 16 * MiB)
    systemctl.reset()
    return st


def test_create_top_level_group(st, backend):
    """Test that a created group reads back as given"""
    create_quota(st, "web", "", ["svc-a"], 64 * MiB)

    grp = get_quota(st, "web")
    assert grp.parent_group == ""
    assert grp.snaps == ["svc-a"]
    assert grp.memory_limit == 64 * MiB
    assert grp.sub_groups == []


def test_create_sub_group(st, backend):
    """Test that parent and child reference each other"""
    create_quota(st, "web", "", ["svc-a"], 64 * MiB)
    create_quota(st, "api", "web", ["svc-b"], 32 * MiB)

    assert get_quota(st, "web").sub_groups == ["api"]
    assert get_quota(st, "api").parent_group == "web"
    assert get_quota(st, "api").slice_file_name() == "snap.web-api.slice"


def test_snap_already_in_group(st, backend):
    """Test that a snap cannot join a second group"""
    create_quota(st, "web", "", ["svc-a"], 64 * MiB)
    before = stored(st)

    with pytest.raises(SnapAlreadyInGroupError, match="snap already in quota group 'web'") as exc:
        create_quota(st, "dup", "", ["svc-a"], 10 * MiB)

    assert exc.value.existing_group == "web"
    assert stored(st) == before
    assert sorted(all_quotas(st)) == ["web"]


def test_handles_on_one_file_see_each_others_groups(tmp_path, backend):
    """Test that a group created through one handle is checked by another"""
    path = tmp_path / "state.json"
    first = State.load(path)
    second = State.load(path)

    with first.locked():
        register_snaps(first)
        set_flag(first, QUOTA_GROUPS, True)
        create_quota(first, "web", "", ["svc-a"], 64 * MiB)

    with second.locked():
        with pytest.raises(SnapAlreadyInGroupError, match="snap already in quota group 'web'"):
            create_quota(second, "batch", "", ["svc-a"], 16 * MiB)
        assert sorted(all_quotas(second)) == ["web"]

    reloaded = State.load(path)
    with reloaded.locked():
        assert sorted(all_quotas(reloaded)) == ["web"]


def test_remove_requires_leaf(st, backend):
    """Test that sub-groups have to go before their parent"""
    create_quota(st, "web", "", ["svc-a"], 64 * MiB)
    create_quota(st, "api", "web", ["svc-b"], 32 * MiB)
    before = stored(st)

    with pytest.raises(QuotaGroupNotLeafError, match="remove the sub-groups first"):
        remove_quota(st, "web")
    assert stored(st) == before

    remove_quota(st, "api")
    remove_quota(st, "web")

    assert all_quotas(st) == {}


def test_remove_snap_reconciles_removed_snap(st, backend, unit_dir):
    """Test that the removed snap is reconciled although no longer a member"""
    create_quota(st, "web", "", ["svc-a", "svc-b"], 64 * MiB)

    report = remove_snap_from_quota(st, "web", "svc-a")

    assert get_quota(st, "web").snaps == ["svc-b"]
    assert "svc-a" in report.snaps
    assert report.modified_services == {
        "svc-a": ["snap.svc-a.server.service", "snap.svc-a.worker.service"]
    }
    assert not (unit_dir / "snap.svc-a.server.service.d").exists()
    assert (unit_dir / "snap.svc-b.api.service.d" / "quota.conf").exists()


# =============================================================================
# create_quota
# =============================================================================


def test_create_writes_units_and_restarts(st, backend, systemctl, unit_dir):
    report = create_quota(st, "web", "", ["svc-a"], 64 * MiB)

    assert (unit_dir / "snap.web.slice").exists()
    assert report.modified_slices == ["snap.web.slice"]
    assert report.restarts.restarted_slices == ["snap.web.slice"]
    assert systemctl.calls == [
        ["--version"],
        ["daemon-reload"],
        ["restart", "snap.web.slice"],
        ["is-enabled", "snap.svc-a.server.service", "snap.svc-a.worker.service"],
        ["stop", "snap.svc-a.server.service", "snap.svc-a.worker.service"],
        ["start", "snap.svc-a.server.service"],
        ["start", "snap.svc-a.worker.service"],
    ]


def test_create_empty_group(st, backend, systemctl):
    """Test that a group without snaps persists but touches no units"""
    report = create_quota(st, "spare", "", [], 16 * MiB)

    assert get_quota(st, "spare").snaps == []
    assert not report.changed
    assert systemctl.calls == [["--version"]]


def test_create_requires_feature_flag(st, backend):
    set_flag(st, QUOTA_GROUPS, False)

    with pytest.raises(FeatureDisabledError, match="experimental.quota-groups"):
        create_quota(st, "web", "", ["svc-a"], 64 * MiB)
    assert stored(st) is None


def test_create_requires_recent_systemd(st, backend, systemctl):
    systemctl.version = 204

    with pytest.raises(SystemdTooOldError, match="requires systemd 205 and newer") as exc:
        create_quota(st, "web", "", ["svc-a"], 64 * MiB)

    assert exc.value.version == 204
    assert stored(st) is None


def test_create_rejects_existing_name(st, backend):
    create_quota(st, "web", "", ["svc-a"], 64 * MiB)

    with pytest.raises(QuotaGroupExistsError, match="group 'web' already exists"):
        create_quota(st, "web", "", ["svc-b"], 64 * MiB)


def test_create_rejects_unknown_snap(st, backend):
    with pytest.raises(QuotaValidationError, match="cannot use snap 'nope' in group 'web'"):
        create_quota(st, "web", "", ["nope"], 64 * MiB)
    assert stored(st) is None


def test_create_rejects_repeated_snap(st, backend):
    with pytest.raises(QuotaValidationError, match="more than once"):
        create_quota(st, "web", "", ["svc-a", "svc-a"], 64 * MiB)


def test_create_rejects_missing_parent(st, backend):
    with pytest.raises(QuotaGroupNotFoundError, match="non-existent parent group 'web'"):
        create_quota(st, "api", "web", ["svc-b"], 32 * MiB)
    assert stored(st) is None


@pytest.mark.parametrize("name,limit", [("Web", 64 * MiB), ("web", 0), ("web", 1024)])
def test_create_rejects_invalid_group(st, backend, name, limit):
    with pytest.raises(InvalidQuotaGroupError):
        create_quota(st, name, "", ["svc-a"], limit)
    assert stored(st) is None


def test_create_failure_after_persist_keeps_group(st, backend, systemctl):
    """Test that a failing restart does not roll the new group back"""
    systemctl.failures["restart"] = "Job for snap.web.slice failed."

    with pytest.raises(SystemdError):
        create_quota(st, "web", "", ["svc-a"], 64 * MiB)

    assert get_quota(st, "web").snaps == ["svc-a"]


# =============================================================================
# update_quota
# =============================================================================


def test_update_add_snaps(web_api, backend, systemctl):
    """Test that only the added snap's services are restarted"""
    remove_snap_from_quota(web_api, "batch", "svc-c")
    systemctl.reset()

    report = update_quota(web_api, "web", AddSnaps(["svc-c"]))

    assert get_quota(web_api, "web").snaps == ["svc-a", "svc-c"]
    assert list(report.modified_services) == ["svc-c"]
    assert report.modified_slices == []
    assert systemctl.commands("stop") == [
        ["stop", "snap.svc-c.cache.service", "snap.svc-c.db.service"]
    ]


def test_update_add_snap_from_other_group(web_api, backend):
    before = stored(web_api)

    with pytest.raises(SnapAlreadyInGroupError, match="already in quota group 'batch'"):
        update_quota(web_api, "web", AddSnaps(["svc-c"]))
    assert stored(web_api) == before


def test_update_replace_snaps(web_api, backend, unit_dir):
    """Test that snaps dropped by a replacement leave the slice"""
    remove_snap_from_quota(web_api, "batch", "svc-c")

    report = update_quota(web_api, "web", ReplaceSnaps(["svc-a", "svc-c"]))
    assert get_quota(web_api, "web").snaps == ["svc-a", "svc-c"]
    assert list(report.modified_services) == ["svc-c"]

    report = update_quota(web_api, "web", ReplaceSnaps(["svc-c"]))
    assert get_quota(web_api, "web").snaps == ["svc-c"]
    assert report.snaps == ["svc-c", "svc-a"]
    assert list(report.modified_services) == ["svc-a"]
    assert not (unit_dir / "snap.svc-a.server.service.d").exists()


def test_update_resize(web_api, backend, systemctl, unit_dir):
    """Test that a new limit restarts the slice but no services"""
    report = update_quota(web_api, "web", Resize(128 * MiB))

    assert get_quota(web_api, "web").memory_limit == 128 * MiB
    assert report.modified_slices == ["snap.web.slice"]
    assert report.modified_services == {}
    assert systemctl.commands("restart", "stop", "start") == [["restart", "snap.web.slice"]]
    assert f"MemoryMax={128 * MiB}" in (unit_dir / "snap.web.slice").read_text()


def test_update_rejects_invalid_limit(web_api, backend):
    before = stored(web_api)

    with pytest.raises(InvalidQuotaGroupError, match="too small"):
        update_quota(web_api, "web", Resize(100))
    assert stored(web_api) == before


def test_update_reparent(web_api, backend, unit_dir):
    """Test moving a top-level group under another group"""
    report = update_quota(web_api, "batch", Reparent("web"))

    groups = all_quotas(web_api)
    assert groups["web"].sub_groups == ["api", "batch"]
    assert groups["batch"].parent_group == "web"
    assert report.modified_slices == ["snap.web-batch.slice"]

    drop_in = unit_dir / "snap.svc-c.db.service.d" / "quota.conf"
    assert "Slice=snap.web-batch.slice" in drop_in.read_text()


def test_update_reparent_between_parents(web_api, backend):
    """Test that a move patches the old and the new parent together"""
    update_quota(web_api, "api", Reparent("batch"))

    groups = all_quotas(web_api)
    assert groups["web"].sub_groups == []
    assert groups["batch"].sub_groups == ["api"]
    assert groups["api"].path == ["batch", "api"]


@pytest.mark.parametrize(
    "name,parent,error",
    [
        ("web", "api", ConflictingUpdateError),
        ("web", "web", ConflictingUpdateError),
        ("api", "web", ConflictingUpdateError),
        ("web", "nowhere", QuotaGroupNotFoundError),
    ],
)
def test_update_rejects_bad_reparent(web_api, backend, name, parent, error):
    """Test moves under a descendant, itself, the current parent or nothing"""
    before = stored(web_api)

    with pytest.raises(error):
        update_quota(web_api, name, Reparent(parent))
    assert stored(web_api) == before


def test_update_orphan(web_api, backend):
    report = update_quota(web_api, "api", Orphan())

    groups = all_quotas(web_api)
    assert groups["web"].sub_groups == []
    assert groups["api"].parent_group == ""
    assert report.modified_slices == ["snap.api.slice"]


def test_update_orphan_top_level(web_api, backend):
    with pytest.raises(ConflictingUpdateError, match="already without a parent"):
        update_quota(web_api, "web", Orphan())


def test_update_orphan_and_reparent(web_api, backend):
    """Test that orphaning and moving at once always fails unchanged"""
    before = stored(web_api)
    request = QuotaGroupUpdate(new_parent_group="batch", orphan_sub_group=True)

    with pytest.raises(ConflictingUpdateError, match="cannot both orphan a sub-group"):
        update_quota(web_api, "api", *request.changes())
    assert stored(web_api) == before


def test_update_add_and_replace(web_api, backend):
    with pytest.raises(ConflictingUpdateError, match="both add snaps to and replace"):
        update_quota(web_api, "web", AddSnaps(["svc-c"]), ReplaceSnaps(["svc-a"]))


def test_update_combined(web_api, backend):
    """Test membership, limit and placement changes in one call"""
    remove_snap_from_quota(web_api, "batch", "svc-c")

    update_quota(web_api, "api", AddSnaps(["svc-c"]), Resize(48 * MiB), Orphan())

    api = get_quota(web_api, "api")
    assert api.snaps == ["svc-b", "svc-c"]
    assert api.memory_limit == 48 * MiB
    assert api.parent_group == ""


def test_update_unknown_group(st, backend):
    with pytest.raises(QuotaGroupNotFoundError, match="group 'web' does not exist"):
        update_quota(st, "web", Resize(64 * MiB))


def test_quota_group_update_changes():
    """Test the flat request form"""
    assert QuotaGroupUpdate().changes() == []
    assert QuotaGroupUpdate(add_snaps=["svc-a"], new_memory_limit=MiB).changes() == [
        AddSnaps(["svc-a"]),
        Resize(MiB),
    ]
    assert QuotaGroupUpdate(add_snaps=["svc-a"], replace_snaps=True).changes() == [
        ReplaceSnaps(["svc-a"])
    ]
    assert QuotaGroupUpdate(new_parent_group="web").changes() == [Reparent("web")]


def test_replace_with_no_snaps_is_rejected():
    """Test that a replace without snaps does not empty the group"""
    with pytest.raises(QuotaValidationError, match="with no snaps"):
        QuotaGroupUpdate(replace_snaps=True).changes()
    with pytest.raises(QuotaValidationError, match="with no snaps"):
        QuotaGroupUpdate(replace_snaps=True, new_memory_limit=MiB).changes()


# =============================================================================
# remove_quota / remove_snap_from_quota
# =============================================================================


def test_remove_tears_down_slice(web_api, backend, systemctl, unit_dir):
    """Test that a removed group's slice is stopped and deleted"""
    report = remove_quota(web_api, "batch")

    assert get_quota(web_api, "batch") is None
    assert report.restarts.removed_slice == "snap.batch.slice"
    assert not (unit_dir / "snap.batch.slice").exists()
    assert not (unit_dir / "snap.svc-c.db.service.d").exists()
    assert ["stop", "snap.batch.slice"] in systemctl.calls


def test_remove_sub_group_unlinks_parent(web_api, backend):
    remove_quota(web_api, "api")

    assert get_quota(web_api, "web").sub_groups == []


def test_remove_works_without_feature_flag(web_api, backend):
    set_flag(web_api, QUOTA_GROUPS, False)

    remove_quota(web_api, "batch")

    assert get_quota(web_api, "batch") is None


def test_remove_unknown_group(st, backend):
    with pytest.raises(QuotaGroupNotFoundError, match="non-existent quota group 'web'"):
        remove_quota(st, "web")


def test_remove_snap_errors(web_api, backend):
    before = stored(web_api)

    with pytest.raises(QuotaGroupNotFoundError, match="quota group 'nope' does not exist"):
        remove_snap_from_quota(web_api, "nope", "svc-a")
    with pytest.raises(SnapNotInGroupError, match="snap 'svc-b' is not in quota group 'web'"):
        remove_snap_from_quota(web_api, "web", "svc-b")

    assert stored(web_api) == before
