# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Quota group control plane: persistence, mutations and reconciliation."""

from .backend import ServiceBackend, get_service_backend, set_service_backend
from .quota_control import (
    AddSnaps,
    Orphan,
    QuotaChange,
    QuotaGroupUpdate,
    Reparent,
    ReplaceSnaps,
    Resize,
    create_quota,
    quota_groups_available,
    remove_quota,
    remove_snap_from_quota,
    update_quota,
)
from .quotas import all_quotas, get_quota, patch_quotas, replace_quotas
from .reconcile import ReconcileReport, ensure_snap_services_for_group
from .sequencer import RestartPhase, RestartReport, RestartSequencer
from .service_options import snap_service_options

__all__ = [
    # Collaborators
    "ServiceBackend",
    "get_service_backend",
    "set_service_backend",
    # Mutations
    "AddSnaps",
    "ReplaceSnaps",
    "Resize",
    "Reparent",
    "Orphan",
    "QuotaChange",
    "QuotaGroupUpdate",
    "create_quota",
    "update_quota",
    "remove_quota",
    "remove_snap_from_quota",
    "quota_groups_available",
    # Persistence
    "all_quotas",
    "get_quota",
    "patch_quotas",
    "replace_quotas",
    # Reconciliation
    "ReconcileReport",
    "ensure_snap_services_for_group",
    "RestartPhase",
    "RestartReport",
    "RestartSequencer",
    "snap_service_options",
]
