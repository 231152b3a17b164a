# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Quota group model.

A quota group is a named memory limit over a set of snaps, optionally
nested under a parent group. Groups refer to each other by name only:
``parent_group`` on the child and ``sub_groups`` on the parent mirror each
other. The ancestor path (and from it the slice unit name) is derived
bookkeeping that cross-reference resolution fills in after every load;
it is never persisted.

Persisted form:
    {"name": "api", "parent-group": "web", "sub-groups": [],
     "snaps": ["svc-b"], "memory-limit": 33554432}
"""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic import ValidationError as PydanticValidationError

from ..core.exceptions import InconsistentQuotasError, InvalidQuotaGroupError

# systemd refuses tiny memory limits, 4 KiB is the smallest sensible value
MIN_MEMORY_LIMIT = 4 * 1024

MAX_NAME_LENGTH = 40

_VALID_NAME = re.compile(r"^[a-z0-9](?:-?[a-z0-9])*$")


def validate_group_name(name: str):
    """
    Check that name can be used as a quota group name.

    Raises:
        InvalidQuotaGroupError: If the name is empty, too long or has
            characters outside ``[a-z0-9-]``
    """
    if not name:
        raise InvalidQuotaGroupError("invalid quota group name: must not be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise InvalidQuotaGroupError(
            f"invalid quota group name {name!r}: must be at most "
            f"{MAX_NAME_LENGTH} characters long",
            group=name,
        )
    if not _VALID_NAME.match(name):
        raise InvalidQuotaGroupError(
            f"invalid quota group name {name!r}: must contain only lowercase "
            "letters, digits and single dashes, and not start or end with a dash",
            group=name,
        )


def validate_memory_limit(name: str, memory_limit: int):
    """
    Check that memory_limit (bytes) is usable for group name.

    Raises:
        InvalidQuotaGroupError: If the limit is zero, negative or below 4 KiB
    """
    if isinstance(memory_limit, bool) or not isinstance(memory_limit, int):
        raise InvalidQuotaGroupError(
            f"group {name!r} memory limit must be an integer number of bytes",
            group=name,
        )
    if memory_limit == 0:
        raise InvalidQuotaGroupError(
            f"group {name!r} memory limit must be non-zero", group=name
        )
    if memory_limit < MIN_MEMORY_LIMIT:
        raise InvalidQuotaGroupError(
            f"group {name!r} memory limit {memory_limit} is too small: "
            f"size must be at least {MIN_MEMORY_LIMIT} bytes",
            group=name,
        )


def escape_slice_component(name: str) -> str:
    """Escape a group name for use as one component of a slice unit name"""
    # "-" separates hierarchy levels in slice names
    return name.replace("-", "\\x2d")


class QuotaGroup(BaseModel):
    """A named, memory-limited set of snaps in the quota hierarchy."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=False)

    name: str
    parent_group: str = Field(default="", alias="parent-group")
    sub_groups: List[str] = Field(default_factory=list, alias="sub-groups")
    snaps: List[str] = Field(default_factory=list)
    memory_limit: int = Field(default=0, alias="memory-limit")

    # ancestor names from the top-level group down to this one
    _path: Optional[List[str]] = PrivateAttr(default=None)

    # ==========================================================================
    # Serialization
    # ==========================================================================

    @classmethod
    def from_state(cls, data: Dict[str, Any]) -> "QuotaGroup":
        """Build a group from its persisted record"""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise InconsistentQuotasError(
                "cannot decode persisted quota group", cause=e
            ) from e

    def to_state(self) -> Dict[str, Any]:
        """Persisted record of this group"""
        return {
            "name": self.name,
            "parent-group": self.parent_group,
            "sub-groups": list(self.sub_groups),
            "snaps": list(self.snaps),
            "memory-limit": self.memory_limit,
        }

    # ==========================================================================
    # Validation
    # ==========================================================================

    def validate_group(self):
        """
        Validate this group on its own, without looking at other groups.

        Raises:
            InvalidQuotaGroupError: On a bad name, a bad memory limit,
                self references or duplicate entries
        """
        validate_group_name(self.name)
        validate_memory_limit(self.name, self.memory_limit)

        if self.parent_group == self.name:
            raise InvalidQuotaGroupError(
                f"group {self.name!r} cannot be its own parent", group=self.name
            )
        if self.name in self.sub_groups:
            raise InvalidQuotaGroupError(
                f"group {self.name!r} cannot be its own sub-group", group=self.name
            )
        if len(set(self.sub_groups)) != len(self.sub_groups):
            raise InvalidQuotaGroupError(
                f"group {self.name!r} lists a sub-group more than once",
                group=self.name,
            )
        if len(set(self.snaps)) != len(self.snaps):
            raise InvalidQuotaGroupError(
                f"group {self.name!r} lists a snap more than once", group=self.name
            )

    # ==========================================================================
    # Hierarchy
    # ==========================================================================

    def new_sub_group(self, name: str, memory_limit: int) -> "QuotaGroup":
        """
        Create a group nested under this one and link both directions.

        Raises:
            InvalidQuotaGroupError: If the new group is invalid
        """
        if name == self.name:
            raise InvalidQuotaGroupError(
                f"cannot use same name {name!r} for sub group as parent group",
                group=name,
            )

        sub = new_group(name, memory_limit)
        sub.parent_group = self.name
        self.sub_groups.append(name)

        if self._path is not None:
            sub._path = self._path + [name]
        return sub

    @property
    def resolved(self) -> bool:
        return self._path is not None

    @property
    def path(self) -> List[str]:
        """Ancestor names from the top-level group down to this group"""
        if self._path is None:
            raise InconsistentQuotasError(
                f"internal error: group {self.name!r} has not been resolved"
            )
        return list(self._path)

    def slice_file_name(self) -> str:
        """
        Name of the slice unit carrying this group's limits.

        ``web`` maps to ``snap.web.slice`` and a sub-group ``api`` of
        ``web`` to ``snap.web-api.slice``.
        """
        escaped = "-".join(escape_slice_component(part) for part in self.path)
        return f"snap.{escaped}.slice"


def new_group(name: str, memory_limit: int) -> QuotaGroup:
    """
    Create a validated top-level group without snaps.

    Raises:
        InvalidQuotaGroupError: If name or memory_limit is invalid
    """
    grp = QuotaGroup(name=name, memory_limit=memory_limit)
    grp.validate_group()
    grp._path = [name]
    return grp
