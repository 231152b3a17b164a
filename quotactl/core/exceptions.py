# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
quotactl Exception Hierarchy

Exception Hierarchy:
    QuotactlError (base)
    ├── ConfigError
    ├── StateError
    │   ├── NoStateError
    │   ├── StateLockError
    │   └── StateCorruptError
    ├── QuotaValidationError
    │   ├── QuotaGroupExistsError
    │   ├── QuotaGroupNotFoundError
    │   ├── InvalidQuotaGroupError
    │   ├── SnapAlreadyInGroupError
    │   ├── SnapNotInGroupError
    │   ├── QuotaGroupNotLeafError
    │   ├── ConflictingUpdateError
    │   ├── FeatureDisabledError
    │   └── SystemdTooOldError
    ├── InconsistentQuotasError
    ├── SnapNotFoundError
    └── ReconciliationError
        ├── UnitSyncError
        ├── SystemdError
        │   └── SystemdTimeoutError
        └── ServiceCycleError

Validation errors are raised before anything is persisted. Reconciliation
errors can happen after the new quota state was already written.
"""

import logging
import traceback
from typing import Any, Dict, List, Optional

# ============================================================================
# Base Exceptions
# ============================================================================


class QuotactlError(Exception):
    """Base exception for all quotactl errors"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        result = {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }

        if self.cause:
            result["cause"] = {
                "type": self.cause.__class__.__name__,
                "message": str(self.cause),
            }

        return result

    def __str__(self):
        base = self.message
        if self.details:
            base += f" | Details: {self.details}"
        if self.cause:
            base += f" | Caused by: {self.cause}"
        return base


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigError(QuotactlError):
    """Configuration-related errors"""


# ============================================================================
# State Errors
# ============================================================================


class StateError(QuotactlError):
    """Persisted state errors"""


class NoStateError(StateError):
    """Requested state key has no value"""

    def __init__(self, key: str, **kwargs):
        super().__init__(f"no state entry for key {key!r}", **kwargs)
        self.key = key


class StateLockError(StateError):
    """State accessed without holding the state lock"""


class StateCorruptError(StateError):
    """State file cannot be decoded"""


# ============================================================================
# Validation Errors
# ============================================================================


class QuotaValidationError(QuotactlError):
    """A quota request was rejected before anything was persisted"""

    def __init__(self, message: str, group: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.group = group

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["group"] = self.group
        return result


class QuotaGroupExistsError(QuotaValidationError):
    """Quota group name already in use"""


class QuotaGroupNotFoundError(QuotaValidationError):
    """Quota group (or requested parent group) does not exist"""


class InvalidQuotaGroupError(QuotaValidationError):
    """Group name or memory limit is invalid"""


class SnapAlreadyInGroupError(QuotaValidationError):
    """Snap is already a member of some quota group"""

    def __init__(
        self,
        message: str,
        snap: Optional[str] = None,
        existing_group: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.snap = snap
        self.existing_group = existing_group

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({"snap": self.snap, "existing_group": self.existing_group})
        return result


class SnapNotInGroupError(QuotaValidationError):
    """Snap is not a member of the quota group"""


class QuotaGroupNotLeafError(QuotaValidationError):
    """Only groups without sub-groups can be removed"""


class ConflictingUpdateError(QuotaValidationError):
    """Update request combines mutually exclusive changes"""


class FeatureDisabledError(QuotaValidationError):
    """Quota groups feature flag is not enabled"""


class SystemdTooOldError(QuotaValidationError):
    """Service manager is older than the minimum supported version"""

    def __init__(self, message: str, version: int, minimum: int, **kwargs):
        super().__init__(message, **kwargs)
        self.version = version
        self.minimum = minimum


# ============================================================================
# Consistency Errors
# ============================================================================


class InconsistentQuotasError(QuotactlError):
    """The quota group set violates its cross-reference invariants"""

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["errors"] = self.errors
        return result


class SnapNotFoundError(QuotactlError):
    """Snap is not known to the package registry"""

    def __init__(self, snap: str, **kwargs):
        super().__init__(f"snap {snap!r} is not installed", **kwargs)
        self.snap = snap


# ============================================================================
# Reconciliation Errors
# ============================================================================


class ReconciliationError(QuotactlError):
    """Applying the declared quota state to the unit layer failed"""


class UnitSyncError(ReconciliationError):
    """Writing or removing unit files failed"""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.path = path


class SystemdError(ReconciliationError):
    """A systemctl invocation failed"""

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        exit_code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.command = command or []
        self.exit_code = exit_code

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({"command": self.command, "exit_code": self.exit_code})
        return result


class SystemdTimeoutError(SystemdError):
    """A systemctl invocation did not finish within its timeout"""

    def __init__(self, message: str, timeout: float, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class ServiceCycleError(ReconciliationError):
    """Service ordering dependencies contain a cycle"""

    def __init__(self, message: str, cycle: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.cycle = cycle or []

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["cycle"] = self.cycle
        return result


# ============================================================================
# Error Handler
# ============================================================================


class ErrorHandler:
    """Centralized error logging for command front-ends"""

    @staticmethod
    def handle_exception(
        error: Exception, context: Optional[Dict[str, Any]] = None, reraise: bool = True
    ) -> Dict[str, Any]:
        """
        Log an exception and return its dictionary form.

        Args:
            error: The exception to handle
            context: Additional context information
            reraise: Whether to reraise the exception

        Returns:
            Error dictionary

        Raises:
            The original exception (wrapped in QuotactlError) if reraise=True
        """
        logger = logging.getLogger("quotactl.error_handler")

        if isinstance(error, QuotactlError):
            quotactl_error = error
        else:
            quotactl_error = QuotactlError(
                message=str(error), cause=error, details=context or {}
            )

        error_dict = quotactl_error.to_dict()
        if context:
            error_dict["context"] = context

        logger.error(
            f"{error_dict['type']}: {error_dict['message']}",
            extra={"error_details": error_dict},
        )

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Stack trace:\n{traceback.format_exc()}")

        if reraise:
            raise quotactl_error

        return error_dict
