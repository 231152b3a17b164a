# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
quotactl core - configuration, logging, errors, state and feature flags.
"""

from .config import QuotactlConfig, get_config, load_config, reload_config, set_config
from .exceptions import (
    ConfigError,
    InconsistentQuotasError,
    NoStateError,
    QuotactlError,
    QuotaValidationError,
    ReconciliationError,
    StateLockError,
)
from .state import State

__all__ = [
    # Config
    "QuotactlConfig",
    "get_config",
    "load_config",
    "reload_config",
    "set_config",
    # State
    "State",
    # Errors
    "QuotactlError",
    "ConfigError",
    "NoStateError",
    "StateLockError",
    "QuotaValidationError",
    "InconsistentQuotasError",
    "ReconciliationError",
]
