"""Configuration module for Toolpkg.

This module provides YAML configuration parsing for toolpkg.yaml and the
lock file that pins a resolved package set.
"""

from toolpkg.config.parser import (
    RetryConfig,
    ToolpkgConfig,
    config_from_dict,
    parse_config,
)
from toolpkg.config.lockfile import (
    LockFileManager,
    check_covers,
    diff_plans,
    read_lock,
    write_lock,
)

__all__ = [
    "RetryConfig",
    "ToolpkgConfig",
    "config_from_dict",
    "parse_config",
    "LockFileManager",
    "check_covers",
    "diff_plans",
    "read_lock",
    "write_lock",
]
