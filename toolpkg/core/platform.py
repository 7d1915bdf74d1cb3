"""
Host architecture detection for Toolpkg.

Artifacts in a manifest are tagged with the CPU architecture they target.
Installs select architecture-neutral artifacts plus the ones matching the
host (or an explicitly configured) architecture.
"""

import functools
import platform
from typing import Optional

NEUTRAL = "neutral"

ARCHITECTURES = ("x64", "x86", "arm", "arm64")


def normalize_arch(value: str) -> Optional[str]:
    """
    Normalize an architecture name.

    Args:
        value: Architecture name in any common spelling ('AMD64', 'aarch64', 'X86')

    Returns:
        One of 'x64', 'x86', 'arm', 'arm64', 'neutral', or None if unknown

    Example:
        >>> normalize_arch("AMD64")
        'x64'
    """
    machine = value.strip().lower()

    if machine in ("", NEUTRAL, "any"):
        return NEUTRAL
    if machine in ("x86_64", "amd64", "x64"):
        return "x64"
    elif machine in ("aarch64", "arm64"):
        return "arm64"
    elif machine in ("i386", "i686", "x86"):
        return "x86"
    elif machine.startswith("arm"):
        return "arm"
    return None


@functools.lru_cache(maxsize=1)
def host_arch() -> str:
    """
    Detect the host CPU architecture.

    Returns:
        Normalized architecture, falling back to 'x64' for unknown machines
    """
    return normalize_arch(platform.machine()) or "x64"


def arch_matches(artifact_arch: str, target_arch: str) -> bool:
    """Whether an artifact tagged ``artifact_arch`` installs on ``target_arch``."""
    return artifact_arch == NEUTRAL or artifact_arch == target_arch
