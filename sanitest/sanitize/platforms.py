"""Host platform -> compilation target lookup.

Only two hosts are distinguished: Darwin, and everything else, which is
treated as generic x86_64 Linux.
"""
from __future__ import annotations

import platform as _platform
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class PlatformProfile:
    os_identifier: str
    target_triple: str
    # ASAN_OPTIONS=detect_leaks=1 is only applied on this host
    leak_detection: bool = False


DARWIN = PlatformProfile(
    os_identifier="Darwin",
    target_triple="x86_64-apple-darwin",
    leak_detection=True,
)

LINUX = PlatformProfile(
    os_identifier="Linux",
    target_triple="x86_64-unknown-linux-gnu",
)

PLATFORMS: Dict[str, PlatformProfile] = {
    DARWIN.os_identifier: DARWIN,
    LINUX.os_identifier: LINUX,
}

# Any identifier missing from PLATFORMS (FreeBSD, Windows, "") resolves here.
DEFAULT_PLATFORM = LINUX


def host_os_identifier() -> str:
    """Same value as `uname -s` (may be "" when it cannot be determined)."""
    return _platform.system()


def detect_platform(os_identifier: Optional[str] = None) -> PlatformProfile:
    """Resolve the platform profile for `os_identifier` (default: the host).

    The match is exact, as uname reports it. Unknown identifiers never raise.
    """
    if os_identifier is None:
        os_identifier = host_os_identifier()
    return PLATFORMS.get(os_identifier or "", DEFAULT_PLATFORM)
