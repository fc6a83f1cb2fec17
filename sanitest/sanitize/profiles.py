from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Union


class SanitizerKind(Enum):
    """Sanitizers the test suite can be instrumented with."""
    THREAD = "thread"
    ADDRESS = "address"

    @property
    def alias(self) -> str:
        return _ALIASES_BY_KIND[self]

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @classmethod
    def parse(cls, raw: Union["SanitizerKind", str]) -> "SanitizerKind":
        """Accept a kind, its value ("thread") or its short alias ("tsan")."""
        if isinstance(raw, cls):
            return raw
        key = str(raw).strip().lower()
        for kind in cls:
            if key in (kind.value, kind.alias):
                return kind
        raise ValueError(f"Unknown sanitizer kind: {raw!r} (expected one of {sorted(SANITIZER_CHOICES)})")


_ALIASES_BY_KIND = {
    SanitizerKind.THREAD: "tsan",
    SanitizerKind.ADDRESS: "asan",
}

_DISPLAY_NAMES = {
    SanitizerKind.THREAD: "ThreadSanitizer",
    SanitizerKind.ADDRESS: "AddressSanitizer",
}

SANITIZER_CHOICES = [kind.value for kind in SanitizerKind] + [kind.alias for kind in SanitizerKind]

# Environment variables read by cargo / rustdoc / libtest / the asan runtime
COMPILE_FLAGS_VAR = "RUSTFLAGS"
DOC_COMPILE_FLAGS_VAR = "RUSTDOCFLAGS"
TEST_THREADS_VAR = "RUST_TEST_THREADS"
LEAK_DETECTION_VAR = "ASAN_OPTIONS"


@dataclass(frozen=True)
class SanitizerProfile:
    kind: SanitizerKind
    compile_flags: Dict[str, str]
    runtime_flags: Dict[str, str] = field(default_factory=dict)
    test_concurrency: Optional[int] = None  # None = libtest default

    @classmethod
    def thread(cls) -> "SanitizerProfile":
        """ThreadSanitizer: tests are serialized so each race report maps to one interleaving."""
        return cls(
            kind=SanitizerKind.THREAD,
            compile_flags=_instrumentation_flags(SanitizerKind.THREAD),
            runtime_flags={},
            test_concurrency=1,
        )

    @classmethod
    def address(cls) -> "SanitizerProfile":
        """AddressSanitizer with leak detection; concurrency left alone."""
        return cls(
            kind=SanitizerKind.ADDRESS,
            compile_flags=_instrumentation_flags(SanitizerKind.ADDRESS),
            runtime_flags={LEAK_DETECTION_VAR: "detect_leaks=1"},
            test_concurrency=None,
        )


def _instrumentation_flags(kind: SanitizerKind) -> Dict[str, str]:
    flag = f"-Zsanitizer={kind.value}"
    return {
        COMPILE_FLAGS_VAR: flag,
        DOC_COMPILE_FLAGS_VAR: flag,
    }


_TEMPLATES = {
    SanitizerKind.THREAD: SanitizerProfile.thread,
    SanitizerKind.ADDRESS: SanitizerProfile.address,
}


def build_sanitizer_profile(kind: Union[SanitizerKind, str]) -> SanitizerProfile:
    return _TEMPLATES[SanitizerKind.parse(kind)]()
