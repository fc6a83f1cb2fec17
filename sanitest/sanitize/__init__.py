"""Sanitized test runs (ThreadSanitizer / AddressSanitizer).

``tsan`` and ``asan`` are the zero-argument entry points; both delegate to
``run_sanitized``, which shells out to ``cargo +nightly test -Z build-std``.
"""

__all__ = [
    "platforms",
    "profiles",
    "run_sanitized",
    "tsan",
    "asan",
]
