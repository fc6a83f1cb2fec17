"""AddressSanitizer run. Takes no arguments; the host OS picks the target."""
from __future__ import annotations

import sys

from sanitest.sanitize.profiles import SanitizerKind
from sanitest.sanitize.run_sanitized import exit_status, run_sanitized


def main() -> None:
    sys.exit(exit_status(run_sanitized(SanitizerKind.ADDRESS)))


if __name__ == "__main__":
    main()
