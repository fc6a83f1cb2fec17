"""Run the cargo test suite under a sanitizer.

One linear pass: detect the host platform, pick the sanitizer template,
merge both into environment overrides, run ``cargo +nightly test -Z build-std``
for the resolved target, and hand its exit status back untouched. The
sanitizer output itself is left to cargo's stdout/stderr.
"""
from __future__ import annotations

import argparse
import os
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sanitest.core.core_utils import (
    CONFIG_DIR,
    apply_overrides,
    as_command,
    debug_print_run,
    format_env_assignments,
    load_yaml_or_default,
    log,
)
from sanitest.sanitize.platforms import PlatformProfile, detect_platform
from sanitest.sanitize.profiles import (
    SANITIZER_CHOICES,
    TEST_THREADS_VAR,
    SanitizerKind,
    SanitizerProfile,
    build_sanitizer_profile,
)

CONFIG_ENV_VAR = "SANITEST_CONFIG"
DEFAULT_CONFIG_PATH = os.path.join(CONFIG_DIR, "sanitize.yml")
COMMAND_NOT_FOUND = 127
COMMAND_NOT_EXECUTABLE = 126

DEFAULT_SETTINGS: Dict[str, Any] = {
    "toolchain": "nightly",
    "cargo": "cargo",
    "project_dir": ".",
    "extra_test_args": [],
}


@dataclass
class ToolchainSettings:
    toolchain: str = "nightly"
    cargo: List[str] = field(default_factory=lambda: ["cargo"])
    project_dir: str = "."
    extra_test_args: List[str] = field(default_factory=list)


def load_settings(path: Optional[str] = None, overrides: Optional[List[str]] = None) -> ToolchainSettings:
    """Load toolchain settings from YAML plus CLI overrides.

    Only the implicit configs/sanitize.yml may be missing (-> defaults); a path
    given through --config or $SANITEST_CONFIG must exist.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or None
    if path is None:
        path = DEFAULT_CONFIG_PATH
    elif not os.path.exists(path):
        raise SystemExit(f"[config] settings file not found: {path}")
    raw = load_yaml_or_default(path, DEFAULT_SETTINGS)
    raw = apply_overrides(raw, overrides or [])

    toolchain = str(raw.get("toolchain") or "").strip().lstrip("+")
    if not toolchain:
        raise SystemExit("[config] toolchain must not be empty (e.g. nightly)")

    extra = raw.get("extra_test_args") or []
    if not isinstance(extra, list):
        raise SystemExit(f"[config] extra_test_args must be a list, got {extra!r}")

    return ToolchainSettings(
        toolchain=toolchain,
        cargo=as_command(raw.get("cargo"), "cargo"),
        project_dir=str(raw.get("project_dir") or "."),
        extra_test_args=[str(a) for a in extra],
    )


def merge_environment(platform: PlatformProfile, sanitizer: SanitizerProfile) -> Dict[str, str]:
    """Environment overrides for one run (only the variables this run sets)."""
    env: Dict[str, str] = dict(sanitizer.compile_flags)
    # leak detection only on the hosts that enable it (Darwin)
    if sanitizer.runtime_flags and platform.leak_detection:
        env.update(sanitizer.runtime_flags)
    if sanitizer.test_concurrency is not None:
        env[TEST_THREADS_VAR] = str(sanitizer.test_concurrency)
    return env


def build_command(platform: PlatformProfile, settings: ToolchainSettings) -> List[str]:
    cmd = list(settings.cargo)
    cmd += [
        f"+{settings.toolchain}",
        "test",
        "-Z",
        "build-std",
        "--target",
        platform.target_triple,
    ]
    cmd += settings.extra_test_args
    return cmd


def execute(
    platform: PlatformProfile,
    sanitizer: SanitizerProfile,
    settings: Optional[ToolchainSettings] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> int:
    """Spawn the sanitized cargo run and return its exit status unchanged."""
    if settings is None:
        settings = ToolchainSettings()
    env = dict(os.environ)
    env.update(merge_environment(platform, sanitizer))
    cmd = build_command(platform, settings)
    try:
        process = runner(cmd, env=env, cwd=settings.project_dir)
    except OSError as e:
        # same codes bash reports: 127 missing cargo or project_dir, 126 not executable
        print(f"[sanitize:exec] cannot start {cmd[0]}: {e}", file=sys.stderr)
        if isinstance(e, FileNotFoundError):
            return COMMAND_NOT_FOUND
        return COMMAND_NOT_EXECUTABLE
    return process.returncode


def describe_run(
    platform: PlatformProfile,
    sanitizer: SanitizerProfile,
    settings: ToolchainSettings,
) -> Dict[str, Any]:
    return {
        "sanitizer": sanitizer.kind.display_name,
        "os_identifier": platform.os_identifier,
        "target_triple": platform.target_triple,
        "toolchain": settings.toolchain,
        "project_dir": settings.project_dir,
        "test_concurrency": sanitizer.test_concurrency,
        "env": merge_environment(platform, sanitizer),
        "command": build_command(platform, settings),
    }


def run_sanitized(
    kind: Union[SanitizerKind, str],
    settings: Optional[ToolchainSettings] = None,
    os_identifier: Optional[str] = None,
    dry_run: bool = False,
    verbose: bool = False,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> int:
    if settings is None:
        settings = load_settings()
    platform = detect_platform(os_identifier)
    sanitizer = build_sanitizer_profile(kind)
    run = describe_run(platform, sanitizer, settings)

    if verbose:
        debug_print_run(run)

    stage = sanitizer.kind.alias
    log("sanitize", stage, f">>> {format_env_assignments(run['env'])} {' '.join(run['command'])}")
    if dry_run:
        return 0
    return execute(platform, sanitizer, settings, runner=runner)


def exit_status(returncode: int) -> int:
    """Shell-style exit status: a child killed by signal N exits as 128 + N."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run cargo tests under a sanitizer (tsan / asan)")
    parser.add_argument("--sanitizer", required=True, choices=SANITIZER_CHOICES)
    parser.add_argument(
        "--config",
        default=None,
        help=f"Toolchain settings YAML (default: ${CONFIG_ENV_VAR} or {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--override",
        action="append",
        default=[],
        help="Repeatable key=value override of the settings (e.g. toolchain=nightly-2024-01-01)",
    )
    parser.add_argument(
        "--os",
        dest="os_identifier",
        default=None,
        help="Force the host identifier instead of uname (e.g. Darwin)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print the command, do not execute")
    parser.add_argument("--verbose", action="store_true", help="Show the resolved run")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args.config, args.override)
    exit_code = run_sanitized(
        args.sanitizer,
        settings=settings,
        os_identifier=args.os_identifier,
        dry_run=args.dry_run,
        verbose=args.verbose,
    )
    sys.exit(exit_status(exit_code))


if __name__ == "__main__":
    main()
