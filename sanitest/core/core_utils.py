# sanitest/core/core_utils.py

import os
import shlex
from copy import deepcopy
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

import yaml

console = Console()
CONFIG_DIR = "configs"
SANITEST_VERSION = "0.3.0"

# ---------- Base utils ----------

def load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML file into a dict, with a clear error message."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"YAML not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_yaml_or_default(path: Optional[str], default: Dict[str, Any]) -> Dict[str, Any]:
    """Like load_yaml, but a missing file yields a copy of `default`."""
    if not path or not os.path.exists(path):
        return deepcopy(default)
    raw = load_yaml(path)
    if not isinstance(raw, dict):
        raise SystemExit(f"[config] {path}: expected a mapping at top level, got {type(raw).__name__}")
    return deep_update(deepcopy(default), raw)


def deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge (base is modified in place and returned)."""
    for k, v in updates.items():
        if (
            isinstance(v, dict)
            and k in base
            and isinstance(base[k], dict)
        ):
            deep_update(base[k], v)
        else:
            base[k] = v
    return base


def parse_override(raw: str) -> Tuple[List[str], Any]:
    """
    Parse an override "a.b.c=val" -> (["a","b","c"], "val").
    Casting is left to apply_overrides.
    """
    if "=" not in raw:
        raise ValueError(f"Invalid override (missing '='): {raw}")
    key, value = raw.split("=", 1)
    path = key.split(".")
    return path, value


def apply_overrides(config: Dict[str, Any], overrides: List[str]) -> Dict[str, Any]:
    """Apply a list of 'key=value' on a (nested) dict, returning a copy."""
    cfg = deepcopy(config)
    for raw in overrides:
        path, value = parse_override(raw)
        # simple cast
        if isinstance(value, str) and value.lower() in ("true", "false"):
            cast_val: Any = value.lower() == "true"
        else:
            try:
                cast_val = int(value)
            except (ValueError, TypeError):
                try:
                    cast_val = float(value)
                except (ValueError, TypeError):
                    cast_val = value

        d: Dict[str, Any] = cfg
        for key in path[:-1]:
            if key not in d or not isinstance(d[key], dict):
                d[key] = {}
            d = d[key]
        d[path[-1]] = cast_val
    return cfg


def as_command(raw: Any, field_name: str) -> List[str]:
    """Normalise a command given either as a string (shlex-split) or a list."""
    if isinstance(raw, str):
        cmd = shlex.split(raw)
    elif isinstance(raw, (list, tuple)):
        cmd = [str(part) for part in raw]
    else:
        raise SystemExit(f"[config] {field_name}: expected a string or a list, got {raw!r}")
    if not cmd:
        raise SystemExit(f"[config] {field_name}: empty command")
    return cmd


def format_env_assignments(env: Dict[str, str]) -> str:
    """Render env overrides the way a shell prefix would read (KEY=VAL ...)."""
    return " ".join(f"{k}={shlex.quote(str(v))}" for k, v in env.items())


# ---------- Minimal logging ----------

def log(script: str, stage: str, msg: str) -> None:
    """Uniform formatted log line."""
    print(f"[{script}:{stage}] {msg}", flush=True)


def debug_print_run(run: Dict[str, Any]) -> None:
    """Pretty-print a resolved sanitized run (rich panel + tables)."""
    header_text = (
        f"[bold]sanitest[/bold] {SANITEST_VERSION}\n"
        f"[bold]sanitizer=[/bold]{run.get('sanitizer', '?')}\n"
        f"[bold]target=[/bold]{run.get('target_triple', '?')}"
    )
    console.print()
    console.print(
        Panel.fit(
            header_text,
            title="RUN",
            subtitle="resolved",
            border_style="cyan",
        )
    )

    t1 = Table(title="Platform & Toolchain", expand=True)
    t1.add_column("Field", style="bold", no_wrap=True)
    t1.add_column("Value")

    t1.add_row("Host", str(run.get("os_identifier")))
    t1.add_row("Target", str(run.get("target_triple")))
    t1.add_row("Toolchain", str(run.get("toolchain")))
    t1.add_row("Project dir", str(run.get("project_dir")))
    t1.add_row("Test threads", str(run.get("test_concurrency") or "ambient"))
    console.print()
    console.print(t1)

    t2 = Table(title="Environment overrides", expand=True)
    t2.add_column("Variable", style="bold", no_wrap=True)
    t2.add_column("Value")
    for k, v in (run.get("env") or {}).items():
        t2.add_row(k, str(v))
    console.print()
    console.print(t2)

    console.print()
    console.print(f"[bold]command:[/bold] {' '.join(run.get('command') or [])}")
    console.print()
