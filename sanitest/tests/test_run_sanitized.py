import json
import os
import shlex
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sanitest.sanitize.platforms import detect_platform
from sanitest.sanitize.profiles import build_sanitizer_profile
from sanitest.sanitize.run_sanitized import (
    ToolchainSettings,
    build_command,
    execute,
    exit_status,
    load_settings,
    main,
    run_sanitized,
)

WATCHED_VARS = ["RUSTFLAGS", "RUSTDOCFLAGS", "RUST_TEST_THREADS", "ASAN_OPTIONS"]


def make_stub_cargo(tmp_path: Path, exit_code: int) -> Path:
    """Fake cargo: records argv + sanitizer env in record.json, exits with `exit_code`."""
    record = tmp_path / "record.json"
    stub = tmp_path / "fake_cargo.py"
    stub.write_text(
        "import json, os, sys\n"
        f"watched = {WATCHED_VARS!r}\n"
        "data = {'argv': sys.argv[1:], 'env': {k: os.environ.get(k) for k in watched}}\n"
        f"open({str(record)!r}, 'w').write(json.dumps(data))\n"
        f"sys.exit({exit_code})\n",
        encoding="utf-8",
    )
    return stub


def stub_settings(tmp_path: Path, exit_code: int) -> ToolchainSettings:
    stub = make_stub_cargo(tmp_path, exit_code)
    return ToolchainSettings(cargo=[sys.executable, str(stub)], project_dir=str(tmp_path))


def read_record(tmp_path: Path) -> dict:
    return json.loads((tmp_path / "record.json").read_text(encoding="utf-8"))


def clear_watched(monkeypatch):
    for var in WATCHED_VARS:
        monkeypatch.delenv(var, raising=False)


def test_build_command_targets_resolved_triple():
    settings = ToolchainSettings(extra_test_args=["--", "--nocapture"])
    cmd = build_command(detect_platform("Darwin"), settings)
    assert cmd == [
        "cargo",
        "+nightly",
        "test",
        "-Z",
        "build-std",
        "--target",
        "x86_64-apple-darwin",
        "--",
        "--nocapture",
    ]


@pytest.mark.parametrize("code", [0, 1, 137])
def test_execute_propagates_exit_status(tmp_path: Path, code: int):
    settings = stub_settings(tmp_path, code)
    status = execute(detect_platform("Linux"), build_sanitizer_profile("asan"), settings)
    assert status == code


def test_execute_sets_sanitizer_environment(tmp_path: Path, monkeypatch):
    clear_watched(monkeypatch)
    settings = stub_settings(tmp_path, 0)
    execute(detect_platform("Linux"), build_sanitizer_profile("tsan"), settings)

    record = read_record(tmp_path)
    assert record["env"] == {
        "RUSTFLAGS": "-Zsanitizer=thread",
        "RUSTDOCFLAGS": "-Zsanitizer=thread",
        "RUST_TEST_THREADS": "1",
        "ASAN_OPTIONS": None,
    }
    assert record["argv"][-2:] == ["--target", "x86_64-unknown-linux-gnu"]


def test_execute_keeps_ambient_thread_count_for_asan(tmp_path: Path, monkeypatch):
    clear_watched(monkeypatch)
    monkeypatch.setenv("RUST_TEST_THREADS", "8")
    settings = stub_settings(tmp_path, 0)
    execute(detect_platform("Linux"), build_sanitizer_profile("asan"), settings)

    assert read_record(tmp_path)["env"]["RUST_TEST_THREADS"] == "8"


def test_execute_uses_injected_runner():
    calls = []

    def fake_runner(cmd, env=None, cwd=None):
        calls.append((cmd, env, cwd))
        return subprocess.CompletedProcess(cmd, 42)

    status = execute(
        detect_platform("Darwin"),
        build_sanitizer_profile("asan"),
        ToolchainSettings(project_dir="/work"),
        runner=fake_runner,
    )
    assert status == 42
    cmd, env, cwd = calls[0]
    assert cmd[0] == "cargo"
    assert cwd == "/work"
    assert env["ASAN_OPTIONS"] == "detect_leaks=1"


def test_execute_missing_cargo_returns_127(tmp_path: Path):
    settings = ToolchainSettings(cargo=[str(tmp_path / "no-such-cargo")])
    status = execute(detect_platform("Linux"), build_sanitizer_profile("tsan"), settings)
    assert status == 127


def test_execute_non_executable_cargo_returns_126(tmp_path: Path):
    cargo = tmp_path / "cargo"
    cargo.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    cargo.chmod(0o644)
    settings = ToolchainSettings(cargo=[str(cargo)], project_dir=str(tmp_path))
    status = execute(detect_platform("Linux"), build_sanitizer_profile("asan"), settings)
    assert status == 126


def test_darwin_thread_sanitizer_scenario(tmp_path: Path, monkeypatch, capsys):
    clear_watched(monkeypatch)
    settings = stub_settings(tmp_path, 0)
    status = run_sanitized("tsan", settings=settings, os_identifier="Darwin")

    assert status == 0
    record = read_record(tmp_path)
    assert "x86_64-apple-darwin" in record["argv"]
    assert record["env"]["RUST_TEST_THREADS"] == "1"
    assert "[sanitize:tsan] >>> " in capsys.readouterr().out


def test_linux_address_sanitizer_scenario(tmp_path: Path, monkeypatch):
    clear_watched(monkeypatch)
    settings = stub_settings(tmp_path, 0)
    status = run_sanitized("asan", settings=settings, os_identifier="Linux")

    assert status == 0
    record = read_record(tmp_path)
    assert "x86_64-unknown-linux-gnu" in record["argv"]
    assert record["env"]["RUST_TEST_THREADS"] is None
    assert record["env"]["RUSTFLAGS"] == "-Zsanitizer=address"


def test_dry_run_spawns_nothing(tmp_path: Path, capsys):
    settings = stub_settings(tmp_path, 3)
    status = run_sanitized("asan", settings=settings, os_identifier="Linux", dry_run=True)

    assert status == 0
    assert not (tmp_path / "record.json").exists()
    out = capsys.readouterr().out
    assert "RUSTFLAGS=-Zsanitizer=address" in out
    assert "--target x86_64-unknown-linux-gnu" in out


def test_failing_test_run_exits_with_same_code(tmp_path: Path):
    stub = make_stub_cargo(tmp_path, 101)
    cargo = " ".join(shlex.quote(p) for p in [sys.executable, str(stub)])
    cfg = tmp_path / "sanitize.yml"
    cfg.write_text("toolchain: nightly\n", encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        main(
            [
                "--sanitizer",
                "asan",
                "--config",
                str(cfg),
                "--override",
                f"cargo={cargo}",
                "--override",
                f"project_dir={tmp_path}",
            ]
        )
    assert excinfo.value.code == 101


def test_exit_status_maps_signals_like_the_shell():
    assert exit_status(0) == 0
    assert exit_status(101) == 101
    assert exit_status(-9) == 137


def test_load_settings_defaults_and_overrides(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("SANITEST_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    settings = load_settings()
    assert settings == ToolchainSettings()

    cfg = tmp_path / "sanitize.yml"
    cfg.write_text(
        "toolchain: nightly-2024-05-01\ncargo: [cargo]\nextra_test_args: [--workspace]\n",
        encoding="utf-8",
    )
    settings = load_settings(str(cfg), ["project_dir=crates/core"])
    assert settings.toolchain == "nightly-2024-05-01"
    assert settings.extra_test_args == ["--workspace"]
    assert settings.project_dir == "crates/core"


def test_load_settings_rejects_bad_values(tmp_path: Path):
    cfg = tmp_path / "sanitize.yml"
    cfg.write_text("extra_test_args: --workspace\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        load_settings(str(cfg))

    cfg.write_text("toolchain: nightly\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        load_settings(str(cfg), ["cargo="])


def test_explicit_config_path_must_exist(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("SANITEST_CONFIG", raising=False)
    with pytest.raises(SystemExit) as excinfo:
        load_settings(str(tmp_path / "typo.yml"))
    assert "typo.yml" in str(excinfo.value.code)

    monkeypatch.setenv("SANITEST_CONFIG", str(tmp_path / "typo.yml"))
    with pytest.raises(SystemExit):
        load_settings()

    with pytest.raises(SystemExit):
        main(["--sanitizer", "tsan", "--config", str(tmp_path / "typo.yml"), "--dry-run"])


def test_tsan_entry_point_end_to_end(tmp_path: Path):
    stub = make_stub_cargo(tmp_path, 0)
    cfg = tmp_path / "sanitize.yml"
    cfg.write_text(
        json.dumps({"cargo": [sys.executable, str(stub)], "project_dir": str(tmp_path)}),
        encoding="utf-8",
    )
    env = dict(os.environ)
    env["SANITEST_CONFIG"] = str(cfg)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(ROOT), env.get("PYTHONPATH")]))
    for var in WATCHED_VARS:
        env.pop(var, None)

    proc = subprocess.run(
        [sys.executable, "-m", "sanitest.sanitize.tsan"],
        cwd=str(tmp_path),
        env=env,
        capture_output=True,
        text=True,
    )
    assert proc.returncode == 0, proc.stderr
    record = read_record(tmp_path)
    assert record["env"]["RUST_TEST_THREADS"] == "1"
    assert record["env"]["RUSTFLAGS"] == "-Zsanitizer=thread"
    assert "+nightly" in record["argv"]
