from __future__ import annotations

import argparse
import csv
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from rich.table import Table

from sanitest.core.core_utils import CONFIG_DIR, as_command, console, load_yaml, log


# Data classes

@dataclass
class JobSpec:
    name: str
    title: str
    command: List[str]
    enabled: bool = True
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineConfig:
    pipeline_id: str
    parallel: int
    jobs: List[JobSpec]


@dataclass
class JobResult:
    name: str
    status: str  # "running" | "success" | "failed" | "error" | "interrupted" | "planned"
    return_code: Optional[int]
    log_path: str
    started_at: float = 0.0
    finished_at: float = 0.0
    duration_s: float = 0.0


DEFAULT_CONFIG_PATH = os.path.join(CONFIG_DIR, "ci.yml")
COMMAND_NOT_FOUND = 127
COMMAND_NOT_EXECUTABLE = 126


# Loading / parsing pipeline definition

def load_pipeline_config(path: str) -> PipelineConfig:
    """Load a pipeline definition YAML into typed structures."""
    raw = load_yaml(path)

    jobs_cfg = raw.get("jobs") or []
    if not isinstance(jobs_cfg, list):
        raise SystemExit(f"[config] {path}: 'jobs' must be a list")

    jobs: List[JobSpec] = []
    seen = set()
    for idx, job_raw in enumerate(jobs_cfg):
        if not isinstance(job_raw, dict):
            raise SystemExit(f"[config] {path}: job #{idx} must be a mapping, got {job_raw!r}")
        name = str(job_raw.get("name") or "").strip()
        if not name:
            raise SystemExit(f"[config] {path}: job #{idx} has no name")
        if name in seen:
            raise SystemExit(f"[config] {path}: duplicate job name {name!r}")
        seen.add(name)
        env_raw = job_raw.get("env") or {}
        if not isinstance(env_raw, dict):
            raise SystemExit(f"[config] {path}: jobs.{name}.env must be a mapping, got {env_raw!r}")
        jobs.append(
            JobSpec(
                name=name,
                title=job_raw.get("title", name),
                command=as_command(job_raw.get("command"), f"jobs.{name}.command"),
                enabled=bool(job_raw.get("enabled", True)),
                env={str(k): str(v) for k, v in env_raw.items()},
            )
        )

    parallel_raw = raw.get("parallel")
    if parallel_raw is None:
        parallel_raw = len(jobs) or 1
    try:
        parallel = int(parallel_raw)
    except (TypeError, ValueError):
        raise SystemExit(f"[config] {path}: parallel must be an integer, got {parallel_raw!r}")
    if parallel < 1:
        raise SystemExit(f"[config] {path}: parallel must be >= 1, got {parallel}")

    return PipelineConfig(
        pipeline_id=raw.get("pipeline_id") or Path(path).stem,
        parallel=parallel,
        jobs=jobs,
    )


def select_jobs(
    config: PipelineConfig,
    names: Optional[Sequence[str]] = None,
    include_disabled: bool = False,
) -> List[JobSpec]:
    """Pick the jobs to run, in file order.

    Explicit names always win over `enabled`; unknown names are a config error.
    """
    if names:
        by_name = {job.name: job for job in config.jobs}
        unknown = [n for n in names if n not in by_name]
        if unknown:
            raise SystemExit(f"[config] Unknown jobs: {unknown} (known: {sorted(by_name)})")
        wanted = set(names)
        return [job for job in config.jobs if job.name in wanted]
    return [job for job in config.jobs if job.enabled or include_disabled]


# Job persistence (TSV)

JOB_COLUMNS = [
    "pipeline_id",
    "job",
    "status",
    "return_code",
    "command",
    "log_path",
    "started_at",
    "finished_at",
    "duration_s",
]


def _write_tsv(rows: List[Dict[str, Any]], path: Path, columns: List[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns, delimiter="\t")
        writer.writeheader()
        for row in rows:
            writer.writerow({col: row.get(col, "") for col in columns})


def read_jobs_tsv(path: Path) -> Dict[str, Dict[str, Any]]:
    if not path.exists():
        return {}
    rows: Dict[str, Dict[str, Any]] = {}
    with path.open("r", encoding="utf-8") as f:
        reader = csv.DictReader(f, delimiter="\t")
        for row in reader:
            rows[row["job"]] = row
    return rows


def write_jobs_tsv(
    pipeline_id: str,
    jobs: List[JobSpec],
    results: Dict[str, JobResult],
    path: Path,
) -> None:
    rows = []
    for job in jobs:
        res = results.get(job.name)
        row: Dict[str, Any] = {
            "pipeline_id": pipeline_id,
            "job": job.name,
            "command": " ".join(job.command),
            "status": "pending",
        }
        if res is not None:
            row.update(
                {
                    "status": res.status,
                    "return_code": "" if res.return_code is None else res.return_code,
                    "log_path": res.log_path,
                    "started_at": res.started_at or "",
                    "finished_at": res.finished_at or "",
                    "duration_s": f"{res.duration_s:.2f}" if res.finished_at else "",
                }
            )
        rows.append(row)
    _write_tsv(rows, path, JOB_COLUMNS)


# Execution

def _launch_job(job: JobSpec, log_dir: Path) -> subprocess.Popen:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{job.name}.log"
    env = dict(os.environ)
    env.update(job.env)
    log_file = log_path.open("w", encoding="utf-8")
    try:
        proc = subprocess.Popen(job.command, stdout=log_file, stderr=subprocess.STDOUT, env=env)
    except Exception:
        log_file.close()
        raise
    proc.log_file = log_file  # type: ignore[attr-defined]
    proc.log_path = str(log_path)  # type: ignore[attr-defined]
    return proc


def run_pipeline(
    config: PipelineConfig,
    jobs: List[JobSpec],
    out_dir: Path,
    parallel: Optional[int] = None,
    dry_run: bool = False,
    poll_interval: float = 0.2,
) -> Dict[str, JobResult]:
    """Run independent jobs, at most `parallel` at a time, and record pass/fail per job."""
    out_dir = Path(out_dir)
    logs_dir = out_dir / "logs"
    jobs_tsv = out_dir / "jobs.tsv"
    max_parallel = max(1, int(parallel if parallel is not None else config.parallel))

    results: Dict[str, JobResult] = {}

    if dry_run:
        for job in jobs:
            results[job.name] = JobResult(
                name=job.name,
                status="planned",
                return_code=None,
                log_path=str(logs_dir / f"{job.name}.log"),
            )
            print(f"- {job.name} ({job.title}): {' '.join(job.command)}")
        write_jobs_tsv(config.pipeline_id, jobs, results, jobs_tsv)
        print(f"[DRY-RUN] {len(jobs)} jobs planned for pipeline={config.pipeline_id}")
        return results

    pending = list(jobs)
    active: Dict[str, subprocess.Popen] = {}

    try:
        _run_jobs(config, jobs, pending, active, results, logs_dir, jobs_tsv, max_parallel, poll_interval)
    finally:
        # only non-empty when interrupted (KeyboardInterrupt, ...)
        if active:
            _stop_jobs(active, results)
            write_jobs_tsv(config.pipeline_id, jobs, results, jobs_tsv)

    return results


def _stop_jobs(active: Dict[str, subprocess.Popen], results: Dict[str, JobResult], grace_s: float = 5.0) -> None:
    for proc in active.values():
        if proc.poll() is None:
            proc.terminate()
    for name, proc in active.items():
        try:
            ret = proc.wait(timeout=grace_s)
        except subprocess.TimeoutExpired:
            proc.kill()
            ret = proc.wait()
        proc.log_file.close()  # type: ignore[attr-defined]
        res = results[name]
        res.status = "interrupted"
        res.return_code = ret
        res.finished_at = time.time()
        res.duration_s = res.finished_at - res.started_at
        log("ci", name, f"interrupted (rc={ret})")
    active.clear()


def _run_jobs(
    config: PipelineConfig,
    jobs: List[JobSpec],
    pending: List[JobSpec],
    active: Dict[str, subprocess.Popen],
    results: Dict[str, JobResult],
    logs_dir: Path,
    jobs_tsv: Path,
    max_parallel: int,
    poll_interval: float,
) -> None:
    while pending or active:
        while pending and len(active) < max_parallel:
            job = pending.pop(0)
            log("ci", job.name, f"Launching {' '.join(job.command)}")
            started = time.time()
            try:
                proc = _launch_job(job, logs_dir)
            except OSError as e:
                log("ci", job.name, f"cannot start: {e}")
                rc = COMMAND_NOT_FOUND if isinstance(e, FileNotFoundError) else COMMAND_NOT_EXECUTABLE
                results[job.name] = JobResult(
                    name=job.name,
                    status="error",
                    return_code=rc,
                    log_path=str(logs_dir / f"{job.name}.log"),
                    started_at=started,
                    finished_at=started,
                )
                continue
            active[job.name] = proc
            results[job.name] = JobResult(
                name=job.name,
                status="running",
                return_code=None,
                log_path=proc.log_path,  # type: ignore[attr-defined]
                started_at=started,
            )
        write_jobs_tsv(config.pipeline_id, jobs, results, jobs_tsv)

        if not active:
            continue

        time.sleep(poll_interval)
        finished: List[str] = []
        for name, proc in active.items():
            ret = proc.poll()
            if ret is None:
                continue
            finished.append(name)
            proc.log_file.close()  # type: ignore[attr-defined]
            res = results[name]
            res.return_code = ret
            res.status = "success" if ret == 0 else "failed"
            res.finished_at = time.time()
            res.duration_s = res.finished_at - res.started_at
            log("ci", name, f"{res.status} (rc={ret}, {res.duration_s:.1f}s)")

        for name in finished:
            active.pop(name, None)
        if finished:
            write_jobs_tsv(config.pipeline_id, jobs, results, jobs_tsv)


def pipeline_passed(results: Dict[str, JobResult]) -> bool:
    return all(res.status in ("success", "planned") for res in results.values())


def summarize(results: Dict[str, JobResult], title: str = "Pipeline") -> None:
    table = Table(title=title, expand=True)
    table.add_column("Job", style="bold", no_wrap=True)
    table.add_column("Status")
    table.add_column("RC", justify="right")
    table.add_column("Duration (s)", justify="right")
    table.add_column("Log")

    styles = {"success": "green", "failed": "red", "error": "bold red", "interrupted": "yellow"}
    for res in results.values():
        style = styles.get(res.status, "")
        status = f"[{style}]{res.status}[/{style}]" if style else res.status
        table.add_row(
            res.name,
            status,
            "" if res.return_code is None else str(res.return_code),
            f"{res.duration_s:.1f}" if res.finished_at else "",
            res.log_path,
        )
    console.print()
    console.print(table)


# CLI

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the CI jobs (check/test/fmt/clippy) locally")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Pipeline definition YAML")
    parser.add_argument(
        "--job",
        action="append",
        default=[],
        help="Repeatable job name to run (default: every enabled job)",
    )
    parser.add_argument("--all", action="store_true", help="Include jobs marked enabled: false")
    parser.add_argument("--parallel", type=int, default=None, help="Override the pipeline's parallel value")
    parser.add_argument("--out-dir", default=None, help="Logs + jobs.tsv directory (default: ci/<pipeline_id>)")
    parser.add_argument("--dry-run", action="store_true", help="Print the jobs, do not execute")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    config = load_pipeline_config(args.config)
    jobs = select_jobs(config, args.job, include_disabled=args.all)
    if not jobs:
        print("[ci] No jobs selected.")
        sys.exit(0)

    out_dir = Path(args.out_dir) if args.out_dir else Path("ci") / config.pipeline_id
    results = run_pipeline(config, jobs, out_dir, parallel=args.parallel, dry_run=args.dry_run)
    if not args.dry_run:
        summarize(results, title=f"Pipeline {config.pipeline_id}")
    sys.exit(0 if pipeline_passed(results) else 1)


if __name__ == "__main__":
    main()
