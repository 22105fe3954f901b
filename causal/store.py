"""
Run persistence.

Each run gets a directory store_dir/<name>/<timestamp>/ holding:

    history.jsonl   one history record per line
    results.json    the verdict map
    config.json     the configuration the run used

A `latest` symlink next to the timestamped directories points at the most
recent run.
"""

from __future__ import annotations

import contextlib
import dataclasses
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from causal.checker import Verdict
from causal.config import TestConfig
from causal.history import History

log = structlog.get_logger()


def run_dir(config: TestConfig, now: datetime | None = None) -> Path:
    """Directory for a new run; created on demand."""
    now = now or datetime.now(timezone.utc)
    path = Path(config.store_dir) / config.name / now.strftime("%Y%m%dT%H%M%S.%fZ")
    path.mkdir(parents=True, exist_ok=True)
    return path


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    if isinstance(value, set | frozenset):
        return sorted(_jsonable(v) for v in value)
    return value


def save_run(config: TestConfig, history: History, verdict: Verdict, path: Path | None = None) -> Path:
    """Write history, results and config for a run.

    Returns:
        The run directory.
    """
    path = path or run_dir(config)
    history.to_jsonl(path / "history.jsonl")
    with open(path / "results.json", "w") as f:
        json.dump(_jsonable(verdict.to_dict()), f, indent=2, sort_keys=True)
    with open(path / "config.json", "w") as f:
        json.dump(_jsonable(dataclasses.asdict(config)), f, indent=2, sort_keys=True)

    latest = path.parent / "latest"
    with contextlib.suppress(OSError):
        if latest.is_symlink():
            latest.unlink()
        latest.symlink_to(path.name, target_is_directory=True)
    log.info("run_saved", path=str(path), valid=verdict.valid)
    return path


def load_run(path: Path | str) -> tuple[History, dict[str, Any]]:
    """Read back a saved history and its results map."""
    path = Path(path)
    history = History.from_jsonl(path / "history.jsonl")
    with open(path / "results.json") as f:
        results = json.load(f)
    return history, results
