"""
modules/observability/logger.py
---------------------------------
Durable JSONL mirror of each run: <TRACE_LOG_DIR>/<run_id>.jsonl

Every line is one record:

    {"seq": 3, "timestamp": "...", "run_id": "run-…", "event_type": "trace", "payload": {...}}

`record()` is a TraceBus listener writing "trace" records; `log()` appends
any other structured record (e.g. "persisted") to the same file. A run's
file is closed after its terminal trace; a later write reopens it in
append mode and keeps counting.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

import config
from schemas.trace import TraceEvent

logger = logging.getLogger(__name__)

TRACE_RECORD = "trace"


def trace_log_path(logs_dir: Path | str, run_id: str) -> Path:
    return Path(logs_dir) / f"{run_id}.jsonl"


@dataclass
class _RunFile:
    handle: IO[str]
    seq: int = 0


class StructuredLogger:
    """Append-only JSONL writer shared by every run; safe to call from any thread."""

    def __init__(self, logs_dir: Path | str | None = None) -> None:
        self._logs_dir = Path(logs_dir or config.TRACE_LOG_DIR)
        self._lock = threading.Lock()
        self._open_runs: dict[str, _RunFile] = {}
        self._written: dict[str, int] = {}

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    def path_for(self, run_id: str) -> Path:
        return trace_log_path(self._logs_dir, run_id)

    # ── Writing ───────────────────────────────────────────────────────────────

    def log(self, run_id: str, event_type: str, payload: dict) -> None:
        with self._lock:
            run = self._open_runs.get(run_id) or self._open(run_id)
            run.seq += 1
            line = json.dumps({
                "seq": run.seq,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "run_id": run_id,
                "event_type": event_type,
                "payload": payload,
            }, default=str, ensure_ascii=False)
            run.handle.write(line + "\n")
            run.handle.flush()
            self._written[run_id] = run.seq

    def record(self, event: TraceEvent) -> None:
        self.log(event.trace_id, TRACE_RECORD, event.to_dict())
        if event.is_terminal:
            self.close(event.trace_id)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def close(self, run_id: str | None = None) -> None:
        """Close one run's file, or every open file when `run_id` is None."""
        with self._lock:
            targets = [run_id] if run_id else list(self._open_runs)
            for rid in targets:
                run = self._open_runs.pop(rid, None)
                if run is not None:
                    run.handle.close()

    def _open(self, run_id: str) -> _RunFile:
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(run_id)
        run = _RunFile(open(path, "a", encoding="utf-8"), seq=self._written.get(run_id, 0))
        self._open_runs[run_id] = run
        logger.debug("[trace-log] writing %s", path)
        return run
