"""
modules/observability/replay.py
---------------------------------
Read a recorded run back from its JSONL log.

The trace bus forgets runs after its TTL; the JSONL mirror written by
StructuredLogger does not. `load_trace()` rebuilds the TraceEvent list in
emission order so the history endpoint can still answer for old runs.

Usage:
    python main.py --replay <run_id>
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import config
from modules.observability.logger import TRACE_RECORD, trace_log_path
from schemas.trace import TraceEvent

logger = logging.getLogger(__name__)


def load_trace(run_id: str, *, logs_dir: Path | str | None = None) -> list[TraceEvent]:
    """Return every trace record for `run_id`; empty when no log exists."""
    log_path = trace_log_path(logs_dir or config.TRACE_LOG_DIR, run_id)
    if not log_path.exists():
        return []

    events: list[TraceEvent] = []
    with open(log_path, "r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
            except json.JSONDecodeError:
                # A crash mid-write can leave a truncated final line.
                logger.warning("[replay] %s:%d is not valid JSON, skipping", log_path, lineno)
                continue
            if rec.get("event_type") == TRACE_RECORD:
                events.append(TraceEvent.from_dict(rec["payload"]))
    return events


def print_trace(run_id: str, *, logs_dir: Path | str | None = None) -> None:
    """Pretty-print a recorded run to stdout."""
    events = load_trace(run_id, logs_dir=logs_dir)
    if not events:
        print(f"  [replay] No trace recorded for run {run_id}.")
        return

    print(f"\n{'=' * 60}")
    print(f"  REPLAY — run {run_id}")
    print(f"  Total events: {len(events)}")
    print(f"{'=' * 60}\n")

    for step, ev in enumerate(events, start=1):
        stage = ev.metadata.pipeline_step.value if ev.metadata.pipeline_step else "-"
        summary = ev.metadata.output_summary or ev.metadata.input_summary or ""
        print(f"  [{step:>4}] {ev.started_at}  {ev.type.value:<18} {ev.status.value:<18} "
              f"{stage:<15} {ev.name}")
        if summary:
            print(f"         {summary}")
        if ev.error:
            print(f"         error: {ev.error}")
