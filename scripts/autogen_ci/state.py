from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Iterable

from .models import RUN_TERMINAL_STATES, PipelineRun

RUN_STATES = ("pending", "running", "succeeded", "failed", "cancelled")


def safe_error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def ts_iso(ts: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(ts))


class EventSink:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def emit(self, event_type: str, message: str, **extra: Any) -> None:
        payload = {
            "time": now_iso(),
            "event": event_type,
            "message": message,
            **extra,
        }
        line = json.dumps(payload, sort_keys=True, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
            print(f"[{payload['time']}] {event_type}: {message}")


def run_to_row(run: PipelineRun) -> dict[str, Any]:
    event = run.event
    return {
        "id": run.run_id,
        "group": run.group_key,
        "status": run.status,
        "event": {
            "kind": event.kind,
            "action": event.action,
            "ref": event.ref,
            "head_ref": event.head_ref,
            "pr_number": event.pr_number,
            "labels": sorted(event.labels),
        },
        "failed_stage": run.failed_stage,
        "failure_kind": run.failure_kind,
        "failure_cause": run.failure_cause,
        "error": run.error,
        "cleanups": list(run.cleanups),
        "commit_sha": run.commit_sha,
        "created_at": ts_iso(run.created_at) if run.created_at else None,
        "started_at": ts_iso(run.started_at) if run.started_at else None,
        "finished_at": ts_iso(run.finished_at) if run.finished_at else None,
        "stages": [
            {
                "name": result.stage,
                "returncode": result.returncode,
                "ok": result.ok,
                "duration_seconds": round(result.finished_at - result.started_at, 3),
                "log_file": str(result.log_file) if result.log_file else None,
            }
            for result in run.results
        ],
    }


def load_run_rows(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    payload = json.loads(path.read_text(encoding="utf-8"))
    rows = payload.get("runs")
    if not isinstance(rows, list):
        raise ValueError(f"Invalid state file format: {path}")
    return [row for row in rows if isinstance(row, dict)]


class StateStore:
    """Keeps ``state.json`` in sync with every run this process has seen."""

    def __init__(self, path: Path, *, history: Iterable[dict[str, Any]] = (), history_limit: int = 50) -> None:
        self.path = path
        self.history_limit = history_limit
        self._history = list(history)
        self._runs: dict[str, PipelineRun] = {}
        self._lock = threading.Lock()

    def track(self, run: PipelineRun) -> None:
        with self._lock:
            self._runs[run.run_id] = run
        self.flush()

    def flush(self) -> None:
        with self._lock:
            live = [run_to_row(run) for run in self._runs.values()]
            live_ids = {row["id"] for row in live}
            rows = [row for row in self._history if row.get("id") not in live_ids] + live
            if len(rows) > self.history_limit:
                rows = rows[-self.history_limit:]
            write_state(path=self.path, rows=rows)

            # Finished runs are frozen into history once written.
            finished = [
                run_id
                for run_id, run in self._runs.items()
                if run.status in RUN_TERMINAL_STATES and run.finished_at is not None
            ]
            for run_id in finished:
                del self._runs[run_id]
            if finished:
                self._history = rows

    def active_count(self) -> int:
        with self._lock:
            return len(self._runs)


def write_state(*, path: Path, rows: list[dict[str, Any]]) -> None:
    payload: dict[str, Any] = {
        "updated_at": now_iso(),
        "summary": {
            status: sum(1 for row in rows if row.get("status") == status)
            for status in RUN_STATES
        },
        "runs": rows,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
