from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

RUN_TERMINAL_STATES = {"succeeded", "failed", "cancelled"}


@dataclass(frozen=True)
class TriggerEvent:
    kind: str  # manual|pull_request|other
    ref: str
    workflow: str = "Autogen"
    action: Optional[str] = None
    labels: frozenset[str] = frozenset()
    head_ref: Optional[str] = None
    pr_number: Optional[int] = None


@dataclass(frozen=True)
class Stage:
    name: str
    command: str
    required_for_commit: bool = True
    always_run: bool = False
    runtime: str = "container"  # container|host
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class StageResult:
    stage: str
    returncode: int
    started_at: float
    finished_at: float
    log_file: Optional[Path] = None
    log_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class PipelineRun:
    run_id: str
    group_key: str
    event: TriggerEvent
    status: str = "pending"  # pending|running|succeeded|failed|cancelled
    results: list[StageResult] = field(default_factory=list)
    failed_stage: Optional[str] = None
    failure_kind: Optional[str] = None  # stage|runner_unavailable|commit
    failure_cause: Optional[str] = None
    error: Optional[str] = None
    cleanups: list[str] = field(default_factory=list)
    commit_sha: Optional[str] = None
    created_at: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def transition(self, status: str) -> bool:
        """Move to ``status`` unless the run already reached a terminal state."""
        with self._lock:
            if self.status in RUN_TERMINAL_STATES:
                return False
            self.status = status
            return True


@dataclass
class RemoteRunnerHandle:
    instance_id: str
    state: str = "asleep"  # asleep|waking|ready|unreachable
    started_by_waker: bool = False


@dataclass(frozen=True)
class RunnerCredentials:
    instance_id: str
    region: str
    access_key_id: Optional[str] = field(default=None, repr=False)
    secret_access_key: Optional[str] = field(default=None, repr=False)


@dataclass
class RuntimeDirs:
    root: Path
    logs: Path
    state_file: Path
    events_file: Path
