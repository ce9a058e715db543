"""Run one admitted event through wake, build, generation and commit.

Cleanup is bound to the interval between the pre-build reset and the end of
the commit stage: once the pre-build cleanup ran, the post cleanup runs on
every exit path, including stage failures, commit failures and cancellation.
"""

from __future__ import annotations

import contextlib
import re
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterator, Optional, Protocol, Sequence

from .detection import classify_failure
from .errors import CommitFailure, RunCancelled, RunnerUnavailable, StageFailure
from .executor import read_tail
from .models import PipelineRun, RemoteRunnerHandle, Stage, StageResult
from .state import safe_error_text

if TYPE_CHECKING:
    from .commit import CommitStage
    from .runner_waker import RemoteRunnerWaker
    from .state import EventSink

ExecuteFn = Callable[[Stage, Path], int]


class Cleaner(Protocol):
    def clean(self, *, run_id: str, phase: str) -> list[str]: ...


def stage_log_path(log_dir: Path, run: PipelineRun, index: int, stage: Stage) -> Path:
    slug = re.sub(r"[^a-z0-9]+", "-", stage.name.lower()).strip("-")
    return log_dir / f"{run.run_id}_{index:02d}_{slug}.log"


def run_stage_sequence(
    stages: Sequence[Stage],
    *,
    run: PipelineRun,
    execute: ExecuteFn,
    log_dir: Path,
    cancel: threading.Event,
    events: EventSink,
) -> None:
    """Execute ``stages`` in order, stopping at the first required stage that exits non-zero."""
    offset = len(run.results)
    for index, stage in enumerate(stages, start=offset + 1):
        if cancel.is_set():
            raise RunCancelled(f"{run.run_id} cancelled before stage '{stage.name}'")
        log_file = stage_log_path(log_dir, run, index, stage)
        events.emit(
            "stage_started",
            f"{run.run_id} stage {stage.name} started.",
            run_id=run.run_id,
            stage=stage.name,
        )
        started = time.time()
        returncode = execute(stage, log_file)
        finished = time.time()
        tail = read_tail(log_file, max_lines=40) if returncode != 0 else ""
        run.results.append(
            StageResult(
                stage=stage.name,
                returncode=returncode,
                started_at=started,
                finished_at=finished,
                log_file=log_file if log_file.exists() else None,
                log_tail=tail,
            )
        )
        events.emit(
            "stage_finished",
            f"{run.run_id} stage {stage.name} exited with code {returncode}.",
            run_id=run.run_id,
            stage=stage.name,
            returncode=returncode,
            duration_seconds=round(finished - started, 3),
        )
        if returncode == 0:
            continue
        if stage.required_for_commit:
            raise StageFailure(stage.name, returncode, tail)
        events.emit(
            "stage_warning",
            f"{run.run_id} optional stage {stage.name} failed; continuing.",
            run_id=run.run_id,
            stage=stage.name,
            returncode=returncode,
        )


@contextlib.contextmanager
def pipeline_workspace(cleaner: Cleaner, run: PipelineRun) -> Iterator[None]:
    run.cleanups.append("pre")
    cleaner.clean(run_id=run.run_id, phase="pre")
    try:
        yield
    finally:
        run.cleanups.append("post")
        cleaner.clean(run_id=run.run_id, phase="post")


def _finish(run: PipelineRun, status: str, events: EventSink) -> None:
    run.transition(status)
    run.finished_at = time.time()
    events.emit(
        "run_finished",
        (
            f"{run.run_id} finished with status {run.status}"
            + (f" (failed stage: {run.failed_stage})" if run.failed_stage else "")
            + "."
        ),
        run_id=run.run_id,
        status=run.status,
        failed_stage=run.failed_stage,
        failure_kind=run.failure_kind,
    )


def execute_run(
    run: PipelineRun,
    *,
    cancel: threading.Event,
    build: Sequence[Stage],
    generation: Sequence[Stage],
    execute: ExecuteFn,
    cleaner: Cleaner,
    commit: Optional[CommitStage],
    log_dir: Path,
    events: EventSink,
    waker: Optional[RemoteRunnerWaker] = None,
    runner: Optional[RemoteRunnerHandle] = None,
    on_change: Optional[Callable[[PipelineRun], None]] = None,
) -> PipelineRun:
    def changed() -> None:
        if on_change is not None:
            on_change(run)

    if cancel.is_set() or not run.transition("running"):
        _finish(run, "cancelled", events)
        changed()
        return run
    run.started_at = time.time()
    changed()
    events.emit(
        "run_started",
        f"{run.run_id} started for {run.event.kind} event on {run.event.ref}.",
        run_id=run.run_id,
        group=run.group_key,
    )

    try:
        if waker is not None and runner is not None:
            waker.ensure_ready(runner, cancel=cancel)
    except RunnerUnavailable as exc:
        run.failure_kind = "runner_unavailable"
        run.error = safe_error_text(exc)
        _finish(run, "failed", events)
        changed()
        return run
    except RunCancelled:
        _finish(run, "cancelled", events)
        changed()
        return run

    if cancel.is_set():
        _finish(run, "cancelled", events)
        changed()
        return run

    status = "failed"
    try:
        with pipeline_workspace(cleaner, run):
            run_stage_sequence(build, run=run, execute=execute, log_dir=log_dir, cancel=cancel, events=events)
            changed()
            run_stage_sequence(generation, run=run, execute=execute, log_dir=log_dir, cancel=cancel, events=events)
            changed()
            if cancel.is_set():
                raise RunCancelled(f"{run.run_id} cancelled before commit")
            if commit is not None:
                started = time.time()
                try:
                    run.commit_sha = commit.run(run_id=run.run_id, head_ref=run.event.head_ref)
                except CommitFailure:
                    run.results.append(StageResult("commit", 1, started, time.time()))
                    raise
                run.results.append(StageResult("commit", 0, started, time.time()))
            status = "succeeded"
    except StageFailure as exc:
        if cancel.is_set() or run.status == "cancelled":
            status = "cancelled"
        else:
            run.failed_stage = exc.stage
            run.failure_kind = "stage"
            run.failure_cause = classify_failure(exc.log_tail)
            run.error = str(exc)
    except CommitFailure as exc:
        if cancel.is_set() or run.status == "cancelled":
            status = "cancelled"
        else:
            run.failed_stage = "commit"
            run.failure_kind = "commit"
            run.error = safe_error_text(exc)
    except RunCancelled:
        status = "cancelled"
    finally:
        _finish(run, status, events)
        changed()
    return run
