from __future__ import annotations

import functools
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .cleaner import WorkspaceCleaner
from .commit import CommitStage
from .config import to_bool, to_int
from .coordinator import ConcurrencyCoordinator, GroupSlot, compose_project_name, group_key
from .executor import CommandExecutor
from .models import PipelineRun, RemoteRunnerHandle, RunnerCredentials, RuntimeDirs, Stage, TriggerEvent
from .pipeline import execute_run
from .runner_waker import RemoteRunnerWaker, make_ec2_client
from .stages import build_stages, generation_stages
from .state import EventSink, StateStore, safe_error_text
from .trigger import gate_admits


def new_run_id() -> str:
    return f"run-{time.strftime('%Y%m%dT%H%M%S', time.gmtime())}-{uuid.uuid4().hex[:6]}"


class Dispatcher:
    """Admits events and runs each admitted one on its own thread."""

    def __init__(
        self,
        *,
        config: Mapping[str, Any],
        dirs: RuntimeDirs,
        workspace_root: Path,
        events: EventSink,
        store: StateStore,
        credentials: Optional[RunnerCredentials] = None,
        dry_run: bool = False,
        groups: Optional[dict[str, GroupSlot]] = None,
        client_factory: Callable[[RunnerCredentials], Any] = make_ec2_client,
    ) -> None:
        self.config = config
        self.dirs = dirs
        self.workspace_root = workspace_root
        self.events = events
        self.store = store
        self.credentials = credentials
        self.dry_run = dry_run
        self.client_factory = client_factory
        self.coordinator = ConcurrencyCoordinator({} if groups is None else groups, events=events)
        self._threads: dict[str, threading.Thread] = {}

    def _executor(self, project: str) -> CommandExecutor:
        runner_cfg = self.config["runner"]
        timeouts_cfg = self.config["timeouts"]
        remote_root = str(runner_cfg.get("remote_workdir") or "")
        return CommandExecutor(
            workspace=self.workspace_root / project,
            env={"COMPOSE_PROJECT_NAME": project},
            ssh_target=str(runner_cfg.get("ssh_target") or ""),
            remote_workdir=f"{remote_root.rstrip('/')}/{project}" if remote_root else "",
            stage_timeout_seconds=to_int(timeouts_cfg.get("stage_timeout_seconds"), 0),
            terminate_on_cancel=to_bool(timeouts_cfg.get("terminate_on_cancel")),
            dry_run=self.dry_run,
        )

    def _waker(self, run: PipelineRun) -> tuple[Optional[RemoteRunnerWaker], Optional[RemoteRunnerHandle]]:
        if self.dry_run or self.credentials is None:
            reason = "dry-run" if self.dry_run else "no runner instance configured"
            self.events.emit(
                "runner_wake_skip",
                f"{run.run_id} skipping runner wake ({reason}).",
                run_id=run.run_id,
            )
            return None, None
        runner_cfg = self.config["runner"]
        waker = RemoteRunnerWaker(
            client=self.client_factory(self.credentials),
            events=self.events,
            timeout_seconds=to_int(runner_cfg.get("timeout_seconds"), 600),
            poll_interval_seconds=float(runner_cfg.get("poll_interval_seconds", 10)),
            stop_on_unavailable=to_bool(runner_cfg.get("stop_on_unavailable")),
        )
        return waker, RemoteRunnerHandle(instance_id=self.credentials.instance_id)

    def admit(self, event: TriggerEvent) -> Optional[PipelineRun]:
        allow_label = str(self.config["pipeline"].get("allow_label") or "allow-autogen")
        if not gate_admits(event, allow_label):
            self.events.emit(
                "gate_rejected",
                f"{event.kind} event on {event.ref or '(no ref)'} does not authorize a run.",
                kind=event.kind,
                action=event.action,
                ref=event.ref,
            )
            return None
        run = PipelineRun(
            run_id=new_run_id(),
            group_key=group_key(event),
            event=event,
            created_at=time.time(),
        )
        self.store.track(run)
        self.events.emit(
            "run_admitted",
            f"{run.run_id} admitted into group {run.group_key}.",
            run_id=run.run_id,
            group=run.group_key,
        )
        return run

    def _run(self, run: PipelineRun) -> None:
        slot = self.coordinator.acquire(run)
        try:
            project = compose_project_name(run.group_key)
            executor = self._executor(project)
            commit_cfg = self.config["commit"]
            waker, handle = self._waker(run)
            execute_run(
                run,
                cancel=slot.cancel,
                build=build_stages(self.config, run.event, project=project),
                generation=generation_stages(
                    self.config,
                    project=project,
                    workspace=executor.remote_workdir,
                ),
                execute=functools.partial(_execute_stage, executor, slot.cancel),
                cleaner=WorkspaceCleaner(
                    executor=executor,
                    events=self.events,
                    use_sudo=to_bool(self.config["cleanup"].get("use_sudo"), True),
                ),
                commit=CommitStage(
                    executor=executor,
                    events=self.events,
                    author_name=str(commit_cfg.get("author_name")),
                    author_email=str(commit_cfg.get("author_email")),
                    message=str(commit_cfg.get("message")),
                    push=to_bool(commit_cfg.get("push"), True),
                    remote=str(commit_cfg.get("remote") or "origin"),
                ),
                log_dir=self.dirs.logs,
                events=self.events,
                waker=waker,
                runner=handle,
                on_change=lambda _run: self.store.flush(),
            )
        except Exception as exc:  # an unexpected error still ends the run as failed
            run.error = run.error or safe_error_text(exc)
            run.transition("failed")
            run.finished_at = run.finished_at or time.time()
            self.events.emit(
                "run_error",
                f"{run.run_id} aborted: {safe_error_text(exc)}",
                run_id=run.run_id,
            )
            self.store.track(run)
        finally:
            self.coordinator.release(slot)
            self.store.flush()

    def submit(self, event: TriggerEvent) -> Optional[PipelineRun]:
        run = self.admit(event)
        if run is None:
            return None
        thread = threading.Thread(target=self._run, args=(run,), name=run.run_id, daemon=True)
        self._threads[run.run_id] = thread
        thread.start()
        return run

    def run_event(self, event: TriggerEvent) -> Optional[PipelineRun]:
        run = self.admit(event)
        if run is not None:
            self._run(run)
        return run

    def reap(self) -> int:
        """Forget worker threads that already finished; returns how many are still alive."""
        self._threads = {k: t for k, t in self._threads.items() if t.is_alive()}
        return len(self._threads)

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in list(self._threads.values()):
            thread.join(timeout)
        self.reap()

    def shutdown(self) -> None:
        slots = self.coordinator.cancel_all()
        if slots:
            self.events.emit("shutdown", f"cancelling {len(slots)} active run(s).")
        self.join()


def _execute_stage(executor: CommandExecutor, cancel: threading.Event, stage: Stage, log_file: Path) -> int:
    return executor.run_stage(stage, log_file, cancel)
