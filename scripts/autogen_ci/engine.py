from __future__ import annotations

import json
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from .args import parse_args, validate_args
from .config import ensure_dirs, load_config, load_credentials, to_bool, to_int, validate_config
from .dispatcher import Dispatcher
from .errors import RunCancelled, RunnerUnavailable
from .models import PipelineRun, RemoteRunnerHandle, RunnerCredentials
from .report import render_state_report
from .runner_waker import RemoteRunnerWaker, make_ec2_client
from .state import EventSink, StateStore, load_run_rows, safe_error_text
from .trigger import load_event, load_inbox_event, manual_event

EXIT_CODES = {"succeeded": 0, "failed": 1, "cancelled": 3}


def run_exit_code(run: Optional[PipelineRun]) -> int:
    if run is None:
        return 0
    return EXIT_CODES.get(run.status, 1)


def scan_inbox(inbox: Path) -> list[Path]:
    files = [p for p in inbox.glob("*.json") if p.is_file()]
    return sorted(files, key=lambda p: (p.stat().st_mtime, p.name))


def drain_inbox(
    inbox: Path,
    *,
    dispatcher: Dispatcher,
    events: EventSink,
    workflow: str,
) -> list[PipelineRun]:
    runs: list[PipelineRun] = []
    for path in scan_inbox(inbox):
        try:
            event = load_inbox_event(path, workflow=workflow)
        except (ValueError, json.JSONDecodeError, OSError) as exc:
            moved = _mark_inbox_file(path, ".rejected", events)
            events.emit(
                "inbox_rejected",
                f"ignored malformed event file {path.name}: {safe_error_text(exc)}",
                file=str(path),
                moved=moved,
            )
            continue
        if not _mark_inbox_file(path, ".done", events):
            continue
        run = dispatcher.submit(event)
        if run is not None:
            runs.append(run)
    return runs


def _mark_inbox_file(path: Path, suffix: str, events: EventSink) -> bool:
    try:
        path.rename(path.with_name(path.name + suffix))
    except OSError as exc:
        events.emit(
            "inbox_error",
            f"could not rename {path.name} to *{suffix}: {safe_error_text(exc)}",
            file=str(path),
        )
        return False
    return True


def wake_only(
    *,
    config: dict[str, Any],
    credentials: Optional[RunnerCredentials],
    events: EventSink,
    client_factory: Callable[[RunnerCredentials], Any] = make_ec2_client,
) -> int:
    if credentials is None:
        print("wake error: AWS_INSTANCE_ID is not set.", file=sys.stderr)
        return 2
    runner_cfg = config["runner"]
    handle = RemoteRunnerHandle(instance_id=credentials.instance_id)
    try:
        waker = RemoteRunnerWaker(
            client=client_factory(credentials),
            events=events,
            timeout_seconds=to_int(runner_cfg.get("timeout_seconds"), 600),
            poll_interval_seconds=float(runner_cfg.get("poll_interval_seconds", 10)),
            stop_on_unavailable=to_bool(runner_cfg.get("stop_on_unavailable")),
        )
        waker.ensure_ready(handle, cancel=threading.Event())
    except (RunnerUnavailable, RunCancelled, BotoCoreError, ClientError) as exc:
        print(f"wake error: {safe_error_text(exc)}", file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    try:
        validate_args(args)
        config = load_config(Path(args.config))
        pipeline_cfg = config["pipeline"]
        base = Path.cwd()
        dirs = ensure_dirs(
            base,
            args.runtime_dir or str(pipeline_cfg.get("runtime_dir") or "tmp/autogen"),
            args.state_file,
        )
    except (ValueError, FileNotFoundError, json.JSONDecodeError, OSError) as exc:
        print(f"startup error: {safe_error_text(exc)}", file=sys.stderr)
        return 2

    if args.report:
        try:
            print(render_state_report(dirs.state_file))
            return 0 if dirs.state_file.exists() else 1
        except (ValueError, json.JSONDecodeError, OSError) as exc:
            print(f"report error: {safe_error_text(exc)}", file=sys.stderr)
            return 2

    events = EventSink(dirs.events_file)
    credentials = load_credentials()
    workflow = str(pipeline_cfg.get("workflow") or "Autogen")

    if args.wake_only:
        return wake_only(config=config, credentials=credentials, events=events)

    try:
        validate_config(config, dry_run=args.dry_run)
        workspace_root = (base / (args.workspace or str(pipeline_cfg.get("workspace")))).resolve()
        store = StateStore(
            dirs.state_file,
            history=load_run_rows(dirs.state_file),
            history_limit=to_int(pipeline_cfg.get("history_limit"), 50),
        )
        event = None
        if args.manual:
            event = manual_event(args.ref, workflow=workflow)
        elif not args.watch:
            event = load_event(args.event_name, Path(args.event_path), workflow=workflow)
    except (ValueError, FileNotFoundError, json.JSONDecodeError, OSError) as exc:
        print(f"startup error: {safe_error_text(exc)}", file=sys.stderr)
        return 2

    dispatcher = Dispatcher(
        config=config,
        dirs=dirs,
        workspace_root=workspace_root,
        events=events,
        store=store,
        credentials=credentials,
        dry_run=args.dry_run,
    )
    events.emit(
        "start",
        (
            f"Autogen pipeline started (dry_run={args.dry_run}, "
            f"mode={'watch' if args.watch else 'single'})."
        ),
        state_file=str(dirs.state_file),
    )

    if event is not None:
        try:
            run = dispatcher.run_event(event)
        except KeyboardInterrupt:
            events.emit("interrupt", "KeyboardInterrupt received. Cancelling active runs.")
            dispatcher.shutdown()
            return 130
        return run_exit_code(run)

    inbox = (base / args.watch).resolve()
    inbox.mkdir(parents=True, exist_ok=True)
    finished: list[PipelineRun] = []
    try:
        while True:
            finished.extend(
                drain_inbox(inbox, dispatcher=dispatcher, events=events, workflow=workflow)
            )
            dispatcher.reap()
            if args.once:
                dispatcher.join()
                break
            time.sleep(args.poll_interval)
    except KeyboardInterrupt:
        events.emit("interrupt", "KeyboardInterrupt received. Cancelling active runs.")
        dispatcher.shutdown()
        return 130

    failed = sum(1 for run in finished if run.status == "failed")
    events.emit(
        "finish",
        f"Inbox drained: runs={len(finished)}, failed={failed}.",
        runs=len(finished),
        failed=failed,
    )
    return 0 if failed == 0 else 1
