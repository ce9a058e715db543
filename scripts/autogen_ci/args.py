from __future__ import annotations

import argparse
import os
from typing import Optional, Sequence

from .config import DEFAULT_CONFIG_PATH


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Gated autogen pipeline: wake the build host, rebuild the toolchain "
            "image, regenerate artifacts and commit them back."
        )
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to pipeline config TOML (missing file means built-in defaults).",
    )
    parser.add_argument(
        "--event-name",
        default=os.environ.get("GITHUB_EVENT_NAME"),
        help="Triggering event name, e.g. pull_request or workflow_dispatch (default: $GITHUB_EVENT_NAME).",
    )
    parser.add_argument(
        "--event-path",
        default=os.environ.get("GITHUB_EVENT_PATH"),
        help="Path to the triggering event JSON payload (default: $GITHUB_EVENT_PATH).",
    )
    parser.add_argument(
        "--manual",
        action="store_true",
        help="Treat this invocation as a manual run (no event payload needed).",
    )
    parser.add_argument(
        "--ref",
        default="refs/heads/main",
        help="Source ref for --manual runs.",
    )
    parser.add_argument(
        "--watch",
        default=None,
        help=(
            "Inbox directory to poll for event files "
            "({\"event_name\": ..., \"payload\": {...}}); runs until interrupted."
        ),
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="With --watch, process the current inbox contents, wait for the runs and exit.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=3.0,
        help="Seconds between inbox scans in --watch mode.",
    )
    parser.add_argument(
        "--workspace",
        default=None,
        help="Workspace root override (default: pipeline.workspace from config).",
    )
    parser.add_argument(
        "--runtime-dir",
        default=None,
        help="Directory for logs, events and state (default: pipeline.runtime_dir from config).",
    )
    parser.add_argument(
        "--state-file",
        default=None,
        help="Optional path override for state.json. Defaults to <runtime-dir>/state.json.",
    )
    parser.add_argument(
        "--wake-only",
        action="store_true",
        help="Only wake the build host and wait until it is ready, then exit.",
    )
    parser.add_argument(
        "--report",
        action="store_true",
        help="Print a compact report from the current state file and exit.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan and log every stage without waking the host or executing commands.",
    )
    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    if args.poll_interval < 0:
        raise ValueError("--poll-interval must be >= 0.")
    if args.once and not args.watch:
        raise ValueError("--once requires --watch.")
    if args.report or args.wake_only or args.watch or args.manual:
        return
    if not args.event_name or not args.event_path:
        raise ValueError(
            "No trigger event. Pass --manual, --watch, or --event-name with --event-path "
            "(or set GITHUB_EVENT_NAME and GITHUB_EVENT_PATH)."
        )
