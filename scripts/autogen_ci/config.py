from __future__ import annotations

import copy
import os
import tomllib
from pathlib import Path
from typing import Any, Mapping, Optional

from .models import RunnerCredentials, RuntimeDirs

DEFAULT_CONFIG_PATH = Path("config/autogen.toml")
DEFAULT_CONFIG: dict[str, Any] = {
    "pipeline": {
        "workflow": "Autogen",
        "allow_label": "allow-autogen",
        "workspace": "tmp/autogen/workspace",
        "runtime_dir": "tmp/autogen",
        "history_limit": 50,
    },
    "repository": {
        "url": "",
    },
    "build": {
        "compose_service": "dev",
        "env_template": ".env.example",
        "env_file": ".env",
    },
    "generation": {
        "only_evm": True,
        "genesis_image": "node:lts-alpine",
        "genesis_script": "scripts/patch_genesis.mjs",
    },
    "commit": {
        "author_name": "autogen-bot",
        "author_email": "autogen-bot@users.noreply.github.com",
        "message": "chore: autogen",
        "push": True,
        "remote": "origin",
    },
    "runner": {
        "timeout_seconds": 600,
        "poll_interval_seconds": 10,
        "stop_on_unavailable": False,
        "ssh_target": "",
        "remote_workdir": "",
    },
    "cleanup": {
        "use_sudo": True,
    },
    "timeouts": {
        "stage_timeout_seconds": 0,
        "terminate_on_cancel": False,
    },
}


def load_config(path: Path) -> dict[str, Any]:
    merged = copy.deepcopy(DEFAULT_CONFIG)
    if not path.exists():
        return merged

    with path.open("rb") as fh:
        payload = tomllib.load(fh)
    for key, value in payload.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            section = dict(merged[key])
            section.update(value)
            merged[key] = section
        else:
            merged[key] = value
    return merged


def to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off", ""}:
            return False
    return default


def validate_config(config: Mapping[str, Any], *, dry_run: bool) -> None:
    if not dry_run and not str(config["repository"].get("url") or "").strip():
        raise ValueError("repository.url must be set to check out the source tree.")
    if not str(config["build"].get("compose_service") or "").strip():
        raise ValueError("build.compose_service must not be empty.")
    if to_int(config["runner"].get("timeout_seconds"), 0) < 1:
        raise ValueError("runner.timeout_seconds must be at least 1.")
    if to_int(config["timeouts"].get("stage_timeout_seconds"), 0) < 0:
        raise ValueError("timeouts.stage_timeout_seconds must be >= 0.")


def load_credentials(environ: Optional[Mapping[str, str]] = None) -> Optional[RunnerCredentials]:
    env = os.environ if environ is None else environ
    instance_id = (env.get("AWS_INSTANCE_ID") or "").strip()
    if not instance_id:
        return None
    return RunnerCredentials(
        instance_id=instance_id,
        region=(env.get("AWS_DEFAULT_REGION") or "us-east-1").strip(),
        access_key_id=env.get("AWS_ACCESS_KEY_ID") or None,
        secret_access_key=env.get("AWS_SECRET_ACCESS_KEY") or None,
    )


def ensure_dirs(base: Path, runtime_dir_arg: str, state_file_arg: Optional[str] = None) -> RuntimeDirs:
    runtime_root = (base / runtime_dir_arg).resolve()
    logs = runtime_root / "logs"
    runtime_root.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)
    state_file = (
        Path(state_file_arg).expanduser().resolve()
        if state_file_arg
        else runtime_root / "state.json"
    )
    state_file.parent.mkdir(parents=True, exist_ok=True)
    return RuntimeDirs(
        root=runtime_root,
        logs=logs,
        state_file=state_file,
        events_file=runtime_root / "events.jsonl",
    )
