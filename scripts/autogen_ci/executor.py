from __future__ import annotations

import os
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Mapping, Optional

from .models import Stage


def format_template(template: str, values: dict[str, str]) -> str:
    expanded = dict(values)
    for key, value in values.items():
        expanded[f"{key}_q"] = shlex.quote(value)
    try:
        return template.format_map(expanded)
    except KeyError as exc:
        missing = str(exc)
        raise ValueError(
            f"Missing placeholder in stage command template: {missing}. "
            f"Available placeholders: {', '.join(sorted(values))} plus *_q variants."
        ) from exc


def read_tail(path: Path, max_lines: int = 120) -> str:
    if not path.exists():
        return ""
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    return "\n".join(lines[-max_lines:])


def terminate_process(proc: subprocess.Popen[str], timeout_seconds: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait(timeout=timeout_seconds)


class CommandExecutor:
    """Runs shell commands inside the workspace, locally or on the build host.

    With ``ssh_target`` set, every command is wrapped as
    ``ssh <target> 'mkdir -p <remote_workdir> && cd <remote_workdir> && ...'``.
    """

    def __init__(
        self,
        *,
        workspace: Path,
        env: Optional[Mapping[str, str]] = None,
        ssh_target: str = "",
        remote_workdir: str = "",
        stage_timeout_seconds: int = 0,
        terminate_on_cancel: bool = False,
        poll_interval: float = 0.5,
        dry_run: bool = False,
    ) -> None:
        self.workspace = workspace
        self.env = dict(env or {})
        self.ssh_target = ssh_target
        self.remote_workdir = remote_workdir or str(workspace)
        self.stage_timeout_seconds = stage_timeout_seconds
        self.terminate_on_cancel = terminate_on_cancel
        self.poll_interval = poll_interval
        self.dry_run = dry_run

    def _wrap(self, command: str, extra_env: Mapping[str, str]) -> tuple[str, Path, dict[str, str]]:
        env = {**self.env, **extra_env}
        if not self.ssh_target:
            return command, self.workspace, {**os.environ, **env}
        exports = "".join(f"export {key}={shlex.quote(value)} && " for key, value in sorted(env.items()))
        workdir = shlex.quote(self.remote_workdir)
        remote = f"mkdir -p {workdir} && cd {workdir} && {exports}{command}"
        wrapped = f"ssh {shlex.quote(self.ssh_target)} {shlex.quote(remote)}"
        return wrapped, Path.cwd(), dict(os.environ)

    def capture(self, command: str, *, env: Optional[Mapping[str, str]] = None) -> subprocess.CompletedProcess[str]:
        if self.dry_run:
            return subprocess.CompletedProcess(command, 0, "", "")
        wrapped, cwd, full_env = self._wrap(command, env or {})
        return subprocess.run(
            wrapped,
            cwd=cwd,
            env=full_env,
            shell=True,
            capture_output=True,
            text=True,
            check=False,
        )

    def run_stage(
        self,
        stage: Stage,
        log_file: Path,
        cancel: Optional[threading.Event] = None,
    ) -> int:
        wrapped, cwd, full_env = self._wrap(stage.command, stage.env)
        with log_file.open("w", encoding="utf-8") as stream:
            if self.dry_run:
                stream.write(f"# dry-run: {stage.command}\n")
                return 0
            stream.write(f"# stage: {stage.name}\n# launch: {stage.command}\n")
            stream.flush()
            proc = subprocess.Popen(
                wrapped,
                cwd=cwd,
                env=full_env,
                shell=True,
                stdout=stream,
                stderr=subprocess.STDOUT,
                text=True,
            )
            started = time.monotonic()
            while True:
                returncode = proc.poll()
                if returncode is not None:
                    return returncode
                if (
                    self.stage_timeout_seconds > 0
                    and time.monotonic() - started > self.stage_timeout_seconds
                ):
                    terminate_process(proc)
                    stream.write(f"\n# stage timed out after {self.stage_timeout_seconds}s\n")
                    return 124
                if self.terminate_on_cancel and cancel is not None and cancel.is_set():
                    terminate_process(proc)
                    stream.write("\n# stage terminated: run cancelled\n")
                    return 143
                if cancel is not None and not cancel.is_set():
                    cancel.wait(self.poll_interval)
                else:
                    time.sleep(self.poll_interval)

