from __future__ import annotations

from typing import TYPE_CHECKING

from .errors import CleanupFailure
from .executor import CommandExecutor
from .models import Stage
from .state import safe_error_text

if TYPE_CHECKING:
    from .state import EventSink


class WorkspaceCleaner:
    """Resets the workspace and container runtime; never raises.

    Every step is attempted even when an earlier one fails, so running the
    cleaner on an empty workspace or an idle docker daemon is a no-op.
    """

    def __init__(self, *, executor: CommandExecutor, events: EventSink, use_sudo: bool = True) -> None:
        self.executor = executor
        self.events = events
        self.use_sudo = use_sudo

    def steps(self) -> list[Stage]:
        sudo = "sudo " if self.use_sudo else ""
        commands = [
            ("compose-down", "docker compose down -v --remove-orphans"),
            ("remove-files", f"{sudo}find . -mindepth 1 -delete"),
            ("prune", f"{sudo}docker system prune --all --force --volumes"),
        ]
        return [
            Stage(name=name, command=command, required_for_commit=False, always_run=True, runtime="host")
            for name, command in commands
        ]

    def _run_step(self, step: Stage) -> None:
        try:
            proc = self.executor.capture(step.command, env=step.env)
        except OSError as exc:
            raise CleanupFailure(f"{step.name}: {safe_error_text(exc)}") from exc
        if proc.returncode != 0:
            output = ((proc.stdout or "") + (proc.stderr or "")).strip()
            raise CleanupFailure(f"{step.name} exited with code {proc.returncode}: {output}")

    def clean(self, *, run_id: str, phase: str) -> list[str]:
        warnings: list[str] = []
        if not self.executor.ssh_target and not self.executor.dry_run:
            try:
                self.executor.workspace.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                warnings.append(f"workspace: {safe_error_text(exc)}")

        for step in self.steps():
            try:
                self._run_step(step)
            except CleanupFailure as exc:
                warnings.append(str(exc))
                self.events.emit(
                    "cleanup_warning",
                    f"{run_id} {phase} cleanup step failed: {exc}",
                    run_id=run_id,
                    phase=phase,
                    step=step.name,
                )

        self.events.emit(
            "cleanup_done",
            f"{run_id} {phase} cleanup finished with {len(warnings)} warning(s).",
            run_id=run_id,
            phase=phase,
            warnings=len(warnings),
        )
        return warnings
