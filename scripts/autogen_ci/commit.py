from __future__ import annotations

import shlex
from typing import TYPE_CHECKING, Optional

from .errors import CommitFailure
from .executor import CommandExecutor

if TYPE_CHECKING:
    from .state import EventSink


class CommitStage:
    def __init__(
        self,
        *,
        executor: CommandExecutor,
        events: EventSink,
        author_name: str,
        author_email: str,
        message: str,
        push: bool,
        remote: str = "origin",
    ) -> None:
        self.executor = executor
        self.events = events
        self.author_name = author_name
        self.author_email = author_email
        self.message = message
        self.push = push
        self.remote = remote

    def _git(self, args: str, *, label: Optional[str] = None) -> str:
        proc = self.executor.capture(f"git {args}")
        if proc.returncode != 0:
            output = ((proc.stdout or "") + (proc.stderr or "")).strip()
            raise CommitFailure(f"git {label or args.split(' ', 1)[0]} failed ({proc.returncode}): {output}")
        return proc.stdout or ""

    def changed_files(self) -> list[str]:
        """Tracked, staged and untracked paths that differ from HEAD."""
        output = self._git("status --porcelain -z --untracked-files=all", label="status")
        entries = iter(output.split("\0"))
        files: set[str] = set()
        for entry in entries:
            if len(entry) < 4:
                continue
            files.add(entry[3:])
            if entry[0] in {"R", "C"}:
                # rename and copy entries are followed by their source path
                next(entries, None)
        return sorted(files)

    def run(self, *, run_id: str, head_ref: Optional[str]) -> Optional[str]:
        """Commit pending changes; returns the new sha or ``None`` when nothing changed."""
        changed = self.changed_files()
        if not changed:
            self.events.emit(
                "commit_skip",
                f"{run_id} produced no changes; nothing to commit.",
                run_id=run_id,
            )
            return None

        identity = (
            f"-c user.name={shlex.quote(self.author_name)} "
            f"-c user.email={shlex.quote(self.author_email)}"
        )
        self._git("add -A")
        self._git(f"{identity} commit -m {shlex.quote(self.message)}", label="commit")
        sha = self._git("rev-parse HEAD").strip()

        if self.push:
            if not head_ref:
                raise CommitFailure("cannot push: event has no head ref")
            target = shlex.quote(f"HEAD:refs/heads/{head_ref}")
            self._git(f"push {shlex.quote(self.remote)} {target}")

        self.events.emit(
            "commit_created",
            f"{run_id} committed {len(changed)} changed file(s) as {sha[:12]}.",
            run_id=run_id,
            sha=sha,
            changed_files=changed,
            pushed=self.push,
        )
        return sha
