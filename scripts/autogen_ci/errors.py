from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for failures raised while executing a pipeline run."""


class RunnerUnavailable(PipelineError):
    """Raised when the build host does not become ready before the wake timeout."""


class StageFailure(PipelineError):
    def __init__(self, stage: str, returncode: int, log_tail: str = "") -> None:
        super().__init__(f"stage '{stage}' exited with code {returncode}")
        self.stage = stage
        self.returncode = returncode
        self.log_tail = log_tail


class CommitFailure(PipelineError):
    """Raised when regenerated artifacts could not be committed or pushed."""


class CleanupFailure(PipelineError):
    """Raised by a single cleanup step; always absorbed by the cleaner."""


class RunCancelled(PipelineError):
    """Raised at a stage boundary once a newer run superseded this one."""
