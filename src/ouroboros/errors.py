from __future__ import annotations


class OuroborosError(RuntimeError):
    pass


class StructuralValidationError(OuroborosError):
    """Manifests and directory tree disagree, or a required artifact is missing.

    ``errors`` always carries every discrepancy found, not just the first, so a
    human can fix the manifest in one pass.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = list(errors or [])
        if self.errors:
            message = message + "\n" + "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(message)


class AdapterExecutionError(OuroborosError):
    def __init__(self, step: str, exit_code: int) -> None:
        super().__init__(f"agent failed during {step!r} (exit {exit_code})")
        self.step = step
        self.exit_code = exit_code


class LoopDetectedError(OuroborosError):
    def __init__(
        self,
        step: str,
        *,
        checkpoint: str | None = None,
        rolled_back: bool = False,
        reason: str = "",
    ) -> None:
        super().__init__(f"loop detected during: {step}")
        self.step = step
        self.checkpoint = checkpoint
        self.rolled_back = rolled_back
        self.reason = reason


class GitError(OuroborosError):
    pass


class ManifestDriftWarning(UserWarning):
    """A step reported success but its ledger entry is still incomplete."""

    def __init__(self, feature: str, task_group: str) -> None:
        super().__init__(
            f"task group {task_group!r} of {feature} was not marked completed in progress.yml"
        )
        self.feature = feature
        self.task_group = task_group
