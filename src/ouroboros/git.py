"""Git and gh helpers: checkpoints, commits, branches and pull requests.

Checkpoint helpers report outcomes instead of raising, so the executor can
decide what a failed reset means for the run. Only operations the pipeline
cannot continue without (branch creation) raise ``GitError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .errors import GitError
from .util import CommandResult, run_command, which


@dataclass(frozen=True)
class CommitOutcome:
    committed: bool
    result: CommandResult


@dataclass(frozen=True)
class ResetOutcome:
    reset_ok: bool
    clean_ok: bool

    @property
    def ok(self) -> bool:
        return self.reset_ok and self.clean_ok


_NOTHING_TO_COMMIT = CommandResult(returncode=0, stdout="Nothing to commit", stderr="")


class GitRepository:
    """Thin wrapper around ``git`` (and ``gh``) run at ``root``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def _run_git(self, args: Sequence[str]) -> CommandResult:
        return run_command(["git", *args], cwd=self.root)

    def _run_gh(self, args: Sequence[str]) -> CommandResult:
        return run_command(["gh", *args], cwd=self.root)

    def is_repository(self) -> bool:
        result = self._run_git(["rev-parse", "--is-inside-work-tree"])
        return result.ok and result.stdout == "true"

    # ------------------------------------------------------------ checkpoints
    def capture_checkpoint(self) -> str | None:
        """Current HEAD hash, or None on an unborn branch or outside a repo."""
        result = self._run_git(["rev-parse", "HEAD"])
        if not result.ok or not result.stdout:
            return None
        return result.stdout

    def stage_all(self) -> CommandResult:
        return self._run_git(["add", "-A"])

    def has_staged_changes(self) -> bool:
        # diff --quiet exits 1 exactly when something differs.
        return self._run_git(["diff", "--cached", "--quiet"]).returncode == 1

    def commit(self, message: str) -> CommandResult:
        return self._run_git(["commit", "-m", message])

    def commit_if_dirty(self, message: str) -> CommitOutcome:
        """Stage everything and commit; a clean tree is not an error."""
        self.stage_all()
        if not self.has_staged_changes():
            return CommitOutcome(committed=False, result=_NOTHING_TO_COMMIT)
        result = self.commit(message)
        return CommitOutcome(committed=result.ok, result=result)

    def reset_and_clean(self, checkpoint: str) -> ResetOutcome:
        """Hard-reset tracked files to ``checkpoint`` and drop untracked ones.

        Ignored files are left alone.
        """
        reset = self._run_git(["reset", "--hard", checkpoint])
        clean = self._run_git(["clean", "-fd"])
        return ResetOutcome(reset_ok=reset.ok, clean_ok=clean.ok)

    # --------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"])
        if not result.ok or not result.stdout or result.stdout == "HEAD":
            return None
        return result.stdout

    def local_branches(self) -> list[str]:
        result = self._run_git(["branch", "--format=%(refname:short)"])
        if not result.ok:
            return []
        return [line for line in result.stdout.splitlines() if line]

    def remote_branches(self) -> list[str]:
        result = self._run_git(["branch", "-r", "--format=%(refname:short)"])
        if not result.ok:
            return []
        out: list[str] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            name = line.removeprefix("origin/")
            if name in {"HEAD", "origin"}:
                continue
            out.append(name)
        return out

    def all_branches(self) -> list[str]:
        return sorted(set(self.local_branches()) | set(self.remote_branches()))

    def branch_exists(self, name: str) -> bool:
        return name in self.all_branches()

    def has_uncommitted_changes(self) -> bool:
        result = self._run_git(["status", "--porcelain"])
        return result.ok and bool(result.stdout)

    def uncommitted_files(self) -> list[str]:
        result = self._run_git(["status", "--porcelain"])
        if not result.ok:
            return []
        # "XY path"; the first line may have lost its leading blank to strip().
        return [line.split(None, 1)[-1] for line in result.stdout.splitlines() if line.strip()]

    def create_branch(self, name: str, from_branch: str | None = None) -> None:
        args = ["checkout", "-b", name]
        if from_branch:
            args.append(from_branch)
        result = self._run_git(args)
        if not result.ok:
            message = result.stderr or result.stdout or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")

    def generate_epic_branch_name(self, slug: str) -> tuple[str, int]:
        """First free ``epic/<slug>-<N>`` name, counting N up from 0."""
        existing = set(self.all_branches())
        suffix = 0
        while f"epic/{slug}-{suffix}" in existing:
            suffix += 1
        return f"epic/{slug}-{suffix}", suffix

    def push_branch(self, name: str, *, set_upstream: bool = True) -> CommandResult:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        args.extend(["origin", name])
        return self._run_git(args)

    def default_branch(self) -> str:
        result = self._run_git(["symbolic-ref", "refs/remotes/origin/HEAD", "--short"])
        if result.ok and result.stdout:
            return result.stdout.removeprefix("origin/")
        branches = set(self.all_branches())
        for candidate in ("main", "master"):
            if candidate in branches:
                return candidate
        return "main"

    # -------------------------------------------------------------------- gh
    def gh_available(self) -> bool:
        if which("gh") is None:
            return False
        return self._run_gh(["auth", "status"]).ok

    def create_draft_pr(self, title: str, target_branch: str, body: str = "") -> CommandResult:
        return self._run_gh(
            [
                "pr",
                "create",
                "--draft",
                "--title",
                title,
                "--base",
                target_branch,
                "--body",
                body,
            ]
        )

    def mark_pr_ready(self) -> CommandResult:
        return self._run_gh(["pr", "ready"])

    def pr_url(self) -> str | None:
        result = self._run_gh(["pr", "view", "--json", "url", "-q", ".url"])
        return result.stdout if result.ok and result.stdout else None
