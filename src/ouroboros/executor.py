"""Resumable, transactional driver for epic phases 3 through 7."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Mapping

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .backends import get_backend
from .backends.types import Backend, RunOptions, RunResult
from .config import PipelineConfig, RuntimeChoice
from .epic import (
    Feature,
    discover_features,
    find_task_prompt_file,
    has_verification_guide,
    is_last_task_group,
)
from .errors import (
    AdapterExecutionError,
    GitError,
    LoopDetectedError,
    ManifestDriftWarning,
    OuroborosError,
    StructuralValidationError,
)
from .events import EventSink, ensure_logs_dir, make_event
from .git import GitRepository
from .instructions import (
    IMPLEMENTATION,
    Step,
    create_features_step,
    create_task_prompts_step,
    create_tasks_step,
    implement_step,
    pull_request_title,
    verification_guide_step,
)
from .loop_detect import LoopDetector
from .manifest import (
    all_task_groups_complete,
    mark_feature_complete,
    read_features_index,
    read_progress,
)
from .progress import PipelinePhase, ResumePoint, detect_progress
from .usage import TokenUsageAggregate
from .util import format_cost, format_duration_ms, slugify


@dataclass
class PipelineResult:
    exit_code: int = 0
    resume: ResumePoint | None = None
    usage: TokenUsageAggregate = field(default_factory=TokenUsageAggregate)
    warnings: list[str] = field(default_factory=list)
    error: OuroborosError | None = None
    checkpoint: str | None = None
    branch: str | None = None
    pr_url: str | None = None
    steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "exit_code": self.exit_code,
            "resume": self.resume.to_dict() if self.resume else None,
            "usage": self.usage.to_dict(),
            "warnings": list(self.warnings),
            "steps": list(self.steps),
            "checkpoint": self.checkpoint,
            "branch": self.branch,
            "pr_url": self.pr_url,
            "error": None,
        }
        if self.error is not None:
            err: dict[str, Any] = {"type": type(self.error).__name__, "message": str(self.error)}
            if isinstance(self.error, StructuralValidationError):
                err["errors"] = list(self.error.errors)
            if isinstance(self.error, LoopDetectedError):
                err["rolled_back"] = self.error.rolled_back
                err["reason"] = self.error.reason
            out["error"] = err
        return out


class EpicPipeline:
    def __init__(
        self,
        config: PipelineConfig,
        backends: Mapping[str, Backend] | None = None,
        *,
        repo: GitRepository | None = None,
        console: Console | None = None,
        event_sink: EventSink | None = None,
        agent_stdout: IO[str] | None = None,
        agent_stderr: IO[str] | None = None,
    ) -> None:
        self.config = config
        self.backends = dict(backends or {})
        self.repo = repo or GitRepository(config.repo_root)
        self.console = console or Console()
        self.event_sink = event_sink
        self.agent_stdout = agent_stdout or self.console.file
        self.agent_stderr = agent_stderr or sys.stderr
        self.result = PipelineResult()
        self._phase: PipelinePhase | None = None
        self.drift: list[ManifestDriftWarning] = []

    # ------------------------------------------------------------ plumbing
    def _emit(self, event_type: str, *, step: str | None = None, **payload: Any) -> None:
        if not self.event_sink:
            return
        self.event_sink(
            make_event(
                event_type,
                phase=int(self._phase) if self._phase is not None else None,
                step=step,
                payload=payload,
            )
        )

    def _verbose(self, message: str) -> None:
        if self.config.verbose:
            self.console.print(f"[dim]{message}[/dim]", highlight=False)

    def _warn(self, message: str) -> None:
        self.result.warnings.append(message)
        self.console.print(f"[yellow]⚠ {message}[/yellow]", highlight=False)

    def _backend(self, choice: RuntimeChoice) -> Backend:
        backend = self.backends.get(choice.runtime)
        if backend is None:
            backend = get_backend(choice.runtime)
            self.backends[choice.runtime] = backend
        return backend

    def _runtime_for(self, step: Step) -> RuntimeChoice:
        if step.role == IMPLEMENTATION:
            return self.config.implementation
        return self.config.planning

    def _start_phase(self, phase: PipelinePhase) -> None:
        self._phase = phase
        self._emit("phase.start", title=phase.title)
        self.console.print()
        self.console.print(f"[bold blue]Phase {int(phase)}: {phase.title}[/bold blue]")

    # ------------------------------------------------------------ steps
    def run_step(self, step: Step) -> RunResult:
        """Run one agent invocation inside a git checkpoint.

        A detected loop resets the tree to the checkpoint and raises
        ``LoopDetectedError``; any other failure raises
        ``AdapterExecutionError`` and leaves the tree as the agent left it.
        """
        choice = self._runtime_for(step)
        backend = self._backend(choice)
        index = len(self.result.steps) + 1
        self.result.steps.append(step.name)

        checkpoint = self.repo.capture_checkpoint() if self.config.commit_each else None
        self.console.print(f"[bold cyan]Step {index}: {step.name}[/bold cyan]", highlight=False)
        self._verbose(f"Using {backend.display_name} with model {choice.model or 'default'}")
        self._verbose(f"Checkpoint: {checkpoint or 'none'}")
        self._verbose(step.instruction)
        self._emit(
            "step.start",
            step=step.name,
            runtime=choice.runtime,
            model=choice.model,
            checkpoint=checkpoint,
        )

        detector = LoopDetector(
            window_size=self.config.loop_window,
            threshold=self.config.loop_threshold,
        )
        options = RunOptions(
            cwd=self.config.repo_root,
            model=choice.model,
            verbose=self.config.verbose,
            output_path=ensure_logs_dir(self.config.repo_root) / f"{index:02d}-{slugify(step.name)}.jsonl",
        )
        run = backend.run(
            step.instruction,
            options,
            loop_detector=detector,
            stdout=self.agent_stdout,
            stderr=self.agent_stderr,
        )
        usage = self.result.usage
        usage.add(run)

        self.console.print(f"[dim]Duration: {format_duration_ms(run.duration_ms)}[/dim]")
        if backend.supports_token_tracking and usage.has_usage:
            self.console.print(
                f"[dim]Running total: {format_cost(usage.cost_usd)} | "
                f"{usage.total_tokens:,} tokens[/dim]"
            )

        if run.loop_detected:
            self._handle_loop(step, checkpoint, run)
        if not run.success:
            self.console.print(f"[red]✗ Step failed with exit code {run.exit_code}[/red]")
            self._emit("step.error", step=step.name, exit_code=run.exit_code)
            raise AdapterExecutionError(step.name, run.exit_code)

        self._emit(
            "step.end",
            step=step.name,
            exit_code=run.exit_code,
            duration_ms=run.duration_ms,
            tool_calls=len(run.events),
        )
        return run

    def _handle_loop(self, step: Step, checkpoint: str | None, run: RunResult) -> None:
        self.console.print(
            f"[yellow]⚠ Loop detected - {run.loop_reason or 'agent repeated the same tool call'}[/yellow]",
            highlight=False,
        )
        rolled_back = False
        if self.config.commit_each and checkpoint:
            self.console.print(f"Resetting to last commit: {checkpoint[:8]}...")
            outcome = self.repo.reset_and_clean(checkpoint)
            rolled_back = outcome.reset_ok
            if outcome.reset_ok:
                self.console.print("[green]✓ Reset to last commit[/green]")
            else:
                self.console.print("[red]✗ Failed to reset to last commit[/red]")
            if not outcome.clean_ok:
                self._warn("Failed to clean untracked files")
            self.result.checkpoint = checkpoint
            self._emit(
                "step.rollback",
                step=step.name,
                checkpoint=checkpoint,
                reset_ok=outcome.reset_ok,
                clean_ok=outcome.clean_ok,
            )
        else:
            self.console.print("No commit to reset to - changes from this step may be partial")
        self._emit("step.error", step=step.name, loop=True, reason=run.loop_reason)
        raise LoopDetectedError(
            step.name,
            checkpoint=checkpoint,
            rolled_back=rolled_back,
            reason=run.loop_reason,
        )

    def commit(self, message: str) -> bool:
        if not self.config.commit_each:
            self._verbose("Commit disabled, skipping")
            return False
        outcome = self.repo.commit_if_dirty(message)
        if outcome.committed:
            self.console.print(f"[green]✓ Committed: {message}[/green]", highlight=False)
            self._emit("step.commit", message=message)
        elif not outcome.result.ok:
            self._warn(f"Commit failed: {outcome.result.stderr or outcome.result.stdout}")
        else:
            self._verbose("Nothing to commit")
        return outcome.committed

    # ------------------------------------------------------------ phases
    def create_features(self) -> None:
        self._start_phase(PipelinePhase.CREATE_FEATURES)
        step = create_features_step(self.config.epic)
        self.run_step(step)

        index = read_features_index(self.config.epic.path)
        features = discover_features(self.config.epic.path)
        if index is None or not features:
            raise StructuralValidationError(
                "features were not created properly; check the agent output above"
            )
        self.console.print(f"[green]✓ Created {len(features)} feature(s)[/green]")
        self.commit(step.commit_message)

    def create_tasks(self, start_index: int = 0) -> None:
        self._start_phase(PipelinePhase.CREATE_TASKS)
        features = discover_features(self.config.epic.path)
        for feature in features[start_index:]:
            if feature.has_tasks:
                self._verbose(f"Skipping {feature.folder_name} - already has tasks.md")
                continue
            self.console.print(f"Creating tasks for feature: {feature.folder_name}")
            step = create_tasks_step(feature)
            self.run_step(step)
            if not (feature.path / "tasks.md").is_file():
                raise StructuralValidationError(
                    f"tasks.md was not created for {feature.folder_name}"
                )
            self.commit(step.commit_message)
        self.console.print("[green]✓ All tasks created[/green]")

    def create_task_prompts(self, start_index: int = 0) -> None:
        self._start_phase(PipelinePhase.CREATE_TASK_PROMPTS)
        features = discover_features(self.config.epic.path)
        for feature in features[start_index:]:
            if read_progress(feature.path) is not None:
                self._verbose(f"Skipping {feature.folder_name} - already has prompts")
                continue
            self.console.print(f"Creating task prompts for feature: {feature.folder_name}")
            step = create_task_prompts_step(feature)
            self.run_step(step)
            if read_progress(feature.path) is None:
                raise StructuralValidationError(
                    f"progress.yml was not created for {feature.folder_name}"
                )
            self.commit(step.commit_message)
        self.console.print("[green]✓ All task prompts created[/green]")

    def implement(self, start_feature: int = 0, start_task_group: int = 0) -> None:
        self._start_phase(PipelinePhase.IMPLEMENT)
        features = discover_features(self.config.epic.path)
        for fi in range(start_feature, len(features)):
            feature = features[fi]
            ledger = read_progress(feature.path)
            if ledger is None:
                raise StructuralValidationError(
                    f"no readable progress.yml found for {feature.folder_name}"
                )
            self.console.print(f"Implementing feature: [bold]{feature.folder_name}[/bold]")

            first_tg = start_task_group if fi == start_feature else 0
            for tgi in range(first_tg, len(ledger.task_groups)):
                task_group = ledger.task_groups[tgi]
                if task_group.completed:
                    self._verbose(f"Skipping {task_group.name} - already completed")
                    continue

                self.console.print(f"  Task group: {task_group.name}")
                prompt_file = find_task_prompt_file(feature.path, tgi)
                if prompt_file is None:
                    raise StructuralValidationError(
                        f"prompt file not found for task group {task_group.name!r} "
                        f"of {feature.folder_name}"
                    )
                step = implement_step(
                    feature,
                    task_group.name,
                    prompt_file,
                    last=is_last_task_group(feature.path, tgi),
                )
                self.run_step(step)
                self._check_task_group(feature, tgi, task_group.name)
                self.commit(step.commit_message)

            self.console.print(f"[green]✓ Feature complete: {feature.folder_name}[/green]")
        self.console.print("[green]✓ All features implemented[/green]")

    def _check_task_group(self, feature: Feature, index: int, name: str) -> None:
        updated = read_progress(feature.path)
        if updated is None:
            raise StructuralValidationError(
                f"failed to read progress.yml for {feature.folder_name} after {name!r}"
            )
        if index >= len(updated.task_groups) or not updated.task_groups[index].completed:
            drift = ManifestDriftWarning(feature.folder_name, name)
            self.drift.append(drift)
            self._warn(str(drift))
            self.console.print("[dim]The implementation may be incomplete. Continuing anyway...[/dim]")
            self._emit("manifest.drift", feature=feature.folder_name, task_group=name)
            return
        if all_task_groups_complete(updated):
            if not mark_feature_complete(self.config.epic.path, feature.number):
                self._warn(f"could not mark {feature.folder_name} completed in features-index.yml")

    def create_verification_guide(self) -> None:
        self._start_phase(PipelinePhase.FINALIZE)
        step = verification_guide_step(self.config.epic)
        self.run_step(step)
        if has_verification_guide(self.config.epic.path):
            self.console.print("[green]✓ Created verification-guide.md[/green]")
        else:
            self._warn("verification-guide.md was not created")
        self.commit(step.commit_message)

    # ------------------------------------------------------------ git setup
    def setup(self) -> None:
        if not self.config.create_branch:
            self.console.print(f"Working on current branch: {self.repo.current_branch() or 'HEAD'}")
            return

        current = self.repo.current_branch()
        prefix = f"epic/{self.config.epic.slug}-"
        if current and current.startswith(prefix):
            # Resuming: the branch (and any PR) already exist.
            self.result.branch = current
            self.result.pr_url = self.repo.pr_url() if self.config.open_pr else None
            self.console.print(f"Continuing on branch: {current}")
            return

        if self.repo.has_uncommitted_changes():
            files = self.repo.uncommitted_files()
            self._warn(f"carrying {len(files)} uncommitted file(s) onto the new branch")
            for name in files[:5]:
                self.console.print(f"  - {name}", highlight=False)
            if len(files) > 5:
                self.console.print(f"  ... and {len(files) - 5} more")

        branch, suffix = self.repo.generate_epic_branch_name(self.config.epic.slug)
        self.repo.create_branch(branch, self.config.branch_from)
        self.result.branch = branch
        self.console.print(f"[green]✓ Created and checked out branch: {branch}[/green]")

        if not self.config.open_pr:
            return
        if not self.repo.gh_available():
            self._warn("GitHub CLI (gh) is not available or not authenticated; run: gh auth login")
            return
        push = self.repo.push_branch(branch)
        if not push.ok:
            raise GitError(f"failed to push branch {branch}: {push.stderr or push.stdout}")
        target = self.config.pr_target or self.repo.default_branch()
        pr = self.repo.create_draft_pr(pull_request_title(self.config.epic, suffix), target)
        if pr.ok:
            self.result.pr_url = self.repo.pr_url()
            self.console.print(f"[green]✓ Created draft PR: {self.result.pr_url}[/green]")
        else:
            self._warn(f"Failed to create PR: {pr.stderr or pr.stdout}")

    def wrap_up(self) -> None:
        if not (self.config.open_pr and self.result.branch):
            return
        self.console.print("Finalizing PR...")
        self.repo.push_branch(self.result.branch, set_upstream=False)
        ready = self.repo.mark_pr_ready()
        if ready.ok:
            self.result.pr_url = self.repo.pr_url() or self.result.pr_url
            self.console.print(f"[green]✓ PR marked as ready: {self.result.pr_url}[/green]")
        else:
            self._warn(f"Failed to mark PR as ready: {ready.stderr or ready.stdout}")

    # ------------------------------------------------------------ run
    def run(self) -> PipelineResult:
        epic = self.config.epic
        self._emit("pipeline.start", epic=epic.name, config=self.config.to_dict())
        try:
            resume = detect_progress(epic.path)
            self.result.resume = resume
            self.console.print(Panel(
                f"[bold]{epic.name}[/bold]\n{resume.description}",
                title="ouroboros implement",
                style="cyan",
                expand=False,
            ))
            if resume.complete:
                self.console.print("[green]✓ Nothing to do[/green]")
                return self.result

            self.setup()
            self._run_phases(resume)
            self.wrap_up()
            self.print_summary()
            self.console.print("[bold green]Epic implementation complete![/bold green]")
        except OuroborosError as exc:
            self.result.error = exc
            self.result.exit_code = 1
        finally:
            self._emit(
                "pipeline.end",
                exit_code=self.result.exit_code,
                usage=self.result.usage.to_dict(),
                warnings=list(self.result.warnings),
            )
        return self.result

    def _run_phases(self, resume: ResumePoint) -> None:
        phase = resume.phase
        if phase <= PipelinePhase.CREATE_FEATURES:
            self.create_features()
        if phase <= PipelinePhase.CREATE_TASKS:
            start = (resume.resume_feature_index or 0) if phase == PipelinePhase.CREATE_TASKS else 0
            self.create_tasks(start)
        if phase <= PipelinePhase.CREATE_TASK_PROMPTS:
            start = (resume.resume_feature_index or 0) if phase == PipelinePhase.CREATE_TASK_PROMPTS else 0
            self.create_task_prompts(start)
        if phase <= PipelinePhase.IMPLEMENT:
            position = resume.resume_task_group if phase == PipelinePhase.IMPLEMENT else None
            if position is not None:
                self.implement(position.feature_index, position.task_group_index)
            else:
                self.implement()
        self.create_verification_guide()

    def print_summary(self) -> None:
        usage = self.result.usage
        table = Table(title="Token Usage Summary", show_header=False, expand=False, box=None)
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Total steps", str(usage.step_count))
        table.add_row("Total duration", format_duration_ms(usage.duration_ms))
        if usage.input_tokens > 0:
            table.add_row("Input tokens", f"{usage.input_tokens:,}")
            table.add_row("Output tokens", f"{usage.output_tokens:,}")
            if usage.cache_read_tokens > 0:
                table.add_row("Cache read", f"{usage.cache_read_tokens:,}")
            if usage.cache_creation_tokens > 0:
                table.add_row("Cache creation", f"{usage.cache_creation_tokens:,}")
            table.add_row("Total cost", format_cost(usage.cost_usd))
        self.console.print()
        self.console.print(table)


def print_failure(console: Console, result: PipelineResult, epic_path: Path | None = None) -> None:
    """Explain a failed run: the error, what was rolled back, how to resume."""
    exc = result.error
    if exc is None:
        return
    console.print(Text(f"Error: {exc}", style="red"))

    if isinstance(exc, LoopDetectedError):
        console.print("The agent got stuck in a loop making repeated tool calls.")
        console.print("This usually happens when the agent can't figure out how to proceed.")
        if exc.reason:
            console.print(f"[dim]{exc.reason}[/dim]", highlight=False)
        if exc.rolled_back and exc.checkpoint:
            console.print(f"Changes have been reset to the last commit ({exc.checkpoint[:8]}).")
        else:
            console.print("No rollback happened; the working tree may hold partial changes.")
        console.print("Suggestions:")
        console.print("  1. Review the step that failed and simplify the task")
        console.print("  2. Try a different model for complex tasks")
        console.print("  3. Break down the task into smaller steps manually")

    if epic_path is not None:
        try:
            nxt = detect_progress(epic_path)
        except StructuralValidationError:
            nxt = None
        if nxt is not None:
            console.print(f"Next run: {nxt.description}", highlight=False)
    console.print("You can resume by running the command again.")
