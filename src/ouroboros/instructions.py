"""Instruction text and commit messages for each pipeline step.

The prompt templates themselves live in the target repository under
``ouroboros/prompts/``; the instructions only point the agent at them.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .epic import Epic, Feature
from .progress import PipelinePhase

PROMPTS_DIR = Path("ouroboros") / "prompts"

PLANNING = "planning"
IMPLEMENTATION = "implementation"


@dataclass(frozen=True)
class Step:
    phase: PipelinePhase
    name: str
    instruction: str
    commit_message: str
    role: str = PLANNING


def _run_prompt(template: str, target: str, path: Path, done_when: str, *, confirm: bool = True) -> str:
    body = f"Run the prompt at {(PROMPTS_DIR / template).as_posix()} with the {target} path: {path}\n\n"
    if confirm:
        body += "Complete all phases without stopping for confirmation. "
    else:
        body += "Complete all phases. "
    return body + done_when


def create_features_step(epic: Epic) -> Step:
    return Step(
        phase=PipelinePhase.CREATE_FEATURES,
        name="Create Features",
        instruction=_run_prompt(
            "create-features.md",
            "epic",
            epic.path,
            "When features-index.yml and feature PRDs are created, you're done.",
        ),
        commit_message=f"docs: plan features for {epic.slug}",
    )


def create_tasks_step(feature: Feature) -> Step:
    return Step(
        phase=PipelinePhase.CREATE_TASKS,
        name=f"Create Tasks: {feature.name}",
        instruction=_run_prompt(
            "create-tasks.md",
            "feature",
            feature.path,
            "When tasks.md is created, you're done.",
        ),
        commit_message=f"docs: plan tasks for {feature.name}",
    )


def create_task_prompts_step(feature: Feature) -> Step:
    return Step(
        phase=PipelinePhase.CREATE_TASK_PROMPTS,
        name=f"Create Task Prompts: {feature.name}",
        instruction=_run_prompt(
            "create-task-prompts.md",
            "feature",
            feature.path,
            "When progress.yml and prompt files are created, you're done.",
        ),
        commit_message=f"docs: create task prompts for {feature.name}",
    )


def implement_step(feature: Feature, task_group: str, prompt_file: Path, *, last: bool) -> Step:
    """``feat:`` closes a feature; every earlier task group is ``wip:``."""
    prefix = "feat" if last else "wip"
    return Step(
        phase=PipelinePhase.IMPLEMENT,
        name=f"{feature.name}: {task_group}",
        instruction=(
            f"Execute the instructions in @{prompt_file}\n\n"
            "Complete all tasks in this task group. Update progress.yml when done."
        ),
        commit_message=f"{prefix}: {feature.name} - {task_group}",
        role=IMPLEMENTATION,
    )


def verification_guide_step(epic: Epic) -> Step:
    return Step(
        phase=PipelinePhase.FINALIZE,
        name="Create Verification Guide",
        instruction=_run_prompt(
            "create-verification-guide.md",
            "epic",
            epic.path,
            "When verification-guide.md is created at the epic root, you're done.",
            confirm=False,
        ),
        commit_message=f"docs: add verification guide for {epic.slug}",
    )


def pull_request_title(epic: Epic, suffix: int) -> str:
    return f"feat: {epic.slug} ({suffix})"
