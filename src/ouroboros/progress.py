"""Work out where an epic's pipeline left off.

Detection only looks at which artifacts exist (plus ledger flags), never at
their content, so it is cheap and safe to call any number of times: the
resume point is derived fresh on every run and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

from .epic import (
    discover_features,
    has_requirements,
    has_verification_guide,
    validate_features,
)
from .errors import StructuralValidationError
from .manifest import first_incomplete_task_group, read_features_index, read_progress


class PipelinePhase(IntEnum):
    # 1 and 2 belong to the upstream epic-planning steps.
    CREATE_FEATURES = 3
    CREATE_TASKS = 4
    CREATE_TASK_PROMPTS = 5
    IMPLEMENT = 6
    FINALIZE = 7

    @property
    def title(self) -> str:
        return _PHASE_TITLES[self]


_PHASE_TITLES = {
    PipelinePhase.CREATE_FEATURES: "Create Features",
    PipelinePhase.CREATE_TASKS: "Create Tasks",
    PipelinePhase.CREATE_TASK_PROMPTS: "Create Task Prompts",
    PipelinePhase.IMPLEMENT: "Implementation",
    PipelinePhase.FINALIZE: "Create Verification Guide",
}


@dataclass(frozen=True)
class TaskGroupPosition:
    feature_index: int
    task_group_index: int


@dataclass(frozen=True)
class ResumePoint:
    phase: PipelinePhase
    resume_feature_index: int | None = None
    resume_task_group: TaskGroupPosition | None = None
    complete: bool = False
    description: str = ""

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "phase": int(self.phase),
            "complete": self.complete,
            "description": self.description,
        }
        if self.resume_feature_index is not None:
            out["resume_feature_index"] = self.resume_feature_index
        if self.resume_task_group is not None:
            out["resume_task_group"] = {
                "feature_index": self.resume_task_group.feature_index,
                "task_group_index": self.resume_task_group.task_group_index,
            }
        return out


def _starting(phase: PipelinePhase, detail: str = "") -> str:
    text = f"Starting from Phase {int(phase)}: {phase.title}"
    return f"{text} ({detail})" if detail else text


def detect_progress(epic_path: Path) -> ResumePoint:
    epic_path = Path(epic_path)
    if not has_requirements(epic_path):
        raise StructuralValidationError(
            f"epic {epic_path.name} has no requirements.md; plan the epic before implementing it"
        )

    index = read_features_index(epic_path)
    features = discover_features(epic_path)
    if index is None or not features:
        return ResumePoint(
            phase=PipelinePhase.CREATE_FEATURES,
            description=_starting(PipelinePhase.CREATE_FEATURES),
        )

    validation = validate_features(epic_path)
    if not validation.valid:
        raise StructuralValidationError("feature validation failed", validation.errors)

    for i, feature in enumerate(features):
        if not feature.has_tasks:
            return ResumePoint(
                phase=PipelinePhase.CREATE_TASKS,
                resume_feature_index=i,
                description=_starting(
                    PipelinePhase.CREATE_TASKS, f"resuming at feature {feature.folder_name}"
                ),
            )

    ledgers = []
    for i, feature in enumerate(features):
        ledger = read_progress(feature.path) if feature.has_progress else None
        if ledger is None:
            # A corrupt ledger is no more trustworthy than a missing one.
            return ResumePoint(
                phase=PipelinePhase.CREATE_TASK_PROMPTS,
                resume_feature_index=i,
                description=_starting(
                    PipelinePhase.CREATE_TASK_PROMPTS,
                    f"resuming at feature {feature.folder_name}",
                ),
            )
        ledgers.append(ledger)

    for i, (feature, ledger) in enumerate(zip(features, ledgers)):
        tg_index = first_incomplete_task_group(ledger)
        if tg_index >= 0:
            tg_name = ledger.task_groups[tg_index].name
            return ResumePoint(
                phase=PipelinePhase.IMPLEMENT,
                resume_feature_index=i,
                resume_task_group=TaskGroupPosition(i, tg_index),
                description=_starting(
                    PipelinePhase.IMPLEMENT,
                    f"resuming at feature {feature.folder_name}, task group {tg_name}",
                ),
            )

    if not has_verification_guide(epic_path):
        return ResumePoint(
            phase=PipelinePhase.FINALIZE,
            description=_starting(PipelinePhase.FINALIZE),
        )

    return ResumePoint(
        phase=PipelinePhase.FINALIZE,
        complete=True,
        description="All phases complete",
    )
