from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import tomllib

from .epic import Epic, epic_from_path, epics_dir, get_epic, latest_epic
from .loop_detect import DEFAULT_THRESHOLD, DEFAULT_WINDOW_SIZE
from .util import env_flag, env_str

CONFIG_PATH = Path(".ouroboros") / "ouroboros.toml"
DEFAULT_RUNTIME = "claude"


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class RuntimeChoice:
    runtime: str = DEFAULT_RUNTIME
    model: str | None = None

    def label(self) -> str:
        return f"{self.runtime} ({self.model})" if self.model else self.runtime


@dataclass(frozen=True)
class PipelineFileConfig:
    commit_each: bool | None = None
    create_branch: bool | None = None
    branch_from: str | None = None
    open_pr: bool | None = None
    pr_target: str | None = None
    headless: bool | None = None


@dataclass(frozen=True)
class RuntimeFileConfig:
    runtime: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class LoopFileConfig:
    threshold: int | None = None
    window_size: int | None = None


@dataclass(frozen=True)
class OuroborosFileConfig:
    repo_root: Path
    path: Path
    pipeline: PipelineFileConfig = field(default_factory=PipelineFileConfig)
    planning: RuntimeFileConfig = field(default_factory=RuntimeFileConfig)
    implementation: RuntimeFileConfig = field(default_factory=RuntimeFileConfig)
    loop: LoopFileConfig = field(default_factory=LoopFileConfig)
    exists: bool = False
    error: str | None = None


@dataclass(frozen=True)
class ConfigOverrides:
    """Values given on the command line; ``None`` means "not given"."""

    epic: str | None = None
    planning_runtime: str | None = None
    planning_model: str | None = None
    impl_runtime: str | None = None
    impl_model: str | None = None
    commit_each: bool | None = None
    create_branch: bool | None = None
    branch_from: str | None = None
    open_pr: bool | None = None
    pr_target: str | None = None
    loop_threshold: int | None = None
    headless: bool | None = None
    verbose: bool | None = None


@dataclass(frozen=True)
class PipelineConfig:
    repo_root: Path
    epic: Epic
    planning: RuntimeChoice = field(default_factory=RuntimeChoice)
    implementation: RuntimeChoice = field(default_factory=RuntimeChoice)
    commit_each: bool = True
    create_branch: bool = False
    branch_from: str | None = None
    open_pr: bool = False
    pr_target: str | None = None
    loop_threshold: int = DEFAULT_THRESHOLD
    loop_window: int = DEFAULT_WINDOW_SIZE
    headless: bool = False
    verbose: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_root": str(self.repo_root),
            "epic": self.epic.name,
            "planning": {"runtime": self.planning.runtime, "model": self.planning.model},
            "implementation": {
                "runtime": self.implementation.runtime,
                "model": self.implementation.model,
            },
            "commit_each": self.commit_each,
            "create_branch": self.create_branch,
            "branch_from": self.branch_from,
            "open_pr": self.open_pr,
            "pr_target": self.pr_target,
            "loop_threshold": self.loop_threshold,
            "loop_window": self.loop_window,
            "headless": self.headless,
        }


def _as_str(value: object, *, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigValidationError(f"{field} must be a string")
    stripped = value.strip()
    return stripped or None


def _as_bool(value: object, *, field: str) -> bool | None:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ConfigValidationError(f"{field} must be true or false")
    return value


def _as_int(value: object, *, field: str, minimum: int) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigValidationError(f"{field} must be an integer")
    if value < minimum:
        raise ConfigValidationError(f"{field} must be >= {minimum}")
    return value


def _table(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigValidationError(f"[{name}] must be a table")
    return value


def _parse_pipeline(raw: dict[str, Any]) -> PipelineFileConfig:
    t = _table(raw, "pipeline")
    return PipelineFileConfig(
        commit_each=_as_bool(t.get("commit_each"), field="[pipeline].commit_each"),
        create_branch=_as_bool(t.get("create_branch"), field="[pipeline].create_branch"),
        branch_from=_as_str(t.get("branch_from"), field="[pipeline].branch_from"),
        open_pr=_as_bool(t.get("open_pr"), field="[pipeline].open_pr"),
        pr_target=_as_str(t.get("pr_target"), field="[pipeline].pr_target"),
        headless=_as_bool(t.get("headless"), field="[pipeline].headless"),
    )


def _parse_runtime(raw: dict[str, Any], name: str) -> RuntimeFileConfig:
    t = _table(raw, name)
    return RuntimeFileConfig(
        runtime=_as_str(t.get("runtime"), field=f"[{name}].runtime"),
        model=_as_str(t.get("model"), field=f"[{name}].model"),
    )


def _parse_loop(raw: dict[str, Any]) -> LoopFileConfig:
    t = _table(raw, "loop")
    return LoopFileConfig(
        threshold=_as_int(t.get("threshold"), field="[loop].threshold", minimum=2),
        window_size=_as_int(t.get("window_size"), field="[loop].window_size", minimum=2),
    )


def _format_path(path: Path, repo_root: Path) -> str:
    try:
        return str(path.resolve().relative_to(repo_root.resolve()))
    except (OSError, ValueError):
        return str(path)


def load_config(repo_root: Path) -> OuroborosFileConfig:
    """Read ``.ouroboros/ouroboros.toml``; a missing file yields empty settings."""
    path = repo_root / CONFIG_PATH
    if not path.is_file():
        return OuroborosFileConfig(repo_root=repo_root, path=path)

    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        return OuroborosFileConfig(
            repo_root=repo_root,
            path=path,
            exists=True,
            error=f"invalid TOML in {_format_path(path, repo_root)}: {exc}",
        )

    try:
        return OuroborosFileConfig(
            repo_root=repo_root,
            path=path,
            pipeline=_parse_pipeline(raw),
            planning=_parse_runtime(raw, "planning"),
            implementation=_parse_runtime(raw, "implementation"),
            loop=_parse_loop(raw),
            exists=True,
        )
    except ConfigValidationError as exc:
        return OuroborosFileConfig(
            repo_root=repo_root,
            path=path,
            exists=True,
            error=f"{_format_path(path, repo_root)}: {exc}",
        )


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _env_bool(name: str) -> bool | None:
    return True if env_flag(name) else None


def _env_threshold() -> int | None:
    raw = env_str("OUROBOROS_LOOP_THRESHOLD")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigValidationError(
            f"OUROBOROS_LOOP_THRESHOLD must be an integer, got {raw!r}"
        ) from exc


def resolve_epic(repo_root: Path, name: str | None) -> Epic:
    if name:
        epic = get_epic(name, repo_root)
        if epic is not None:
            return epic
        candidate = Path(name)
        if not candidate.is_absolute():
            candidate = repo_root / candidate
        if candidate.is_dir():
            return epic_from_path(candidate.resolve())
        raise ConfigValidationError(f"epic not found: {name}")

    epic = latest_epic(repo_root)
    if epic is None:
        raise ConfigValidationError(
            f"no epics found in {_format_path(epics_dir(repo_root), repo_root)}/"
        )
    return epic


def _stdin_is_tty() -> bool:
    try:
        return sys.stdin.isatty()
    except (AttributeError, ValueError):
        return False


def resolve_config(
    repo_root: Path,
    overrides: ConfigOverrides | None = None,
    *,
    known_runtimes: Iterable[str] | None = None,
    file_config: OuroborosFileConfig | None = None,
) -> PipelineConfig:
    """Merge CLI overrides, ``OUROBOROS_*`` env vars, the config file and defaults."""
    o = overrides or ConfigOverrides()
    fc = file_config or load_config(repo_root)
    if fc.error:
        raise ConfigValidationError(fc.error)

    planning = RuntimeChoice(
        runtime=_first(
            o.planning_runtime,
            env_str("OUROBOROS_PLANNING_RUNTIME"),
            fc.planning.runtime,
            DEFAULT_RUNTIME,
        ),
        model=_first(o.planning_model, env_str("OUROBOROS_PLANNING_MODEL"), fc.planning.model),
    )
    implementation = RuntimeChoice(
        runtime=_first(
            o.impl_runtime,
            env_str("OUROBOROS_IMPL_RUNTIME"),
            fc.implementation.runtime,
            DEFAULT_RUNTIME,
        ),
        model=_first(o.impl_model, env_str("OUROBOROS_IMPL_MODEL"), fc.implementation.model),
    )
    if known_runtimes is not None:
        known = sorted(known_runtimes)
        for label, choice in (("planning", planning), ("implementation", implementation)):
            if choice.runtime not in known:
                raise ConfigValidationError(
                    f"unknown {label} runtime {choice.runtime!r}. available: {', '.join(known)}"
                )

    threshold = _first(o.loop_threshold, _env_threshold(), fc.loop.threshold, DEFAULT_THRESHOLD)
    if threshold < 2:
        raise ConfigValidationError("loop threshold must be at least 2")
    window = _first(fc.loop.window_size, DEFAULT_WINDOW_SIZE)
    window = max(window, threshold)

    create_branch = bool(_first(o.create_branch, fc.pipeline.create_branch, False))
    open_pr = bool(_first(o.open_pr, fc.pipeline.open_pr, False))
    if open_pr and not create_branch:
        raise ConfigValidationError("opening a pull request requires creating a branch")

    headless = bool(
        _first(o.headless, _env_bool("OUROBOROS_HEADLESS"), fc.pipeline.headless, False)
    ) or not _stdin_is_tty()

    return PipelineConfig(
        repo_root=repo_root,
        epic=resolve_epic(repo_root, o.epic),
        planning=planning,
        implementation=implementation,
        commit_each=bool(_first(o.commit_each, fc.pipeline.commit_each, True)),
        create_branch=create_branch,
        branch_from=_first(o.branch_from, fc.pipeline.branch_from),
        open_pr=open_pr,
        pr_target=_first(o.pr_target, fc.pipeline.pr_target),
        loop_threshold=threshold,
        loop_window=window,
        headless=headless,
        verbose=bool(_first(o.verbose, _env_bool("OUROBOROS_VERBOSE"), False)),
    )
