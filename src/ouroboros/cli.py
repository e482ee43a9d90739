"""CLI entry point for ouroboros."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from . import __version__
from .backends import get_backend, list_backends
from .config import ConfigOverrides, ConfigValidationError, resolve_config, resolve_epic
from .epic import discover_features, list_epics
from .errors import StructuralValidationError
from .events import EventLog
from .executor import EpicPipeline, print_failure
from .git import GitRepository
from .manifest import read_progress
from .progress import detect_progress


def _find_repo_root() -> Path:
    """Walk up to find .git directory."""
    p = Path.cwd()
    while p != p.parent:
        if (p / ".git").exists():
            return p
        p = p.parent
    return Path.cwd()


def _implement_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ouroboros implement", add_help=False)
    p.add_argument("epic", nargs="?")
    p.add_argument("--planning-runtime")
    p.add_argument("--planning-model")
    p.add_argument("--impl-runtime")
    p.add_argument("--impl-model")
    p.add_argument("--branch", dest="create_branch", action=argparse.BooleanOptionalAction, default=None)
    p.add_argument("--branch-from")
    p.add_argument("--open-pr", action="store_const", const=True, default=None)
    p.add_argument("--pr-target")
    p.add_argument("--no-commit", dest="commit_each", action="store_const", const=False, default=None)
    p.add_argument("--loop-threshold", type=int)
    p.add_argument("-y", "--yes", dest="headless", action="store_const", const=True, default=None)
    p.add_argument("--verbose", action="store_const", const=True, default=None)
    p.add_argument("--json", action="store_true")
    p.add_argument("-h", "--help", action="store_true")
    return p


def _status_parser(prog: str) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog=prog, add_help=False)
    p.add_argument("epic", nargs="?")
    p.add_argument("--json", action="store_true")
    p.add_argument("-h", "--help", action="store_true")
    return p


def _list_parser(prog: str) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog=prog, add_help=False)
    p.add_argument("--json", action="store_true")
    return p


def _print_json(payload: object) -> None:
    json.dump(payload, sys.stdout, indent=2)
    print()


def _error(console: Console, message: str) -> None:
    console.print(Text(message, style="red"))


def _print_implement_help(console: Console) -> None:
    console.print("[bold]ouroboros implement[/bold] — run the epic pipeline from where it left off\n")
    console.print("  ouroboros implement [dim]\\[EPIC] \\[options][/dim]\n")
    opts = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    opts.add_column("Option", style="bold")
    opts.add_column("Description", style="dim")
    opts.add_row("EPIC", "Epic folder name or path (default: newest epic)")
    opts.add_row("--planning-runtime R", f"Runtime for planning steps ({'|'.join(list_backends())})")
    opts.add_row("--planning-model M", "Model for planning steps")
    opts.add_row("--impl-runtime R", "Runtime for implementation steps")
    opts.add_row("--impl-model M", "Model for implementation steps")
    opts.add_row("--branch / --no-branch", "Create an epic/<slug>-N branch first")
    opts.add_row("--branch-from B", "Base branch for the new branch")
    opts.add_row("--open-pr", "Open a draft PR (requires --branch and gh)")
    opts.add_row("--pr-target B", "PR base branch (default: repository default)")
    opts.add_row("--no-commit", "Do not checkpoint or commit after each step")
    opts.add_row("--loop-threshold N", "Identical tool calls before aborting (default: 3)")
    opts.add_row("-y, --yes", "Headless: never prompt")
    opts.add_row("--verbose", "Print instructions, checkpoints and raw agent events")
    opts.add_row("--json", "Print the run result as JSON on stdout")
    console.print(opts)


def _confirm_uncommitted(console: Console, repo: GitRepository, slug: str) -> bool:
    current = repo.current_branch() or ""
    if current.startswith(f"epic/{slug}-") or not repo.has_uncommitted_changes():
        return True
    files = repo.uncommitted_files()
    console.print(Text(f"You have {len(files)} uncommitted file(s):", style="yellow"))
    for name in files[:5]:
        console.print(f"  - {name}", markup=False)
    if len(files) > 5:
        console.print(f"  ... and {len(files) - 5} more")
    if Confirm.ask("Bring these changes to the new branch?", console=console, default=True):
        return True
    _error(console, "Cannot proceed with uncommitted changes.")
    console.print("Commit or stash them first:")
    console.print("  git stash push -m 'before epic implementation'", markup=False)
    return False


def cmd_implement(argv: list[str], console: Console) -> int:
    args = _implement_parser().parse_args(argv)
    if args.help:
        _print_implement_help(console)
        return 0
    if args.json:
        console = Console(stderr=True)

    root = _find_repo_root()
    overrides = ConfigOverrides(
        epic=args.epic,
        planning_runtime=args.planning_runtime,
        planning_model=args.planning_model,
        impl_runtime=args.impl_runtime,
        impl_model=args.impl_model,
        commit_each=args.commit_each,
        create_branch=args.create_branch,
        branch_from=args.branch_from,
        open_pr=args.open_pr,
        pr_target=args.pr_target,
        loop_threshold=args.loop_threshold,
        headless=args.headless,
        verbose=args.verbose,
    )
    try:
        cfg = resolve_config(root, overrides, known_runtimes=list_backends())
    except ConfigValidationError as exc:
        _error(console, str(exc))
        return 1

    repo = GitRepository(root)
    if (cfg.commit_each or cfg.create_branch) and not repo.is_repository():
        _error(console, f"not a git repository: {root}")
        console.print("Run inside a git repository, or pass --no-commit.")
        return 1

    for runtime in sorted({cfg.planning.runtime, cfg.implementation.runtime}):
        backend = get_backend(runtime)
        if not backend.is_available():
            _error(console, f"Runtime not available: {runtime}")
            console.print(f"Install {backend.display_name} or choose another runtime with --planning-runtime/--impl-runtime.")
            return 1

    if cfg.create_branch and not cfg.headless:
        if not _confirm_uncommitted(console, repo, cfg.epic.slug):
            return 1

    pipeline = EpicPipeline(
        cfg,
        repo=repo,
        console=console,
        event_sink=EventLog.from_repo_root(root),
    )
    result = pipeline.run()
    if not result.ok:
        print_failure(console, result, cfg.epic.path)

    if args.json:
        _print_json({"epic": cfg.epic.name, **result.to_dict()})
    return result.exit_code


def _feature_rows(epic_path: Path) -> list[dict[str, object]]:
    rows: list[dict[str, object]] = []
    for feature in discover_features(epic_path):
        ledger = read_progress(feature.path) if feature.has_progress else None
        done = sum(1 for tg in ledger.task_groups if tg.completed) if ledger else 0
        rows.append(
            {
                "feature": feature.folder_name,
                "prd": feature.has_prd,
                "tasks": feature.has_tasks,
                "progress": ledger is not None,
                "corrupt_progress": feature.has_progress and ledger is None,
                "task_groups_done": done,
                "task_groups_total": len(ledger.task_groups) if ledger else 0,
            }
        )
    return rows


def _mark(flag: object) -> str:
    return "[green]✓[/green]" if flag else "[dim]-[/dim]"


def cmd_status(argv: list[str], console: Console) -> int:
    args = _status_parser("ouroboros status").parse_args(argv)
    if args.help:
        console.print("[bold]ouroboros status[/bold] — show where the pipeline will resume\n")
        console.print("  ouroboros status [dim]\\[EPIC] \\[--json][/dim]")
        return 0

    root = _find_repo_root()
    try:
        epic = resolve_epic(root, args.epic)
    except ConfigValidationError as exc:
        _error(console, str(exc))
        return 1

    try:
        resume = detect_progress(epic.path)
    except StructuralValidationError as exc:
        if args.json:
            _print_json({"epic": epic.name, "error": str(exc).splitlines()[0], "errors": exc.errors})
        else:
            _error(console, str(exc))
        return 1

    rows = _feature_rows(epic.path)
    if args.json:
        _print_json({"epic": epic.name, "resume": resume.to_dict(), "features": rows})
        return 0

    style = "green" if resume.complete else "cyan"
    console.print(Panel(f"[bold]{epic.name}[/bold]\n{resume.description}", style=style, expand=False))
    if not rows:
        return 0
    table = Table(expand=False, show_edge=False, pad_edge=False)
    table.add_column("Feature", style="bold")
    table.add_column("PRD", justify="center")
    table.add_column("Tasks", justify="center")
    table.add_column("Prompts", justify="center")
    table.add_column("Groups", justify="right")
    for row in rows:
        if row["corrupt_progress"]:
            prompts = "[red]corrupt[/red]"
        else:
            prompts = _mark(row["progress"])
        groups = (
            f"{row['task_groups_done']}/{row['task_groups_total']}" if row["progress"] else "[dim]-[/dim]"
        )
        table.add_row(str(row["feature"]), _mark(row["prd"]), _mark(row["tasks"]), prompts, groups)
    console.print(table)
    return 0


def cmd_epics(argv: list[str], console: Console) -> int:
    args = _list_parser("ouroboros epics").parse_args(argv)
    root = _find_repo_root()
    epics = list_epics(root)

    out: list[dict[str, object]] = []
    for epic in epics:
        try:
            description = detect_progress(epic.path).description
            ok = True
        except StructuralValidationError as exc:
            description = str(exc).splitlines()[0]
            ok = False
        out.append({"name": epic.name, "date": epic.date, "slug": epic.slug, "ok": ok, "status": description})

    if args.json:
        _print_json(out)
        return 0
    if not epics:
        console.print(Text("No epics found in ouroboros/epics/", style="yellow"))
        return 0

    table = Table(title="Epics", expand=False, show_edge=False, pad_edge=False)
    table.add_column("Date", style="dim")
    table.add_column("Epic", style="bold")
    table.add_column("Status")
    for row in out:
        status = Text(str(row["status"]), style="default" if row["ok"] else "red")
        table.add_row(str(row["date"]), str(row["slug"]), status)
    console.print(table)
    return 0


def cmd_runtimes(argv: list[str], console: Console) -> int:
    args = _list_parser("ouroboros runtimes").parse_args(argv)
    rows = []
    for name in list_backends():
        backend = get_backend(name)
        rows.append(
            {
                "name": name,
                "display_name": backend.display_name,
                "available": backend.is_available(),
                "token_tracking": backend.supports_token_tracking,
            }
        )
    if args.json:
        _print_json(rows)
        return 0

    table = Table(title="Runtimes", expand=False, show_edge=False, pad_edge=False)
    table.add_column("Name", style="bold")
    table.add_column("Runtime")
    table.add_column("On PATH", justify="center")
    table.add_column("Tokens", justify="center")
    for row in rows:
        table.add_row(
            str(row["name"]),
            str(row["display_name"]),
            _mark(row["available"]),
            _mark(row["token_tracking"]),
        )
    console.print(table)
    return 0


def _print_help(console: Console) -> None:
    help_text = Text()
    help_text.append("ouroboros", style="bold")
    help_text.append(f" {__version__}", style="dim")
    help_text.append(" — turn a planned epic into code, one agent step at a time")
    console.print(help_text)
    console.print()

    cmds = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    cmds.add_column("Command", style="bold cyan")
    cmds.add_column("Description")
    cmds.add_row("ouroboros implement [EPIC]", "Run (or resume) the epic pipeline")
    cmds.add_row("ouroboros status [EPIC]", "Show the resume point and feature progress")
    cmds.add_row("ouroboros epics", "List epics under ouroboros/epics/")
    cmds.add_row("ouroboros runtimes", "List agent runtimes and whether they are installed")
    console.print(cmds)
    console.print()

    opts = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    opts.add_column("Option", style="bold")
    opts.add_column("Description", style="dim")
    opts.add_row("<command> --help", "Command options")
    opts.add_row("--version", "Show version")
    console.print(opts)


_COMMANDS = {
    "implement": cmd_implement,
    "status": cmd_status,
    "epics": cmd_epics,
    "runtimes": cmd_runtimes,
}


def main(argv: list[str] | None = None) -> None:
    raw = argv if argv is not None else sys.argv[1:]
    console = Console()

    if raw and raw[0] == "--version":
        console.print(Text(f"ouroboros {__version__}", style="bold"))
        sys.exit(0)
    if not raw or raw == ["--help"] or raw == ["-h"]:
        _print_help(console)
        sys.exit(0)

    command = _COMMANDS.get(raw[0])
    if command is None:
        _error(console, f"unknown command: {raw[0]}")
        _print_help(console)
        sys.exit(2)
    sys.exit(command(raw[1:], console))


if __name__ == "__main__":
    main()
