"""CLI commands for synchronizing a downstream repository with its upstream."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer

from .budget import FileBudgeter
from .config import DEFAULT_CONFIG_NAME, LoggingConfig, SyncConfig, build_config, load_config
from .conflicts import ConflictResolver, DirectSync, read_file_text
from .diff import ChangeOperation, parse_diff
from .errors import ErrorKind, SyncError
from .orchestrator import SyncRunResult, UpstreamSync, read_snapshots
from .prompts import fit_prompt, summarise_budget
from .tools.lock import sync_lock
from .tools.patch import PatchApplier
from .tools.vcs import GitRepository

APP_HELP = "Turn upstream commits into pull requests against a downstream repository."

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(help=APP_HELP)


def configure_logging(settings: LoggingConfig) -> None:
    """Install console (and optional file) handlers on the root logger."""
    level = logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.file is not None:
        settings.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.file, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def _load(config: str) -> SyncConfig:
    """Load ``config``; a missing default file means built-in defaults."""
    config_path = Path(config)
    try:
        if not config_path.exists() and config == DEFAULT_CONFIG_NAME:
            return build_config({})
        return load_config(config_path)
    except SyncError as error:
        _fail(error)


def _fail(error: SyncError) -> NoReturn:
    typer.echo(f"Error ({error.kind.value}): {error}", err=True)
    for key, value in error.to_dict()["details"].items():
        if value in (None, "", [], {}):
            continue
        typer.echo(f"  {key}: {json.dumps(value) if not isinstance(value, str) else value}", err=True)
    raise typer.Exit(code=1)


def _read_utf8(path: Path) -> str:
    """Read a diff or patch file; undecodable input is a parse error."""
    data = path.read_bytes()
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as error:
        raise SyncError(
            f"{path} is not valid UTF-8",
            kind=ErrorKind.PARSE,
            details={"path": path, "offset": error.start},
        ) from error


def _render_run(result: SyncRunResult) -> None:
    if not result.commits and not result.halted:
        typer.echo("No new upstream commits.")
        return
    for commit_result in result.commits:
        line = f"{commit_result.commit.short_sha} {commit_result.status.value}"
        if commit_result.pr_url:
            line += f" {commit_result.pr_url}"
        elif commit_result.branch:
            line += f" {commit_result.branch}"
        if commit_result.title:
            line += f" - {commit_result.title}"
        typer.echo(line)
        if commit_result.outcome is not None and commit_result.outcome.partially_applied:
            for fragment in commit_result.outcome.rejected_fragments:
                typer.echo(f"  rejected: {fragment.path}")
    if result.conflicting_pull_requests:
        for number, paths in sorted(result.conflicting_pull_requests.items()):
            typer.echo(f"Open PR #{number} touches: {', '.join(paths)}")
    if result.halted:
        typer.echo(f"Halted: {result.halt_reason}")


@app.command()
def sync(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the sync configuration file.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Generate patches and decisions without writing, committing or opening PRs.",
    ),
    no_ai: bool = typer.Option(
        False,
        "--no-ai",
        help="Copy upstream files directly, resolving conflicts with the configured strategy.",
    ),
    since: Optional[str] = typer.Option(
        None,
        "--since",
        help="Process commits after this ref instead of the local upstream branch.",
    ),
) -> None:
    """Run one synchronization pass."""
    settings = _load(config)
    if dry_run:
        settings.sync.dry_run = True
    if no_ai:
        settings.synthesis.enabled = False
    configure_logging(settings.logging)

    try:
        syncer = UpstreamSync.from_config(settings)
        result = syncer.run(since=since, use_ai=settings.synthesis.enabled)
    except SyncError as error:
        _fail(error)

    _render_run(result)
    if result.halted:
        raise typer.Exit(code=1)


@app.command()
def parse(
    diff_file: Path = typer.Argument(..., help="Unified diff to parse."),
) -> None:
    """List the file changes in a diff."""
    try:
        changes = parse_diff(diff_file.read_bytes())
    except SyncError as error:
        _fail(error)

    if not changes:
        typer.echo("No file changes found.")
        return
    for path, change in changes.items():
        line = f"{change.operation.value:<8} {path}"
        if change.operation is ChangeOperation.RENAMED:
            line += f" (from {change.source_path})"
        if change.binary:
            line += " [binary]"
        else:
            line += f" +{change.added_lines} -{change.removed_lines}"
        typer.echo(line)


@app.command()
def budget(
    diff_file: Path = typer.Argument(..., help="Unified diff to budget."),
    repo_a: Path = typer.Option(..., "--repo-a", help="Upstream repository."),
    repo_b: Path = typer.Option(..., "--repo-b", help="Downstream repository working tree."),
    ref: str = typer.Option("HEAD", "--ref", help="Upstream ref the diff leads to."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the sync configuration file.",
    ),
) -> None:
    """Show which files would accompany a synthesis request for a diff."""
    settings = _load(config)
    try:
        diff_text = _read_utf8(diff_file)
        changes = parse_diff(diff_text)
        upstream = GitRepository(repo_a)
        snapshots = read_snapshots(changes, upstream, ref, repo_b.resolve())
        budgeter = FileBudgeter(settings.budget)
        budgeted = budgeter.select(snapshots, diff_text)
        fit_prompt(budgeted, budgeter)
    except SyncError as error:
        _fail(error)

    typer.echo(json.dumps(summarise_budget(budgeted), indent=2))


@app.command()
def apply(
    patch_file: Path = typer.Argument(..., help="Patch to apply."),
    repo: Path = typer.Option(Path("."), "--repo", help="Repository to apply the patch to."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the sync configuration file.",
    ),
) -> None:
    """Apply a patch with the strategy cascade."""
    settings = _load(config)
    configure_logging(settings.logging)
    try:
        repository = GitRepository(repo)
        with sync_lock(settings.paths.lock_file):
            outcome = PatchApplier(
                repository,
                settings.paths.failed_patches,
                preview_chars=settings.sync.reject_preview_chars,
            ).apply(_read_utf8(patch_file))
    except SyncError as error:
        _fail(error)

    if outcome.is_noop:
        typer.echo(f"Applied with {outcome.strategy_used.value}; no files changed.")
        return
    typer.echo(f"Applied with {outcome.strategy_used.value}: {len(outcome.changed_paths)} file(s) changed.")
    for path in outcome.changed_paths:
        typer.echo(f"- {path}")
    for fragment in outcome.rejected_fragments:
        typer.echo(f"Rejected hunks in {fragment.path}:")
        typer.echo(fragment.preview)


@app.command()
def resolve(
    path: str = typer.Argument(..., help="Repository-relative path to write."),
    incoming: Path = typer.Option(..., "--incoming", help="File holding the upstream content."),
    strategy: str = typer.Option("overwrite", "--strategy", "-s", help="overwrite, keep, backup or merge."),
    repo: Path = typer.Option(Path("."), "--repo", help="Downstream working tree."),
) -> None:
    """Write one upstream file into the downstream tree, resolving conflicts."""
    try:
        writer = DirectSync(repo, ConflictResolver(), strategy)
        result = writer.write_file(path, read_file_text(incoming))
    except SyncError as error:
        _fail(error)

    typer.echo(f"{result.path}: {result.action}")
    if result.decision is not None and result.decision.backup_path:
        typer.echo(f"Backup written to {result.decision.backup_path}")


if __name__ == "__main__":
    app()
