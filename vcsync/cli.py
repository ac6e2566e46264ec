"""Command-line entry points: ``vc-cache`` (publisher) and ``vc-update`` (consumer)."""

from __future__ import annotations

import logging
from pathlib import Path
import sys
from typing import Callable, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .configuration import ConfigurationBundle, load_runtime_configuration
from .logging_utils import setup_logging
from .sync import (
    BuildReport,
    CacheBuilder,
    CacheSettings,
    ChangeSet,
    HttpFetcher,
    NetworkError,
    ParseError,
    SyncExecutor,
    SyncResult,
    SyncSettings,
    SyncState,
)

logger = logging.getLogger("vcsync.cli")

console = Console()

EXIT_OK = 0
EXIT_FAILURE = 1

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}
ROOT_TYPE = click.Path(file_okay=False, path_type=Path)

ReadLine = Callable[[str], str]

# Unknown words, unknown options and a missing ROOT surface as click usage
# errors: the usage line is printed and the process exits with status 2.
ArgumentError = click.UsageError


def prompt_confirm(console: Console, read_line: ReadLine = input) -> bool:
    """Ask until the user answers y/Y or n/N. End of input declines."""
    while True:
        console.print("Would you like to update? [y/n]", markup=False)
        try:
            answer = read_line("> ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            return False
        if answer in ("y", "Y"):
            return True
        if answer in ("n", "N"):
            return False
        console.print("Invalid input! Try again...")


def render_change_set(console: Console, changes: ChangeSet) -> None:
    """Print the files that will be downloaded and deleted."""
    if changes.download_set:
        table = Table(title=f"{len(changes.download_set)} files need updating")
        table.add_column("Path", style="cyan", no_wrap=True)
        table.add_column("Action")
        table.add_column("Version", justify="right")
        for entry in changes.to_create:
            table.add_row(escape(entry.full_path), "create", str(entry.version))
        for entry in changes.to_update:
            table.add_row(escape(entry.full_path), "update", str(entry.version))
        console.print(table)

    if changes.delete_set:
        table = Table(title=f"{len(changes.delete_set)} files to be deleted")
        table.add_column("Path", style="red", no_wrap=True)
        for entry in changes.delete_set:
            table.add_row(escape(entry.full_path))
        console.print(table)


def render_build_report(console: Console, report: BuildReport) -> None:
    """Print the created, modified and removed paths of a build."""
    if not report.has_changes:
        console.print("No files modified.")
    for title, paths, style in (
        ("created", report.created, "green"),
        ("modified", report.modified, "yellow"),
        ("removed", report.removed, "red"),
    ):
        if not paths:
            continue
        table = Table(title=f"{len(paths)} files {title}")
        table.add_column("Path", style=style, no_wrap=True)
        for path in paths:
            table.add_row(escape(path))
        console.print(table)
    console.print("\nEverything up to date!")




def _load_bundle(root: Path) -> Optional[ConfigurationBundle]:
    bundle = load_runtime_configuration(root)
    if bundle.status != "ready":
        for diag in bundle.diagnostics:
            if diag.level == "error":
                console.print(f"[red]error:[/red] {escape(diag.message)}")
        return None

    logging_cfg = bundle.merged.get("logging", {})
    bundle.log_path = setup_logging(
        root,
        logging_cfg.get("level", "WARNING"),
        structured=bool(logging_cfg.get("structured", False)),
    )
    for diag in bundle.diagnostics:
        if diag.level == "warning":
            logger.warning(diag.message)
        else:
            logger.info(diag.message)
    return bundle


@click.command(context_settings=CONTEXT_SETTINGS)
@click.argument("root", type=ROOT_TYPE)
@click.argument("words", nargs=-1, type=click.Choice(["help"]))
@click.pass_context
def cache_main(ctx: click.Context, root: Path, words: Tuple[str, ...]) -> None:
    """Rebuild the manifest of tracked files under ROOT.

    Pass the bare word "help" (or -h/--help) to print this message.
    """
    if "help" in words:
        click.echo(ctx.get_help())
        return

    bundle = _load_bundle(root)
    if bundle is None:
        sys.exit(EXIT_FAILURE)

    try:
        settings = CacheSettings.from_config(bundle.merged)
    except ValueError as e:
        console.print(f"[red]error:[/red] {escape(str(e))}")
        sys.exit(EXIT_FAILURE)
    if not settings.tracked_dirs:
        console.print("[yellow]No tracked directories configured (cache.tracked_dirs).[/yellow]")

    try:
        report = CacheBuilder(root, settings).build()
    except (ParseError, OSError) as e:
        logger.error("Build failed: %s", e)
        console.print(f"[red]Build failed:[/red] {escape(str(e))}")
        sys.exit(EXIT_FAILURE)

    render_build_report(console, report)


@click.command(context_settings=CONTEXT_SETTINGS)
@click.argument("root", type=ROOT_TYPE)
@click.argument("words", nargs=-1, type=click.Choice(["refresh", "force", "help"]))
@click.option("--refresh", "refresh_flag", is_flag=True, help="Same as the bare word 'refresh'.")
@click.option("--force", "force_flag", is_flag=True, help="Same as the bare word 'force'.")
@click.pass_context
def update_main(
    ctx: click.Context,
    root: Path,
    words: Tuple[str, ...],
    refresh_flag: bool,
    force_flag: bool,
) -> None:
    """Download the files that changed on the publisher since the last sync.

    \b
    Words after ROOT:
      refresh  ignore the local manifest and download every tracked file
      force    apply changes without asking for confirmation
      help     print this message and exit
    """
    if "help" in words:
        click.echo(ctx.get_help())
        return
    refresh = refresh_flag or "refresh" in words
    force = force_flag or "force" in words

    bundle = _load_bundle(root)
    if bundle is None:
        sys.exit(EXIT_FAILURE)

    settings = SyncSettings.from_config(bundle.merged)
    if not settings.base_url:
        console.print(
            "[red]error:[/red] No base URL configured. Set update.base_url or VCSYNC_BASE_URL."
        )
        sys.exit(EXIT_FAILURE)

    fetcher = HttpFetcher(
        settings.base_url,
        settings.manifest_path,
        timeout=settings.timeout,
        retries=settings.retries,
        backoff=settings.backoff,
    )

    def _confirm(changes: ChangeSet) -> bool:
        render_change_set(console, changes)
        return prompt_confirm(console)

    def _progress(message: str, current: int, total: int) -> None:
        console.print(f"[dim]({current}/{total})[/dim] {escape(message)}")

    if refresh:
        console.print("Ignoring local manifest... updating all files")

    executor = SyncExecutor(
        root,
        settings,
        fetcher,
        confirm=_confirm,
        progress_callback=_progress,
    )
    try:
        result = executor.run(full_resync=refresh, force=force)
    except NetworkError as e:
        console.print(f"[red]Could not fetch the remote manifest:[/red] {escape(str(e))}")
        sys.exit(EXIT_FAILURE)
    except (ParseError, OSError) as e:
        logger.error("Sync failed: %s", e)
        console.print(f"[red]Sync failed:[/red] {escape(str(e))}")
        sys.exit(EXIT_FAILURE)

    code = _report_sync(result, confirmed=not (force or refresh))
    if code != EXIT_OK:
        sys.exit(code)


def _report_sync(result: SyncResult, confirmed: bool) -> int:
    if SyncState.NOTHING_TO_DO in result.history:
        console.print("Everything up to date! No action needed.")
        return EXIT_OK
    if SyncState.DENIED in result.history:
        console.print("Update cancelled. Nothing was changed.")
        return EXIT_OK
    if result.state is SyncState.ABORTED:
        table = Table(title=f"{len(result.failed)} downloads failed")
        table.add_column("Path", style="red", no_wrap=True)
        table.add_column("Reason")
        for path in sorted(result.failed):
            table.add_row(escape(path), escape(result.failed[path]))
        console.print(table)
        console.print("[red]Update aborted.[/red] No files or manifest were changed; run again to retry.")
        return EXIT_FAILURE

    if not confirmed and result.change_set is not None:
        render_change_set(console, result.change_set)
    console.print(f"[green]{escape(result.message)}[/green]")
    return EXIT_OK


__all__ = [
    "ArgumentError",
    "cache_main",
    "prompt_confirm",
    "render_build_report",
    "render_change_set",
    "update_main",
]
