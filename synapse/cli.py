"""Operator CLI for the suggestion lifecycle engine."""

import asyncio
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import inspect

from . import __version__
from .config import Settings
from .db import Database
from .models import Base, as_utc
from .suggestions import SuggestionApplicationService
from .versions import VersionStore

console = Console()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context) -> None:
    """AI-suggestion lifecycle engine CLI.

    Manage file version history, suggestion records and confidence calibration.
    """
    settings = Settings()
    configure_logging(settings.log_level)
    ctx.obj = settings


@main.command(name="init-db")
@click.pass_obj
def init_db(settings: Settings) -> None:
    """Create all tables directly (development and tests)."""

    async def create() -> None:
        database = Database.from_settings(settings)
        try:
            await database.init_db()
        finally:
            await database.dispose()

    asyncio.run(create())
    console.print("[green]Schema created[/green]")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
@click.pass_obj
def schema_check(settings: Settings) -> None:
    async def check() -> set[str]:
        database = Database.from_settings(settings)
        try:
            async with database.engine.connect() as conn:
                return await conn.run_sync(lambda c: set(inspect(c).get_table_names()))
        finally:
            await database.dispose()

    tables = asyncio.run(check())
    missing = set(Base.metadata.tables) - tables
    if missing:
        console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
        console.print("Run: `alembic upgrade head`")
        raise SystemExit(1)
    console.print("[green]Schema ready[/green]")


@main.command()
@click.pass_obj
def db_info(settings: Settings) -> None:
    """Show database connection info."""
    if settings.database_url_override:
        body = f"URL: {settings.database_url_override}"
    else:
        body = (
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}"
        )
    console.print(Panel(body, title="Database Configuration"))


@main.command()
@click.argument("project_id")
@click.option("--dry-run", is_flag=True, help="Compute thresholds without saving them")
@click.pass_obj
def calibrate(settings: Settings, project_id: str, dry_run: bool) -> None:
    """Recompute confidence thresholds from feedback.

    PROJECT_ID: Project whose feedback ratings are used
    """

    async def run() -> None:
        service = SuggestionApplicationService.from_settings(settings)
        try:
            result = await service.calibrate_project(project_id, save=not dry_run)
        finally:
            await service.close()

        console.print(
            Panel(
                f"High: [cyan]{result.thresholds.high:.2f}[/cyan]\n"
                f"Medium: [cyan]{result.thresholds.medium:.2f}[/cyan]\n"
                f"Samples: {result.sample_size}\n"
                f"Reason: {result.adjustment_reason}",
                title=f"Calibration: {project_id}" + (" (dry run)" if dry_run else ""),
            )
        )

    asyncio.run(run())


@main.command(name="prune-versions")
@click.option("--days", type=int, default=None, help="Retention horizon (default from settings)")
@click.pass_obj
def prune_versions(settings: Settings, days: int | None) -> None:
    """Delete file versions older than the retention horizon."""

    async def run() -> int:
        database = Database.from_settings(settings)
        store = VersionStore.from_settings(settings)
        try:
            async with database.get_session() as session:
                return await store.prune(session, older_than_days=days)
        finally:
            await database.dispose()

    deleted = asyncio.run(run())
    console.print(f"[green]Pruned {deleted} versions[/green]")


@main.command()
@click.argument("file_id")
@click.option("--limit", default=20, help="Number of versions to show")
@click.pass_obj
def history(settings: Settings, file_id: str, limit: int) -> None:
    """Show a file's version history, newest first.

    FILE_ID: The file registry id
    """

    async def show() -> None:
        service = SuggestionApplicationService.from_settings(settings)
        try:
            versions = await service.get_version_chain(file_id, limit=limit)
        finally:
            await service.close()

        if not versions:
            console.print("[yellow]No versions found[/yellow]")
            return

        table = Table(title=f"History: {file_id}")
        table.add_column("Version", style="cyan")
        table.add_column("Type")
        table.add_column("Summary")
        table.add_column("+/-")
        table.add_column("Author")
        table.add_column("Created")

        for v in versions:
            table.add_row(
                str(v.version_number),
                v.change_type,
                v.change_summary or "-",
                f"+{v.lines_added} -{v.lines_removed}",
                v.author,
                as_utc(v.created_at).strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    asyncio.run(show())


@main.command(name="show-suggestion")
@click.argument("suggestion_id")
@click.pass_obj
def show_suggestion(settings: Settings, suggestion_id: str) -> None:
    """Show a suggestion and its review tier.

    SUGGESTION_ID: The suggestion id
    """

    async def show() -> None:
        service = SuggestionApplicationService.from_settings(settings)
        try:
            suggestion = await service.get_suggestion(suggestion_id)
            if not suggestion:
                console.print(f"[red]Suggestion not found: {suggestion_id}[/red]")
                return
            tier = await service.review_tier(suggestion)
        finally:
            await service.close()

        confidence = "-" if suggestion.confidence is None else f"{suggestion.confidence:.2f}"
        console.print(
            Panel(
                f"[bold]{suggestion.explanation or 'No explanation'}[/bold]\n\n"
                f"Status: [cyan]{suggestion.status}[/cyan]\n"
                f"Scope: {suggestion.scope}\n"
                f"Files: {', '.join(suggestion.file_paths)}\n"
                f"Confidence: {confidence} ({tier.level.value})"
                + (f"\n[yellow]{tier.label}[/yellow]" if tier.label else ""),
                title=f"Suggestion: {suggestion.id}",
            )
        )

    asyncio.run(show())


if __name__ == "__main__":
    main()
