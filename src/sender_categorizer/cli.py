"""Command-line interface for the sender categorizer.

Provides commands for configuration validation, user and category setup,
mailbox login, and running the categorization pipeline.

Usage:
    python -m sender_categorizer validate-config
    python -m sender_categorizer add-user --user me --email me@example.com
    python -m sender_categorizer seed-categories --user me
    python -m sender_categorizer login --user me
    python -m sender_categorizer categorize --user me --all
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from sender_categorizer.config import validate_config_file
from sender_categorizer.core.logging import configure_logging

if TYPE_CHECKING:
    import anthropic

    from sender_categorizer.config_schema import AppConfig
    from sender_categorizer.db.store import DatabaseStore
    from sender_categorizer.engine.categorize import SenderCategorizer

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    anthropic_client: anthropic.AsyncAnthropic | None


async def _init_cli_deps() -> CLIDeps:
    """Load config, open the database and build the Anthropic client.

    The Anthropic client is None when ANTHROPIC_API_KEY is not set; commands
    that need it report that as an access error. Prints an actionable message
    and exits on config errors.
    """
    import anthropic as anthropic_mod

    from sender_categorizer.config import get_config
    from sender_categorizer.core.errors import ConfigLoadError, ConfigValidationError
    from sender_categorizer.db.store import DatabaseStore

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and edit it."
        )
        sys.exit(1)

    store = DatabaseStore(Path(config.database.path))
    await store.initialize()

    anthropic_client = None
    if os.environ.get("ANTHROPIC_API_KEY"):
        anthropic_client = anthropic_mod.AsyncAnthropic(max_retries=3)

    return CLIDeps(config=config, store=store, anthropic_client=anthropic_client)


def _build_categorizer(deps: CLIDeps) -> SenderCategorizer:
    from sender_categorizer.classifier.ai_classifier import SenderClassifier
    from sender_categorizer.engine.categorize import SenderCategorizer
    from sender_categorizer.graph.client import GraphClient, StaticTokenAuth
    from sender_categorizer.graph.senders import SenderReader

    engine = None
    if deps.anthropic_client is not None:
        engine = SenderClassifier(
            anthropic_client=deps.anthropic_client,
            store=deps.store,
            config=deps.config,
        )

    return SenderCategorizer(
        store=deps.store,
        engine=engine,
        reader_factory=lambda token: SenderReader(GraphClient(StaticTokenAuth(token))),
        config=deps.config,
    )


def _run_async(command: Callable[[], Awaitable[None]]) -> None:
    """Run an async command with the shared interrupt/error handling."""
    try:
        asyncio.run(command())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


user_option = click.option("--user", "user_id", required=True, help="User ID")


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Sender categorizer - sort email senders into categories with Claude."""
    log_level = "DEBUG" if debug else "WARNING"
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file."""
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the database and its tables."""

    async def run() -> None:
        from sender_categorizer.db.models import verify_schema

        deps = await _init_cli_deps()
        if not await verify_schema(deps.store.db_path):
            console.print("[red]✗[/red] Schema verification failed")
            sys.exit(1)
        console.print(f"[green]✓[/green] Database ready at [cyan]{deps.store.db_path}[/cyan]")

    _run_async(run)


@cli.command("add-user")
@user_option
@click.option("--email", required=True, help="Mailbox address")
@click.option("--ai/--no-ai", "ai_enabled", default=True, help="Allow AI categorization")
def add_user(user_id: str, email: str, ai_enabled: bool) -> None:
    """Add or update a user."""

    async def run() -> None:
        deps = await _init_cli_deps()
        user = await deps.store.upsert_user(user_id, email, ai_enabled=ai_enabled)
        token_state = "yes" if user.access_token else "no (run login)"
        console.print(
            f"[green]✓[/green] User [cyan]{user.id}[/cyan] <{user.email}> "
            f"AI enabled: {user.ai_enabled}, mailbox token: {token_state}"
        )

    _run_async(run)


@cli.command("login")
@user_option
def login(user_id: str) -> None:
    """Sign in to Microsoft Graph and store the mailbox token for a user."""

    async def run() -> None:
        from sender_categorizer.auth.msal_auth import GraphAuth, cache_path_for_user
        from sender_categorizer.graph.client import GraphClient, StaticTokenAuth

        deps = await _init_cli_deps()
        if deps.config.auth is None:
            console.print(
                "[red]No auth section in config.[/red] Add auth.client_id "
                "(Azure AD app registration) to config/config.yaml."
            )
            sys.exit(1)

        auth = GraphAuth(
            client_id=deps.config.auth.client_id,
            tenant_id=deps.config.auth.tenant_id,
            scopes=deps.config.auth.scopes,
            token_cache_path=cache_path_for_user(deps.config.auth.token_cache_path, user_id),
        )
        token = await asyncio.to_thread(auth.get_access_token)
        email = await asyncio.to_thread(GraphClient(StaticTokenAuth(token)).get_user_email)

        existing = await deps.store.get_user(user_id)
        ai_enabled = existing.ai_enabled if existing else True
        await deps.store.upsert_user(user_id, email, access_token=token, ai_enabled=ai_enabled)
        console.print(f"[green]✓[/green] Signed in as [cyan]{email}[/cyan] for user {user_id}")

    _run_async(run)


@cli.command("add-category")
@user_option
@click.argument("name")
@click.option("--description", default=None, help="What belongs in this category")
def add_category(user_id: str, name: str, description: str | None) -> None:
    """Add a category for a user."""

    async def run() -> None:
        from sender_categorizer.core.errors import CategoryConflictError

        deps = await _init_cli_deps()
        try:
            category = await deps.store.create_category(user_id, name, description)
        except CategoryConflictError as e:
            console.print(f"[yellow]{e}[/yellow]")
            sys.exit(1)
        console.print(f"[green]✓[/green] Added category [cyan]{category.name}[/cyan]")

    _run_async(run)


@cli.command("delete-category")
@user_option
@click.argument("name")
def delete_category(user_id: str, name: str) -> None:
    """Delete a category; its senders become uncategorized."""

    async def run() -> None:
        deps = await _init_cli_deps()
        if await deps.store.delete_category(user_id, name):
            console.print(f"[green]✓[/green] Deleted category [cyan]{name}[/cyan]")
        else:
            console.print(f"[yellow]No category named '{name}'[/yellow]")
            sys.exit(1)

    _run_async(run)


@cli.command("seed-categories")
@user_option
def seed_categories(user_id: str) -> None:
    """Create the default categories from config for a user."""

    async def run() -> None:
        deps = await _init_cli_deps()
        before = {c.name.lower() for c in await deps.store.get_categories(user_id)}
        created = 0
        for seed in deps.config.default_categories:
            await deps.store.get_or_create_category(user_id, seed.name, seed.description)
            if seed.name.lower() not in before:
                created += 1
        console.print(
            f"[green]✓[/green] {created} categories created, "
            f"{len(deps.config.default_categories) - created} already present"
        )

    _run_async(run)


@cli.command("categories")
@user_option
def categories(user_id: str) -> None:
    """List a user's categories."""

    async def run() -> None:
        deps = await _init_cli_deps()
        rows = await deps.store.get_categories(user_id)
        if not rows:
            console.print("[yellow]No categories. Run seed-categories or add-category.[/yellow]")
            return

        table = Table(title=f"Categories for {user_id}")
        table.add_column("Name", style="cyan")
        table.add_column("Description")
        for category in rows:
            table.add_row(category.name, category.description or "")
        console.print(table)

    _run_async(run)


@cli.command("categorize")
@user_option
@click.option("--all", "run_all", is_flag=True, help="Follow pages until the mailbox is covered")
@click.option("--page-token", default=None, help="Resume from a page token")
@click.option("--max-pages", default=None, type=int, help="Page limit with --all")
def categorize(user_id: str, run_all: bool, page_token: str | None, max_pages: int | None) -> None:
    """Categorize the senders on the next page of a user's mailbox."""

    async def run() -> None:
        from sender_categorizer.core.errors import DatabaseError
        from sender_categorizer.engine.categorize import CategorizeError

        deps = await _init_cli_deps()
        categorizer = _build_categorizer(deps)

        if run_all:
            outcome = await categorizer.categorize_senders_to_completion(user_id, max_pages)
        else:
            outcome = await categorizer.categorize_senders(user_id, page_token)

        if isinstance(outcome, CategorizeError):
            console.print(f"[red]✗ {outcome.code}:[/red] {outcome.message}")
            sys.exit(1)

        try:
            await deps.store.prune_llm_logs(deps.config.llm_logging.retention_days)
        except DatabaseError as e:
            console.print(f"[yellow]LLM log pruning failed:[/yellow] {e}")

        console.print("\n[bold]Categorization Summary[/bold]")
        console.print(f"  Senders found: {outcome.senders_found}")
        console.print(f"  Categorized:   {outcome.categorized_count}")
        console.print(f"    static:      {outcome.static_count}")
        console.print(f"    batch AI:    {outcome.ai_count}")
        console.print(f"    fallback:    {outcome.fallback_count}")
        console.print(f"  Duration:      {outcome.duration_ms}ms")
        if outcome.next_page_token:
            console.print(f"\nNext page token:\n[dim]{outcome.next_page_token}[/dim]")
        else:
            console.print("\n[green]No more pages.[/green]")

    _run_async(run)


@cli.command("categorize-sender")
@user_option
@click.argument("sender")
def categorize_sender(user_id: str, sender: str) -> None:
    """Categorize a single sender from its recent messages."""

    async def run() -> None:
        deps = await _init_cli_deps()
        category = await _build_categorizer(deps).categorize_sender(user_id, sender)
        if category:
            console.print(f"[green]✓[/green] {sender} → [cyan]{category}[/cyan]")
        else:
            console.print(f"[yellow]{sender} could not be categorized[/yellow]")

    _run_async(run)


@cli.command("senders")
@user_option
@click.option("--category", default=None, help="Only senders in this category")
@click.option("--limit", default=50, type=int, help="Maximum rows")
def senders(user_id: str, category: str | None, limit: int) -> None:
    """List categorized senders."""

    async def run() -> None:
        deps = await _init_cli_deps()
        rows = await deps.store.list_assignments(user_id, category_name=category, limit=limit)
        if not rows:
            console.print("[yellow]No senders.[/yellow]")
            return

        table = Table(title=f"Senders for {user_id}")
        table.add_column("Sender", style="cyan")
        table.add_column("Category")
        table.add_column("Updated", style="dim")
        for row in rows:
            table.add_row(
                row.email,
                row.category_name or "[dim]uncategorized[/dim]",
                row.updated_at.strftime("%Y-%m-%d %H:%M") if row.updated_at else "",
            )
        console.print(table)

    _run_async(run)


@cli.command("uncategorize")
@user_option
@click.argument("sender")
def uncategorize(user_id: str, sender: str) -> None:
    """Clear a sender's category so the next run re-classifies it."""

    async def run() -> None:
        deps = await _init_cli_deps()
        if await deps.store.clear_assignment(sender, user_id):
            console.print(f"[green]✓[/green] {sender} is now uncategorized")
        else:
            console.print(f"[yellow]{sender} has not been seen for user {user_id}[/yellow]")
            sys.exit(1)

    _run_async(run)


@cli.command("llm-logs")
@click.option("--limit", default=20, type=int, help="Maximum rows")
@click.option("--run-id", default=None, help="Only calls from this categorization run")
def llm_logs(limit: int, run_id: str | None) -> None:
    """Show recent Claude requests."""

    async def run() -> None:
        deps = await _init_cli_deps()
        entries = await deps.store.get_llm_logs(limit=limit, run_id=run_id)

        table = Table(title="Claude requests")
        table.add_column("When", style="dim")
        table.add_column("Task")
        table.add_column("Sender", style="cyan")
        table.add_column("Tokens in/out")
        table.add_column("ms")
        table.add_column("Error", style="red")
        for entry in entries:
            table.add_row(
                entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                entry.task_type or "",
                entry.sender or "",
                f"{entry.input_tokens or 0}/{entry.output_tokens or 0}",
                str(entry.duration_ms or ""),
                (entry.error or "")[:60],
            )
        console.print(table)

    _run_async(run)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
