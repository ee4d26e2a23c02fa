"""
CLI interface for SMS Cost Guard.

Provides command-line access to segment estimation, reconciliation and
the persisted segment cache.
"""

import asyncio
import sys
from dataclasses import replace
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from sms_cost_guard.config.loader import EngineConfig, load_engine_config
from sms_cost_guard.core.aggregation import AggregationSnapshot
from sms_cost_guard.core.reconciler import ReconcileStatus
from sms_cost_guard.sdk.conversation_service import (
    ConversationServiceConfigError,
    StaticConversationService,
    load_conversations,
)
from sms_cost_guard.sdk.engine import SegmentEngine
from sms_cost_guard.storage.repository import SqliteRecordStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _load_config(ctx: typer.Context) -> EngineConfig:
    options = ctx.obj or {}
    config_path = options.get("config")
    config = load_engine_config(config_path) if config_path else EngineConfig.default()
    db_path = options.get("db_path")
    if db_path:
        config = replace(config, cache=replace(config.cache, db_path=db_path))
    return config


def _build_engine(config: EngineConfig, conversations=()) -> SegmentEngine:
    engine = SegmentEngine.from_config(
        config,
        service=StaticConversationService(conversations),
        store=SqliteRecordStore(config.cache.db_path),
    )
    engine.load()
    return engine


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML engine configuration"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="Override the SQLite database path"
    ),
):
    """SMS Cost Guard CLI."""
    ctx.obj = {"config": config, "db_path": db_path}
    if ctx.invoked_subcommand is None:
        console.print("SMS Cost Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the segment cache database."""
    try:
        config = _load_config(ctx)
        initialize_schema(config.cache.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show segment cache contents by tier."""
    try:
        config = _load_config(ctx)
        engine = _build_engine(config)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    stats = engine.cache.stats()
    last_persisted = stats["last_persisted_at"]
    console.print("\n[bold]Segment Cache Status[/bold]")
    console.print("-" * 40)
    console.print(f"Scope: {config.cache.scope}")
    console.print(f"Authoritative entries: {stats['authoritative']}")
    console.print(f"Quick entries: {stats['quick']}")
    console.print(
        "Last persisted: "
        + (last_persisted.strftime("%Y-%m-%d %H:%M:%S UTC") if last_persisted else "never")
    )
    console.print(f"TTL: {config.cache.ttl_hours:g} hours")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def snapshot(
    ctx: typer.Context,
    conversations_file: str = typer.Argument(..., help="JSON export of conversations"),
    breakdown: bool = typer.Option(
        False,
        "--breakdown",
        "-b",
        help="Show the per-conversation segment table"
    ),
):
    """
    Show segment and cost totals for a set of conversations.

    Uses cached counts where available and estimates the rest without
    writing them to the cache.
    """
    try:
        config = _load_config(ctx)
        conversations = load_conversations(conversations_file)
        engine = _build_engine(config, conversations)
        result = engine.snapshot(conversations)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_snapshot(result, breakdown)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(
    ctx: typer.Context,
    conversations_file: str = typer.Argument(..., help="JSON export with full conversation content"),
    context: Optional[str] = typer.Option(
        None,
        "--context",
        help="View name checked against the configured safety limits (e.g. today)"
    ),
    breakdown: bool = typer.Option(
        False,
        "--breakdown",
        "-b",
        help="Show the per-conversation segment table"
    ),
):
    """
    Compute authoritative segment counts and persist them.

    The export file acts as the conversation service: each conversation's
    structured messages are measured and stored in the cache.
    """
    try:
        config = _load_config(ctx)
        conversations = load_conversations(conversations_file)
        engine = _build_engine(config, conversations)
        engine.set_conversations(conversations)
        result = asyncio.run(engine.reconcile(context=context))
    except ConversationServiceConfigError as e:
        console.print(f"[red]Conversation service not configured:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    progress = result.progress
    console.print(
        f"\nReconciled {progress.completed}/{progress.total} conversations "
        f"({progress.cache_hits} cached, {progress.new_calculations} new, {progress.failed} failed)"
    )
    if result.status is ReconcileStatus.ABORTED:
        console.print(f"[yellow]Reconciliation aborted:[/] {result.diagnostic}")
        sys.exit(EXIT_CODE_FAIL)
    if result.status is ReconcileStatus.DEGRADED:
        console.print("[yellow]Some conversations were rate limited; totals include estimates[/]")

    _display_snapshot(engine.snapshot(), breakdown)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def invalidate(ctx: typer.Context):
    """Clear quick estimates; authoritative counts are kept."""
    try:
        config = _load_config(ctx)
        engine = _build_engine(config)
        removed = engine.cache.invalidate_quick()
        engine.persist()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Cleared {removed} quick estimates")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount, currency: str) -> str:
    """Format currency with code and four decimals."""
    return f"{currency} ${amount:,.4f}"


def _display_snapshot(result: AggregationSnapshot, breakdown: bool = False):
    """Display snapshot totals in a clean, financial format."""
    console.print("\n[bold]SMS Segment Summary[/bold]")
    console.print("-" * 40)

    if result.conversation_count == 0:
        console.print("\n[dim]No conversations in this window.[/]")
        return

    console.print(f"Conversations: {result.conversation_count}")
    console.print(f"Total segments: {result.total_segments}")
    console.print(f"Total cost: {_format_currency(result.total_cost, result.currency)}")
    console.print(
        f"Average cost/conversation: "
        f"{_format_currency(result.average_cost_per_conversation, result.currency)}"
    )
    console.print(f"Accurate: {result.accurate_count}  Estimated: {result.fallback_count}")
    if result.fx_fallback:
        console.print("[yellow]Exchange rate unavailable; cost shown in base currency[/]")

    if breakdown:
        table = Table(title="Segments per conversation")
        table.add_column("Conversation")
        table.add_column("Segments", justify="right")
        for conversation_id, segments in result.per_conversation.items():
            table.add_row(conversation_id, str(segments))
        console.print(table)


if __name__ == "__main__":
    app()
