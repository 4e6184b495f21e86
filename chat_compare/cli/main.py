"""
CLI interface for ChatCompare.

Provides command-line access to provider budgets and interactive
side-by-side chat sessions.
"""

import asyncio
import sys
from datetime import timedelta
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from chat_compare.config.settings import get_settings, resolve_catalog
from chat_compare.core.catalog import ProviderCatalog
from chat_compare.core.controller import ChatSession, ProviderUnavailable
from chat_compare.core.ledger import TokenLedger
from chat_compare.core.ratings import InvalidRating, SessionSummary
from chat_compare.core.session import MembershipResult, Message, MessageStatus
from chat_compare.observability import configure_logging
from chat_compare.sdk.openrouter_client import build_completions
from chat_compare.storage.repository import LedgerRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

HELP_TEXT = (
    "Commands: /add ID, /remove ID, /rate N VALUE, /providers, /end. "
    "Anything else is sent to every active provider."
)

_MEMBERSHIP_MESSAGES = {
    MembershipResult.ADDED: "[green]✓[/] Added {id}",
    MembershipResult.REMOVED: "[green]✓[/] Removed {id}",
    MembershipResult.ALREADY_ACTIVE: "[yellow]{id} is already active[/]",
    MembershipResult.NOT_ACTIVE: "[yellow]{id} is not active[/]",
    MembershipResult.LAST_PROVIDER: "[yellow]Cannot remove {id}: a session needs at least one provider[/]",
    MembershipResult.UNKNOWN_PROVIDER: "[red]Unknown provider:[/] {id}",
    MembershipResult.SESSION_ENDED: "[red]Session has ended[/]",
}


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """ChatCompare CLI."""
    configure_logging(get_settings().log_level)
    if ctx.invoked_subcommand is None:
        console.print("ChatCompare - Use --help to see available commands")


@app.command()
def init(
    db: Optional[str] = typer.Option(None, "--db", help="Path to the ledger database"),
):
    """Initialize the ChatCompare ledger database."""
    try:
        initialize_schema(db or get_settings().db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def providers(
    catalog: Optional[str] = typer.Option(None, "--catalog", "-c", help="Provider catalog YAML"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to the ledger database"),
):
    """List providers with their remaining token budgets."""
    settings = get_settings()
    try:
        provider_catalog = resolve_catalog(settings, catalog)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    ledger = TokenLedger.from_catalog(provider_catalog, store=LedgerRepository(db or settings.db_path))
    for listed in provider_catalog:
        ledger.replenish_if_due(listed.id)
    _display_providers(provider_catalog, ledger)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def chat(
    provider: str = typer.Option(..., "--provider", "-p", help="Provider to start the session with"),
    catalog: Optional[str] = typer.Option(None, "--catalog", "-c", help="Provider catalog YAML"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to the ledger database"),
):
    """
    Start an interactive comparison session.

    Every line you type is sent to all active providers at once. Add and
    remove providers mid-session, rate replies, and end the session to
    see which provider you rated highest.
    """
    settings = get_settings()
    try:
        provider_catalog = resolve_catalog(settings, catalog)
        ledger = TokenLedger.from_catalog(
            provider_catalog, store=LedgerRepository(db or settings.db_path)
        )
        completions = build_completions(provider_catalog, settings)
        session = ChatSession.start(provider_catalog, ledger, completions, provider)
    except (ProviderUnavailable, FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[bold]ChatCompare[/bold] - chatting with {escape(provider)}")
    console.print(f"[dim]{HELP_TEXT}[/]")

    summary = asyncio.run(_run_chat(session, settings.sweep_seconds))
    _display_summary(summary)
    sys.exit(EXIT_CODE_PASS)


async def _run_chat(session: ChatSession, sweep_seconds: float) -> SessionSummary:
    """Read lines until /end or EOF, then end the session.

    The replenishment sweep runs in the background while waiting for input.
    """
    replies: List[Message] = []

    session.engine.start(sweep_seconds)
    try:
        while True:
            try:
                line = (await asyncio.to_thread(console.input, "[bold blue]you>[/] ")).strip()
            except EOFError:
                break

            if not line:
                continue
            if line.startswith("/"):
                if not _handle_command(session, line, replies):
                    break
                continue

            session.sweep()
            for message in await session.send(line):
                replies.append(message)
                _display_reply(session, len(replies), message)

        await session.engine.drain()
    finally:
        await session.engine.stop()
    return session.end()


def _handle_command(session: ChatSession, line: str, replies: List[Message]) -> bool:
    """Run a slash command. Returns False when the session should end."""
    parts = line.split()
    command, args = parts[0].lower(), parts[1:]

    if command == "/end":
        return False

    if command in ("/add", "/remove") and len(args) == 1:
        if command == "/add":
            result = session.add_provider(args[0])
        else:
            result = session.remove_provider(args[0])
        console.print(_MEMBERSHIP_MESSAGES[result].format(id=escape(args[0])))
    elif command == "/rate" and len(args) == 2:
        _rate(session, args, replies)
    elif command == "/providers":
        _display_providers(session.catalog, session.ledger, active=session.state.active_providers())
    else:
        console.print(f"[dim]{HELP_TEXT}[/]")
    return True


def _rate(session: ChatSession, args: List[str], replies: List[Message]) -> None:
    try:
        number, value = int(args[0]), int(args[1])
    except ValueError:
        console.print("[red]Usage:[/] /rate N VALUE")
        return
    if not 1 <= number <= len(replies):
        console.print(f"[red]No reply numbered {number}[/]")
        return

    try:
        session.rate(replies[number - 1].id, value)
    except InvalidRating as e:
        console.print(f"[red]Rating rejected:[/] {escape(str(e))}")
        return
    console.print(f"[green]✓[/] Rated reply {number}: {value}/5")


def _format_refresh(remaining: Optional[timedelta]) -> str:
    """Format time until replenishment like '4h 52m'."""
    if remaining is None:
        return ""
    minutes = int(remaining.total_seconds() // 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"Refreshes in {hours}h {minutes}m"
    return f"Refreshes in {minutes}m"


def _format_tokens(ledger: TokenLedger, provider_id: str) -> str:
    if ledger.is_unlimited(provider_id):
        return "Unlimited"
    entry = ledger.entry(provider_id)
    return f"{entry.available:,} / {entry.total:,} tokens"


def _display_providers(
    catalog: ProviderCatalog,
    ledger: TokenLedger,
    active: Optional[List[str]] = None,
):
    """Display provider budgets in a table."""
    table = Table(title="Providers")
    table.add_column("ID")
    table.add_column("Name", style="bold")
    table.add_column("Tokens")
    table.add_column("Refresh")
    table.add_column("Status")

    for provider in catalog:
        if active is not None and provider.id not in active:
            continue
        status = "[yellow]No available tokens[/]" if ledger.is_depleted(provider.id) else ""
        table.add_row(
            escape(provider.id),
            escape(provider.display_name),
            _format_tokens(ledger, provider.id),
            _format_refresh(ledger.time_until_replenish(provider.id)),
            status,
        )
    console.print(table)


def _display_reply(session: ChatSession, number: int, message: Message):
    """Display one provider reply; failures and exhaustion look different."""
    name = escape(session.catalog.get(message.provider_id).display_name)
    if message.status is MessageStatus.COMPLETE:
        console.print(f"\n[bold]\\[{number}] {name}:[/bold]")
        console.print(message.content, markup=False)
        if not session.ledger.is_unlimited(message.provider_id):
            usage = message.usage
            console.print(
                f"[dim]{usage.total_tokens} tokens "
                f"({usage.prompt_tokens} prompt, {usage.completion_tokens} reply)[/]"
            )
    elif message.status is MessageStatus.BUDGET_EXHAUSTED:
        console.print(f"\n[bold]\\[{number}] {name}:[/bold] [yellow]{message.content}[/]")
    elif message.status is MessageStatus.ERROR:
        console.print(f"\n[bold]\\[{number}] {name}:[/bold] [red]{message.content}[/]")
    else:
        console.print(f"\n[bold]\\[{number}] {name}:[/bold] [dim]...[/]")


def _display_summary(summary: SessionSummary):
    """Display the end-of-session ranking."""
    console.print("\n[bold]Session Summary[/bold]")
    console.print("-" * 40)

    for rank, score in enumerate(summary.scores, start=1):
        console.print(
            f"{rank}. {escape(score.display_name)}: {score.average:.1f} "
            f"({score.rating_count} rated)"
        )

    if summary.winner is not None:
        console.print(f"\nTop rated: [bold]{escape(summary.winner.display_name)}[/bold]")
    console.print(f"[dim]{summary.message_count} messages[/]")


if __name__ == "__main__":
    app()
