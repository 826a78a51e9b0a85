import asyncio
import json
import os
from pathlib import Path
from typing import List, Optional

import typer  # type: ignore
from rich.console import Console  # type: ignore
from rich.table import Table  # type: ignore

from agentdeck import __version__
from agentdeck.config import Config
from agentdeck.core import AgentDeckCore
from agentdeck.system.checkpoint_models import CheckpointFilters, CheckpointSearchQuery
from agentdeck.utils.errors import AgentDeckError
from agentdeck.utils.logs import setup_logger

app = typer.Typer(
    help="AgentDeck - durable agent conversations and reusable checkpoints.\n"
    "Use 'serve' to run the HTTP API, or the subcommands below to inspect storage."
)
console = Console()

conversation_app = typer.Typer(help="Inspect agent conversations")
app.add_typer(conversation_app, name="conversation")

checkpoint_app = typer.Typer(help="Manage reusable checkpoints")
app.add_typer(checkpoint_app, name="checkpoints")

workspace_app = typer.Typer(help="Workspace helpers")
app.add_typer(workspace_app, name="workspace")

_core: Optional[AgentDeckCore] = None


def _get_core(storage: Optional[Path] = None) -> AgentDeckCore:
    global _core
    if _core is None:
        if storage is not None:
            os.environ["AGENTDECK_STORAGE"] = str(storage)
        config = Config.load_config()
        setup_logger(config.logs_path, config.log_file, config.log_level, console=False)
        _core = AgentDeckCore(config=config)
    return _core


def _fail(error: Exception) -> None:
    if isinstance(error, AgentDeckError):
        console.print(f"[red]{error.code}[/red]: {error}")
    else:
        console.print(f"[red]Error:[/red] {error}")
    raise typer.Exit(code=1)


StorageOption = typer.Option(None, "--storage", help="Storage root override")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(None, "--version", "-v", help="Show version and exit"),
):
    if version:
        console.print(f"agentdeck {__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
    storage: Optional[Path] = StorageOption,
    debug: bool = typer.Option(False, "--debug", help="Verbose server logging"),
):
    """Run the HTTP API."""
    from agentdeck.web import app as web_app
    from agentdeck.web.server import start_server

    core = _get_core(storage)
    web_app._core_instance = core
    start_server(
        host=host or core.config.server.host,
        port=port or core.config.server.port,
        debug=debug,
    )


@app.command("status")
def status(
    workspace_id: str = typer.Argument(..., help="Workspace id"),
    agent_id: str = typer.Argument(..., help="Agent id"),
    storage: Optional[Path] = StorageOption,
):
    """Show an agent's state record."""
    core = _get_core(storage)
    try:
        history = core.sessions.history(workspace_id, agent_id)
    except AgentDeckError as e:
        _fail(e)
    console.print_json(json.dumps(history))


@workspace_app.command("create")
def workspace_create(
    workspace_id: str = typer.Argument(..., help="Workspace id"),
    storage: Optional[Path] = StorageOption,
):
    """Create an empty workspace directory."""
    core = _get_core(storage)
    try:
        path = core.workspaces.create(workspace_id)
    except AgentDeckError as e:
        _fail(e)
    console.print(f"[green]Created[/green] {path}")


@conversation_app.command("show")
def conversation_show(
    workspace_id: str = typer.Argument(..., help="Workspace id"),
    agent_id: str = typer.Argument(..., help="Agent id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Show the last N messages"),
    json_output: bool = typer.Option(False, "--json", help="Emit messages as JSON"),
    storage: Optional[Path] = StorageOption,
):
    """Print the stored conversation for an agent."""
    core = _get_core(storage)
    try:
        messages = core.store.load(workspace_id, agent_id)
    except AgentDeckError as e:
        _fail(e)

    shown = messages[-limit:] if limit > 0 else messages
    if json_output:
        console.print_json(json.dumps([m.to_dict() for m in shown]))
        return
    if not shown:
        console.print("[yellow]No messages stored for this agent.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Time", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Content")
    table.add_column("Tools", justify="right")
    for message in shown:
        tools = len((message.metadata or {}).get("tool_uses") or [])
        content = message.content if len(message.content) <= 120 else message.content[:117] + "..."
        table.add_row(message.timestamp[:19], message.role.value, content, str(tools) if tools else "")
    console.print(table)
    console.print(f"[dim]{len(shown)} of {len(messages)} messages[/dim]")


def _print_summaries(summaries) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Tags")
    table.add_column("Perf", justify="right")
    table.add_column("Uses", justify="right")
    table.add_column("Created", style="dim")
    for s in summaries:
        table.add_row(
            s.id[:8],
            s.title,
            ", ".join(s.tags),
            f"{s.performance_score:.2f}",
            str(s.usage_count),
            s.created_at[:10],
        )
    console.print(table)


@checkpoint_app.command("list")
def checkpoints_list(
    json_output: bool = typer.Option(False, "--json", help="Emit summaries as JSON"),
    storage: Optional[Path] = StorageOption,
):
    """List all checkpoints, newest first."""
    core = _get_core(storage)
    summaries = core.checkpoints.list_summaries()
    if json_output:
        console.print_json(json.dumps([s.to_dict() for s in summaries]))
        return
    if not summaries:
        console.print("[yellow]No checkpoints saved yet.[/yellow]")
        return
    _print_summaries(summaries)


@checkpoint_app.command("search")
def checkpoints_search(
    query: str = typer.Argument("", help="Keywords matched against title, tags, expertise and description"),
    tag: List[str] = typer.Option([], "--tag", "-t", help="Require any of these tags"),
    expertise: List[str] = typer.Option([], "--expertise", "-e", help="Require any of these expertise areas"),
    min_performance: float = typer.Option(0.0, "--min-performance", help="Minimum performance score"),
    recent: bool = typer.Option(False, "--recent", help="Only checkpoints used recently"),
    sort_by: str = typer.Option("relevance", "--sort", help="relevance, recency, performance, usage or created"),
    limit: int = typer.Option(20, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    storage: Optional[Path] = StorageOption,
):
    """Search checkpoints through the index."""
    core = _get_core(storage)
    search_query = CheckpointSearchQuery(
        text=query,
        filters=CheckpointFilters(
            tags=list(tag),
            expertise_areas=list(expertise),
            performance_threshold=min_performance,
            recently_used=recent,
        ),
        sort_by=sort_by,
        limit=limit,
        offset=offset,
    )
    try:
        result = core.checkpoints.search(search_query)
    except AgentDeckError as e:
        _fail(e)
    if not result.checkpoints:
        console.print("[yellow]No matching checkpoints.[/yellow]")
    else:
        _print_summaries(result.checkpoints)
    console.print(f"[dim]{result.total_count} match(es) in {result.search_time_ms} ms[/dim]")
    if result.suggested_tags:
        console.print(f"[dim]Tags: {', '.join(result.suggested_tags)}[/dim]")


@checkpoint_app.command("show")
def checkpoints_show(
    checkpoint_id: str = typer.Argument(..., help="Checkpoint id"),
    storage: Optional[Path] = StorageOption,
):
    """Print a full checkpoint document."""
    core = _get_core(storage)
    try:
        checkpoint = core.checkpoints.load(checkpoint_id)
    except AgentDeckError as e:
        _fail(e)
    console.print_json(json.dumps(checkpoint.to_dict()))


@checkpoint_app.command("delete")
def checkpoints_delete(
    checkpoint_id: str = typer.Argument(..., help="Checkpoint id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    storage: Optional[Path] = StorageOption,
):
    """Delete a checkpoint and its index entry."""
    if not yes and not typer.confirm(f"Delete checkpoint {checkpoint_id}?"):
        raise typer.Exit(code=0)
    core = _get_core(storage)
    try:
        asyncio.run(core.checkpoints.delete(checkpoint_id))
    except AgentDeckError as e:
        _fail(e)
    console.print(f"[green]Deleted[/green] {checkpoint_id}")


@checkpoint_app.command("reindex")
def checkpoints_reindex(storage: Optional[Path] = StorageOption):
    """Reconcile the index with the checkpoint files on disk."""
    core = _get_core(storage)
    report = core.checkpoints.reconcile()
    console.print(
        f"Indexed {len(report.indexed_orphans)} orphan(s), dropped {len(report.dropped_dangling)} "
        f"dangling entr(ies); {report.total} checkpoint(s) indexed"
    )
    for checkpoint_id in report.unreadable:
        console.print(f"[yellow]Unreadable:[/yellow] {checkpoint_id}")


@checkpoint_app.command("stats")
def checkpoints_stats(storage: Optional[Path] = StorageOption):
    """Show checkpoint storage statistics."""
    core = _get_core(storage)
    console.print_json(json.dumps(core.checkpoints.storage_stats()))


if __name__ == "__main__":
    app()
