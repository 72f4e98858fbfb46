import shutil
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.text import Text

from agentbridge import __version__
from agentbridge.config import SETTINGS_PATH, get_config
from agentbridge.core.errors import TranscriptNotFound
from agentbridge.core.history import load_agent_transcript, load_transcript, transcript_path
from agentbridge.core.transcript import EntryType, TranscriptEntry
from agentbridge.logging import UVICORN_LOG_CONFIG, configure_logging
from agentbridge.utils import truncate

console = Console()

_STYLES = {
    EntryType.USER: "bold cyan",
    EntryType.ASSISTANT: "white",
    EntryType.THINKING: "dim italic",
    EntryType.TOOL_USE: "yellow",
    EntryType.AGENT_SPAWN: "magenta",
    EntryType.TOOL_RESULT: "green",
    EntryType.APPROVAL_PROMPT: "bold yellow",
    EntryType.TURN_COMPLETION: "bold",
    EntryType.LOG_EVENT: "dim",
    EntryType.TOKEN_USAGE: "dim",
}


@click.group(invoke_without_command=True)
@click.version_option(__version__, prog_name="agentbridge")
@click.pass_context
def main(ctx):
    """agentbridge - drive agent CLI sessions from the web"""
    try:
        ctx.ensure_object(dict)
        ctx.obj["config"] = get_config()
    except ValueError as e:
        ctx.obj["config_error"] = str(e)

    if ctx.invoked_subcommand is None:
        console.print("[bold]agentbridge[/bold] - drive agent CLI sessions from the web\n")
        console.print("Run [cyan]agentbridge serve[/cyan] to start the server.")
        console.print("\nUse [cyan]agentbridge --help[/cyan] for all commands.")


def _require_config(ctx):
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    return ctx.obj["config"]


@main.command()
@click.pass_context
def status(ctx):
    """Show resolved configuration and whether the agent executable is reachable."""
    config = _require_config(ctx)
    resolved = shutil.which(config.claude_path)

    console.print("[bold]agentbridge status[/bold]")
    console.print()
    if resolved:
        console.print(f"Agent: [cyan]{resolved}[/cyan]")
    else:
        console.print(f"Agent: [red]{config.claude_path} not found on PATH[/red]")
    console.print(f"Listen: {config.host}:{config.port}")
    console.print(f"Auth: {'API key' if config.api_key else '[yellow]disabled[/yellow]'}")
    console.print(f"Max turns: {config.max_turns}")
    console.print(f"Transcripts: [cyan]{config.projects_dir}[/cyan]")
    console.print(f"Settings file: {SETTINGS_PATH}{'' if SETTINGS_PATH.exists() else ' [dim](absent)[/dim]'}")
    if not resolved:
        raise SystemExit(1)


@main.command()
@click.option("--host", default=None, help="Host to bind to (default from config)")
@click.option("--port", default=None, type=int, help="Port to bind to (default from config)")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.pass_context
def serve(ctx, host: str | None, port: int | None, reload: bool):
    """Start the agentbridge API server."""
    config = _require_config(ctx)
    host = host or config.host
    port = port or config.port

    import uvicorn

    console.print(f"[bold]agentbridge server[/bold] starting on http://{host}:{port}")
    if not config.api_key and host not in ("127.0.0.1", "localhost"):
        console.print("[yellow]Warning:[/yellow] no API key set while listening on a non-local address")
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    console.print()

    uvicorn.run(
        "agentbridge.server.app:app",
        host=host,
        port=port,
        reload=reload,
        log_config=UVICORN_LOG_CONFIG,
    )


@main.command()
@click.argument("cwd", type=click.Path(file_okay=False, path_type=Path))
@click.argument("conversation_id")
@click.option("--agent", "agent_id", default=None, help="Show a sub-agent's transcript instead")
@click.option("--full", is_flag=True, help="Do not truncate long entries")
@click.pass_context
def transcript(ctx, cwd: Path, conversation_id: str, agent_id: str | None, full: bool):
    """Render the history of an agent conversation from its on-disk transcript."""
    config = _require_config(ctx)
    configure_logging(config.log_level)
    cwd_str = str(cwd.expanduser().resolve())

    if agent_id:
        try:
            entries = load_agent_transcript(config.projects_dir, cwd_str, conversation_id, agent_id)
        except TranscriptNotFound as e:
            console.print(f"[red]Error:[/red] {e}: {e.path}")
            raise SystemExit(1)
    else:
        entries = load_transcript(config.projects_dir, cwd_str, conversation_id)
        if not entries:
            console.print(f"[dim]No history at {transcript_path(config.projects_dir, cwd_str, conversation_id)}[/dim]")
            return

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Type", no_wrap=True)
    table.add_column("Content")
    for entry in entries:
        table.add_row(entry.timestamp[11:19], entry.type.value, Text(_summarize(entry, full)), style=_STYLES.get(entry.type))
    console.print(table)
    console.print(f"\n[dim]{len(entries)} entries[/dim]")


def _summarize(entry: TranscriptEntry, full: bool) -> str:
    content = entry.content()
    match entry.type:
        case EntryType.USER | EntryType.ASSISTANT | EntryType.THINKING:
            text = content["text"]
        case EntryType.TOOL_USE:
            text = f"{content['tool_name']} {content['input']}"
        case EntryType.AGENT_SPAWN:
            text = f"{content['agent_type']}: {content['description']}"
        case EntryType.TOOL_RESULT:
            text = ("[error] " if content["is_error"] else "") + content["output"]
        case EntryType.APPROVAL_PROMPT:
            text = f"{content['tool_name']} {content['input_preview']}"
        case EntryType.TURN_COMPLETION:
            text = f"{content['outcome']} {content['result'] or ''}".strip()
        case EntryType.TOKEN_USAGE:
            text = f"in={content['input_tokens']} out={content['output_tokens']} total={content['total_tokens']}"
        case _:
            text = content.get("message", "")
    text = str(text)
    return text if full else truncate(text, 200)


if __name__ == "__main__":
    main()
