"""Workbench agent CLI.

Usage:
    workbench-agent chat "plan my week"                # Ask the configured provider
    workbench-agent chat -p local_runtime "tidy todos" # Use the local codex runtime
    workbench-agent execute '{"id": "a1", ...}'        # Execute approved action(s)
    workbench-agent execute -f actions.json            # ... from a file
    workbench-agent events [-r <request-id>]           # Stage events
    workbench-agent audits [-b <batch-id>]             # Execution audit trail
    workbench-agent sessions                           # Recent chat turns
    workbench-agent health                             # Local codex runtime health
    workbench-agent serve                              # WebSocket bridge (foreground)
    workbench-agent config [key=value]                 # View or set configuration
"""

import asyncio
import json
import os
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from workbench_agent.config import WorkbenchConfig, ensure_home
from workbench_agent.errors import MalformedActionsError
from workbench_agent.logging_utils import configure_logging
from workbench_agent.models import PROVIDERS, AgentStreamEvent
from workbench_agent.runtime import open_runtime
from workbench_agent.store import WorkbenchStore

console = Console()

# Credentials come from the environment only and are never saved.
CREDENTIAL_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "minimax": "MINIMAX_API_KEY",
}

STAGE_COLORS = {
    "runtime_detect": "cyan",
    "mcp_connect": "blue",
    "exec_fallback": "yellow",
    "planning": "magenta",
    "executing": "blue",
    "error": "red",
    "fallback": "yellow",
    "completed": "green",
}


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _load_config() -> WorkbenchConfig:
    ensure_home()
    cfg = WorkbenchConfig.load()
    configure_logging(cfg)
    return cfg


def _settings_from_env(provider: str | None) -> dict:
    settings: dict = {"provider": provider} if provider else {}
    for name, env_var in CREDENTIAL_ENV.items():
        settings[name] = {"apiKey": os.environ.get(env_var, "")}
    return settings


def _print_stage(event: AgentStreamEvent) -> None:
    color = STAGE_COLORS.get(event.stage, "white")
    console.print(f"[dim]#{event.seq}[/] [{color}]{event.stage}[/] {event.message}")


@click.group()
def cli():
    """Workbench agent: chat with your workbench and apply its suggestions."""
    pass


@cli.command()
@click.argument("message", nargs=-1, required=True)
@click.option("--provider", "-p", type=click.Choice(PROVIDERS), help="Override the default provider")
@click.option("--request-id", "-r", help="Use a specific request id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw reply JSON")
def chat(message, provider, request_id, as_json):
    """Send a message and show the reply (stage events stream live)."""
    cfg = _load_config()
    payload = {
        "messages": [{"role": "user", "content": " ".join(message)}],
        "settings": _settings_from_env(provider),
    }
    if request_id:
        payload["requestId"] = request_id

    async def _chat():
        async with open_runtime(cfg) as rt:
            if not as_json:
                rt.broadcaster.add_listener(_print_stage)
            return await rt.router.chat(payload)

    reply = _run_async(_chat())
    if as_json:
        console.print_json(json.dumps(reply.to_dict(), ensure_ascii=False))
        return

    console.print(Panel(reply.reply, title="Agent", border_style="blue"))
    if reply.actions:
        table = Table(title="Proposed actions")
        table.add_column("ID", style="dim")
        table.add_column("Type", style="cyan")
        table.add_column("Title")
        table.add_column("Approval")
        for action in reply.actions:
            table.add_row(
                action.id, action.type, action.title,
                "required" if action.requires_approval else "-",
            )
        console.print(table)


@cli.command()
@click.argument("actions_json", required=False)
@click.option("--file", "-f", "path", type=click.Path(exists=True, dir_okay=False), help="Read actions from a JSON file")
@click.option("--request-id", "-r", help="Attach stage events to this request id")
def execute(actions_json, path, request_id):
    """Execute one action object or a list of actions atomically."""
    if path:
        with open(path, encoding="utf-8") as fh:
            raw = fh.read()
    elif actions_json:
        raw = actions_json
    else:
        raw = sys.stdin.read()

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON: {e}[/]")
        sys.exit(1)
    actions = parsed if isinstance(parsed, list) else [parsed]

    cfg = _load_config()

    async def _execute():
        async with open_runtime(cfg) as rt:
            return await rt.router.execute_actions(actions, request_id=request_id)

    try:
        batch = _run_async(_execute())
    except MalformedActionsError as e:
        console.print(f"[red]Malformed action: {escape(str(e))}[/]")
        sys.exit(1)
    color = "green" if batch.success else "red"
    console.print(f"[{color}]{escape(batch.message)}[/]")
    console.print(f"[dim]batch {batch.batch_id}[/]")
    if not batch.success:
        sys.exit(1)


@cli.command()
@click.option("--request-id", "-r", help="Only events of this request")
@click.option("--limit", "-n", default=50, help="Number of events to show")
def events(request_id, limit):
    """Show persisted stage events."""
    cfg = _load_config()
    store = WorkbenchStore(cfg.db_path)
    try:
        rows = store.get_events(request_id=request_id, limit=limit)
    finally:
        store.close()

    if not rows:
        console.print("[dim]No stage events yet.[/]")
        return

    table = Table(title="Stage events")
    table.add_column("Time", style="dim")
    table.add_column("Request", style="dim")
    table.add_column("#", justify="right")
    table.add_column("Stage")
    table.add_column("Message")
    for e in rows:
        color = STAGE_COLORS.get(e.stage, "white")
        table.add_row(
            e.created_at[:19], e.request_id[:12], str(e.seq), f"[{color}]{e.stage}[/]", e.message[:100]
        )
    console.print(table)


@cli.command()
@click.option("--batch-id", "-b", help="Only records of this batch")
@click.option("--limit", "-n", default=50, help="Number of records to show")
def audits(batch_id, limit):
    """Show the execution audit trail."""
    cfg = _load_config()
    store = WorkbenchStore(cfg.db_path)
    try:
        records = store.get_audits(batch_id=batch_id, limit=limit)
    finally:
        store.close()

    if not records:
        console.print("[dim]No audit records yet.[/]")
        return

    table = Table(title="Execution audits")
    table.add_column("Time", style="dim")
    table.add_column("Batch", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Result")
    table.add_column("Detail")
    for r in records:
        result = "[green]ok[/]" if r.success else "[red]failed[/]"
        detail = r.error or (r.after_state or {}).get("message", "")
        table.add_row(r.created_at[:19], r.batch_id[:12], r.action_type, result, str(detail)[:100])
    console.print(table)


@cli.command()
@click.option("--limit", "-n", default=20, help="Number of sessions to show")
def sessions(limit):
    """Show recent chat turns."""
    cfg = _load_config()
    store = WorkbenchStore(cfg.db_path)
    try:
        rows = store.get_sessions(limit=limit)
    finally:
        store.close()

    if not rows:
        console.print("[dim]No sessions yet.[/]")
        return

    table = Table(title="Sessions")
    table.add_column("Time", style="dim")
    table.add_column("Provider", style="cyan")
    table.add_column("Message")
    table.add_column("Reply")
    for s in rows:
        table.add_row(
            s["created_at"][:19], s["provider"], (s["user_message"] or "")[:60], s["reply"][:80]
        )
    console.print(table)


@cli.command()
def health():
    """Check the local codex runtime."""
    cfg = _load_config()

    async def _health():
        async with open_runtime(cfg) as rt:
            return await rt.router.codex_health()

    result = _run_async(_health())
    table = Table(show_header=False, box=None)
    table.add_row("Found", "[green]yes[/]" if result.found else "[red]no[/]")
    table.add_row("Binary", result.binary or "-")
    table.add_row("Exec channel", "yes" if result.exec_available else "no")
    table.add_row("Direct channel", "yes" if result.direct_channel_available else "no")
    table.add_row("Message", result.message)
    ok = result.found and result.exec_available
    console.print(Panel(table, title="Codex runtime", border_style="green" if ok else "red"))


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=9848, help="Port")
def serve(host, port):
    """Run the WebSocket bridge in the foreground."""
    from workbench_agent.ws_server import WorkbenchWSServer

    cfg = _load_config()
    console.print(f"[bold blue]Workbench agent[/] serving on ws://{host}:{port}\n")

    async def _serve():
        async with open_runtime(cfg) as rt:
            server = WorkbenchWSServer(rt.router, rt.broadcaster, rt.store, host=host, port=port)
            await server.serve_forever()

    try:
        _run_async(_serve())
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/]")


@cli.command()
@click.argument("key_value", nargs=-1)
def config(key_value):
    """View or set configuration.

    Examples:
        workbench-agent config                              # show all
        workbench-agent config default_provider=anthropic
        workbench-agent config openai.model=gpt-4o
        workbench-agent config codex.timeout_ms=120000
    """
    cfg = WorkbenchConfig.load()
    if not key_value:
        console.print_json(json.dumps({
            "default_provider": cfg.default_provider,
            "openai": {"base_url": cfg.openai.base_url, "model": cfg.openai.model},
            "anthropic": {
                "base_url": cfg.anthropic.base_url,
                "model": cfg.anthropic.model,
                "api_version": cfg.anthropic.api_version,
            },
            "minimax": {"base_url": cfg.minimax.base_url, "model": cfg.minimax.model},
            "codex": {
                "enabled": cfg.codex.enabled,
                "binary_path_override": cfg.codex.binary_path_override,
                "prefer_direct_channel": cfg.codex.prefer_direct_channel,
                "timeout_ms": cfg.codex.timeout_ms,
            },
            "logging": {"level": cfg.logging.level, "file": cfg.logging.file},
            "db_path": str(cfg.db_path),
        }))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[yellow]Usage: workbench-agent config key=value[/]")
        return

    key, value = kv.split("=", 1)
    key = key.strip()
    value = value.strip()

    if key == "default_provider":
        if value not in PROVIDERS:
            console.print(f"[red]Unknown provider: {value}[/]")
            return
        cfg.default_provider = value
    elif key.split(".", 1)[0] in ("openai", "anthropic", "minimax") and "." in key:
        section, field_name = key.split(".", 1)
        target = getattr(cfg, section)
        if field_name not in ("base_url", "model", "api_version"):
            console.print(f"[red]Unknown {section} key: {field_name}[/]")
            return
        setattr(target, field_name, value)
    elif key == "codex.enabled":
        cfg.codex.enabled = value.lower() in ("1", "true", "yes", "on")
    elif key == "codex.prefer_direct_channel":
        cfg.codex.prefer_direct_channel = value.lower() in ("1", "true", "yes", "on")
    elif key == "codex.binary_path_override":
        cfg.codex.binary_path_override = value or None
    elif key == "codex.timeout_ms":
        cfg.codex.timeout_ms = int(value)
    elif key == "logging.level":
        cfg.logging.level = value.upper()
    elif key == "logging.file":
        cfg.logging.file = value or None
    else:
        console.print(f"[red]Unknown config key: {key}[/]")
        return

    cfg.save()
    console.print(f"[green]Set {key} = {value}[/]")


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
