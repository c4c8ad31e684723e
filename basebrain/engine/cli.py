"""CLI entry point for the agent engine.

Usage:
    basebrain run "Add a README" --cwd ./my-project
    basebrain run "Now add tests" --conversation <id>
    basebrain conversations
    basebrain history <conversation-id>
    basebrain rollback <conversation-id> <message-id>
    basebrain tools
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from basebrain.shared.services.store import SQLiteStore

from .agent_loop import AgentLoop, tool_result_payload
from .config import EngineConfig
from .models import CommandExecution, CommandStatus
from .providers.http_provider import HttpModelClient
from .rollback import RollbackEngine
from .tool_definitions import TOOL_DEFINITIONS
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

console = Console()


class _TerminalRenderer:
    """Prints streamed turn events and asks the user about commands."""

    def __init__(self, auto_approve: bool = False) -> None:
        self._auto_approve = auto_approve
        self.loop: AgentLoop | None = None

    async def on_event(self, event: dict[str, Any]) -> None:
        kind = event.get("event")
        if kind == "content_delta":
            console.print(event["text"], end="", markup=False, highlight=False)
        elif kind == "tool_call":
            console.print(f"\n[bold cyan]tool[/] {event['name']} {event['arguments']}", highlight=False)
        elif kind == "tool_result" and not event.get("success"):
            console.print(f"[red]  failed:[/] {event['result'][:300]}", highlight=False)
        elif kind == "command_output":
            console.print(event["chunk"], end="", markup=False, highlight=False, style="dim")
        elif kind == "command_input_required":
            await self._answer_prompt(event["command_id"], event["prompt"])

    async def approve(self, execution: CommandExecution) -> bool:
        console.print(f"\n[bold yellow]Command requested:[/] {execution.command}", highlight=False)
        if execution.description:
            console.print(f"  {execution.description}", style="dim", highlight=False)
        console.print(f"  in {execution.cwd}", style="dim", highlight=False)
        if self._auto_approve:
            return True
        return await asyncio.to_thread(Confirm.ask, "Run it?", default=False)

    async def _answer_prompt(self, command_id: str, prompt: str) -> None:
        if self.loop is None:
            return
        console.print(f"\n[bold magenta]Command is waiting for input:[/] {prompt}", highlight=False)
        answer = await asyncio.to_thread(Prompt.ask, "input")
        try:
            await self.loop.executor.send_input(command_id, answer)
        except Exception as exc:
            console.print(f"[red]Could not send input:[/] {exc}")


def _interrupt_turn(loop: AgentLoop, conversation_id: str) -> None:
    """Ctrl-C: stop the model round-trip and any command it is waiting on."""
    console.print("\n[yellow]Stopping...[/]")
    loop.cancel(conversation_id)
    active = loop.executor.active_command_id
    if active is not None and loop.executor.get_status(active).status == CommandStatus.RUNNING:
        loop.executor.terminate(active)


def _build_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    if args.db:
        config.db_path = args.db
    return config


def _cmd_run(args: argparse.Namespace, config: EngineConfig) -> int:
    store = SQLiteStore(config.db_path)
    if args.conversation:
        conversation = store.get_conversation(args.conversation)
        if conversation is None:
            console.print(f"[red]Conversation not found:[/] {args.conversation}")
            return 1
    else:
        root = str(Path(args.cwd or os.getcwd()).resolve())
        conversation = store.create_conversation(root)
        console.print(f"[dim]conversation {conversation.id}[/]")

    renderer = _TerminalRenderer(auto_approve=args.yes)
    config.event_callback = renderer.on_event
    config.approval_callback = renderer.approve
    client = HttpModelClient(
        config.model_url,
        api_key=config.api_key,
        connect_timeout=config.request_timeout_seconds,
    )
    loop = AgentLoop(client, store, config=config)
    renderer.loop = loop

    async def _run() -> int:
        aio_loop = asyncio.get_running_loop()
        handles_sigint = True
        try:
            aio_loop.add_signal_handler(signal.SIGINT, _interrupt_turn, loop, conversation.id)
        except NotImplementedError:
            handles_sigint = False
            logger.debug("SIGINT handler unavailable; Ctrl-C cancels the whole run")
        try:
            message = await loop.run_turn(conversation.id, args.prompt)
        finally:
            if handles_sigint:
                aio_loop.remove_signal_handler(signal.SIGINT)
            await loop.executor.shutdown()
            await client.close()
        console.print()
        usage = message.usage
        console.print(
            f"[dim]status={message.status.value} "
            f"tokens={usage.total_tokens if usage else 0} message={message.id}[/]"
        )
        return 0 if message.status.value in ("completed", "stopped") else 2

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        return 1


def _cmd_conversations(args: argparse.Namespace, config: EngineConfig) -> int:
    store = SQLiteStore(config.db_path)
    table = Table(title="Conversations")
    table.add_column("id", style="cyan", no_wrap=True)
    table.add_column("title")
    table.add_column("project")
    table.add_column("messages", justify="right")
    table.add_column("updated")
    for conv in store.list_conversations(args.project):
        table.add_row(
            conv.id,
            conv.title or "",
            conv.project_root,
            str(store.count_messages(conv.id)),
            conv.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    return 0


def _cmd_tools(args: argparse.Namespace, config: EngineConfig) -> int:
    table = Table(title="Tools")
    table.add_column("name", style="cyan", no_wrap=True)
    table.add_column("required")
    table.add_column("description")
    for tool in TOOL_DEFINITIONS:
        fn = tool["function"]
        table.add_row(fn["name"], ", ".join(fn["parameters"]["required"]), fn["description"])
    console.print(table)
    return 0


def _cmd_history(args: argparse.Namespace, config: EngineConfig) -> int:
    store = SQLiteStore(config.db_path)
    if store.get_conversation(args.conversation) is None:
        console.print(f"[red]Conversation not found:[/] {args.conversation}")
        return 1
    messages = store.list_messages(args.conversation)
    if args.last:
        messages = messages[-args.last:]
    for msg in messages:
        style = "bold green" if msg.role.value == "user" else "bold blue"
        console.print(f"[{style}]{msg.role.value}[/] [dim]{msg.id} {msg.status.value}[/]")
        console.print(msg.content, markup=False, highlight=False)
        for result in msg.tool_results:
            payload = tool_result_payload(result)
            mark = "[green]ok[/]" if payload.get("success") else "[red]failed[/]"
            console.print(f"  [dim]{result.name}[/] {mark}")
        snapshots = store.get_snapshots_for_message(msg.id)
        if snapshots:
            paths = ", ".join(f"{s.file_path} ({s.action.value})" for s in snapshots)
            console.print(f"  [dim]undo point: {paths}[/]", highlight=False)
        console.print()
    return 0


def _cmd_rollback(args: argparse.Namespace, config: EngineConfig) -> int:
    store = SQLiteStore(config.db_path)
    conversation = store.get_conversation(args.conversation)
    if conversation is None:
        console.print(f"[red]Conversation not found:[/] {args.conversation}")
        return 1
    project_root = args.cwd or conversation.project_root
    result = RollbackEngine(store).rollback(conversation.id, args.message, project_root)
    if not result.found:
        console.print(f"[red]{result.errors[0]}[/]")
        return 1
    for path in result.restored_paths:
        console.print(f"[green]restored[/] {path}", highlight=False)
    for err in result.errors:
        console.print(f"[red]failed[/] {err}", highlight=False)
    console.print(f"[dim]{result.messages_removed} message(s) removed[/]")
    return 0 if result.ok else 2


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="basebrain",
        description="Tool-calling agent with approval-gated commands and per-turn undo",
    )
    parser.add_argument("--config", default=None, help="YAML config file with an engine: section")
    parser.add_argument("--db", default=None, help="SQLite database path (default: from config)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run one turn")
    run_p.add_argument("prompt", help="What the agent should do")
    run_p.add_argument("--conversation", "-c", default=None, help="Continue an existing conversation")
    run_p.add_argument("--cwd", default=None, help="Project directory for a new conversation")
    run_p.add_argument("--yes", "-y", action="store_true", help="Approve every command without asking")

    conv_p = sub.add_parser("conversations", help="List conversations")
    conv_p.add_argument("--project", default=None, help="Only conversations for this project root")

    hist_p = sub.add_parser("history", help="Print a conversation")
    hist_p.add_argument("conversation")
    hist_p.add_argument("--last", type=int, default=None, help="Only the newest N messages")

    sub.add_parser("tools", help="List the tools the agent can call")

    rb_p = sub.add_parser("rollback", help="Undo a turn and everything after it")
    rb_p.add_argument("conversation")
    rb_p.add_argument("message", help="User message id to roll back to (inclusive)")
    rb_p.add_argument("--cwd", default=None, help="Override the conversation's project root")

    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    config = _build_config(args)
    if not args.verbose:
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    handlers = {
        "run": _cmd_run,
        "conversations": _cmd_conversations,
        "history": _cmd_history,
        "rollback": _cmd_rollback,
        "tools": _cmd_tools,
    }
    sys.exit(handlers[args.command](args, config))


if __name__ == "__main__":
    main()
