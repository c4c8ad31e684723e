"""Tool dispatcher: maps a tool name plus arguments to an action.

Filesystem tools run against a ProjectFilesystem for the turn's
project root. The four mutating tools capture a snapshot first.
Command tools go to the CommandExecutor. Whatever happens, the caller
gets a ToolOutcome back; nothing raised here crosses into the loop.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from basebrain.shared.services.filesystem import DEFAULT_SEARCH_DEPTH, ProjectFilesystem

from .commands import CommandExecutor
from .errors import (
    BasebrainError,
    CommandConflictError,
    InvalidTransitionError,
    NotFoundError,
    ProcessError,
    ValidationError,
)
from .models import ToolOutcome
from .snapshots import MUTATING_TOOLS, SnapshotRecorder

logger = logging.getLogger(__name__)

COMMAND_TOOL = "run_command"

Handler = Callable[[ProjectFilesystem, dict[str, Any]], Any]


def parse_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Decode the model's argument payload into a dict."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ValidationError(f"Invalid tool arguments: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("Tool arguments must be a JSON object")
    return parsed


def _require(args: dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None:
        raise ValidationError(f"Missing required argument: {key}")
    return value


def _require_str(args: dict[str, Any], key: str) -> str:
    value = _require(args, key)
    if not isinstance(value, str):
        raise ValidationError(f"Argument {key} must be a string")
    return value


_FS_HANDLERS: dict[str, Handler] = {
    "read_file": lambda fs, a: fs.read_file(_require_str(a, "path")),
    "write_file": lambda fs, a: fs.write_file(_require_str(a, "path"), _require(a, "content")),
    "create_file": lambda fs, a: fs.write_file(_require_str(a, "path"), a.get("content", "")),
    "append_file": lambda fs, a: fs.append_file(_require_str(a, "path"), str(_require(a, "content"))),
    "delete_file": lambda fs, a: fs.delete_file(_require_str(a, "path")),
    "copy_file": lambda fs, a: fs.copy_file(_require_str(a, "source"), _require_str(a, "destination")),
    "move_file": lambda fs, a: fs.move_file(_require_str(a, "source"), _require_str(a, "destination")),
    "create_folder": lambda fs, a: fs.create_folder(_require_str(a, "path")),
    "delete_folder": lambda fs, a: fs.delete_folder(_require_str(a, "path")),
    "list_folder": lambda fs, a: fs.list_folder(
        a.get("path") or ".", bool(a.get("recursive", False)),
    ),
    "copy_folder": lambda fs, a: fs.copy_folder(_require_str(a, "source"), _require_str(a, "destination")),
    "move_folder": lambda fs, a: fs.move_folder(_require_str(a, "source"), _require_str(a, "destination")),
    "exists": lambda fs, a: fs.exists(_require_str(a, "path")),
    "get_info": lambda fs, a: fs.get_info(_require_str(a, "path")),
    "search_files": lambda fs, a: fs.search_files(
        _require_str(a, "pattern"),
        max_depth=int(a.get("maxDepth", DEFAULT_SEARCH_DEPTH)),
        include_hidden=bool(a.get("includeHidden", False)),
    ),
    "get_system_info": lambda fs, a: fs.get_system_info(),
}


class ToolDispatcher:
    """Routes tool calls and normalizes every result into a ToolOutcome."""

    def __init__(self, executor: CommandExecutor) -> None:
        self._executor = executor
        self._filesystems: dict[str, ProjectFilesystem] = {}
        self._command_handlers: dict[str, Callable[[dict[str, Any], str], Awaitable[ToolOutcome]]] = {
            COMMAND_TOOL: self._run_command,
            "check_command_status": self._check_command_status,
            "send_command_input": self._send_command_input,
            "terminate_command": self._terminate_command,
        }

    @property
    def executor(self) -> CommandExecutor:
        return self._executor

    def known_tools(self) -> list[str]:
        return sorted(set(_FS_HANDLERS) | set(self._command_handlers))

    def filesystem(self, project_root: str) -> ProjectFilesystem:
        fs = self._filesystems.get(project_root)
        if fs is None:
            fs = ProjectFilesystem(project_root)
            self._filesystems[project_root] = fs
        return fs

    async def execute(
        self,
        tool_name: str,
        args: str | dict[str, Any] | None,
        project_root: str,
        recorder: SnapshotRecorder | None = None,
    ) -> ToolOutcome:
        """Run one tool call. Never raises for tool-level failures."""
        try:
            parsed = parse_arguments(args)
        except ValidationError as exc:
            return ToolOutcome.fail(str(exc))

        command_handler = self._command_handlers.get(tool_name)
        if command_handler is not None:
            return await command_handler(parsed, project_root)

        handler = _FS_HANDLERS.get(tool_name)
        if handler is None:
            logger.info("Unknown tool requested: %s", tool_name)
            return ToolOutcome.fail(f"Unknown tool: {tool_name}")

        try:
            fs = self.filesystem(project_root)
            if tool_name in MUTATING_TOOLS and recorder is not None:
                recorder.capture_before(tool_name, _require_str(parsed, "path"), project_root, fs)
            data = handler(fs, parsed)
        except (ValidationError, NotFoundError) as exc:
            logger.debug("Tool %s failed: %s", tool_name, exc)
            return ToolOutcome.fail(str(exc))
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Tool %s raised %s: %s", tool_name, type(exc).__name__, exc)
            return ToolOutcome.fail(f"Failed to run {tool_name}: {exc}")
        return ToolOutcome.ok(data)

    # ── Command tools ──

    async def _run_command(self, args: dict[str, Any], project_root: str) -> ToolOutcome:
        try:
            command = _require_str(args, "command")
            execution = self._executor.prepare(
                command,
                cwd=str(self.filesystem(project_root).root),
                description=str(args.get("description") or ""),
            )
        except CommandConflictError as exc:
            return ToolOutcome.fail(str(exc), data={"activeCommandId": exc.active_command_id})
        except ValidationError as exc:
            return ToolOutcome.fail(str(exc))
        return ToolOutcome.ok({
            "commandId": execution.id,
            "command": execution.command,
            "cwd": execution.cwd,
            "status": execution.status.value,
            "message": "Command is waiting for user approval",
        })

    async def _check_command_status(self, args: dict[str, Any], project_root: str) -> ToolOutcome:
        try:
            execution = self._executor.get_status(_require_str(args, "commandId"))
        except BasebrainError as exc:
            return ToolOutcome.fail(str(exc))
        return ToolOutcome.ok(execution.to_status())

    async def _send_command_input(self, args: dict[str, Any], project_root: str) -> ToolOutcome:
        try:
            command_id = _require_str(args, "commandId")
            text = str(_require(args, "input"))
            await self._executor.send_input(command_id, text)
        except (ValidationError, NotFoundError, ProcessError) as exc:
            return ToolOutcome.fail(str(exc))
        return ToolOutcome.ok({"commandId": command_id, "message": f"Input sent: {text}"})

    async def _terminate_command(self, args: dict[str, Any], project_root: str) -> ToolOutcome:
        try:
            command_id = _require_str(args, "commandId")
            execution = self._executor.terminate(command_id)
        except InvalidTransitionError:
            return ToolOutcome.fail("Command is not running")
        except (ValidationError, NotFoundError) as exc:
            return ToolOutcome.fail(str(exc))
        return ToolOutcome.ok({
            "commandId": execution.id,
            "status": execution.status.value,
            "output": execution.output,
            "message": "Command was terminated",
        })
