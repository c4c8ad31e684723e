"""Tool schemas in OpenAI function-calling format."""
from __future__ import annotations

from typing import Any


def _tool(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


_PATH = {"type": "string", "description": "Path relative to the project root"}
_SOURCE = {"type": "string", "description": "Source path"}
_DEST = {"type": "string", "description": "Destination path"}
_COMMAND_ID = {"type": "string", "description": "Id returned by run_command"}

FILESYSTEM_TOOLS: list[dict[str, Any]] = [
    _tool("read_file", "Read the contents of a file", {"path": _PATH}, ["path"]),
    _tool(
        "write_file",
        "Create or overwrite a file with content",
        {"path": _PATH, "content": {"type": "string", "description": "Full file content"}},
        ["path", "content"],
    ),
    _tool(
        "append_file",
        "Append content to a file, creating it if needed",
        {"path": _PATH, "content": {"type": "string", "description": "Content to append"}},
        ["path", "content"],
    ),
    _tool("delete_file", "Delete a file", {"path": _PATH}, ["path"]),
    _tool("copy_file", "Copy a file to a new location", {"source": _SOURCE, "destination": _DEST}, ["source", "destination"]),
    _tool("move_file", "Move or rename a file", {"source": _SOURCE, "destination": _DEST}, ["source", "destination"]),
    _tool("create_folder", "Create a new folder", {"path": _PATH}, ["path"]),
    _tool("delete_folder", "Delete a folder and all its contents", {"path": _PATH}, ["path"]),
    _tool(
        "list_folder",
        "List contents of a folder",
        {
            "path": {"type": "string", "description": "Folder path, '.' for the project root"},
            "recursive": {"type": "boolean", "description": "Include subfolders recursively"},
        },
        ["path"],
    ),
    _tool("copy_folder", "Copy a folder and all its contents", {"source": _SOURCE, "destination": _DEST}, ["source", "destination"]),
    _tool("move_folder", "Move or rename a folder", {"source": _SOURCE, "destination": _DEST}, ["source", "destination"]),
    _tool("exists", "Check if a file or folder exists", {"path": _PATH}, ["path"]),
    _tool("get_info", "Get size, type and timestamps of a file or folder", {"path": _PATH}, ["path"]),
    _tool(
        "search_files",
        "Search for files whose name matches a pattern",
        {
            "pattern": {"type": "string", "description": "Name pattern, * is a wildcard"},
            "maxDepth": {"type": "number", "description": "Maximum folder depth to search"},
            "includeHidden": {"type": "boolean", "description": "Include hidden files and folders"},
        },
        ["pattern"],
    ),
    _tool("get_system_info", "Get operating system and machine information", {}, []),
]

COMMAND_TOOLS: list[dict[str, Any]] = [
    _tool(
        "run_command",
        "Run a shell command in the project directory. The user must approve "
        "it first. Only one command can be pending or running at a time.",
        {
            "command": {"type": "string", "description": "Shell command to execute"},
            "description": {"type": "string", "description": "Why the command is needed"},
        },
        ["command"],
    ),
    _tool("check_command_status", "Get status and full output of a command", {"commandId": _COMMAND_ID}, ["commandId"]),
    _tool(
        "send_command_input",
        "Send a line of input to a running command that is waiting for it",
        {"commandId": _COMMAND_ID, "input": {"type": "string", "description": "Text to send"}},
        ["commandId", "input"],
    ),
    _tool("terminate_command", "Stop a running command", {"commandId": _COMMAND_ID}, ["commandId"]),
]

TOOL_DEFINITIONS: list[dict[str, Any]] = FILESYSTEM_TOOLS + COMMAND_TOOLS


def tool_names() -> list[str]:
    return [t["function"]["name"] for t in TOOL_DEFINITIONS]
