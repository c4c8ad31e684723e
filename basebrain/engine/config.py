"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via BASEBRAIN_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import CommandExecution

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Optional async callback for run_command approval.
# Signature: async def callback(execution: CommandExecution) -> bool
# Returns True to approve, False to reject.
ApprovalCallback = Callable[["CommandExecution"], Awaitable[bool]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, silently swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("event callback failed for %s", event.get("event"), exc_info=True)


def _default_db_path() -> str:
    return str(Path.home() / ".basebrain" / "basebrain.db")


@dataclass
class EngineConfig:
    """Agent engine configuration."""

    # Model streaming endpoint
    model_url: str = "http://127.0.0.1:3000/api/chat"
    api_key: str | None = field(default=None, repr=False)
    # Seconds allowed to connect to the model service. 0 disables.
    request_timeout_seconds: float = 30.0

    # Persistent store
    db_path: str = field(default_factory=_default_db_path)

    # Safety bounds. These are engine-wide; a turn never changes them.
    max_iterations: int = 15
    repeat_window: int = 5
    repeat_threshold: int = 3

    # Command execution
    command_poll_interval_seconds: float = 0.5
    input_scan_lines: int = 10
    # Max characters of command output carried back to the model.
    tool_output_limit: int = 12000

    # Logging
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "content_delta", "conversation_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    # Optional async callback asked before each run_command executes.
    # When unset the loop waits for approve()/reject() on the executor.
    approval_callback: ApprovalCallback | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from BASEBRAIN_* environment variables."""
        bb_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith("BASEBRAIN_") and k != "BASEBRAIN_API_KEY"
        }
        if bb_vars:
            logger.info(
                "EngineConfig.from_env: BASEBRAIN_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(bb_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no BASEBRAIN_* env vars set, using defaults")

        config = cls(
            model_url=os.getenv("BASEBRAIN_MODEL_URL", cls.model_url),
            api_key=os.getenv("BASEBRAIN_API_KEY") or None,
            request_timeout_seconds=float(os.getenv(
                "BASEBRAIN_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            db_path=os.getenv("BASEBRAIN_DB_PATH") or _default_db_path(),
            max_iterations=int(os.getenv(
                "BASEBRAIN_MAX_ITERATIONS", str(cls.max_iterations)
            )),
            repeat_window=int(os.getenv(
                "BASEBRAIN_REPEAT_WINDOW", str(cls.repeat_window)
            )),
            repeat_threshold=int(os.getenv(
                "BASEBRAIN_REPEAT_THRESHOLD", str(cls.repeat_threshold)
            )),
            command_poll_interval_seconds=float(os.getenv(
                "BASEBRAIN_COMMAND_POLL_INTERVAL",
                str(cls.command_poll_interval_seconds),
            )),
            input_scan_lines=int(os.getenv(
                "BASEBRAIN_INPUT_SCAN_LINES", str(cls.input_scan_lines)
            )),
            tool_output_limit=int(os.getenv(
                "BASEBRAIN_TOOL_OUTPUT_LIMIT", str(cls.tool_output_limit)
            )),
            log_level=os.getenv("BASEBRAIN_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: model_url=%s db=%s max_iterations=%d log_level=%s",
            config.model_url, config.db_path,
            config.max_iterations, config.log_level,
        )
        return config
