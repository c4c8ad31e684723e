"""Approval-gated shell command executor.

Owns the lifecycle of every shell command the agent asks to run:

    prepare() -> PENDING
    approve() -> APPROVED -> RUNNING -> COMPLETED | FAILED
    reject()  -> REJECTED
    terminate() RUNNING -> TERMINATED

Only one command may be non-terminal at a time. The executor keeps
that in a single-slot registry (``_active_id``) which is checked both
when a command is prepared and again right before it is spawned.

Output is read from a merged stdout/stderr pipe, stripped of ANSI
escapes, and appended to an in-memory buffer. Consumers can either
poll ``get_status()`` or await ``wait_for_completion()``.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import signal
import time
from collections.abc import Callable
from typing import Any

from .config import EventCallback, fire_event
from .errors import CommandConflictError, NotFoundError, ProcessError, ValidationError
from .input_detection import (
    DEFAULT_SCAN_LINES,
    detect_input_prompt,
    split_partial_escape,
    strip_ansi,
    tail_lines,
)
from .lifecycle import validate_command_transition
from .models import CommandExecution, CommandStatus

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096
_DRAIN_TIMEOUT_SECONDS = 2.0
_TERM_GRACE_SECONDS = 1.5
_POLL_INTERVAL_SECONDS = 0.5

# Color-forcing variables are neutralized so output arrives as plain text.
_PLAIN_OUTPUT_ENV = {
    "FORCE_COLOR": "0",
    "NO_COLOR": "1",
    "CLICOLOR": "0",
    "TERM": "dumb",
}

OutputObserver = Callable[[str, str], None]
StatusObserver = Callable[[str, CommandStatus], None]
InputObserver = Callable[[str, str], None]


def _signal_process_group(
    proc: asyncio.subprocess.Process,
    sig: signal.Signals,
) -> bool:
    """Send a signal to the process group when available."""
    if proc.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
        return True
    except ProcessLookupError:
        return False


class CommandExecutor:
    """Single-slot registry of shell command executions."""

    def __init__(
        self,
        *,
        event_callback: EventCallback | None = None,
        input_scan_lines: int = DEFAULT_SCAN_LINES,
        term_grace_seconds: float = _TERM_GRACE_SECONDS,
        poll_interval: float = _POLL_INTERVAL_SECONDS,
    ) -> None:
        self._event_callback = event_callback
        self._input_scan_lines = input_scan_lines
        self._term_grace_seconds = term_grace_seconds
        self._poll_interval = poll_interval

        self._commands: dict[str, CommandExecution] = {}
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._tasks: dict[str, list[asyncio.Task[Any]]] = {}
        self._decided: dict[str, asyncio.Event] = {}
        self._finished: dict[str, asyncio.Event] = {}
        # Offset into the output buffer where prompt detection resumes
        # after input was sent; an answered prompt must not re-trigger.
        self._input_cursor: dict[str, int] = {}
        self._active_id: str | None = None

        self._output_observers: list[OutputObserver] = []
        self._status_observers: list[StatusObserver] = []
        self._input_observers: list[InputObserver] = []

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    # ── Registry ──

    @property
    def active_command_id(self) -> str | None:
        """Id of the command currently holding the slot, if any."""
        if self._active_id is None:
            return None
        execution = self._commands.get(self._active_id)
        if execution is None or not execution.status.is_active:
            self._active_id = None
            return None
        return self._active_id

    def _get(self, command_id: str) -> CommandExecution:
        execution = self._commands.get(command_id)
        if execution is None:
            raise NotFoundError("Command", command_id)
        return execution

    def _release_slot(self, command_id: str) -> None:
        if self._active_id == command_id:
            self._active_id = None

    def prepare(
        self,
        command: str,
        cwd: str,
        description: str = "",
    ) -> CommandExecution:
        """Register a command as PENDING. Nothing is spawned yet.

        Raises CommandConflictError if another command holds the slot.
        """
        if not command or not command.strip():
            raise ValidationError("Command must not be empty")
        active = self.active_command_id
        if active is not None:
            logger.info(
                "Command conflict: %s still active, refusing %r",
                active, command[:80],
            )
            raise CommandConflictError(active)

        execution = CommandExecution(
            command=command,
            cwd=cwd,
            description=description,
        )
        self._commands[execution.id] = execution
        self._decided[execution.id] = asyncio.Event()
        self._finished[execution.id] = asyncio.Event()
        self._input_cursor[execution.id] = 0
        self._active_id = execution.id
        logger.info(
            "Command prepared id=%s cwd=%s command=%r",
            execution.id, cwd, command[:200],
        )
        self._notify_status(execution)
        return execution.snapshot()

    def _transition(self, execution: CommandExecution, target: CommandStatus) -> None:
        validate_command_transition(execution.status, target)
        old = execution.status
        execution.status = target
        logger.debug(
            "Command %s: %s -> %s", execution.id, old.value, target.value,
        )
        self._notify_status(execution)

    # ── Control surface ──

    async def approve(self, command_id: str) -> CommandExecution:
        """Approve a pending command and start it.

        Spawn failures are recorded on the execution (status FAILED)
        rather than raised.
        """
        execution = self._get(command_id)
        self._transition(execution, CommandStatus.APPROVED)
        self._decided[command_id].set()

        if self._active_id not in (None, command_id):
            # Slot was taken between prepare and approve; never run two.
            self._fail(execution, f"Another command is active: {self._active_id}")
            return execution.snapshot()
        self._active_id = command_id

        try:
            proc = await self._spawn(execution)
        except ProcessError as exc:
            logger.warning("Command %s spawn failed: %s", command_id, exc.reason)
            self._fail(execution, exc.reason)
            return execution.snapshot()

        self._processes[command_id] = proc
        execution.start_time = time.time()
        self._transition(execution, CommandStatus.RUNNING)
        await fire_event(self._event_callback, {
            "event": "command_started",
            "command_id": command_id,
            "pid": proc.pid,
        })

        reader = asyncio.create_task(self._pump_output(command_id, proc))
        watcher = asyncio.create_task(self._watch_exit(command_id, proc, reader))
        self._tasks[command_id] = [reader, watcher]
        return execution.snapshot()

    def reject(self, command_id: str) -> CommandExecution:
        """Reject a pending command. It is never spawned."""
        execution = self._get(command_id)
        self._transition(execution, CommandStatus.REJECTED)
        execution.end_time = time.time()
        self._release_slot(command_id)
        self._decided[command_id].set()
        self._finished[command_id].set()
        logger.info("Command rejected id=%s", command_id)
        return execution.snapshot()

    async def send_input(self, command_id: str, text: str) -> CommandExecution:
        """Write *text* plus a newline to the command's stdin."""
        execution = self._get(command_id)
        proc = self._processes.get(command_id)
        if execution.status != CommandStatus.RUNNING or proc is None or proc.stdin is None:
            raise ValidationError(f"Command is not running: {command_id}")
        try:
            proc.stdin.write((text + "\n").encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ProcessError(command_id, f"stdin closed: {exc}") from exc
        execution.requires_input = False
        execution.input_prompt = None
        self._input_cursor[command_id] = len(execution.output)
        logger.debug("Input sent to %s (%d chars)", command_id, len(text))
        return execution.snapshot()

    def terminate(self, command_id: str) -> CommandExecution:
        """Stop a running command. Output captured so far is kept."""
        execution = self._get(command_id)
        self._transition(execution, CommandStatus.TERMINATED)
        execution.end_time = time.time()
        execution.requires_input = False
        self._release_slot(command_id)

        proc = self._processes.get(command_id)
        if proc is not None:
            if not _signal_process_group(proc, signal.SIGTERM):
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass
            escalate = asyncio.create_task(self._ensure_stopped(command_id, proc))
            self._tasks.setdefault(command_id, []).append(escalate)
        logger.info("Command terminated id=%s", command_id)
        self._finished[command_id].set()
        return execution.snapshot()

    def get_status(self, command_id: str) -> CommandExecution:
        """Return a copy of the execution with its full output buffer."""
        return self._get(command_id).snapshot()

    def list_commands(self) -> list[CommandExecution]:
        return [e.snapshot() for e in self._commands.values()]

    def cleanup(self) -> int:
        """Forget terminal commands. Returns how many were removed."""
        done = [cid for cid, e in self._commands.items() if e.status.is_terminal]
        for cid in done:
            self._commands.pop(cid, None)
            self._processes.pop(cid, None)
            self._tasks.pop(cid, None)
            self._decided.pop(cid, None)
            self._finished.pop(cid, None)
            self._input_cursor.pop(cid, None)
        if done:
            logger.debug("Cleaned up %d finished commands", len(done))
        return len(done)

    # ── Waiting ──

    async def wait_for_decision(self, command_id: str) -> CommandExecution:
        """Suspend until the command is approved or rejected. No timeout."""
        self._get(command_id)
        await self._decided[command_id].wait()
        return self.get_status(command_id)

    async def wait_for_completion(self, command_id: str) -> CommandExecution:
        """Suspend until the command reaches a terminal status. No timeout."""
        self._get(command_id)
        await self._finished[command_id].wait()
        return self.get_status(command_id)

    async def poll_until_settled(
        self,
        command_id: str,
        interval: float | None = None,
    ) -> CommandExecution:
        """Pull-based variant of wait_for_completion.

        *interval* defaults to the executor's configured poll interval.
        """
        if interval is None:
            interval = self._poll_interval
        while True:
            status = self.get_status(command_id)
            if status.status.is_terminal:
                return status
            await asyncio.sleep(interval)

    # ── Observers ──

    def on_output(self, observer: OutputObserver) -> Callable[[], None]:
        """Subscribe to (command_id, plain_text_chunk). Returns unsubscribe."""
        self._output_observers.append(observer)
        return lambda: self._output_observers.remove(observer)

    def on_status(self, observer: StatusObserver) -> Callable[[], None]:
        self._status_observers.append(observer)
        return lambda: self._status_observers.remove(observer)

    def on_input_required(self, observer: InputObserver) -> Callable[[], None]:
        self._input_observers.append(observer)
        return lambda: self._input_observers.remove(observer)

    def _notify(self, observers: list[Callable[..., None]], *args: Any) -> None:
        for observer in list(observers):
            try:
                observer(*args)
            except Exception:
                logger.debug("command observer failed", exc_info=True)

    def _notify_status(self, execution: CommandExecution) -> None:
        self._notify(self._status_observers, execution.id, execution.status)

    # ── Process plumbing ──

    async def _spawn(self, execution: CommandExecution) -> asyncio.subprocess.Process:
        env = dict(os.environ)
        env.update(_PLAIN_OUTPUT_ENV)
        bash_path = shutil.which("bash")
        try:
            return await asyncio.create_subprocess_shell(
                execution.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=execution.cwd,
                env=env,
                start_new_session=True,
                executable=bash_path,
            )
        except OSError as exc:
            raise ProcessError(execution.id, str(exc)) from exc

    def _fail(self, execution: CommandExecution, reason: str) -> None:
        execution.output += f"\nError: {reason}"
        execution.end_time = time.time()
        self._transition(execution, CommandStatus.FAILED)
        self._release_slot(execution.id)
        self._finished[execution.id].set()

    async def _pump_output(
        self,
        command_id: str,
        proc: asyncio.subprocess.Process,
    ) -> None:
        assert proc.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        # Escape sequence cut off at the end of the previous read.
        carry = ""
        while True:
            raw = await proc.stdout.read(_READ_CHUNK_BYTES)
            if not raw:
                tail = carry + decoder.decode(b"", final=True)
                if tail:
                    await self._append_output(command_id, tail)
                return
            text, carry = split_partial_escape(carry + decoder.decode(raw))
            if text:
                await self._append_output(command_id, text)

    async def _append_output(self, command_id: str, text: str) -> None:
        execution = self._commands.get(command_id)
        if execution is None:
            return
        chunk = strip_ansi(text)
        if not chunk:
            return
        execution.output += chunk
        self._notify(self._output_observers, command_id, chunk)
        await fire_event(self._event_callback, {
            "event": "command_output",
            "command_id": command_id,
            "chunk": chunk,
        })

        if execution.status != CommandStatus.RUNNING:
            return
        tail = tail_lines(
            execution.output,
            self._input_scan_lines,
            start=self._input_cursor.get(command_id, 0),
        )
        prompt = detect_input_prompt(tail, self._input_scan_lines)
        if prompt and (not execution.requires_input or prompt != execution.input_prompt):
            execution.requires_input = True
            execution.input_prompt = prompt
            logger.info("Command %s is waiting for input: %r", command_id, prompt[:80])
            self._notify(self._input_observers, command_id, prompt)
            await fire_event(self._event_callback, {
                "event": "command_input_required",
                "command_id": command_id,
                "prompt": prompt,
            })

    async def _watch_exit(
        self,
        command_id: str,
        proc: asyncio.subprocess.Process,
        reader: asyncio.Task[None],
    ) -> None:
        returncode = await proc.wait()
        try:
            await asyncio.wait_for(asyncio.shield(reader), timeout=_DRAIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            # A grandchild kept the pipe open after the shell exited.
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        execution = self._commands.get(command_id)
        if execution is None:
            return
        execution.exit_code = returncode
        execution.requires_input = False
        execution.input_prompt = None
        if execution.status == CommandStatus.RUNNING:
            execution.end_time = time.time()
            target = CommandStatus.COMPLETED if returncode == 0 else CommandStatus.FAILED
            self._transition(execution, target)
        self._release_slot(command_id)
        self._processes.pop(command_id, None)
        self._finished[command_id].set()
        logger.info(
            "Command finished id=%s status=%s exit=%s duration_ms=%s",
            command_id, execution.status.value, returncode, execution.duration_ms,
        )
        await fire_event(self._event_callback, {
            "event": "command_finished",
            "command_id": command_id,
            "status": execution.status.value,
            "exit_code": returncode,
        })

    async def _ensure_stopped(
        self,
        command_id: str,
        proc: asyncio.subprocess.Process,
    ) -> None:
        """Escalate to SIGKILL if SIGTERM was not enough."""
        await asyncio.sleep(max(0.0, self._term_grace_seconds))
        if proc.returncode is not None:
            return
        kill_sent = _signal_process_group(proc, signal.SIGKILL)
        logger.warning(
            "Command %s still running after SIGTERM; escalating to SIGKILL pid=%s sent=%s",
            command_id, proc.pid, kill_sent,
        )
        if not kill_sent:
            try:
                proc.kill()
            except ProcessLookupError:
                return

    async def shutdown(self) -> None:
        """Terminate anything still running and wait for watchers."""
        for command_id, execution in list(self._commands.items()):
            if execution.status == CommandStatus.RUNNING:
                self.terminate(command_id)
            elif execution.status == CommandStatus.PENDING:
                self.reject(command_id)
        tasks = [t for group in self._tasks.values() for t in group]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
