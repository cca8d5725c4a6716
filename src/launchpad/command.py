"""Command runner - every shell-level side effect goes through here."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import inspect
import os
import signal
import time

import structlog

from launchpad.config import Settings, get_settings
from launchpad.errors import CommandError

logger = structlog.get_logger()

# Command preview length for logging
COMMAND_PREVIEW_LENGTH = 200
# Tail of stderr carried in error messages
ERROR_TAIL_LENGTH = 2000
READ_CHUNK_SIZE = 64 * 1024

LineCallback = Callable[[str, str], Awaitable[None] | None]


class CancelToken:
    """Cancellation signal shared between the engine and running commands."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class CommandResult:
    """Outcome of a successful command."""

    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    truncated: bool = False

    @property
    def output(self) -> str:
        """stdout followed by stderr, the way a terminal would show them."""
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout


class _OutputBuffer:
    """Accumulates decoded output up to a byte limit."""

    def __init__(self, limit: int):
        self.limit = limit
        self.truncated = False
        self._parts: list[str] = []
        self._size = 0

    def append(self, text: str) -> None:
        if self._size >= self.limit:
            self.truncated = True
            return
        data = text.encode()
        if self._size + len(data) > self.limit:
            data = data[: self.limit - self._size]
            text = data.decode(errors="ignore")
            self.truncated = True
        self._parts.append(text)
        self._size += len(data)

    def getvalue(self) -> str:
        return "".join(self._parts)


class CommandRunner:
    """Runs shell commands with a timeout, an output cap and cancellation.

    Commands run in their own process group so a timeout or cancellation
    terminates the whole tree (shell, package manager, compiler, ...), not
    just the shell.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def run(
        self,
        command: str,
        cwd: str | None = None,
        timeout: float | None = None,
        max_output: int | None = None,
        env: dict[str, str] | None = None,
        cancel_token: CancelToken | None = None,
        on_line: LineCallback | None = None,
        display: str | None = None,
    ) -> CommandResult:
        """Execute a command and return its captured output.

        Args:
            command: Shell command line
            cwd: Working directory; must exist
            timeout: Seconds before the process tree is killed
            max_output: Byte cap per captured stream
            env: Extra environment variables
            cancel_token: Token that kills the process tree when cancelled
            on_line: Called with (line, stream) for every output line, even past the cap
            display: Redacted form of the command for logs and errors

        Raises:
            CommandError: non-zero exit, timeout, signal or cancellation
        """
        timeout = timeout if timeout is not None else self.settings.default_timeout
        max_output = max_output or self.settings.max_output_bytes
        shown = display or command

        if cwd is not None and not os.path.isdir(cwd):
            raise CommandError(shown, f"Working directory does not exist: {cwd}")
        if cancel_token is not None and cancel_token.cancelled:
            raise CommandError(
                shown,
                f"Command cancelled: {cancel_token.reason}",
                killed=True,
                cancelled=True,
            )

        process_env = None
        if env:
            process_env = {**os.environ, **env}

        logger.debug(
            "command_started",
            command=shown[:COMMAND_PREVIEW_LENGTH],
            cwd=cwd,
            timeout=timeout,
        )
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                env=process_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise CommandError(shown, f"Failed to start command: {e}") from e

        stdout = _OutputBuffer(max_output)
        stderr = _OutputBuffer(max_output)
        completion = asyncio.ensure_future(
            self._complete(process, stdout, stderr, on_line)
        )
        cancel_wait = (
            asyncio.ensure_future(cancel_token.wait()) if cancel_token is not None else None
        )

        timed_out = False
        cancelled = False
        try:
            waiters = {completion} if cancel_wait is None else {completion, cancel_wait}
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if completion not in done:
                if cancel_wait is not None and cancel_wait in done:
                    cancelled = True
                else:
                    timed_out = True
                await self._kill(process)
                await self._drain(completion)
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            if process.returncode is None:
                # Caller task was cancelled while the command was running
                await self._kill(process)
                completion.cancel()

        duration = time.monotonic() - started
        exit_code = process.returncode
        out_text = stdout.getvalue().rstrip()
        err_text = stderr.getvalue().rstrip()
        term_signal = -exit_code if exit_code is not None and exit_code < 0 else None

        if timed_out or cancelled or exit_code != 0:
            if timed_out:
                message = f"Command timed out after {timeout}s and was killed"
            elif cancelled:
                message = f"Command cancelled: {cancel_token.reason}"
            elif term_signal is not None:
                message = f"Command terminated by signal {term_signal}"
            else:
                message = f"Command failed with exit code {exit_code}"
            tail = err_text[-ERROR_TAIL_LENGTH:] or out_text[-ERROR_TAIL_LENGTH:]
            if tail:
                message = f"{message}: {tail}"

            logger.warning(
                "command_failed",
                command=shown[:COMMAND_PREVIEW_LENGTH],
                exit_code=exit_code,
                signal=term_signal,
                timed_out=timed_out,
                cancelled=cancelled,
                duration=round(duration, 2),
            )
            raise CommandError(
                shown,
                message,
                exit_code=exit_code,
                signal=term_signal,
                killed=timed_out or cancelled,
                stderr=err_text,
                stdout=out_text,
                timed_out=timed_out,
                cancelled=cancelled,
            )

        logger.debug(
            "command_completed",
            command=shown[:COMMAND_PREVIEW_LENGTH],
            duration=round(duration, 2),
            truncated=stdout.truncated or stderr.truncated,
        )
        return CommandResult(
            command=shown,
            exit_code=exit_code,
            stdout=out_text,
            stderr=err_text,
            duration=duration,
            truncated=stdout.truncated or stderr.truncated,
        )

    async def _complete(
        self,
        process: asyncio.subprocess.Process,
        stdout: _OutputBuffer,
        stderr: _OutputBuffer,
        on_line: LineCallback | None,
    ) -> None:
        await asyncio.gather(
            self._pump(process.stdout, stdout, "stdout", on_line),
            self._pump(process.stderr, stderr, "stderr", on_line),
        )
        await process.wait()

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        buffer: _OutputBuffer,
        name: str,
        on_line: LineCallback | None,
    ) -> None:
        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            if len(pending) >= READ_CHUNK_SIZE:
                lines.append(pending)
                pending = b""
            for raw in lines:
                await self._emit(raw, buffer, name, on_line)
        if pending:
            await self._emit(pending, buffer, name, on_line)

    async def _emit(
        self,
        raw: bytes,
        buffer: _OutputBuffer,
        name: str,
        on_line: LineCallback | None,
    ) -> None:
        line = raw.decode(errors="replace").rstrip("\r")
        buffer.append(line + "\n")
        if on_line is None:
            return
        try:
            result = on_line(line, name)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("line_callback_failed", error=str(e), error_type=type(e).__name__)

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.kill_grace_period)
        except TimeoutError:
            logger.warning("command_kill_escalated", pid=process.pid)
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await process.wait()

    async def _drain(self, completion: asyncio.Future) -> None:
        """Wait for the output pumps to hit EOF after a kill."""
        try:
            await asyncio.wait_for(completion, timeout=self.settings.kill_grace_period)
        except TimeoutError:
            # A detached grandchild still holds the pipes open
            completion.cancel()
