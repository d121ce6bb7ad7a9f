# executor.py
# Command tokenizing, sanitizing and process execution.
#
# Two execution paths:
#   single command  — the whole line goes to the platform shell (sh -c / cmd /C)
#                     as one asyncio child process.
#   pipeline        — Windows only, for lines containing "|". Each stage is
#                     tokenized and spawned directly, stdout chained to stdin.
#                     The spawn/wait sequence is blocking, so it runs on a
#                     worker thread and is awaited from the event loop.

import asyncio
import logging
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import PureWindowsPath
from typing import Protocol

from shell_planner.bootstrap import BootstrapError

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Tools that only make sense on Linux hosts.
WINDOWS_UNSUPPORTED_TOOLS = frozenset({"setoolkit", "msfconsole"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ExecutionError(Exception):
    """Base class for every failure the executor reports."""


class CommandParsingError(ExecutionError):
    """Raised for an empty command line or an empty pipeline segment."""


class UnsupportedPlatform(ExecutionError):
    """Raised when the tool is known not to run on this host OS."""


class DependencyFailure(ExecutionError):
    """Raised when the tool could not be found or installed."""


class BlockingTaskError(ExecutionError):
    """Raised when the pipeline worker could not run the job."""


class IoError(ExecutionError):
    """Raised for OS-level spawn/read/write failures."""


class CommandFailure(ExecutionError):
    """Raised when the (final) child process exits non-zero."""


class ToolInstaller(Protocol):
    async def check_and_install_tool(self, tool: str) -> None: ...


# ---------------------------------------------------------------------------
# Tokenizing and sanitizing
# ---------------------------------------------------------------------------


def parse_command_line(line: str) -> tuple[str, list[str]]:
    """
    Split a command line into (program, args).

    Whitespace separates tokens except inside double quotes. Quote characters
    toggle the quoting state and are dropped. There are no escapes, and an
    unterminated quote simply runs to the end of the line.
    """
    tokens: list[str] = []
    current: list[str] = []
    in_quotes = False

    for char in line.strip():
        if char == '"':
            in_quotes = not in_quotes
        elif char in (" ", "\t") and not in_quotes:
            if current:
                tokens.append("".join(current))
                current = []
        else:
            current.append(char)

    if current:
        tokens.append("".join(current))

    if not tokens:
        raise CommandParsingError("No command found")
    return tokens[0], tokens[1:]


def _base_name(token: str) -> str:
    # PureWindowsPath splits on both "/" and "\".
    return PureWindowsPath(token).name or token


def sanitize_command(raw_command: str) -> str:
    """Strip a leading executable path down to its base name."""
    parts = raw_command.split()
    if not parts:
        return raw_command

    program = parts[0]
    if "/" not in program and "\\" not in program:
        return raw_command
    return " ".join([_base_name(program), *parts[1:]])


def get_tool_from_command(command: str) -> str | None:
    parts = command.split()
    if not parts:
        return None
    return _base_name(parts[0])


# ---------------------------------------------------------------------------
# Pipeline emulation (blocking, worker thread only)
# ---------------------------------------------------------------------------


def _kill_all(processes: list[subprocess.Popen]) -> None:
    for proc in processes:
        if proc.poll() is None:
            proc.kill()
        proc.wait()


def run_pipeline(command: str, timeout: float | None = None) -> subprocess.CompletedProcess:
    """
    Run ``a | b | c`` by spawning each stage directly.

    Every segment is validated and tokenized before anything is spawned. The
    first stage inherits our stdin; intermediate stderr is discarded; only
    the final stage's status, stdout and stderr are returned.
    """
    segments = [part.strip() for part in command.split("|")]
    if any(not segment for segment in segments):
        raise CommandParsingError("Empty command part in pipeline")

    stages = [parse_command_line(segment) for segment in segments]

    processes: list[subprocess.Popen] = []
    previous_stdout = None
    try:
        for index, (program, args) in enumerate(stages):
            is_last = index == len(stages) - 1
            logger.debug("Pipeline part %d: cmd=%r args=%r", index + 1, program, args)
            proc = subprocess.Popen(
                [program, *args],
                stdin=previous_stdout,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE if is_last else subprocess.DEVNULL,
            )
            if previous_stdout is not None:
                # Parent copy closed so the upstream stage sees a broken pipe.
                previous_stdout.close()
            previous_stdout = proc.stdout
            processes.append(proc)
    except OSError:
        if previous_stdout is not None:
            previous_stdout.close()
        _kill_all(processes)
        raise

    final = processes[-1]
    try:
        stdout, stderr = final.communicate(timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        _kill_all(processes)
        raise CommandFailure(f"Pipeline timed out after {timeout} seconds") from exc

    for proc in processes[:-1]:
        proc.wait()

    logger.debug("Final command status: %s", final.returncode)
    if stderr:
        logger.debug("Final command stderr:\n%s", stderr.decode(errors="replace"))

    return subprocess.CompletedProcess(final.args, final.returncode, stdout, stderr)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


def _check_output(returncode: int, stdout: bytes, stderr: bytes) -> str:
    stdout_text = stdout.decode(errors="replace")
    if returncode == 0:
        return stdout_text

    stderr_text = stderr.decode(errors="replace")
    if stderr_text.strip():
        message = f"Command failed with status {returncode}. Error:\n{stderr_text}"
    else:
        message = f"Command failed with status {returncode}. Output:\n{stdout_text}"
    raise CommandFailure(message)


class CommandExecutor:
    """
    Runs sanitized command lines on the host.

    ``installer`` is the bootstrap collaborator; each distinct tool is checked
    once until ``forget_tools()`` is called at the start of the next query.
    """

    def __init__(
        self,
        installer: ToolInstaller,
        windows: bool = IS_WINDOWS,
        timeout: float | None = None,
    ) -> None:
        self._installer = installer
        self._windows = windows
        self._timeout = timeout
        self._ensured: set[str] = set()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeline")

    def forget_tools(self) -> None:
        self._ensured.clear()

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    async def _ensure_tool(self, tool: str) -> None:
        if self._windows and tool in WINDOWS_UNSUPPORTED_TOOLS:
            raise UnsupportedPlatform(f"{tool} requires Linux")
        if tool in self._ensured:
            return
        try:
            await self._installer.check_and_install_tool(tool)
        except (BootstrapError, OSError) as exc:
            raise DependencyFailure(str(exc)) from exc
        self._ensured.add(tool)

    async def execute(self, command: str) -> str:
        tool = get_tool_from_command(command)
        if tool is None:
            raise CommandParsingError("Cannot determine tool from empty command")

        await self._ensure_tool(tool)

        if self._windows and "|" in command:
            logger.info("Executing Windows pipeline (blocking thread): %s", command)
            result = await self._run_pipeline_on_worker(command)
            return _check_output(result.returncode, result.stdout, result.stderr)

        logger.info("Executing command via shell: %s", command)
        returncode, stdout, stderr = await self._run_shell(command)
        return _check_output(returncode, stdout, stderr)

    async def _run_shell(self, command: str) -> tuple[int, bytes, bytes]:
        shell, flag = ("cmd", "/C") if self._windows else ("sh", "-c")
        try:
            proc = await asyncio.create_subprocess_exec(
                shell,
                flag,
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise IoError(str(exc)) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandFailure(f"Command timed out after {self._timeout} seconds") from exc
        except OSError as exc:
            raise IoError(str(exc)) from exc

        return proc.returncode, stdout, stderr

    async def _run_pipeline_on_worker(self, command: str) -> subprocess.CompletedProcess:
        try:
            future = self._pool.submit(run_pipeline, command, self._timeout)
        except RuntimeError as exc:
            raise BlockingTaskError(f"Blocking task failed: {exc}") from exc

        try:
            return await asyncio.wrap_future(future)
        except ExecutionError:
            raise
        except OSError as exc:
            raise IoError(str(exc)) from exc
        except Exception as exc:
            raise BlockingTaskError(f"Blocking task failed: {exc}") from exc
