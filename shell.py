"""
Command Execution Engine for Foreman.

WHAT THIS FILE DOES:
-------------------
Runs shell commands on behalf of the agent without ever letting one of them
hang the agent or leave processes behind.

HOW IT WORKS:
------------
1. Safety gating (policy): every segment of a command line is reduced to its
   root command ("git" in "git status") and classified as SAFE, DANGEROUS or
   BLOCKED. Blocked roots are refused outright. Dangerous roots need an
   approval in the ApprovalRegistry (or the auto-approve policy flag).
2. Directory changes ("cd path") never spawn a process. They move the
   caller's WorkingDirectory after checking the target exists, is a
   directory and sits inside the allowed directories.
3. Everything else spawns one child in its own process group. stdout and
   stderr are read incrementally and decoded as UTF-8, falling back to
   latin-1 for any tail that is not valid UTF-8.
4. Timeout or cancellation tears down the whole group: SIGTERM, a short grace
   window, then SIGKILL. On Windows the tree is killed with taskkill.

FAILURES ARE DATA:
-----------------
A command that cannot start, exits non-zero, times out or is killed still
returns a ShellResult. Only SecurityDenied (a refused command or a path
outside the allowed directories) is raised, and it is raised before
anything is spawned.

WORKING DIRECTORY:
-----------------
By default "cd" changes the real process cwd, which is shared by every
concurrently running step. A step that needs its own cwd binds an isolated
WorkingDirectory with bind_working_directory(); asyncio tasks copy context,
so the binding stays local to that step's task.
"""

import asyncio
import codecs
import contextlib
import contextvars
import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from config import SecurityConfig
from errors import SecurityDenied, ValidationError
from schemas import ShellResult

logger = logging.getLogger(__name__)

IS_WINDOWS = os.name == "nt"
READ_CHUNK_SIZE = 4096
EXIT_POLL_INTERVAL = 0.02
CONFIRMATION_PHRASE = "I confirm execution of command: {root}"

DANGEROUS_COMMANDS = frozenset({
    "rm", "del", "rmdir", "rd", "format", "fdisk", "mkfs",
    "chmod", "chown", "sudo", "su", "passwd", "useradd", "userdel",
    "kill", "pkill", "killall", "shutdown", "reboot", "halt", "poweroff",
    "dd", "mount", "umount",
})


# =============================================================================
# SECTION 1: COMMAND CLASSIFICATION
# =============================================================================

class CommandClass(str, Enum):
    """Safety class of a root command."""
    SAFE = "safe"
    DANGEROUS = "dangerous"
    BLOCKED = "blocked"


_SEVERITY = {CommandClass.SAFE: 0, CommandClass.DANGEROUS: 1, CommandClass.BLOCKED: 2}
_SEGMENT_SEPARATORS = re.compile(r"&&|\|\||[;|&\n]")
_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_DIRECTORY_CHANGE = re.compile(r"^(?:cd|chdir)(?:\s+(.+))?$", re.IGNORECASE)


@dataclass(frozen=True)
class CommandCheck:
    """Result of classifying a command line."""
    command_class: CommandClass
    root_command: str
    roots: tuple[str, ...]


def command_roots(command: str) -> list[str]:
    """
    Root command of every segment of a command line.

    Example:
        command_roots("cd src && FOO=1 /usr/bin/make test | tee log")
        # -> ["cd", "make", "tee"]
    """
    roots = []
    for segment in _SEGMENT_SEPARATORS.split(command):
        segment = segment.strip().lstrip("(").strip()
        if not segment:
            continue
        try:
            tokens = shlex.split(segment, posix=not IS_WINDOWS)
        except ValueError:
            tokens = segment.split()
        while tokens and _ENV_ASSIGNMENT.match(tokens[0]):
            tokens.pop(0)
        if tokens:
            roots.append(os.path.basename(tokens[0]).lower())
    return roots


def root_command(command: str) -> str:
    """The leading token of a command, e.g. 'git' for 'git status'."""
    roots = command_roots(command)
    return roots[0] if roots else ""


def classify_command(command: str, blocked_commands: Iterable[str]) -> CommandCheck:
    """
    Classify a command line by its most severe segment.

    Args:
        command: Full command line
        blocked_commands: Root commands that are refused outright

    Returns:
        CommandCheck with the class, the offending root and all roots
    """
    blocked = {b.strip().lower() for b in blocked_commands if b.strip()}
    roots = command_roots(command)

    worst = CommandClass.SAFE
    worst_root = roots[0] if roots else ""
    for root in roots:
        if root in blocked:
            current = CommandClass.BLOCKED
        elif root in DANGEROUS_COMMANDS:
            current = CommandClass.DANGEROUS
        else:
            current = CommandClass.SAFE
        if _SEVERITY[current] > _SEVERITY[worst]:
            worst, worst_root = current, root

    return CommandCheck(command_class=worst, root_command=worst_root, roots=tuple(roots))


def is_directory_change(command: str) -> bool:
    """True for a lone 'cd'/'chdir' command (not part of a chain)."""
    match = _DIRECTORY_CHANGE.match(command.strip())
    if not match:
        return False
    return len(command_roots(command)) == 1


class ApprovalRegistry:
    """
    Root commands the user has approved for this session.

    Append-only and shared by every tool instance. Writes take a lock and
    swap in a new frozenset, so readers never see a half-updated set.
    """

    def __init__(self, approved: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._approved: frozenset[str] = frozenset(a.strip().lower() for a in approved if a.strip())

    def approve(self, command: str) -> str:
        """Approve the root of a command. Returns the approved root."""
        root = root_command(command) or command.strip().lower()
        with self._lock:
            self._approved = self._approved | {root}
        logger.info("Approved command: %s", root)
        return root

    def is_approved(self, root: str) -> bool:
        return root.lower() in self._approved

    def approved_commands(self) -> list[str]:
        return sorted(self._approved)


# =============================================================================
# SECTION 2: WORKING DIRECTORY
# =============================================================================

class WorkingDirectory:
    """
    Where commands run.

    Without a path this tracks the real process cwd (os.getcwd/os.chdir).
    With a path it is isolated: changes stay inside this object.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._path = Path(path).expanduser().resolve() if path is not None else None

    @property
    def isolated(self) -> bool:
        return self._path is not None

    @property
    def path(self) -> Path:
        return self._path if self._path is not None else Path.cwd()

    def change(self, target: Path) -> None:
        if self._path is not None:
            self._path = target
        else:
            os.chdir(target)


PROCESS_WORKING_DIRECTORY = WorkingDirectory()

_bound_working_directory: contextvars.ContextVar[Optional[WorkingDirectory]] = contextvars.ContextVar(
    "bound_working_directory", default=None
)


def current_working_directory() -> WorkingDirectory:
    """The WorkingDirectory bound to the current task, or the process one."""
    return _bound_working_directory.get() or PROCESS_WORKING_DIRECTORY


def bind_working_directory(working_directory: WorkingDirectory) -> contextvars.Token:
    """Bind a WorkingDirectory for the current task (and tasks it spawns)."""
    return _bound_working_directory.set(working_directory)


def unbind_working_directory(token: contextvars.Token) -> None:
    _bound_working_directory.reset(token)


def is_path_allowed(path: Union[str, Path], allowed_directories: Iterable[str], base: Optional[Path] = None) -> bool:
    """
    Check that a path lies inside one of the allowed directories.

    Relative allowed directories are resolved against base (the current
    working directory by default).
    """
    base = base or current_working_directory().path
    target = (base / Path(path).expanduser()).resolve()
    for directory in allowed_directories:
        root = (base / Path(directory).expanduser()).resolve()
        if target == root or root in target.parents:
            return True
    return False


# =============================================================================
# SECTION 3: OUTPUT DECODING
# =============================================================================

class OutputDecoder:
    """
    Incremental UTF-8 decoder that never raises.

    Multi-byte characters split across reads are held back until complete.
    If the stream contains bytes that are not valid UTF-8, the undecodable
    tail of that read is decoded as latin-1 instead.
    """

    def __init__(self):
        self._pending = b""
        self.fallback_used = False

    def decode(self, data: bytes, final: bool = False) -> str:
        buffered = self._pending + data
        self._pending = b""
        decoder = codecs.getincrementaldecoder("utf-8")()
        try:
            text = decoder.decode(buffered, final)
            self._pending = decoder.getstate()[0]
            return text
        except UnicodeDecodeError as e:
            self.fallback_used = True
            good = buffered[:e.start].decode("utf-8")
            return good + buffered[e.start:].decode("latin-1")


async def _pump(stream: asyncio.StreamReader, sink: list[str]) -> None:
    decoder = OutputDecoder()
    try:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            sink.append(decoder.decode(chunk))
    finally:
        sink.append(decoder.decode(b"", final=True))


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return f"SIG{number}"


def _signal_group(pid: int, sig: int) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, sig)


async def _wait_exit(process: asyncio.subprocess.Process) -> int:
    """
    Wait until the shell itself has exited.

    process.wait() also waits for the pipes to close, which never happens
    while a background child keeps stdout open. returncode is set as soon as
    the shell is reaped.
    """
    while process.returncode is None:
        await asyncio.sleep(EXIT_POLL_INTERVAL)
    return process.returncode


# =============================================================================
# SECTION 4: EXECUTOR
# =============================================================================

class ShellExecutor:
    """
    Runs commands with gating, timeouts, cancellation and clean teardown.

    Example usage:
        executor = ShellExecutor(lambda: config.security, approvals)
        result = await executor.run("pytest -q", timeout_ms=60000)
        if not result.success:
            print(result.output)
    """

    def __init__(
        self,
        security: Optional[Callable[[], SecurityConfig]] = None,
        approvals: Optional[ApprovalRegistry] = None,
    ):
        self._security = security or SecurityConfig
        self.approvals = approvals if approvals is not None else ApprovalRegistry()
        self._shell = None if IS_WINDOWS else shutil.which("bash")

    @property
    def security(self) -> SecurityConfig:
        """Current security settings (re-read on every access)."""
        return self._security()

    def check_command(self, command: str) -> CommandCheck:
        """
        Apply the safety policy to a command line.

        Raises:
            SecurityDenied: If a root is blocked, or dangerous and not approved
        """
        security = self.security
        check = classify_command(command, security.blocked_commands)

        if check.command_class == CommandClass.BLOCKED:
            logger.warning("Blocked command refused: %s", command)
            raise SecurityDenied(
                f"Command blocked for security reasons: {check.root_command}",
                root_command=check.root_command,
            )

        if check.command_class == CommandClass.DANGEROUS and not security.auto_approve_dangerous:
            pending = [
                root for root in check.roots
                if root in DANGEROUS_COMMANDS and not self.approvals.is_approved(root)
            ]
            if pending:
                root = pending[0]
                phrase = CONFIRMATION_PHRASE.format(root=root)
                raise SecurityDenied(
                    f"Command '{root}' is potentially dangerous and requires user confirmation. "
                    f"Ask the user to reply with: \"{phrase}\"",
                    root_command=root,
                    needs_confirmation=True,
                )

        return check

    async def run(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ShellResult:
        """
        Gated entry point: policy check, then cd handling or execution.

        Raises:
            ValidationError: If the command is empty
            SecurityDenied: If the policy refuses the command or the cwd
        """
        command = command.strip()
        if not command:
            raise ValidationError("Command must not be empty", field="command")

        self.check_command(command)

        if is_directory_change(command):
            return self.change_directory(command)

        return await self.execute(command, working_dir=cwd, timeout_ms=timeout_ms, cancel_event=cancel_event)

    def change_directory(self, command: str) -> ShellResult:
        """
        Handle 'cd <path>' by moving the current WorkingDirectory.

        A bare 'cd' goes to the home directory.

        Raises:
            SecurityDenied: If the target is outside the allowed directories
        """
        match = _DIRECTORY_CHANGE.match(command.strip())
        argument = (match.group(1) or "").strip() if match else ""
        if argument:
            try:
                parts = shlex.split(argument, posix=not IS_WINDOWS)
            except ValueError:
                parts = [argument]
            argument = parts[0] if parts else ""

        working_directory = current_working_directory()
        before = working_directory.path
        target = (before / Path(argument or "~").expanduser()).resolve()

        def failure(reason: str) -> ShellResult:
            return ShellResult(
                success=False, command=command, cwd=str(before),
                stderr=reason, exit_code=1, error=reason,
            )

        if not target.exists():
            return failure(f"Directory does not exist: {target}")
        if not target.is_dir():
            return failure(f"Not a directory: {target}")
        if not is_path_allowed(target, self.security.allowed_directories, base=before):
            logger.warning("Directory change outside allowed directories refused: %s", target)
            raise SecurityDenied(
                f"Access denied: {target} is outside the allowed directories",
                path=str(target),
            )

        working_directory.change(target)
        logger.info("Working directory changed: %s -> %s", before, target)
        return ShellResult(
            success=True, command=command, cwd=str(target), exit_code=0,
            stdout=f"Directory changed from {before} to {target}",
        )

    async def execute(
        self,
        command: str,
        working_dir: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ShellResult:
        """
        Run one command in a fresh process group (no policy check).

        Args:
            command: Command line passed to the shell
            working_dir: Directory to run in, relative to the current one
            timeout_ms: Milliseconds before teardown (config default if None,
                no limit if 0 or negative)
            cancel_event: Setting this event tears the command down

        Returns:
            ShellResult; never raises for command failures

        Raises:
            SecurityDenied: If working_dir is outside the allowed directories
        """
        security = self.security
        if timeout_ms is None:
            timeout_ms = security.default_timeout_ms

        base = current_working_directory().path
        cwd = base
        if working_dir:
            cwd = (base / Path(working_dir).expanduser()).resolve()
            if not is_path_allowed(cwd, security.allowed_directories, base=base):
                raise SecurityDenied(
                    f"Access denied: {cwd} is outside the allowed directories",
                    path=str(cwd),
                )

        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        if cancel_event is not None and cancel_event.is_set():
            return ShellResult(
                success=False, command=command, cwd=str(cwd), aborted=True,
                error="Command was cancelled before it started",
            )

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env={**os.environ, "FOREMAN_SHELL": "1"},
                **self._spawn_options(),
            )
        except OSError as e:
            logger.warning("Failed to start command %r: %s", command, e)
            return ShellResult(
                success=False, command=command, cwd=str(cwd), exit_code=1,
                stderr=str(e), error=f"Failed to start command: {e}",
                duration_ms=elapsed_ms(),
            )

        logger.debug("Started pid %d in %s: %s", process.pid, cwd, command)
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        readers = [
            asyncio.ensure_future(_pump(process.stdout, stdout_parts)),
            asyncio.ensure_future(_pump(process.stderr, stderr_parts)),
        ]

        try:
            outcome = await self._wait(process, timeout_ms, cancel_event)
        except asyncio.CancelledError:
            await self._terminate(process)
            for reader in readers:
                reader.cancel()
            raise

        aborted = outcome != "exited"
        timed_out = outcome == "timeout"
        if aborted:
            logger.info("Tearing down pid %d (%s): %s", process.pid, outcome, command)
            await self._terminate(process)

        returncode = await _wait_exit(process)
        if not await self._drain(readers):
            # The shell is gone but background children still hold its pipes.
            logger.info("Stopping background processes left by pid %d: %s", process.pid, command)
            await self._stop_group(process.pid)
            if not await self._drain(readers):
                for reader in readers:
                    reader.cancel()
                await asyncio.gather(*readers, return_exceptions=True)

        exit_code: Optional[int] = returncode
        signal_name = None
        if returncode is not None and returncode < 0:
            signal_name = _signal_name(-returncode)
            exit_code = None

        success = returncode == 0 and not aborted
        error = None
        if timed_out:
            error = f"Command timed out after {timeout_ms}ms"
        elif aborted:
            error = "Command was cancelled"
        elif signal_name:
            error = f"Command terminated by signal {signal_name}"
        elif not success:
            error = f"Command exited with code {returncode}"

        return ShellResult(
            success=success,
            command=command,
            cwd=str(cwd),
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            exit_code=exit_code,
            signal=signal_name,
            aborted=aborted,
            timed_out=timed_out,
            pid=process.pid,
            error=error,
            duration_ms=elapsed_ms(),
        )

    def _spawn_options(self) -> dict:
        if IS_WINDOWS:
            return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
        options = {"start_new_session": True}
        if self._shell:
            options["executable"] = self._shell
        return options

    async def _wait(
        self,
        process: asyncio.subprocess.Process,
        timeout_ms: int,
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        """Wait for exit, timeout or cancellation. Returns which came first."""
        exit_waiter = asyncio.ensure_future(_wait_exit(process))
        waiters = {exit_waiter}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        timeout = timeout_ms / 1000 if timeout_ms and timeout_ms > 0 else None
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if exit_waiter in done:
            return "exited"
        if cancel_waiter is not None and cancel_waiter in done:
            return "cancelled"
        return "timeout"

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Two-phase teardown of the process group: SIGTERM, grace, SIGKILL."""
        if process.returncode is not None:
            return
        await self._stop_group(process.pid, process)

    async def _stop_group(self, pid: int, process: Optional[asyncio.subprocess.Process] = None) -> None:
        """SIGTERM the group, wait out the grace window, SIGKILL what is left."""
        grace = self.security.grace_period_ms / 1000

        if IS_WINDOWS:
            killer = await asyncio.create_subprocess_exec(
                "taskkill", "/pid", str(pid), "/t", "/f",
                stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
            )
            await killer.wait()
            return

        _signal_group(pid, signal.SIGTERM)
        if process is not None:
            try:
                await asyncio.wait_for(_wait_exit(process), timeout=grace)
            except asyncio.TimeoutError:
                logger.debug("pid %d ignored SIGTERM for %.0fms", pid, grace * 1000)
        else:
            await asyncio.sleep(grace)
        # Stragglers in the group outlive the leader; SIGKILL whatever is left.
        _signal_group(pid, signal.SIGKILL)

    async def _drain(self, readers: list[asyncio.Future]) -> bool:
        """Wait up to one grace window for both pipes to close. False if still open."""
        grace = self.security.grace_period_ms / 1000
        try:
            await asyncio.wait_for(asyncio.shield(asyncio.gather(*readers)), timeout=grace)
        except asyncio.TimeoutError:
            logger.debug("Output pipes still open after exit")
            return False
        return True
