"""Session controller, deployed into the target and run there.

This file is copied verbatim into the session directory inside the target and
executed with the target's ``python3``. It must therefore stay a single,
standard-library-only module.

States of a session directory:

- Absent: no state files
- Running: ``port``, ``count``, ``pid1``, ``pid2`` present, both processes
  alive and ``pid2`` listening on ``port``
- Stale: some state present but the session is not Running; cleaned back
  to Absent by ``stop``

Every mutating operation runs while holding an exclusive ``flock`` on
``<session_dir>/lock``. The lock lives in the target's filesystem, so it
serializes unrelated callers, not just threads of one orchestrator.

Protocol: every subcommand prints exactly one line to stdout. ``status`` is
the exception and prints free-form text.

Usage:
    controller.py connect
    controller.py start [attempts]
    controller.py connect-or-start [attempts]
    controller.py disconnect [grace_seconds]
    controller.py stop
    controller.py install < server.tar.gz
    controller.py status
    controller.py synchronized-connect
    controller.py synchronized-start [attempts]
    controller.py synchronized-disconnect [grace_seconds]
"""

from __future__ import annotations

import argparse
import fcntl
import json
import logging
import os
import re
import signal
import subprocess
import sys
import tarfile
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, BinaryIO

logger = logging.getLogger("boxlink.controller")

# protocol replies
NOT_RUNNING = "NOT RUNNING"
NOT_INSTALLED = "NOT INSTALLED"
ERROR = "ERROR"
DISCONNECTED = "DISCONNECTED"
STOPPED = "STOPPED"
INSTALLED = "INSTALLED"

DEFAULT_SERVER_ARGUMENTS = [
    "--accept-server-license-terms",
    "--telemetry-level",
    "off",
    "--host",
    "localhost",
    "--port",
    "0",
    "--without-connection-token",
]
DEFAULT_LISTENING_PATTERN = r"Extension host agent listening on ([0-9]+)"
DEFAULT_START_ATTEMPTS = 10
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_SYNCHRONIZED_GRACE = 5.0

PORT_FILE = "port"
LOG_FILE = "log"
COUNT_FILE = "count"
PID1_FILE = "pid1"
PID2_FILE = "pid2"
LOCK_FILE = "lock"
STATE_FILES = (PORT_FILE, COUNT_FILE, PID1_FILE, PID2_FILE)


class SettingsError(Exception):
    """Raised when the controller settings file is missing or invalid."""


@contextmanager
def acquire_session_lock(
    lock_path: Path,
    operation: str = "session operation",
) -> Generator[None, None, None]:
    """Hold an exclusive advisory lock on ``lock_path``.

    The lock file is created if needed and never removed. The caller waits
    as long as it takes: contention is the intended serialization, not an
    error.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a") as file_handle:
        try:
            _acquire_lock_with_backoff(file_handle, lock_path, operation)
            yield
        finally:
            _release_lock(file_handle)


def _acquire_lock_with_backoff(file_handle: IO[str], lock_path: Path, operation: str) -> None:
    """Retry a non-blocking flock with delays 0.1s, 0.2s, 0.4s ... capped at 2s."""
    delay = 0.1

    while True:
        try:
            fcntl.flock(file_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except BlockingIOError:
            pass

        if delay == 0.1:
            logger.debug(f"Waiting for session lock {lock_path} ({operation})")
        time.sleep(delay)
        delay = min(delay * 2, 2.0)


def _release_lock(file_handle: IO[str]) -> None:
    try:
        fcntl.flock(file_handle.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        logger.debug(f"Error during lock cleanup: {e}")


@dataclass
class ControllerSettings:
    """Settings written next to the controller by the orchestrator."""

    install_dir: str
    application_name: str
    server_arguments: list[str] = field(default_factory=lambda: list(DEFAULT_SERVER_ARGUMENTS))
    listening_pattern: str = DEFAULT_LISTENING_PATTERN
    environment: dict[str, str] = field(default_factory=dict)
    poll_interval: float = DEFAULT_POLL_INTERVAL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ControllerSettings:
        try:
            return cls(
                install_dir=data["install_dir"],
                application_name=data["application_name"],
                server_arguments=list(data.get("server_arguments", DEFAULT_SERVER_ARGUMENTS)),
                listening_pattern=data.get("listening_pattern", DEFAULT_LISTENING_PATTERN),
                environment={str(k): str(v) for k, v in data.get("environment", {}).items()},
                poll_interval=float(data.get("poll_interval", DEFAULT_POLL_INTERVAL)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SettingsError(f"Invalid controller settings: {e}") from e

    @classmethod
    def load(cls, path: Path) -> ControllerSettings:
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise SettingsError(f"Cannot read controller settings {path}: {e}") from e
        return cls.from_dict(data)

    def server_command(self) -> Path | None:
        """Locate the installed server launcher, or None if not installed."""
        install_dir = Path(self.install_dir)
        candidate = install_dir / "bin" / self.application_name
        if candidate.is_file():
            return candidate
        if install_dir.is_dir():
            for path in sorted(install_dir.rglob(self.application_name)):
                if path.is_file():
                    return path
        return None


@dataclass
class SessionState:
    """Contents of a complete group of state files."""

    port: int
    count: int
    pid1: int
    pid2: int


class SessionStatus(Enum):
    ABSENT = "absent"
    RUNNING = "running"
    STALE = "stale"


class ProcessTable:
    """Process queries backed by ``/proc``.

    The launched server command is a wrapper script; signalling it does not
    stop the real server when there is no tty, so its child has to be found
    and tracked too.
    """

    def __init__(self, proc: Path = Path("/proc")):
        self.proc = proc

    def _stat_fields(self, pid: int) -> list[str] | None:
        try:
            data = (self.proc / str(pid) / "stat").read_text()
        except OSError:
            return None
        # comm may contain spaces and parentheses; fields resume after the last ")"
        return data[data.rindex(")") + 2 :].split()

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            pass
        fields = self._stat_fields(pid)
        # zombies are dead, whether or not someone reaps them
        return not (fields and fields[0] in ("Z", "X"))

    def children(self, pid: int) -> list[int]:
        result = []
        for entry in self.proc.iterdir():
            if not entry.name.isdigit():
                continue
            fields = self._stat_fields(int(entry.name))
            if fields and len(fields) > 1 and fields[1] == str(pid):
                result.append(int(entry.name))
        return sorted(result)

    def _listening_inodes(self, port: int) -> set[str]:
        inodes = set()
        for table in ("tcp", "tcp6"):
            try:
                lines = (self.proc / "net" / table).read_text().splitlines()[1:]
            except OSError:
                continue
            for line in lines:
                fields = line.split()
                if len(fields) < 10 or fields[3] != "0A":
                    continue
                if int(fields[1].rsplit(":", 1)[1], 16) == port:
                    inodes.add(fields[9])
        return inodes

    def owns_listening_port(self, pid: int, port: int) -> bool:
        inodes = self._listening_inodes(port)
        if not inodes:
            return False
        fd_dir = self.proc / str(pid) / "fd"
        try:
            fds = list(fd_dir.iterdir())
        except OSError:
            return False
        for fd in fds:
            try:
                link = os.readlink(fd)
            except OSError:
                continue
            if link.startswith("socket:[") and link[8:-1] in inodes:
                return True
        return False

    def terminate(self, pid: int) -> None:
        """Send SIGTERM; a missing process counts as already stopped."""
        if pid <= 0:
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Not allowed to stop process {pid}: {e}")


def launch_detached(command: list[str], log_handle: BinaryIO, env: dict[str, str]) -> subprocess.Popen:
    """Start ``command`` in its own session with output appended to the log."""
    return subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=log_handle,
        stderr=subprocess.STDOUT,
        env=env,
        start_new_session=True,
    )


class SessionController:
    """State machine over one session directory.

    Public operations take the session lock; ``_``-prefixed ones assume the
    caller holds it.
    """

    def __init__(
        self,
        session_dir: Path,
        settings: ControllerSettings,
        processes: ProcessTable | None = None,
        launcher: Callable[[list[str], BinaryIO, dict[str, str]], Any] = launch_detached,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_dir = Path(session_dir)
        self.settings = settings
        self.processes = processes or ProcessTable()
        self.launcher = launcher
        self.sleep = sleep
        self.listening_pattern = re.compile(settings.listening_pattern)

    def path(self, name: str) -> Path:
        return self.session_dir / name

    @contextmanager
    def _locked(self, operation: str) -> Generator[None, None, None]:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        with acquire_session_lock(self.path(LOCK_FILE), operation):
            yield

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    def connect(self) -> str:
        with self._locked("connect"):
            return self._connect()

    def start(self, attempts: int = DEFAULT_START_ATTEMPTS) -> str:
        with self._locked("start"):
            return self._start(attempts)

    def connect_or_start(self, attempts: int = DEFAULT_START_ATTEMPTS) -> str:
        with self._locked("connect-or-start"):
            reply = self._connect()
            if reply.isdigit():
                return reply
            return self._start(attempts)

    def disconnect(self, grace: float = 0.0) -> str:
        with self._locked("disconnect"):
            return self._disconnect(grace)

    def stop(self) -> str:
        with self._locked("stop"):
            return self._stop()

    def install(self, stream: BinaryIO) -> str:
        """Extract a gzip compressed tarball from ``stream`` into the install dir.

        Overwrites existing files, so repeating an install is harmless.
        """
        install_dir = Path(self.settings.install_dir)
        install_dir.mkdir(parents=True, exist_ok=True)
        with tarfile.open(fileobj=stream, mode="r|gz") as tar:
            if hasattr(tarfile, "tar_filter"):
                tar.extractall(install_dir, filter="tar")
            else:
                tar.extractall(install_dir)
        logger.info(f"Installed server into {install_dir}")
        return INSTALLED

    def status(self) -> str:
        """Diagnostic dump; reads without taking the lock."""
        status, state = self.inspect()
        lines = []
        if status is SessionStatus.RUNNING and state is not None:
            lines.append("server is running")
            lines.append(f"client count: {state.count}")
            lines.append(f"pid1: {state.pid1}, pid2: {state.pid2}")
            lines.append(f"port: {state.port}")
        elif status is SessionStatus.STALE:
            lines.append("server is NOT running (stale session files)")
        else:
            lines.append("server is NOT running")
        lines.append(f"session directory: {self.session_dir}")
        lines.append(f"server command: {self.settings.server_command() or NOT_INSTALLED}")
        lines.append("-" * 59)
        try:
            lines.append(self.path(LOG_FILE).read_text(errors="replace").rstrip("\n"))
        except OSError:
            lines.append("(no log)")
        return "\n".join(lines)

    def inspect(self) -> tuple[SessionStatus, SessionState | None]:
        """Classify the session directory as Absent, Running or Stale."""
        present = [name for name in STATE_FILES if self.path(name).exists()]
        if not present:
            return SessionStatus.ABSENT, None

        state = self._read_state()
        if state is None:
            return SessionStatus.STALE, None
        if state.count <= 0:
            return SessionStatus.STALE, state
        if not (self.processes.is_alive(state.pid1) and self.processes.is_alive(state.pid2)):
            return SessionStatus.STALE, state
        if not self.processes.owns_listening_port(state.pid2, state.port):
            return SessionStatus.STALE, state
        return SessionStatus.RUNNING, state

    # ------------------------------------------------------------------
    # operations under lock
    # ------------------------------------------------------------------

    def _connect(self) -> str:
        status, state = self.inspect()
        if status is SessionStatus.RUNNING and state is not None:
            self._write_value(COUNT_FILE, state.count + 1)
            logger.info(f"Client connected to port {state.port}, count {state.count + 1}")
            return str(state.port)
        if status is SessionStatus.STALE:
            logger.warning("Session is stale, cleaning up")
            self._stop()
        return NOT_RUNNING

    def _start(self, attempts: int) -> str:
        command = self.settings.server_command()
        if command is None:
            return NOT_INSTALLED

        status, state = self.inspect()
        if status is SessionStatus.RUNNING and state is not None:
            # never run a second server for the same session
            logger.warning(f"Server already running on port {state.port}")
            self._write_value(COUNT_FILE, state.count + 1)
            return str(state.port)
        if status is SessionStatus.STALE:
            self._stop()

        log_path = self.path(LOG_FILE)
        offset = log_path.stat().st_size if log_path.exists() else 0
        env = dict(os.environ)
        env.update(self.settings.environment)

        logger.info(f"Starting server {command}")
        with open(log_path, "ab") as log_handle:
            process = self.launcher([str(command), *self.settings.server_arguments], log_handle, env)

        port = self._wait_for_port(process, log_path, offset, attempts)
        if port is None:
            logger.error(f"Server did not report a listening port after {attempts} attempts")
            self._terminate_tree(process.pid)
            self._stop()
            return ERROR

        children = self.processes.children(process.pid)
        pid2 = children[0] if children else process.pid
        try:
            self._write_value(PID1_FILE, process.pid)
            self._write_value(PID2_FILE, pid2)
            self._write_value(COUNT_FILE, 1)
            self._write_value(PORT_FILE, port)
        except OSError:
            self._terminate_tree(process.pid)
            self._stop()
            raise

        logger.info(f"Server listening on port {port} (pid1 {process.pid}, pid2 {pid2})")
        return str(port)

    def _wait_for_port(self, process: Any, log_path: Path, offset: int, attempts: int) -> int | None:
        for attempt in range(attempts):
            match = self.listening_pattern.search(self._read_log(log_path, offset))
            if match:
                return int(match.group(1))
            if process.poll() is not None:
                logger.error(f"Server exited with status {process.poll()}")
                return None
            if attempt + 1 < attempts:
                self.sleep(self.settings.poll_interval)
        return None

    @staticmethod
    def _read_log(log_path: Path, offset: int) -> str:
        try:
            with open(log_path, "rb") as f:
                f.seek(offset)
                return f.read().decode(errors="replace")
        except OSError:
            return ""

    def _disconnect(self, grace: float) -> str:
        # grace period absorbs a client that reconnects right away
        if grace > 0:
            self.sleep(grace)

        count_path = self.path(COUNT_FILE)
        if not count_path.exists():
            return NOT_RUNNING

        count = self._read_int(COUNT_FILE)
        if count is None or count <= 1:
            self._stop()
            return STOPPED

        self._write_value(COUNT_FILE, count - 1)
        logger.info(f"Client disconnected, count {count - 1}")
        return DISCONNECTED

    def _stop(self) -> str:
        for name in (PID2_FILE, PID1_FILE):
            pid = self._read_int(name)
            if pid is not None:
                self.processes.terminate(pid)
        for name in STATE_FILES:
            self.path(name).unlink(missing_ok=True)
        logger.info("Session stopped")
        return STOPPED

    def _terminate_tree(self, pid: int) -> None:
        for child in self.processes.children(pid):
            self.processes.terminate(child)
        self.processes.terminate(pid)

    # ------------------------------------------------------------------
    # state files
    # ------------------------------------------------------------------

    def _read_int(self, name: str) -> int | None:
        try:
            return int(self.path(name).read_text().strip())
        except (OSError, ValueError):
            return None

    def _read_state(self) -> SessionState | None:
        values = {name: self._read_int(name) for name in STATE_FILES}
        if any(value is None for value in values.values()):
            return None
        return SessionState(
            port=values[PORT_FILE],  # type: ignore[arg-type]
            count=values[COUNT_FILE],  # type: ignore[arg-type]
            pid1=values[PID1_FILE],  # type: ignore[arg-type]
            pid2=values[PID2_FILE],  # type: ignore[arg-type]
        )

    def _write_value(self, name: str, value: int) -> None:
        path = self.path(name)
        temp_path = path.with_name(f".{name}.tmp")
        temp_path.write_text(f"{value}\n")
        os.replace(temp_path, path)


def _configure_logging(log_path: Path) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    handler = logging.FileHandler(log_path)
    handler.setFormatter(
        logging.Formatter("%(asctime)s controller[%(process)d] %(levelname)s %(message)s")
    )
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="boxlink session controller")
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("status")
    commands.add_parser("connect")
    commands.add_parser("synchronized-connect")
    commands.add_parser("stop")
    commands.add_parser("install")
    for name in ("start", "connect-or-start", "synchronized-start"):
        sub = commands.add_parser(name)
        sub.add_argument("attempts", nargs="?", type=int, default=DEFAULT_START_ATTEMPTS)
    sub = commands.add_parser("disconnect")
    sub.add_argument("grace", nargs="?", type=float, default=0.0)
    sub = commands.add_parser("synchronized-disconnect")
    sub.add_argument("grace", nargs="?", type=float, default=DEFAULT_SYNCHRONIZED_GRACE)
    return parser


def run_command(controller: SessionController, args: argparse.Namespace, stdin: BinaryIO) -> str:
    command = args.command or "status"
    if command in ("connect", "synchronized-connect"):
        return controller.connect()
    if command == "start":
        return controller.start(args.attempts)
    if command in ("connect-or-start", "synchronized-start"):
        return controller.connect_or_start(args.attempts)
    if command in ("disconnect", "synchronized-disconnect"):
        return controller.disconnect(args.grace)
    if command == "stop":
        return controller.stop()
    if command == "install":
        return controller.install(stdin)
    return controller.status()


def main(argv: list[str] | None = None, script: Path | None = None) -> int:
    """Entry point; the session directory is the directory of this script."""
    args = build_parser().parse_args(argv)
    script = (script or Path(__file__)).resolve()
    session_dir = script.parent
    session_dir.mkdir(parents=True, exist_ok=True)
    _configure_logging(session_dir / LOG_FILE)

    try:
        settings = ControllerSettings.load(script.with_suffix(".json"))
        controller = SessionController(session_dir, settings)
        reply = run_command(controller, args, sys.stdin.buffer)
    except SettingsError as e:
        logger.error(str(e))
        print(f"controller: {e}", file=sys.stderr)
        print(ERROR)
        return 2
    except (tarfile.TarError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"controller: {args.command} failed: {e}", file=sys.stderr)
        print(ERROR)
        return 1

    print(reply, flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
