"""Command execution inside target environments.

This module is the only place boxlink talks to a target. Everything else is
expressed in terms of the two primitives, ``execute`` and
``execute_with_input``, so any transport (distrobox, podman exec, ssh) can be
plugged in by subclassing ``CommandExecutor``.

Security:
- Arguments are passed as an argv list, never through a host shell
- Paths given to helper scripts are passed as positional parameters
- Timeout enforcement
"""

import asyncio
import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class CommandExecutionError(Exception):
    """Raised when a command cannot be executed at all."""

    pass


@dataclass
class CommandResult:
    """Result from a command executed inside a target."""

    target: str
    stdout: str
    stderr: str
    exit_code: int
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def get_output(self) -> str:
        """Get combined output."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


# mkdir + write to a temp name + rename, so a reader never sees half a file
_WRITE_FILE_SCRIPT = (
    'set -e; mkdir -p "$(dirname "$1")"; cat >"$1.tmp.$$"; '
    'if [ "$2" = 1 ]; then chmod +x "$1.tmp.$$"; fi; mv -f "$1.tmp.$$" "$1"'
)


class CommandExecutor(ABC):
    """Run commands inside one target environment.

    Subclasses implement ``execute`` and ``execute_with_input``; file helpers
    are built on top of them.
    """

    def __init__(self, target: str):
        self.target = target

    @abstractmethod
    async def execute(self, args: list[str]) -> CommandResult:
        """Run ``args`` inside the target and capture its output."""

    @abstractmethod
    async def execute_with_input(self, data: bytes, args: list[str]) -> CommandResult:
        """Run ``args`` inside the target with ``data`` fed to stdin."""

    async def shell(self, script: str, *params: str) -> CommandResult:
        """Run a POSIX shell snippet; ``params`` become ``$1``, ``$2``..."""
        return await self.execute(["sh", "-c", script, "sh", *params])

    async def write_file(self, path: str, data: bytes | str, executable: bool = True) -> None:
        """Write ``data`` to ``path`` inside the target, optionally chmod +x.

        Raises:
            CommandExecutionError: If the file cannot be written
        """
        if isinstance(data, str):
            data = data.encode()
        result = await self.execute_with_input(
            data, ["sh", "-c", _WRITE_FILE_SCRIPT, "sh", path, "1" if executable else "0"]
        )
        if not result.success:
            raise CommandExecutionError(
                f"Failed to write {path} in {self.target}: {result.stderr.strip()}"
            )
        logger.debug(f"Wrote {len(data)} bytes to {self.target}:{path}")

    async def read_file(self, path: str) -> str:
        """Read a text file from the target.

        Raises:
            FileNotFoundError: If the file cannot be read
        """
        result = await self.execute(["cat", path])
        if not result.success:
            raise FileNotFoundError(f"{self.target}:{path}")
        return result.stdout

    async def is_file(self, path: str) -> bool:
        result = await self.execute(["test", "-f", path])
        return result.success


class SubprocessExecutor(CommandExecutor):
    """Execute commands by prefixing them with a host-side launcher.

    Example:
        >>> executor = SubprocessExecutor(["distrobox", "enter", "--name", "dev", "--"], "dev")
        >>> result = await executor.execute(["uname", "-m"])
    """

    def __init__(self, prefix: list[str], target: str, timeout: float | None = 120.0):
        super().__init__(target)
        self.prefix = list(prefix)
        self.timeout = timeout

    async def execute(self, args: list[str]) -> CommandResult:
        return await self._run(args, None)

    async def execute_with_input(self, data: bytes, args: list[str]) -> CommandResult:
        return await self._run(args, data)

    async def _run(self, args: list[str], data: bytes | None) -> CommandResult:
        argv = [*self.prefix, *args]
        logger.debug(f"Executing in {self.target}: {args}")
        start_time = time.time()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandExecutionError(f"Failed to execute {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(data), timeout=self.timeout)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise CommandExecutionError(
                f"Command timed out after {self.timeout}s in {self.target}: {args}"
            ) from e

        return CommandResult(
            target=self.target,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=process.returncode if process.returncode is not None else -1,
            duration=time.time() - start_time,
        )


class ContainerCommand:
    """How to reach the container manager from wherever boxlink runs.

    Heuristics, in this order:
    - a ``distrobox`` command in ``$PATH``
    - inside a flatpak sandbox, ``flatpak-spawn --host distrobox``
    - inside a distrobox guest, ``distrobox-host-exec distrobox``
    """

    FLATPAK_INFO = Path("/.flatpak-info")

    def __init__(self, argv: list[str]):
        self.argv = list(argv)

    @classmethod
    def auto(cls) -> "ContainerCommand":
        """Detect the container manager command.

        Raises:
            CommandExecutionError: If no way to reach distrobox is found, or
                when running under the test suite
        """
        # tests must pass an explicit ContainerCommand or a fake executor
        if os.getenv("BOXLINK_TEST_MODE") == "true":
            raise CommandExecutionError("container detection is disabled in test mode")
        if shutil.which("distrobox"):
            return cls(["distrobox"])
        if cls.FLATPAK_INFO.exists() and shutil.which("flatpak-spawn"):
            return cls(["flatpak-spawn", "--host", "distrobox"])
        if shutil.which("distrobox-host-exec") or os.environ.get("CONTAINER_ID"):
            return cls(["distrobox-host-exec", "distrobox"])
        raise CommandExecutionError("distrobox command not found")

    def enter_prefix(self, name: str) -> list[str]:
        return [*self.argv, "enter", "--name", name, "--"]

    def executor_for(self, name: str, timeout: float | None = 120.0) -> SubprocessExecutor:
        return SubprocessExecutor(self.enter_prefix(name), name, timeout=timeout)
