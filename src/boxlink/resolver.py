"""Resolve a live server endpoint for a target.

Resolution is two-phase:

1. Optimistic: run ``synchronized-start`` against the controller assumed to
   be deployed already. A warm target answers with a port right away.
2. Pessimistic: (re)deploy the controller and its settings, install the
   server if its binary is missing, then retry ``synchronized-start`` once.

Phase 2 does everything phase 1 does; the split only saves the round trips
of deploying and probing when the target is warm.

Every successful resolution returns a ``ServerLease``. Releasing it issues
exactly one ``synchronized-disconnect``, which lets the controller stop the
server once the last client is gone.

Public API:
    TargetRegistry: Lazily probed targets, keyed by name
    ServerResolver: The resolution protocol
    ServerLease: A resolved endpoint paired with its disconnect
"""

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from importlib import resources

from boxlink import __version__
from boxlink.command_executor import CommandExecutionError, CommandExecutor, CommandResult
from boxlink.config_manager import BoxlinkConfig
from boxlink.controller import DEFAULT_LISTENING_PATTERN, DEFAULT_SERVER_ARGUMENTS, INSTALLED
from boxlink.downloader import ProgressCallback, ServerDownloader
from boxlink.errors import ControllerError, InstallFailure, ProbeFailure, ServerUnavailableError
from boxlink.platform_detector import PlatformDetector, PlatformInfo
from boxlink.session_paths import (
    SessionLayout,
    download_url,
    install_path,
    server_command_path,
    session_identifier,
)

logger = logging.getLogger(__name__)

LOCALHOST = "localhost"

_DIRECTORY_PROBE = 'printf "%s\\n%s\\n" "$HOME" "${XDG_RUNTIME_DIR:-/tmp}"'


@dataclass
class TargetHandle:
    """A probed target.

    Probed facts are cached for the life of the registry entry, never persisted.
    """

    name: str
    executor: CommandExecutor
    platform: PlatformInfo
    home: str
    runtime_dir: str


class TargetRegistry:
    """Targets keyed by name, populated on first use.

    Entries are only invalidated by an explicit ``refresh``. A target whose
    probes fail is not cached, so the next ``get`` probes it again.
    """

    def __init__(self, executor_factory: Callable[[str], CommandExecutor]):
        self._executor_factory = executor_factory
        self._targets: dict[str, TargetHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, name: str) -> TargetHandle:
        """Return the probed handle for ``name``, probing it if needed.

        Raises:
            UnsupportedPlatform: If the target's platform is not supported
            ProbeFailure: If probing the target fails
        """
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            handle = self._targets.get(name)
            if handle is None:
                executor = self._executor_factory(name)
                platform = await PlatformDetector.detect(executor)
                home, runtime_dir = await self._probe_directories(name, executor)
                handle = TargetHandle(name, executor, platform, home, runtime_dir)
                self._targets[name] = handle
            return handle

    def refresh(self, name: str | None = None) -> None:
        """Forget one target, or all of them."""
        if name is None:
            self._targets.clear()
        else:
            self._targets.pop(name, None)

    @staticmethod
    async def _probe_directories(name: str, executor: CommandExecutor) -> tuple[str, str]:
        try:
            result = await executor.shell(_DIRECTORY_PROBE)
        except CommandExecutionError as e:
            raise ProbeFailure(f"Cannot probe directories of {name}: {e}") from e

        lines = result.stdout.splitlines()
        if not result.success or len(lines) < 2 or not lines[0]:
            raise ProbeFailure(f"Cannot probe directories of {name}: {result.get_output()}")
        return lines[0], lines[1]


@dataclass(eq=False)
class ServerLease:
    """A resolved endpoint; release it exactly once when done."""

    target: str
    port: int
    layout: SessionLayout
    host: str = LOCALHOST
    released: bool = False
    _resolver: "ServerResolver | None" = field(default=None, repr=False)

    @property
    def endpoint(self) -> tuple[str, int]:
        return self.host, self.port

    async def release(self) -> None:
        if self._resolver is not None:
            await self._resolver.release(self)

    async def __aenter__(self) -> "ServerLease":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()


@dataclass
class ServerInfo:
    """What boxlink knows about a target's server."""

    target: str
    os_family: str
    architecture: str
    session_dir: str
    server_path: str
    status: str


class ServerResolver:
    """Give callers a live server endpoint for a target.

    Example:
        >>> resolver = ServerResolver(config, TargetRegistry(container.executor_for))
        >>> async with await resolver.resolve("fedora") as lease:
        ...     connect(lease.host, lease.port)
    """

    def __init__(
        self,
        config: BoxlinkConfig,
        registry: TargetRegistry,
        downloader: ServerDownloader | None = None,
        progress: ProgressCallback | None = None,
        controller_version: str = __version__,
    ):
        self.config = config
        self.registry = registry
        self.downloader = downloader or ServerDownloader()
        self.progress = progress
        self.controller_version = controller_version
        self.release_info = config.server_release_info()
        self._leases: list[ServerLease] = []

    @property
    def leases(self) -> list[ServerLease]:
        return list(self._leases)

    def layout(self, target: TargetHandle) -> SessionLayout:
        return SessionLayout(
            runtime_dir=target.runtime_dir,
            prefix=self.config.session_prefix,
            session_id=session_identifier(self.release_info, target.platform, target.name),
            controller_version=self.controller_version,
        )

    def controller_settings(self, target: TargetHandle) -> dict:
        return {
            "install_dir": install_path(self.release_info, target.platform, target.home),
            "application_name": self.release_info.application_name,
            "server_arguments": list(DEFAULT_SERVER_ARGUMENTS),
            "listening_pattern": DEFAULT_LISTENING_PATTERN,
            "environment": self.config.resolved_environment(),
        }

    def server_path(self, target: TargetHandle) -> str:
        return server_command_path(self.release_info, target.platform, target.home)

    async def resolve(self, name: str) -> ServerLease:
        """Return a lease on a live server inside target ``name``.

        Raises:
            UnsupportedPlatform: If the target's platform is not supported
            ProbeFailure: If platform detection fails
            DownloadFailure: If the server cannot be downloaded
            InstallFailure: If the server cannot be installed
            ServerUnavailableError: If the server did not come up; retryable
        """
        target = await self.registry.get(name)
        layout = self.layout(target)
        logger.info(f"Resolving server for {name} ({target.platform})")

        port = None
        try:
            port = await self._connect_or_start(target, layout)
        except (ControllerError, CommandExecutionError) as e:
            logger.debug(f"Fast path failed for {name}: {e}")

        if port is None:
            logger.info(f"Preparing controller in {name}")
            await self._deploy_controller(target, layout)
            await self._ensure_installed(target, layout)
            try:
                port = await self._connect_or_start(target, layout)
            except (ControllerError, CommandExecutionError) as e:
                raise ServerUnavailableError(f"Server in {name} is unavailable: {e}") from e
            if port is None:
                raise ServerUnavailableError(f"Server in {name} did not start in time")

        logger.info(f"Server for {name} listening on {LOCALHOST}:{port}")
        lease = ServerLease(target=name, port=port, layout=layout, _resolver=self)
        self._leases.append(lease)
        return lease

    async def release(self, lease: ServerLease) -> None:
        """Disconnect ``lease`` after the configured grace delay; idempotent."""
        if lease.released:
            return
        lease.released = True
        if lease in self._leases:
            self._leases.remove(lease)

        target = await self.registry.get(lease.target)
        grace = self.config.disconnect_grace
        reply = await self._run_controller(
            target, lease.layout, "synchronized-disconnect", f"{grace:g}"
        )
        logger.debug(f"Released {lease.target}:{lease.port}: {reply}")

    async def close(self) -> None:
        """Release every outstanding lease."""
        leases = list(self._leases)
        results = await asyncio.gather(
            *(self.release(lease) for lease in leases), return_exceptions=True
        )
        for lease, result in zip(leases, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to release {lease.target}:{lease.port}: {result}")

    async def cleanup(self, name: str) -> str:
        """Stop the session of ``name``; manual recovery for leaked references."""
        target = await self.registry.get(name)
        layout = self.layout(target)
        await self._deploy_controller(target, layout)
        return await self._run_controller(target, layout, "stop")

    async def is_installed(self, name: str) -> bool:
        target = await self.registry.get(name)
        return await target.executor.is_file(self.server_path(target))

    async def describe(self, name: str) -> ServerInfo:
        target = await self.registry.get(name)
        layout = self.layout(target)
        try:
            result = await self._execute_controller(target, layout, ["status"])
            status = result.stdout.rstrip("\n")
        except (ControllerError, CommandExecutionError) as e:
            status = f"controller not available: {e}"
        return ServerInfo(
            target=name,
            os_family=target.platform.os_family,
            architecture=target.platform.architecture,
            session_dir=layout.session_dir,
            server_path=self.server_path(target),
            status=status,
        )

    # ------------------------------------------------------------------
    # controller protocol
    # ------------------------------------------------------------------

    async def _connect_or_start(self, target: TargetHandle, layout: SessionLayout) -> int | None:
        reply = await self._run_controller(
            target, layout, "synchronized-start", str(self.config.start_attempts)
        )
        if reply.isdigit():
            return int(reply)
        logger.info(f"Controller in {target.name} replied: {reply}")
        return None

    async def _run_controller(self, target: TargetHandle, layout: SessionLayout, *args: str) -> str:
        result = await self._execute_controller(target, layout, list(args))
        lines = result.stdout.strip().splitlines()
        return lines[0].strip() if lines else ""

    async def _execute_controller(
        self,
        target: TargetHandle,
        layout: SessionLayout,
        args: list[str],
        data: bytes | None = None,
    ) -> CommandResult:
        argv = [self.config.python_command, layout.controller_path, *args]
        if data is None:
            result = await target.executor.execute(argv)
        else:
            result = await target.executor.execute_with_input(data, argv)
        if not result.success:
            raise ControllerError(
                f"Controller {args[0]} exited with {result.exit_code} in {target.name}: "
                f"{result.stderr.strip()}"
            )
        return result

    async def _deploy_controller(self, target: TargetHandle, layout: SessionLayout) -> None:
        source = resources.files("boxlink").joinpath("controller.py").read_bytes()
        settings = json.dumps(self.controller_settings(target), indent=2)
        await target.executor.write_file(layout.controller_path, source, executable=True)
        await target.executor.write_file(layout.settings_path, settings, executable=False)
        logger.debug(f"Deployed controller to {target.name}:{layout.controller_path}")

    async def _ensure_installed(self, target: TargetHandle, layout: SessionLayout) -> None:
        server_path = self.server_path(target)
        if await target.executor.is_file(server_path):
            return

        url = download_url(self.release_info, target.platform)
        artifact = await asyncio.to_thread(self.downloader.fetch, url, self.progress)

        logger.info(f"Installing server into {target.name}")
        try:
            result = await self._execute_controller(target, layout, ["install"], data=artifact)
        except (ControllerError, CommandExecutionError) as e:
            raise InstallFailure(f"Failed to install server in {target.name}: {e}") from e
        reply = result.stdout.strip()
        if reply != INSTALLED:
            raise InstallFailure(f"Unexpected install reply from {target.name}: {reply!r}")

        if not await target.executor.is_file(server_path):
            raise InstallFailure(f"Server binary missing after install: {target.name}:{server_path}")
