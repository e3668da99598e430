"""Platform detection for target environments.

The server ships two linux builds, one for glibc (``linux``) and one for musl
(``alpine``), for several CPU architectures. The libc is identified by asking
the dynamic linker who it is:

glibc's ``ldd --version`` prints to stdout, e.g. on ubuntu::

    ldd (Ubuntu GLIBC 2.39-0ubuntu8.4) 2.39
    Copyright (C) 2024 Free Software Foundation, Inc.

musl's ``ldd`` does not understand ``--version``; it prints a usage text to
stderr and exits with status 1::

    musl libc (x86_64)
    Version 1.2.5
    Dynamic Program Loader

The musl output already names the architecture. glibc's does not, so a second
probe looks at the loader used to run ``/bin/true``. ``uname`` is not used: it
reports the kernel architecture, and a 64 bit host can run a 32 bit userland.

Public API:
    PlatformInfo: Detected (os_family, architecture) pair
    PlatformDetector: Runs the probes against a CommandExecutor
    map_architecture: Raw architecture token to canonical identifier
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from boxlink.command_executor import CommandExecutionError, CommandExecutor
from boxlink.errors import ProbeFailure, UnsupportedPlatform

logger = logging.getLogger(__name__)

OS_GLIBC = "linux"
OS_MUSL = "alpine"

# raw token -> canonical architecture; None marks explicitly excluded tokens
ARCHITECTURES: dict[str, str | None] = {
    "x86_64": "x64",
    "x86-64": "x64",
    "amd64": "x64",
    "i386": None,
    "i686": None,
    "armv7l": "armhf",
    "armv8l": "armhf",
    "armhf": "armhf",
    "arm64": "arm64",
    "aarch64": "arm64",
    "ppc64le": "ppc64le",
    "riscv64": "riscv64",
    "riscv64-lp64d": "riscv64",
    "loongarch64": "loong64",
    "loongarch-lp64d": "loong64",
    "s390x": "s390x",
}

MUSL_PATTERN = re.compile(r"musl libc \((.+)\)")
GLIBC_PATTERN = re.compile(r"Free Software Foundation|GNU libc|GLIBC")
# the loader may be printed as `a => b (0x...)`; excluding dots stops the
# capture at the first `.so`
GLIBC_LOADER_PATTERN = re.compile(r"ld-linux-([^.]+)\.so")

# loaders whose file name does not carry the architecture
FIXED_LOADERS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"/ld-linux\.so\.2\b"), "i686"),
    (re.compile(r"/ld64\.so\.2\b"), "ppc64le"),
    (re.compile(r"/ld64\.so\.1\b"), "s390x"),
]

VERSION_PROBE = ["sh", "-c", "ldd --version 2>&1"]
LOADER_PROBE = ["ldd", "/bin/true"]


@dataclass(frozen=True)
class PlatformInfo:
    """Detected platform of a target."""

    os_family: str
    architecture: str

    def __str__(self) -> str:
        return f"{self.os_family}-{self.architecture}"


@dataclass(frozen=True)
class LibcMatch:
    """Result of classifying the version probe.

    ``arch_token`` is None when the output does not name the architecture
    and the loader probe is needed.
    """

    os_family: str
    arch_token: str | None = None


def map_architecture(token: str) -> str:
    """Map a raw architecture token to its canonical identifier.

    Raises:
        UnsupportedPlatform: For unknown or excluded tokens
    """
    token = token.strip()
    if token not in ARCHITECTURES:
        raise UnsupportedPlatform(f"unsupported linux arch {token}")
    canonical = ARCHITECTURES[token]
    if canonical is None:
        raise UnsupportedPlatform("32 bit x86 is not supported")
    return canonical


def classify_musl(output: str) -> LibcMatch | None:
    match = MUSL_PATTERN.search(output)
    if match:
        return LibcMatch(OS_MUSL, match.group(1))
    return None


def classify_glibc(output: str) -> LibcMatch | None:
    if GLIBC_PATTERN.search(output):
        return LibcMatch(OS_GLIBC)
    return None


def classify_named_loader(output: str) -> str | None:
    match = GLIBC_LOADER_PATTERN.search(output)
    if match:
        return match.group(1)
    return None


def classify_fixed_loader(output: str) -> str | None:
    for pattern, token in FIXED_LOADERS:
        if pattern.search(output):
            return token
    return None


# first match wins
VERSION_CLASSIFIERS: list[Callable[[str], LibcMatch | None]] = [
    classify_musl,
    classify_glibc,
]

LOADER_CLASSIFIERS: list[Callable[[str], str | None]] = [
    classify_named_loader,
    classify_fixed_loader,
]


def classify_loader(output: str) -> str:
    """Extract the architecture token from glibc's loader file name.

    ``/lib/ld-linux.so.2`` (i386), ``/lib64/ld64.so.2`` (ppc64le) and
    ``/lib/ld64.so.1`` (s390x) do not name the architecture and are mapped
    by file name.

    Raises:
        ProbeFailure: If no glibc loader is found in the output
    """
    for classifier in LOADER_CLASSIFIERS:
        token = classifier(output)
        if token is not None:
            return token
    raise ProbeFailure(f"cannot find glibc dynamic loader in: {output.strip()!r}")


def classify_version_output(output: str) -> LibcMatch:
    """Classify the output of the version probe.

    Raises:
        ProbeFailure: If neither musl nor glibc is recognized
    """
    for classifier in VERSION_CLASSIFIERS:
        match = classifier(output)
        if match is not None:
            return match
    raise ProbeFailure("distro's libc is neither musl nor glibc")


class PlatformDetector:
    """Detect the (os_family, architecture) of a target.

    Probes are read-only. The musl probe's non-zero exit status is expected
    and ignored.

    Example:
        >>> platform = await PlatformDetector.detect(executor)
        >>> platform.os_family, platform.architecture
        ('alpine', 'x64')
    """

    @classmethod
    async def detect(cls, executor: CommandExecutor) -> PlatformInfo:
        """Detect the target's platform.

        Raises:
            UnsupportedPlatform: For unsupported or excluded architectures
            ProbeFailure: If a probe cannot be run or its output is unrecognized
        """
        version_output = await cls._probe(executor, VERSION_PROBE, require_success=False)
        libc = classify_version_output(version_output)

        token = libc.arch_token
        if token is None:
            loader_output = await cls._probe(executor, LOADER_PROBE, require_success=True)
            token = classify_loader(loader_output)

        platform = PlatformInfo(libc.os_family, map_architecture(token))
        logger.debug(f"Detected platform of {executor.target}: {platform}")
        return platform

    @staticmethod
    async def _probe(executor: CommandExecutor, args: list[str], require_success: bool) -> str:
        try:
            result = await executor.execute(args)
        except CommandExecutionError as e:
            raise ProbeFailure(f"probe {args} failed in {executor.target}: {e}") from e

        if require_success and not result.success:
            raise ProbeFailure(
                f"probe {args} exited with {result.exit_code} in {executor.target}: "
                f"{result.stderr.strip()}"
            )
        return result.get_output()
