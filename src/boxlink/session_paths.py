"""Server identifiers and the file layout inside a target.

Two directories matter inside a target:

- ``$HOME`` holds the installed server. It is durable, and distrobox guests
  usually share it with each other and with the host, so install paths carry
  the os family and architecture (a glibc build cannot run on alpine).
- ``$XDG_RUNTIME_DIR`` holds session state. It may be cleared on reboot and
  is also bind mounted into every guest, so session identifiers additionally
  carry the target name.
"""

import re
from dataclasses import dataclass

from boxlink.platform_detector import PlatformInfo

DEFAULT_DOWNLOAD_URL_TEMPLATE = (
    "https://github.com/VSCodium/vscodium/releases/download/${version}${maybe_release}/"
    "vscodium-reh-${os}-${arch}-${version}${maybe_release}.tar.gz"
)
DEFAULT_INSTALL_PATH_TEMPLATE = (
    "${data_folder}/bin/vscodium-reh-${os}-${arch}-${version}${maybe_release}"
)

_PLACEHOLDER = re.compile(r"\$\{(.*?)\}")


def fill_template(template: str, values: dict[str, str]) -> str:
    """Substitute ``${name}`` placeholders.

    Raises:
        ValueError: If the template uses an unknown placeholder
    """

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in values:
            raise ValueError(f"Unknown placeholder ${{{name}}} in template: {template}")
        return values[name]

    return _PLACEHOLDER.sub(substitute, template)


@dataclass(frozen=True)
class ServerRelease:
    """The server build boxlink installs and launches."""

    version: str
    release: str | None = None
    quality: str = "stable"
    application_name: str = "codium-server"
    data_folder: str = ".vscodium-server"
    download_url_template: str = DEFAULT_DOWNLOAD_URL_TEMPLATE
    install_path_template: str = DEFAULT_INSTALL_PATH_TEMPLATE

    @property
    def base_version(self) -> str:
        return self.version.replace("-insider", "")

    @property
    def maybe_release(self) -> str:
        return f".{self.release}" if self.release else ""

    @property
    def is_insider(self) -> bool:
        return self.quality == "insider"

    def template_values(self, platform: PlatformInfo) -> dict[str, str]:
        return {
            "os": platform.os_family,
            "arch": platform.architecture,
            "version": self.base_version,
            "release": self.release or "",
            "maybe_release": self.maybe_release,
            "quality": self.quality,
            "data_folder": self.data_folder,
            "application_name": self.application_name,
        }


def server_identifier(release: ServerRelease, platform: PlatformInfo) -> str:
    """Identify a server build: ``{os}-{arch}-{version}.{release}[-insider]``."""
    identifier = (
        f"{platform.os_family}-{platform.architecture}-{release.base_version}{release.maybe_release}"
    )
    if release.is_insider:
        identifier += "-insider"
    return identifier


def session_identifier(release: ServerRelease, platform: PlatformInfo, target_name: str) -> str:
    """Identify a session: the server identifier plus the target name."""
    return f"{server_identifier(release, platform)}-{target_name}"


def download_url(release: ServerRelease, platform: PlatformInfo) -> str:
    return fill_template(release.download_url_template, release.template_values(platform))


def install_path(release: ServerRelease, platform: PlatformInfo, home: str) -> str:
    """Absolute install directory under ``home``; independent of the session."""
    relative = fill_template(release.install_path_template, release.template_values(platform))
    if relative.startswith("/"):
        return relative
    return f"{home.rstrip('/')}/{relative}"


def server_command_path(release: ServerRelease, platform: PlatformInfo, home: str) -> str:
    return f"{install_path(release, platform, home)}/bin/{release.application_name}"


@dataclass(frozen=True)
class SessionLayout:
    """Paths of one session directory inside a target.

    The controller file name embeds the orchestrator version, so an upgraded
    orchestrator never overwrites a controller still serving an older session.
    """

    runtime_dir: str
    prefix: str
    session_id: str
    controller_version: str

    @property
    def session_dir(self) -> str:
        return f"{self.runtime_dir.rstrip('/')}/{self.prefix}-{self.session_id}"

    @property
    def controller_path(self) -> str:
        return f"{self.session_dir}/controller-{self.controller_version}.py"

    @property
    def settings_path(self) -> str:
        return f"{self.session_dir}/controller-{self.controller_version}.json"
