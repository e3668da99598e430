"""Error taxonomy for server resolution.

Detection and install failures are hard failures. Only a server that did not
come up in time is reported as retryable, since a slow image or a cold cache
can explain it.
"""


class BoxlinkError(Exception):
    """Base class for boxlink errors."""

    pass


class UnsupportedPlatform(BoxlinkError):
    """Raised when the target's libc or architecture is not supported."""

    pass


class ProbeFailure(BoxlinkError):
    """Raised when a detection probe fails unexpectedly."""

    pass


class DownloadFailure(BoxlinkError):
    """Raised when the server artifact cannot be downloaded."""

    def __init__(self, url: str, status: int | None = None, reason: str = ""):
        self.url = url
        self.status = status
        detail = f"{status} {url}" if status is not None else url
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(f"Download failed: {detail}")


class InstallFailure(BoxlinkError):
    """Raised when the artifact cannot be extracted inside the target."""

    pass


class ControllerError(BoxlinkError):
    """Raised when the deployed controller exits abnormally."""

    pass


class ServerUnavailableError(BoxlinkError):
    """The server did not come up; the caller may retry later."""

    retryable = True
