"""Server artifact download.

Streams the server tarball over HTTP and reports progress per chunk.
"""

import logging
from collections.abc import Callable

import requests

from boxlink.errors import DownloadFailure

logger = logging.getLogger(__name__)

# (received_bytes, total_bytes or None when the server sends no Content-Length)
ProgressCallback = Callable[[int, int | None], None]


class ServerDownloader:
    """Download server tarballs.

    Example:
        >>> data = ServerDownloader().fetch(url, progress=lambda done, total: None)
    """

    CHUNK_SIZE = 64 * 1024
    CONNECT_TIMEOUT = 15
    READ_TIMEOUT = 60

    def __init__(self, session: requests.Session | None = None):
        self.session = session or requests.Session()

    def fetch(self, url: str, progress: ProgressCallback | None = None) -> bytes:
        """Download ``url`` into memory.

        Raises:
            DownloadFailure: On a non-200 status or a network error
        """
        logger.info(f"Downloading {url}")
        try:
            with self.session.get(
                url, stream=True, timeout=(self.CONNECT_TIMEOUT, self.READ_TIMEOUT)
            ) as response:
                if response.status_code != 200:
                    raise DownloadFailure(url, response.status_code)

                total = self._content_length(response)
                chunks: list[bytes] = []
                received = 0
                for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                    if not chunk:
                        continue
                    chunks.append(chunk)
                    received += len(chunk)
                    if progress:
                        progress(received, total)

        except requests.RequestException as e:
            raise DownloadFailure(url, reason=str(e)) from e

        logger.info(f"Downloaded {received} bytes")
        return b"".join(chunks)

    @staticmethod
    def _content_length(response: requests.Response) -> int | None:
        header = response.headers.get("Content-Length")
        if header and header.isdigit():
            return int(header)
        return None
