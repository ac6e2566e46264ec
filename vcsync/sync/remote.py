"""Transport for fetching the published manifest and tracked files."""

from __future__ import annotations

import http.client
import logging
import socket
import time
from typing import Callable, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

logger = logging.getLogger("vcsync.sync.remote")

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 2
DEFAULT_BACKOFF = 0.5


class NetworkError(Exception):
    """Raised when a remote resource could not be fetched."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
        self.status = status


class RemoteFetcher(Protocol):
    """Anything that can return the remote manifest and file bytes."""

    def fetch_manifest(self) -> bytes:
        ...

    def fetch_file(self, relative_path: str) -> bytes:
        ...


class HttpFetcher:
    """Fetch ``base_url + relative_path`` over HTTP(S) or ``file://``.

    Every request is bounded by ``timeout``. Transport failures, timeouts
    and 5xx responses are retried ``retries`` more times with linear
    backoff; any other non-200 response fails immediately.
    """

    def __init__(
        self,
        base_url: str,
        manifest_path: str,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF,
        opener: Optional[Callable[..., object]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.manifest_path = manifest_path
        self.timeout = timeout
        self.retries = max(0, int(retries))
        self.backoff = backoff
        self._open = opener or urlopen
        self._sleep = sleep

    def url_for(self, relative_path: str) -> str:
        return self.base_url + quote(relative_path.lstrip("/"))

    def fetch_manifest(self) -> bytes:
        return self._get(self.url_for(self.manifest_path))

    def fetch_file(self, relative_path: str) -> bytes:
        return self._get(self.url_for(relative_path))

    def _get(self, url: str) -> bytes:
        attempt = 0
        while True:
            try:
                return self._get_once(url)
            except NetworkError as e:
                if attempt >= self.retries or not _is_retryable(e):
                    raise
                attempt += 1
                delay = self.backoff * attempt
                logger.warning(
                    "Fetch of %s failed (%s); retry %d/%d in %.1fs",
                    url, e.reason, attempt, self.retries, delay,
                )
                self._sleep(delay)

    def _get_once(self, url: str) -> bytes:
        req = Request(url, method="GET")
        try:
            with self._open(req, timeout=self.timeout) as resp:
                status = getattr(resp, "status", None) or 200
                if status != 200:
                    raise NetworkError(url, f"HTTP {status}", status=status)
                data = resp.read()
        except HTTPError as e:
            raise NetworkError(url, f"HTTP {e.code} {e.reason}", status=e.code) from e
        except URLError as e:
            raise NetworkError(url, f"connection error: {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            raise NetworkError(url, f"timed out after {self.timeout}s") from e
        except http.client.HTTPException as e:
            raise NetworkError(url, f"broken response: {e!r}") from e
        except OSError as e:
            raise NetworkError(url, str(e)) from e
        logger.debug("Fetched %s (%d bytes)", url, len(data))
        return data


def _is_retryable(error: NetworkError) -> bool:
    return error.status is None or error.status >= 500


__all__ = [
    "DEFAULT_BACKOFF",
    "DEFAULT_RETRIES",
    "DEFAULT_TIMEOUT",
    "HttpFetcher",
    "NetworkError",
    "RemoteFetcher",
]
