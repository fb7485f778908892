from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from urllib.parse import quote

import requests

from s3pkgstore.config import DEFAULT_FALLBACK_REGISTRY_URL

DEFAULT_CHUNK_SIZE = 64 * 1024

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RemoteTarball:
    content_length: int | None
    chunks: Iterator[bytes]
    release: Callable[[], None]


class RegistryClient:
    """Minimal public-registry client used when a tarball is missing from S3."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_FALLBACK_REGISTRY_URL,
        timeout_seconds: float = 30.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url.strip():
            raise ValueError("Registry base url is empty.")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0.")
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1.")

        self.base_url = base_url.strip().rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.chunk_size = chunk_size
        self.session = session or requests.Session()

    def tarball_url(self, package_name: str, file_name: str) -> str:
        return f"{self.base_url}/{quote(package_name, safe='@/')}/-/{quote(file_name)}"

    def fetch_tarball(self, package_name: str, file_name: str) -> RemoteTarball:
        """Open a streamed GET for a tarball; raises ``requests.RequestException``."""
        url = self.tarball_url(package_name, file_name)
        logger.debug("registry fallback fetch url=%s", url)
        response = self.session.get(url, stream=True, timeout=self.timeout_seconds)
        try:
            response.raise_for_status()
        except requests.HTTPError:
            response.close()
            raise

        return RemoteTarball(
            content_length=self._content_length(response),
            chunks=response.iter_content(chunk_size=self.chunk_size),
            release=response.close,
        )

    @staticmethod
    def _content_length(response: requests.Response) -> int | None:
        raw = response.headers.get("content-length")
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("registry fallback invalid content-length value=%s", raw)
            return None
