from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator

from s3pkgstore.errors import StorageError, convert_s3_error

from .events import CONTENT_LENGTH, END, ERROR, OPEN, EventStream

logger = logging.getLogger(__name__)


class ReadTarball(EventStream):
    """Readable tarball source; iterate it to receive the bytes.

    ``content-length`` and ``open`` fire once a source is attached, ``end``
    after the last chunk, ``error`` on any failure. Failures never raise out
    of iteration.
    """

    def __init__(self, *, name: str, cancel_event: threading.Event | None = None) -> None:
        super().__init__(cancel_event=cancel_event)
        self.name = name
        self.content_length: int | None = None
        self._chunks: Iterable[bytes] | None = None
        self._release: Callable[[], None] | None = None
        self._consumed = False

    def attach(
        self,
        chunks: Iterable[bytes],
        *,
        content_length: int | None,
        release: Callable[[], None] | None = None,
    ) -> None:
        if self._chunks is not None:
            raise RuntimeError("tarball source already attached")
        self._chunks = chunks
        self._release = release
        if content_length is not None:
            self.content_length = content_length
            self.emit(CONTENT_LENGTH, content_length)
        self.emit(OPEN)

    def fail(self, error: StorageError) -> None:
        self.emit(ERROR, error)
        self._release_source()

    def abort(self) -> None:
        if self.cancel_event.is_set():
            return
        logger.debug("download abort name=%s", self.name)
        self.cancel_event.set()
        self._release_source()
        self.emit(ERROR, StorageError("request aborted"))

    def __iter__(self) -> Iterator[bytes]:
        if self._chunks is None or self.done or self._consumed:
            return
        self._consumed = True
        try:
            for chunk in self._chunks:
                if self.aborted:
                    return
                if chunk:
                    yield chunk
        except Exception as exc:
            if self.aborted:
                return
            error = convert_s3_error(exc)
            logger.error("download stream failed name=%s error=%s", self.name, error.message)
            self.emit(ERROR, error)
            return
        finally:
            self._release_source()
        self.emit(END)

    def read(self) -> bytes:
        return b"".join(self)

    def _release_source(self) -> None:
        release, self._release = self._release, None
        if release is None:
            return
        try:
            release()
        except Exception:
            logger.exception("download release failed name=%s", self.name)
