from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import BinaryIO

from s3pkgstore.errors import RequestAbortedError, StorageError, convert_s3_error
from s3pkgstore.schemas import UploadResult

from .events import ERROR, OPEN, SUCCESS, EventStream

logger = logging.getLogger(__name__)

UploadWorker = Callable[["UploadTarball"], UploadResult]


class UploadTarball(EventStream):
    """Writable sink for an incoming tarball.

    Bytes written by the caller are staged to a unique temporary file while a
    worker thread runs the upload pipeline. The pipeline reports through the
    ``success`` (with an ``UploadResult``) and ``error`` events only. The
    staging file is removed once the pipeline finishes, whatever the outcome.
    """

    def __init__(
        self,
        *,
        key: str,
        staging_prefix: str = "tarball-",
        staging_dir: str | Path | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        super().__init__(cancel_event=cancel_event)
        self.key = key
        fd, path = tempfile.mkstemp(prefix=staging_prefix, suffix=".tgz", dir=staging_dir)
        self.staging_path = Path(path)
        self.size = 0
        self._file: BinaryIO | None = os.fdopen(fd, "wb")
        self._state_lock = threading.Lock()
        self._input_closed = threading.Event()
        self._staging_error: StorageError | None = None
        self._worker: threading.Thread | None = None
        self._pipeline_finished = False
        self.result: UploadResult | None = None
        logger.debug("upload staging key=%s path=%s", key, self.staging_path)
        self.emit(OPEN)

    def start(self, worker: UploadWorker) -> UploadTarball:
        if self._worker is not None:
            raise RuntimeError("upload pipeline already started")
        self._worker = threading.Thread(
            target=self._run,
            args=(worker,),
            name=f"upload:{self.key}",
            daemon=True,
        )
        self._worker.start()
        return self

    def write(self, chunk: bytes) -> None:
        handle = self._file
        if handle is None:
            if self._pipeline_finished or self.aborted or self._staging_error is not None:
                return
            raise ValueError("write after end")
        try:
            handle.write(chunk)
        except (OSError, ValueError) as exc:
            if self._pipeline_finished or self.aborted:
                return
            logger.error("upload staging write failed path=%s error=%s", self.staging_path, exc)
            self._staging_error = StorageError(f"staging write failed: {exc}")
            self._close_input()
            return
        self.size += len(chunk)

    def end(self) -> None:
        self._close_input()

    def abort(self) -> None:
        if self.cancel_event.is_set():
            return
        logger.debug("upload abort key=%s", self.key)
        self.cancel_event.set()
        self._close_input()

    def wait_for_input(self) -> None:
        """Block the pipeline until staging finished, then surface its failure."""
        self._input_closed.wait()
        self.raise_if_aborted()
        if self._staging_error is not None:
            raise self._staging_error

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise RequestAbortedError(f"upload aborted key={self.key}")

    def _run(self, worker: UploadWorker) -> None:
        try:
            result = worker(self)
        except Exception as exc:
            error = convert_s3_error(exc)
            logger.error("upload failed key=%s error=%s", self.key, error.message)
            self._finish()
            self.emit(ERROR, error)
            return

        logger.debug("upload finished key=%s size=%d", self.key, result.size)
        self._finish()
        self.result = result
        self.emit(SUCCESS, result)

    def _finish(self) -> None:
        self._pipeline_finished = True
        self._close_input()
        self._remove_staging_file()

    def _close_input(self) -> None:
        with self._state_lock:
            handle, self._file = self._file, None
        # The worker may read the staging file as soon as the event is set.
        try:
            if handle is not None:
                handle.close()
        except OSError:
            logger.exception("upload staging close failed path=%s", self.staging_path)
        finally:
            self._input_closed.set()

    def _remove_staging_file(self) -> None:
        try:
            self.staging_path.unlink(missing_ok=True)
        except OSError:
            logger.exception("upload staging cleanup failed path=%s", self.staging_path)
        else:
            logger.debug("upload staging removed path=%s", self.staging_path)
