"""Tarball streams and companion-file extraction."""

from .download import ReadTarball
from .events import CONTENT_LENGTH, END, ERROR, OPEN, SUCCESS, EventStream
from .extractor import extract_companion_files
from .upload import UploadTarball

__all__ = [
    "CONTENT_LENGTH",
    "END",
    "ERROR",
    "EventStream",
    "OPEN",
    "ReadTarball",
    "SUCCESS",
    "UploadTarball",
    "extract_companion_files",
]
