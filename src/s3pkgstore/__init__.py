"""S3-backed storage for a package registry's catalog and tarballs."""

from .config import StorageConfig, load_config
from .errors import (
    ConflictError,
    NotFoundError,
    PackageParseError,
    ServiceUnavailableError,
    StorageError,
)
from .storage import PackageStorage, S3Database

__version__ = "0.1.0"

__all__ = [
    "ConflictError",
    "NotFoundError",
    "PackageParseError",
    "PackageStorage",
    "S3Database",
    "ServiceUnavailableError",
    "StorageConfig",
    "StorageError",
    "load_config",
]
