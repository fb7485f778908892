"""Catalog and per-package storage backed by an S3 bucket."""

from .catalog import S3Database
from .client import create_s3_client
from .package import PackageStorage

__all__ = ["PackageStorage", "S3Database", "create_s3_client"]
