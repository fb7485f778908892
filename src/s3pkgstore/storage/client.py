from __future__ import annotations

import logging
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from s3pkgstore.config import ResolvedStorageConfig
from s3pkgstore.errors import convert_s3_error

logger = logging.getLogger(__name__)


def create_s3_client(config: ResolvedStorageConfig) -> Any:
    """Build the boto3 S3 client shared by the catalog and package storages."""
    boto_config = BotoConfig(
        signature_version="s3v4",
        s3={"addressing_style": "path" if config.s3_force_path_style else "auto"},
    )
    logger.debug(
        "s3 client endpoint=%s region=%s path_style=%s bucket=%s",
        config.endpoint,
        config.region,
        config.s3_force_path_style,
        config.bucket,
    )
    return boto3.client(
        "s3",
        endpoint_url=config.endpoint or None,
        region_name=config.region or None,
        aws_access_key_id=config.access_key_id or None,
        aws_secret_access_key=config.secret_access_key or None,
        aws_session_token=config.session_token or None,
        config=boto_config,
    )


def call_s3(client: Any, operation: str, **params: Any) -> Any:
    """Run one S3 operation, translating failures into domain errors."""
    try:
        return getattr(client, operation)(**params)
    except (ClientError, BotoCoreError) as exc:
        raise convert_s3_error(exc) from exc


def read_body(response: dict[str, Any]) -> str:
    """Read a whole response body as text; streaming failures become domain errors."""
    body = response.get("Body")
    if body is None:
        return ""
    try:
        return body.read().decode("utf-8")
    except (ClientError, BotoCoreError) as exc:
        raise convert_s3_error(exc) from exc
    finally:
        body.close()
