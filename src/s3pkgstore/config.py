from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

DEFAULT_FALLBACK_REGISTRY_URL = "https://registry.npmjs.org"
MIN_MULTIPART_CHUNK_SIZE = 5 * 1024 * 1024
YAML_SUFFIXES = (".yaml", ".yml")

# Settings that can be overridden from the environment, in resolution order.
ENV_CONFIG_KEYS = (
    "AWS_BUCKET",
    "AWS_KEY_PREFIX",
    "AWS_ENDPOINT",
    "AWS_REGION",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "AWS_TARBALL_ACL",
)


class PackageAccessRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pattern: str
    storage: str | None = None

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("packages[].pattern must not be empty")
        return normalized


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bucket: str | None = None
    key_prefix: str = ""
    endpoint: str | None = None
    region: str | None = None
    s3_force_path_style: bool = False
    access_key_id: str | None = None
    secret_access_key: str | None = None
    session_token: str | None = None
    tarball_acl: str = "private"
    fallback_registry_url: str | None = DEFAULT_FALLBACK_REGISTRY_URL
    fallback_timeout_seconds: float = Field(default=30.0, gt=0.0)
    multipart_chunk_size: int = Field(default=8 * 1024 * 1024, ge=MIN_MULTIPART_CHUNK_SIZE)
    signed_url_expire_seconds: int = Field(default=30 * 60, ge=1)
    packages: list[PackageAccessRule] = Field(default_factory=list)

    @field_validator("tarball_acl")
    @classmethod
    def validate_tarball_acl(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("tarball_acl must not be empty")
        return normalized


class ResolvedStorageConfig(StorageConfig):
    """Configuration after environment overrides, with a mandatory bucket."""

    @model_validator(mode="after")
    def validate_bucket(self) -> ResolvedStorageConfig:
        if not (self.bucket or "").strip():
            raise ValueError("s3 storage requires a bucket")
        return self


def get_config_value(key: str, config: StorageConfig) -> Any:
    """Return the environment value for ``key``, else the matching config field.

    ``AWS_KEY_PREFIX`` maps to ``config.key_prefix``, ``AWS_BUCKET`` to
    ``config.bucket`` and so on.
    """
    env_value = os.environ.get(key)
    if env_value:
        return env_value
    field_name = key.lower()
    if field_name.startswith("aws_"):
        field_name = field_name[len("aws_"):]
    return getattr(config, field_name, None)


def add_trailing_slash(path: str | None) -> str:
    if not path:
        return ""
    return path if path.endswith("/") else f"{path}/"


def resolve_config(config: StorageConfig) -> ResolvedStorageConfig:
    payload = config.model_dump()
    for key in ENV_CONFIG_KEYS:
        field_name = key.lower()[len("aws_"):]
        payload[field_name] = get_config_value(key, config)

    payload["key_prefix"] = add_trailing_slash(payload.get("key_prefix"))
    if not payload.get("tarball_acl"):
        payload["tarball_acl"] = "private"
    try:
        return ResolvedStorageConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def load_config(path: str | Path) -> StorageConfig:
    """Load storage settings from a JSON or YAML file.

    ``.yaml``/``.yml`` files are read with PyYAML; anything else must be JSON.
    Environment overrides are applied later, by ``resolve_config``.
    """
    config_path = Path(path)
    raw = config_path.read_text(encoding="utf-8")
    if config_path.suffix.lower() in YAML_SUFFIXES:
        payload = _load_yaml_storage_settings(raw, config_path)
    else:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Storage config {config_path} is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise ValueError(f"Storage config {config_path} must contain a mapping of settings.")
    try:
        return StorageConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration in {config_path}: {exc}") from exc


def _load_yaml_storage_settings(raw: str, config_path: Path) -> Any:
    try:
        import yaml  # type: ignore[import-untyped]
    except ModuleNotFoundError as exc:
        raise ValueError(
            f"Storage config {config_path} is YAML; install the 'yaml' extra (pyyaml)."
        ) from exc

    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ValueError(f"Storage config {config_path} is not valid YAML: {exc}") from exc
