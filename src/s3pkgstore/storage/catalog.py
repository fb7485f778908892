from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from s3pkgstore.config import ResolvedStorageConfig, StorageConfig, resolve_config
from s3pkgstore.errors import (
    PackageParseError,
    ServiceUnavailableError,
    StorageError,
    is_not_found,
)
from s3pkgstore.fallback import RegistryClient
from s3pkgstore.paths import (
    PACKAGE_FILE_NAME,
    AccessResolver,
    PackageAccessRules,
    catalog_key,
    resolve_package_path,
    tarball_file_name,
)
from s3pkgstore.schemas import (
    COMPOSER_FILE_NAME,
    EXTENSION_FILE_NAME,
    CatalogDocument,
    PackageInfo,
)

from .client import call_s3, create_s3_client, read_body
from .package import PackageStorage

logger = logging.getLogger(__name__)


class S3Database:
    """Package catalog kept in a single bucket object.

    The catalog is loaded on first use and then served from memory for the
    lifetime of the instance; it is never re-read. Every mutation rewrites the
    whole object. Concurrent writers are last-writer-wins and the in-memory
    list is not locked.
    """

    def __init__(
        self,
        config: StorageConfig,
        *,
        client: Any | None = None,
        access: AccessResolver | None = None,
        registry_client: RegistryClient | None = None,
        staging_dir: str | Path | None = None,
    ) -> None:
        self.config: ResolvedStorageConfig = resolve_config(config)
        self.client = client if client is not None else create_s3_client(self.config)
        self.access = access if access is not None else PackageAccessRules(self.config.packages)
        if registry_client is None and self.config.fallback_registry_url:
            registry_client = RegistryClient(
                base_url=self.config.fallback_registry_url,
                timeout_seconds=self.config.fallback_timeout_seconds,
            )
        self.registry_client = registry_client
        self.staging_dir = staging_dir
        self._data: CatalogDocument | None = None
        logger.debug(
            "s3 database bucket=%s prefix=%s endpoint=%s region=%s",
            self.config.bucket,
            self.config.key_prefix,
            self.config.endpoint,
            self.config.region,
        )

    @property
    def bucket(self) -> str:
        return self.config.bucket or ""

    @property
    def catalog_key(self) -> str:
        return catalog_key(self.config.key_prefix)

    # Catalog

    def get_names(self) -> list[str]:
        logger.debug("s3 get_names")
        return list(self._get_data().names)

    def add(self, name: str) -> None:
        logger.debug("s3 add name=%s", name)
        data = self._get_data()
        if name in data.names:
            return
        data.names.append(name)
        logger.debug("s3 add appended name=%s", name)
        self.persist()

    def remove(self, name: str) -> None:
        logger.debug("s3 remove name=%s", name)
        names = self._get_data().names
        if name in names:
            names.remove(name)
            logger.debug("s3 remove removed name=%s", name)
        # Persists even when the name was not listed.
        self.persist()

    def get_secret(self) -> str:
        return self._get_data().secret

    def set_secret(self, secret: str) -> None:
        self._get_data().secret = secret
        self.persist()

    def persist(self) -> None:
        data = self._get_data()
        logger.debug("s3 persist catalog key=%s names=%d", self.catalog_key, len(data.names))
        try:
            call_s3(
                self.client,
                "put_object",
                Bucket=self.bucket,
                Key=self.catalog_key,
                Body=data.model_dump_json().encode("utf-8"),
                ContentType="application/json",
            )
        except StorageError as exc:
            logger.error("s3 persist catalog failed error=%s", exc.message)
            raise

    def get_package_storage(self, package_name: str) -> PackageStorage:
        logger.debug("s3 get_package_storage package=%s", package_name)
        return PackageStorage(
            config=self.config,
            package_name=package_name,
            client=self.client,
            access=self.access,
            registry_client=self.registry_client,
            staging_dir=self.staging_dir,
        )

    # Tokens are not stored in S3.

    def save_token(self, token: Any) -> None:
        logger.warning("save token has not been implemented yet token=%s", token)
        raise ServiceUnavailableError("[save_token] method not implemented")

    def delete_token(self, user: str, token_key: str) -> None:
        logger.warning("delete token has not been implemented yet user=%s key=%s", user, token_key)
        raise ServiceUnavailableError("[delete_token] method not implemented")

    def read_tokens(self, token_filter: Any) -> list[Any]:
        logger.warning("read tokens has not been implemented yet filter=%s", token_filter)
        raise ServiceUnavailableError("[read_tokens] method not implemented")

    # Catalog-wide views

    def search(self) -> Iterator[PackageInfo]:
        """Yield every listed package whose metadata document exists."""
        for name in self.get_names():
            key = resolve_package_path(
                self.config.key_prefix, name, PACKAGE_FILE_NAME, access=self.access
            )
            try:
                response = call_s3(self.client, "head_object", Bucket=self.bucket, Key=key)
            except StorageError as exc:
                logger.debug("s3 search skipped name=%s error=%s", name, exc.message)
                continue
            last_modified = response.get("LastModified")
            if last_modified is None:
                continue
            yield PackageInfo(
                name=name,
                path=name,
                time=int(last_modified.timestamp() * 1000),
            )

    def get_composer_json(self, package_name: str) -> Any:
        return self._get_companion_json(package_name, COMPOSER_FILE_NAME)

    def get_extension_json(self, package_name: str) -> Any:
        return self._get_companion_json(package_name, EXTENSION_FILE_NAME)

    def get_all_extension_json(self) -> list[dict[str, Any]]:
        extensions: list[dict[str, Any]] = []
        for name in self.get_names():
            try:
                extension = self.get_extension_json(name)
            except StorageError:
                logger.exception("s3 get_all_extension_json failed package=%s", name)
                continue
            if isinstance(extension, dict):
                extensions.append(extension)
        return extensions

    def get_all_composer_json(self) -> dict[str, dict[str, Any]]:
        """Group composer documents by composer name and version.

        Each version entry gets a ``dist`` pointing at a presigned tarball URL.
        """
        packages: dict[str, Any] = {}
        for name in self.get_names():
            try:
                composer = self.get_composer_json(name)
            except StorageError as exc:
                if is_not_found(exc):
                    continue
                raise
            if not isinstance(composer, dict):
                continue

            composer_name = composer.get("name")
            version = composer.get("version")
            if not composer_name or not version:
                logger.warning("s3 composer json lacks name or version package=%s", name)
                continue

            dist = {"url": self.tarball_url(name, str(version)), "type": "tar"}
            packages.setdefault(composer_name, {})[str(version)] = {**composer, "dist": dist}
        return {"packages": packages}

    def tarball_url(self, package_name: str, version: str) -> str:
        key = resolve_package_path(
            self.config.key_prefix,
            package_name,
            tarball_file_name(package_name, version),
            access=self.access,
        )
        return call_s3(
            self.client,
            "generate_presigned_url",
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.config.signed_url_expire_seconds,
        )

    # Helpers

    def _get_data(self) -> CatalogDocument:
        if self._data is not None:
            return self._data

        key = self.catalog_key
        logger.debug("s3 load catalog bucket=%s key=%s", self.bucket, key)
        try:
            response = call_s3(self.client, "get_object", Bucket=self.bucket, Key=key)
        except StorageError as exc:
            if not is_not_found(exc):
                logger.error("s3 load catalog failed error=%s", exc.message)
                raise
            logger.info("s3 catalog not found, starting empty key=%s", key)
            self._data = CatalogDocument()
            return self._data

        try:
            self._data = CatalogDocument.model_validate_json(read_body(response) or "{}")
        except (UnicodeDecodeError, ValidationError) as exc:
            raise PackageParseError(f"invalid catalog document at {key}: {exc}") from exc
        logger.debug("s3 catalog loaded names=%d", len(self._data.names))
        return self._data

    def _get_companion_json(self, package_name: str, file_name: str) -> Any:
        key = resolve_package_path(
            self.config.key_prefix, package_name, file_name, access=self.access
        )
        logger.debug("s3 get companion key=%s", key)
        response = call_s3(self.client, "get_object", Bucket=self.bucket, Key=key)
        try:
            return json.loads(read_body(response))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PackageParseError(f"invalid {file_name} at {key}: {exc}") from exc
