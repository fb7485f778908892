from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import requests
from botocore.exceptions import BotoCoreError, ClientError

from s3pkgstore.config import ResolvedStorageConfig, add_trailing_slash
from s3pkgstore.errors import (
    ConflictError,
    NotFoundError,
    PackageParseError,
    RequestAbortedError,
    StorageError,
    convert_s3_error,
    is_not_found,
)
from s3pkgstore.fallback import RegistryClient
from s3pkgstore.paths import (
    PACKAGE_FILE_NAME,
    AccessResolver,
    join_key,
    resolve_package_path,
    safe_package_name,
)
from s3pkgstore.schemas import UploadResult, dump_package_document
from s3pkgstore.tarball import ReadTarball, UploadTarball, extract_companion_files

from .client import call_s3, read_body

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 1000
DOWNLOAD_CHUNK_SIZE = 64 * 1024

PackageDocument = dict[str, Any]
PackageMutator = Callable[[PackageDocument], PackageDocument | None]


class PackageStorage:
    """Storage for one package: its metadata document, companions and tarballs.

    Every object lives under the package path, ``<prefix>[<folder>/]<name>``.
    Nothing is cached; each call round-trips to the bucket.
    """

    def __init__(
        self,
        *,
        config: ResolvedStorageConfig,
        package_name: str,
        client: Any,
        access: AccessResolver | None = None,
        registry_client: RegistryClient | None = None,
        staging_dir: str | Path | None = None,
    ) -> None:
        if not package_name.strip():
            raise ValueError("package_name must not be empty")

        self.config = config
        self.package_name = package_name
        self.client = client
        self.bucket = config.bucket
        self.tarball_acl = config.tarball_acl or "private"
        self.registry_client = registry_client
        self.staging_dir = staging_dir
        self.package_path = resolve_package_path(config.key_prefix, package_name, access=access)
        logger.debug(
            "package storage name=%s path=%s acl=%s",
            package_name,
            self.package_path,
            self.tarball_acl,
        )

    def key_for(self, file_name: str) -> str:
        return join_key(self.package_path, file_name)

    # Metadata document

    def read_package(self, name: str) -> PackageDocument:
        logger.debug("s3 read_package name=%s package=%s", name, self.package_name)
        return self._get_data()

    def create_package(self, name: str, document: PackageDocument) -> None:
        logger.debug("s3 create_package name=%s package=%s", name, self.package_name)
        key = self.key_for(PACKAGE_FILE_NAME)
        if self._exists(key):
            logger.debug("s3 create_package already exists key=%s", key)
            raise ConflictError()
        self.save_package(name, document)

    def save_package(self, name: str, document: PackageDocument) -> None:
        key = self.key_for(PACKAGE_FILE_NAME)
        logger.debug("s3 save_package name=%s key=%s", name, key)
        call_s3(
            self.client,
            "put_object",
            Bucket=self.bucket,
            Key=key,
            Body=dump_package_document(document).encode("utf-8"),
            ContentType="application/json",
        )

    def update_package(self, name: str, mutator: PackageMutator) -> PackageDocument:
        """Read the document, let ``mutator`` change it, then write it back.

        ``mutator`` may edit the document in place (returning ``None``) or return
        a replacement. Nothing is written if the read or the mutator fails.
        """
        logger.debug("s3 update_package name=%s package=%s", name, self.package_name)
        document = self._get_data()
        try:
            updated = mutator(document)
        except Exception:
            logger.exception("s3 update_package mutator failed name=%s", name)
            raise
        if updated is None:
            updated = document
        self.save_package(name, updated)
        return updated

    def delete_file(self, file_name: str) -> None:
        key = self.key_for(file_name)
        logger.debug("s3 delete_file key=%s", key)
        call_s3(self.client, "delete_object", Bucket=self.bucket, Key=key)

    def remove_package(self) -> None:
        try:
            self._delete_key_prefix(add_trailing_slash(self.package_path))
        except NotFoundError:
            logger.debug("s3 remove_package nothing to delete path=%s", self.package_path)

    def read_companion(self, file_name: str) -> str:
        key = self.key_for(file_name)
        logger.debug("s3 read_companion key=%s", key)
        response = call_s3(self.client, "get_object", Bucket=self.bucket, Key=key)
        return read_body(response)

    # Tarballs

    def write_tarball(self, name: str) -> UploadTarball:
        key = self.key_for(name)
        logger.debug("s3 write_tarball name=%s key=%s", name, key)
        stream = UploadTarball(
            key=key,
            staging_prefix=f"{safe_package_name(self.package_name)}-",
            staging_dir=self.staging_dir,
        )
        return stream.start(self._process_upload)

    def read_tarball(self, name: str) -> ReadTarball:
        key = self.key_for(name)
        logger.debug("s3 read_tarball name=%s key=%s", name, key)
        stream = ReadTarball(name=name)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            error = convert_s3_error(exc)
            if is_not_found(error):
                self._read_from_fallback(stream, name, error)
            else:
                logger.error("s3 read_tarball failed key=%s error=%s", key, error.message)
                stream.fail(error)
            return stream

        body = response["Body"]
        stream.attach(
            body.iter_chunks(chunk_size=DOWNLOAD_CHUNK_SIZE),
            content_length=response.get("ContentLength"),
            release=body.close,
        )
        return stream

    def _read_from_fallback(self, stream: ReadTarball, name: str, not_found: StorageError) -> None:
        if self.registry_client is None:
            stream.fail(not_found)
            return

        try:
            remote = self.registry_client.fetch_tarball(self.package_name, name)
        except requests.RequestException as exc:
            logger.warning(
                "registry fallback failed package=%s name=%s error=%s",
                self.package_name,
                name,
                exc,
            )
            stream.fail(not_found)
            return

        logger.debug(
            "registry fallback hit package=%s name=%s content_length=%s",
            self.package_name,
            name,
            remote.content_length,
        )
        stream.attach(remote.chunks, content_length=remote.content_length, release=remote.release)

    def _process_upload(self, stream: UploadTarball) -> UploadResult:
        key = stream.key
        if self._exists(key):
            logger.debug("s3 write_tarball already exists key=%s", key)
            raise ConflictError()

        stream.wait_for_input()

        companions = extract_companion_files(stream.staging_path)
        uploaded: list[str] = []
        warnings: list[StorageError] = []
        for file_name, content in companions.items():
            if content is None:
                continue
            stream.raise_if_aborted()
            companion_key = self.key_for(file_name)
            try:
                call_s3(
                    self.client,
                    "put_object",
                    Bucket=self.bucket,
                    Key=companion_key,
                    Body=content.encode("utf-8"),
                    ContentType="application/json",
                )
            except StorageError as exc:
                logger.warning("s3 companion upload failed key=%s error=%s", companion_key, exc.message)
                warnings.append(exc)
            else:
                logger.debug("s3 companion uploaded key=%s", companion_key)
                uploaded.append(file_name)

        stream.raise_if_aborted()
        try:
            size = self._upload_artifact(stream)
            stream.raise_if_aborted()
        except RequestAbortedError:
            self._discard_partial_upload(key)
            raise

        return UploadResult(key=key, size=size, companions=uploaded, warnings=warnings)

    def _upload_artifact(self, stream: UploadTarball) -> int:
        key = stream.key
        size = stream.staging_path.stat().st_size
        part_size = self.config.multipart_chunk_size

        with stream.staging_path.open("rb") as handle:
            if size <= part_size:
                call_s3(
                    self.client,
                    "put_object",
                    Bucket=self.bucket,
                    Key=key,
                    Body=handle.read(),
                    ACL=self.tarball_acl,
                )
                logger.debug("s3 tarball uploaded key=%s size=%d", key, size)
                return size

            upload = call_s3(
                self.client,
                "create_multipart_upload",
                Bucket=self.bucket,
                Key=key,
                ACL=self.tarball_acl,
            )
            upload_id = upload["UploadId"]
            parts: list[dict[str, Any]] = []
            try:
                while True:
                    stream.raise_if_aborted()
                    data = handle.read(part_size)
                    if not data:
                        break
                    part_number = len(parts) + 1
                    response = call_s3(
                        self.client,
                        "upload_part",
                        Bucket=self.bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=data,
                    )
                    parts.append({"ETag": response["ETag"], "PartNumber": part_number})
                call_s3(
                    self.client,
                    "complete_multipart_upload",
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                )
            except Exception:
                self._abort_multipart_upload(key, upload_id)
                raise

        logger.debug("s3 tarball uploaded key=%s size=%d parts=%d", key, size, len(parts))
        return size

    def _abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            call_s3(
                self.client,
                "abort_multipart_upload",
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
            )
        except StorageError:
            logger.exception("s3 abort_multipart_upload failed key=%s", key)

    def _discard_partial_upload(self, key: str) -> None:
        try:
            call_s3(self.client, "delete_object", Bucket=self.bucket, Key=key)
        except StorageError:
            logger.exception("s3 discard aborted tarball failed key=%s", key)
        else:
            logger.debug("s3 discarded aborted tarball key=%s", key)

    # Helpers

    def _get_data(self) -> PackageDocument:
        key = self.key_for(PACKAGE_FILE_NAME)
        logger.debug("s3 get package document key=%s", key)
        try:
            response = call_s3(self.client, "get_object", Bucket=self.bucket, Key=key)
        except StorageError as exc:
            if is_not_found(exc):
                logger.debug("s3 package document not found key=%s", key)
            else:
                logger.error("s3 get package document failed key=%s error=%s", key, exc.message)
            raise

        try:
            return json.loads(read_body(response))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("s3 package document is not valid json key=%s", key)
            raise PackageParseError(f"invalid package document at {key}: {exc}") from exc

    def _exists(self, key: str) -> bool:
        try:
            call_s3(self.client, "head_object", Bucket=self.bucket, Key=key)
        except StorageError as exc:
            if is_not_found(exc):
                return False
            logger.error("s3 head_object failed key=%s error=%s", key, exc.message)
            raise
        return True

    def _delete_key_prefix(self, prefix: str) -> None:
        keys: list[str] = []
        params: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
        while True:
            page = call_s3(self.client, "list_objects_v2", **params)
            keys.extend(item["Key"] for item in page.get("Contents", []))
            token = page.get("NextContinuationToken")
            if not page.get("IsTruncated") or not token:
                break
            params["ContinuationToken"] = token

        if not keys:
            raise NotFoundError()

        logger.debug("s3 delete prefix=%s objects=%d", prefix, len(keys))
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start : start + DELETE_BATCH_SIZE]
            response = call_s3(
                self.client,
                "delete_objects",
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
            errors = response.get("Errors") or []
            if errors:
                first = errors[0]
                raise StorageError(
                    f"failed to delete {len(errors)} objects under {prefix}: "
                    f"{first.get('Key')} {first.get('Message', '')}".strip()
                )
