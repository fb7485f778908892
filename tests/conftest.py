from __future__ import annotations

import io
import tarfile
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pytest
from botocore.exceptions import ClientError

from s3pkgstore.config import ENV_CONFIG_KEYS, StorageConfig
from s3pkgstore.storage import S3Database

FIXED_LAST_MODIFIED = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def client_error(code: str, status: int, operation: str, message: str = "") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeBody:
    def __init__(self, data: bytes, error: Exception | None = None) -> None:
        self._buffer = io.BytesIO(data)
        self._error = error
        self.closed = False

    def read(self, amt: int | None = None) -> bytes:
        if self._error is not None:
            raise self._error
        return self._buffer.read() if amt is None else self._buffer.read(amt)

    def iter_chunks(self, chunk_size: int = 1024):
        while True:
            chunk = self._buffer.read(chunk_size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        self.closed = True


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client calls the store makes."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.acls: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.body_errors: dict[str, Exception] = {}
        self.multipart: dict[str, dict[str, Any]] = {}
        self.aborted_uploads: list[str] = []
        self.bodies: list[FakeBody] = []
        self.on_upload_part: Callable[[int], None] | None = None
        self.page_size = 1000

    def fail(self, operation: str, key: str, error: Exception) -> None:
        self.failures[(operation, key)] = error

    def count(self, operation: str, key: str | None = None) -> int:
        return sum(
            1 for op, called_key in self.calls if op == operation and key in (None, called_key)
        )

    def _record(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        error = self.failures.get((operation, key)) or self.failures.get((operation, "*"))
        if error is not None:
            raise error

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("get_object", Key)
        if Key not in self.objects:
            raise client_error("NoSuchKey", 404, "GetObject", "The specified key does not exist.")
        data = self.objects[Key]
        body = FakeBody(data, self.body_errors.get(Key))
        self.bodies.append(body)
        return {"Body": body, "ContentLength": len(data), "LastModified": FIXED_LAST_MODIFIED}

    def head_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("head_object", Key)
        if Key not in self.objects:
            raise client_error("404", 404, "HeadObject", "Not Found")
        return {"ContentLength": len(self.objects[Key]), "LastModified": FIXED_LAST_MODIFIED}

    def put_object(self, *, Bucket: str, Key: str, Body: Any, **extra: Any) -> dict[str, Any]:
        self._record("put_object", Key)
        data = Body.read() if hasattr(Body, "read") else Body
        self.objects[Key] = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        if "ACL" in extra:
            self.acls[Key] = extra["ACL"]
        return {"ETag": '"etag"'}

    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("delete_object", Key)
        self.objects.pop(Key, None)
        return {}

    def list_objects_v2(
        self, *, Bucket: str, Prefix: str, ContinuationToken: str | None = None
    ) -> dict[str, Any]:
        self._record("list_objects_v2", Prefix)
        keys = sorted(key for key in self.objects if key.startswith(Prefix))
        start = int(ContinuationToken or 0)
        page = keys[start : start + self.page_size]
        truncated = start + self.page_size < len(keys)
        response: dict[str, Any] = {
            "KeyCount": len(page),
            "IsTruncated": truncated,
        }
        if page:
            response["Contents"] = [{"Key": key} for key in page]
        if truncated:
            response["NextContinuationToken"] = str(start + self.page_size)
        return response

    def delete_objects(self, *, Bucket: str, Delete: dict[str, Any]) -> dict[str, Any]:
        self._record("delete_objects", "*")
        deleted = []
        for item in Delete["Objects"]:
            self.objects.pop(item["Key"], None)
            deleted.append({"Key": item["Key"]})
        return {"Deleted": deleted}

    def create_multipart_upload(self, *, Bucket: str, Key: str, **extra: Any) -> dict[str, Any]:
        self._record("create_multipart_upload", Key)
        upload_id = f"upload-{len(self.multipart) + 1}"
        self.multipart[upload_id] = {"key": Key, "parts": {}, "acl": extra.get("ACL")}
        return {"UploadId": upload_id}

    def upload_part(
        self, *, Bucket: str, Key: str, UploadId: str, PartNumber: int, Body: bytes
    ) -> dict[str, Any]:
        self._record("upload_part", Key)
        self.multipart[UploadId]["parts"][PartNumber] = bytes(Body)
        if self.on_upload_part is not None:
            self.on_upload_part(PartNumber)
        return {"ETag": f'"etag-{PartNumber}"'}

    def complete_multipart_upload(
        self, *, Bucket: str, Key: str, UploadId: str, MultipartUpload: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("complete_multipart_upload", Key)
        upload = self.multipart.pop(UploadId)
        numbers = [part["PartNumber"] for part in MultipartUpload["Parts"]]
        self.objects[Key] = b"".join(upload["parts"][number] for number in numbers)
        if upload["acl"] is not None:
            self.acls[Key] = upload["acl"]
        return {}

    def abort_multipart_upload(self, *, Bucket: str, Key: str, UploadId: str) -> dict[str, Any]:
        self._record("abort_multipart_upload", Key)
        self.multipart.pop(UploadId, None)
        self.aborted_uploads.append(UploadId)
        return {}

    def generate_presigned_url(
        self, *, ClientMethod: str, Params: dict[str, str], ExpiresIn: int
    ) -> str:
        return f"https://fake-s3/{Params['Bucket']}/{Params['Key']}?method={ClientMethod}&expires={ExpiresIn}"


def build_tarball(files: dict[str, bytes | str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def _clear_storage_env(monkeypatch) -> None:
    for key in ENV_CONFIG_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def storage_config() -> StorageConfig:
    return StorageConfig(bucket="registry", key_prefix="prefix", fallback_registry_url=None)


@pytest.fixture
def database(s3_client, storage_config, tmp_path) -> S3Database:
    return S3Database(storage_config, client=s3_client, staging_dir=tmp_path)


@pytest.fixture
def tarball_factory() -> Callable[[dict[str, bytes | str]], bytes]:
    return build_tarball
