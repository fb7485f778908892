from __future__ import annotations

import pytest
import requests

from conftest import client_error
from s3pkgstore.errors import NotFoundError
from s3pkgstore.fallback import RegistryClient
from s3pkgstore.storage import S3Database
from s3pkgstore.tarball import CONTENT_LENGTH, END, ERROR, OPEN, ReadTarball

TARBALL_KEY = "prefix/left-pad/left-pad-1.0.0.tgz"


class _FakeResponse:
    def __init__(self, *, status_code: int, body: bytes = b"", headers: dict[str, str] | None = None) -> None:
        self.status_code = status_code
        self.headers = headers if headers is not None else {"content-length": str(len(body))}
        self._body = body
        self.closed = False

    def raise_for_status(self) -> None:
        if self.status_code < 400:
            return
        error = requests.HTTPError(f"{self.status_code} error")
        error.response = self  # type: ignore[assignment]
        raise error

    def iter_content(self, chunk_size: int):
        for start in range(0, len(self._body), chunk_size):
            yield self._body[start : start + chunk_size]

    def close(self) -> None:
        self.closed = True


class _FakeSession:
    def __init__(self, response: _FakeResponse | Exception) -> None:
        self.response = response
        self.urls: list[str] = []

    def get(self, url: str, *, stream: bool, timeout: float) -> _FakeResponse:
        _ = stream, timeout
        self.urls.append(url)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _database(storage_config, s3_client, tmp_path, session: _FakeSession | None) -> S3Database:
    registry = None
    if session is not None:
        registry = RegistryClient(
            base_url="https://registry.example.test",
            chunk_size=4,
            session=session,  # type: ignore[arg-type]
        )
    return S3Database(
        storage_config,
        client=s3_client,
        registry_client=registry,
        staging_dir=tmp_path,
    )


def _record(stream) -> list[tuple[str, tuple[object, ...]]]:
    events: list[tuple[str, tuple[object, ...]]] = []
    for event in (CONTENT_LENGTH, OPEN, END, ERROR):
        stream.on(event, lambda *args, event=event: events.append((event, args)))
    return events


def test_stored_tarball_streams_bytes(database, s3_client) -> None:
    s3_client.objects[TARBALL_KEY] = b"tarball-bytes"

    download = database.get_package_storage("left-pad").read_tarball("left-pad-1.0.0.tgz")
    events = _record(download)

    assert download.read() == b"tarball-bytes"
    assert [name for name, _ in events] == [CONTENT_LENGTH, OPEN, END]
    assert events[0][1] == (13,)
    assert download.content_length == 13
    assert s3_client.bodies[-1].closed


def test_missing_tarball_falls_back_to_registry(storage_config, s3_client, tmp_path) -> None:
    session = _FakeSession(_FakeResponse(status_code=200, body=b"remote-bytes"))
    database = _database(storage_config, s3_client, tmp_path, session)

    download = database.get_package_storage("left-pad").read_tarball("left-pad-1.0.0.tgz")
    events = _record(download)

    assert download.read() == b"remote-bytes"
    assert events[0] == (CONTENT_LENGTH, (12,))
    assert [name for name, _ in events] == [CONTENT_LENGTH, OPEN, END]
    assert session.urls == ["https://registry.example.test/left-pad/-/left-pad-1.0.0.tgz"]
    assert session.response.closed


def test_fallback_failure_reports_original_not_found(storage_config, s3_client, tmp_path) -> None:
    session = _FakeSession(_FakeResponse(status_code=404))
    database = _database(storage_config, s3_client, tmp_path, session)

    download = database.get_package_storage("left-pad").read_tarball("left-pad-1.0.0.tgz")
    events = _record(download)

    assert download.read() == b""
    assert isinstance(download.error, NotFoundError)
    assert [name for name, _ in events] == [ERROR]
    assert session.response.closed


def test_fallback_network_error_reports_original_not_found(storage_config, s3_client, tmp_path) -> None:
    session = _FakeSession(requests.ConnectionError("offline"))
    database = _database(storage_config, s3_client, tmp_path, session)

    download = database.get_package_storage("left-pad").read_tarball("left-pad-1.0.0.tgz")

    assert list(download) == []
    assert download.error.status_code == 404


def test_other_errors_skip_the_fallback(storage_config, s3_client, tmp_path) -> None:
    session = _FakeSession(_FakeResponse(status_code=200, body=b"remote-bytes"))
    database = _database(storage_config, s3_client, tmp_path, session)
    s3_client.fail("get_object", TARBALL_KEY, client_error("AccessDenied", 403, "GetObject", "denied"))

    download = database.get_package_storage("left-pad").read_tarball("left-pad-1.0.0.tgz")

    assert download.read() == b""
    assert download.error.status_code == 403
    assert session.urls == []


def test_missing_tarball_without_fallback_is_not_found(database) -> None:
    download = database.get_package_storage("left-pad").read_tarball("left-pad-1.0.0.tgz")

    assert download.read() == b""
    assert download.error.message == "no such package available"


def test_abort_releases_the_source(database, s3_client) -> None:
    s3_client.objects[TARBALL_KEY] = b"tarball-bytes"
    download = database.get_package_storage("left-pad").read_tarball("left-pad-1.0.0.tgz")

    download.abort()

    assert s3_client.bodies[-1].closed
    assert download.error.message == "request aborted"
    assert list(download) == []
    assert not download.emitted(END)


def test_mid_stream_failure_becomes_error_event() -> None:
    def chunks():
        yield b"abc"
        raise client_error("StreamContentLengthMismatch", 400, "GetObject")

    download = ReadTarball(name="left-pad-1.0.0.tgz")
    download.attach(chunks(), content_length=10)

    assert download.read() == b"abc"
    assert download.error.message == "content length mismatch"
    assert not download.emitted(END)


def test_late_subscribers_receive_replayed_events(database, s3_client) -> None:
    s3_client.objects[TARBALL_KEY] = b"x"
    download = database.get_package_storage("left-pad").read_tarball("left-pad-1.0.0.tgz")
    download.read()

    seen: list[str] = []
    download.on(OPEN, lambda: seen.append(OPEN))
    download.on(END, lambda: seen.append(END))

    assert seen == [OPEN, END]
    assert download.wait(timeout=0)


@pytest.mark.parametrize("header", [{}, {"content-length": "not-a-number"}])
def test_fallback_without_usable_length_still_opens(storage_config, s3_client, tmp_path, header) -> None:
    session = _FakeSession(_FakeResponse(status_code=200, body=b"remote", headers=header))
    database = _database(storage_config, s3_client, tmp_path, session)

    download = database.get_package_storage("left-pad").read_tarball("left-pad-1.0.0.tgz")

    assert download.emitted(OPEN)
    assert not download.emitted(CONTENT_LENGTH)
    assert download.read() == b"remote"
