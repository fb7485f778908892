from __future__ import annotations

import json

import pytest

from conftest import build_tarball
from s3pkgstore.errors import ConflictError, NotFoundError
from s3pkgstore.storage import S3Database


def test_publish_read_and_unpublish_left_pad(database: S3Database, s3_client) -> None:
    database.add("left-pad")
    storage = database.get_package_storage("left-pad")
    storage.create_package("left-pad", {"name": "left-pad", "versions": {}})

    tarball = build_tarball(
        {
            "package/package.json": '{"name": "left-pad", "version": "1.0.0"}',
            "package/extension.json": '{"id": "left-pad", "title": "Left pad"}',
        }
    )
    upload = storage.write_tarball("left-pad-1.0.0.tgz")
    upload.write(tarball)
    upload.end()
    assert upload.wait(timeout=10)
    assert upload.error is None

    storage.update_package(
        "left-pad",
        lambda document: document["versions"].update({"1.0.0": {"version": "1.0.0"}}),
    )

    assert database.get_names() == ["left-pad"]
    assert storage.read_package("left-pad")["versions"] == {"1.0.0": {"version": "1.0.0"}}
    assert json.loads(storage.read_companion("extension.json"))["title"] == "Left pad"
    assert database.get_all_extension_json() == [{"id": "left-pad", "title": "Left pad"}]
    assert storage.read_tarball("left-pad-1.0.0.tgz").read() == tarball

    again = storage.write_tarball("left-pad-1.0.0.tgz")
    again.write(tarball)
    again.end()
    assert again.wait(timeout=10)
    assert isinstance(again.error, ConflictError)

    storage.remove_package()
    database.remove("left-pad")

    assert database.get_names() == []
    assert sorted(s3_client.objects) == ["prefix/catalog.json"]
    with pytest.raises(NotFoundError):
        storage.read_package("left-pad")
    assert storage.read_tarball("left-pad-1.0.0.tgz").error.status_code == 404
