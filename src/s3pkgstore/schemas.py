from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from s3pkgstore.errors import StorageError

COMPOSER_FILE_NAME = "composer.json"
EXTENSION_FILE_NAME = "extension.json"
COMPANION_FILE_NAMES = (COMPOSER_FILE_NAME, EXTENSION_FILE_NAME)


class DTOBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CatalogDocument(BaseModel):
    """Persisted catalog: known package names plus the server secret."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    # Older catalogs stored the names under "list".
    names: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("names", "list"),
    )
    secret: str = ""


class PackageInfo(DTOBase):
    name: str
    path: str
    time: int


@dataclass(slots=True)
class CompanionFiles:
    composer_json: str | None = None
    extension_json: str | None = None

    def items(self) -> list[tuple[str, str | None]]:
        return [
            (COMPOSER_FILE_NAME, self.composer_json),
            (EXTENSION_FILE_NAME, self.extension_json),
        ]

    def get(self, file_name: str) -> str | None:
        return dict(self.items()).get(file_name)


@dataclass(slots=True)
class UploadResult:
    """Outcome of a finished tarball upload.

    ``warnings`` holds the companion-file failures that were suppressed so they
    would not fail the artifact upload itself.
    """

    key: str
    size: int
    companions: list[str] = field(default_factory=list)
    warnings: list[StorageError] = field(default_factory=list)


def dump_package_document(document: dict[str, Any]) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False)
