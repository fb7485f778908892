from __future__ import annotations

import logging
import tarfile
from pathlib import Path, PurePosixPath

from s3pkgstore.schemas import COMPANION_FILE_NAMES, CompanionFiles

logger = logging.getLogger(__name__)

CONVENTIONAL_FOLDER = "package"


def extract_companion_files(archive_path: str | Path) -> CompanionFiles:
    """Read ``composer.json`` and ``extension.json`` out of a staged tarball.

    Only members whose name ends with a companion file name are read, so the
    rest of the archive is never unpacked. For each file the archive root wins
    over ``package/``, which wins over any other first-level folder. Missing
    files come back as ``None``; a corrupt archive raises ``tarfile.TarError``.
    """
    found: dict[str, tuple[int, str]] = {}

    with tarfile.open(archive_path, mode="r:*") as archive:
        for member in archive:
            if not member.isfile():
                continue
            match = _match_companion(member.name)
            if match is None:
                continue

            file_name, rank = match
            current = found.get(file_name)
            if current is not None and current[0] <= rank:
                continue

            handle = archive.extractfile(member)
            if handle is None:
                continue
            with handle:
                content = handle.read().decode("utf-8", errors="replace")
            found[file_name] = (rank, content)
            logger.debug(
                "tarball companion found archive=%s member=%s", archive_path, member.name
            )

    files = CompanionFiles(
        composer_json=_content(found, COMPANION_FILE_NAMES[0]),
        extension_json=_content(found, COMPANION_FILE_NAMES[1]),
    )
    logger.debug(
        "tarball companions archive=%s composer=%s extension=%s",
        archive_path,
        files.composer_json is not None,
        files.extension_json is not None,
    )
    return files


def _match_companion(member_name: str) -> tuple[str, int] | None:
    parts = [part for part in PurePosixPath(member_name).parts if part not in ("", ".", "/")]
    if not parts or parts[-1] not in COMPANION_FILE_NAMES:
        return None
    if len(parts) == 1:
        return parts[0], 0
    if len(parts) == 2:
        return parts[1], 1 if parts[0] == CONVENTIONAL_FOLDER else 2
    return None


def _content(found: dict[str, tuple[int, str]], file_name: str) -> str | None:
    entry = found.get(file_name)
    return entry[1] if entry is not None else None
