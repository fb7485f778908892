from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import typer

from s3pkgstore import StorageConfig, load_config
from s3pkgstore.errors import StorageError
from s3pkgstore.storage import S3Database

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

UPLOAD_CHUNK_SIZE = 64 * 1024
T = TypeVar("T")

app = typer.Typer(help="S3 package store CLI")

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="JSON or YAML storage configuration. AWS_* environment variables override it.",
    dir_okay=False,
)


@app.command("names")
def list_names(config_path: Path | None = ConfigOption) -> None:
    """List package names in the catalog."""
    database = _open_database(config_path)
    names = _run(database.get_names)
    for name in names:
        typer.echo(name)
    typer.echo(f"total={len(names)}")


@app.command("add")
def add_name(
    name: str = typer.Argument(..., help="Package name to add."),
    config_path: Path | None = ConfigOption,
) -> None:
    """Add a package name to the catalog."""
    database = _open_database(config_path)
    _run(database.add, name)
    typer.echo(f"added {name}")


@app.command("remove")
def remove_name(
    name: str = typer.Argument(..., help="Package name to remove."),
    purge: bool = typer.Option(False, "--purge", help="Also delete every stored object."),
    config_path: Path | None = ConfigOption,
) -> None:
    """Remove a package name from the catalog."""
    database = _open_database(config_path)
    if purge:
        _run(database.get_package_storage(name).remove_package)
    _run(database.remove, name)
    typer.echo(f"removed {name}")


@app.command("show")
def show_package(
    name: str = typer.Argument(..., help="Package name."),
    config_path: Path | None = ConfigOption,
) -> None:
    """Print a package metadata document."""
    storage = _open_database(config_path).get_package_storage(name)
    document = _run(storage.read_package, name)
    typer.echo(json.dumps(document, indent=2, ensure_ascii=False))


@app.command("companion")
def show_companion(
    name: str = typer.Argument(..., help="Package name."),
    file_name: str = typer.Argument("extension.json", help="Companion file name."),
    config_path: Path | None = ConfigOption,
) -> None:
    """Print a companion file mirrored from a package tarball."""
    storage = _open_database(config_path).get_package_storage(name)
    typer.echo(_run(storage.read_companion, file_name))


@app.command("push")
def push_tarball(
    name: str = typer.Argument(..., help="Package name."),
    tarball: Path = typer.Argument(
        ...,
        help="Tarball to upload.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    file_name: str | None = typer.Option(
        None,
        "--file-name",
        help="Stored file name. Defaults to the tarball's own name.",
    ),
    config_path: Path | None = ConfigOption,
) -> None:
    """Upload a tarball into the package's storage."""
    storage = _open_database(config_path).get_package_storage(name)
    upload = storage.write_tarball(file_name or tarball.name)
    with tarball.open("rb") as fp:
        for chunk in iter(lambda: fp.read(UPLOAD_CHUNK_SIZE), b""):
            upload.write(chunk)
    upload.end()
    upload.wait()

    if upload.error is not None:
        typer.echo(f"upload failed: {upload.error.message}", err=True)
        raise typer.Exit(code=1)

    if upload.result is not None:
        for warning in upload.result.warnings:
            logging.warning("companion upload skipped: %s", warning.message)
    typer.echo(f"uploaded {upload.key} size={upload.size}")


@app.command("pull")
def pull_tarball(
    name: str = typer.Argument(..., help="Package name."),
    file_name: str = typer.Argument(..., help="Stored tarball file name."),
    output: Path = typer.Option(..., "--output", "-o", help="Destination file.", dir_okay=False),
    config_path: Path | None = ConfigOption,
) -> None:
    """Download a tarball, falling back to the public registry."""
    storage = _open_database(config_path).get_package_storage(name)
    download = storage.read_tarball(file_name)
    output.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with output.open("wb") as fp:
        for chunk in download:
            fp.write(chunk)
            written += len(chunk)

    if download.error is not None:
        output.unlink(missing_ok=True)
        typer.echo(f"download failed: {download.error.message}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"downloaded {file_name} bytes={written}")


def _open_database(config_path: Path | None) -> S3Database:
    try:
        config = load_config(config_path) if config_path is not None else StorageConfig()
        return S3Database(config)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc


def _run(operation: Callable[..., T], *args: Any) -> T:
    try:
        return operation(*args)
    except StorageError as exc:
        typer.echo(f"{exc.status_code} {exc.message}", err=True)
        raise typer.Exit(code=1) from exc


def main() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
