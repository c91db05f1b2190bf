"""Helpers shared by the CLI commands: target construction, logging, errors."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from ocireplica.config import settings
from ocireplica.core.errors import (
    ExtraTagError,
    InvalidReferenceError,
    ReplicaError,
    error_prefix,
    unwrap_copy_error,
)
from ocireplica.core.layout import INDEX_FILE, OCILayoutArchive, OCILayoutStore
from ocireplica.core.remote import RemoteRepository
from ocireplica.models.references import Reference, parse_layout_reference, validate_tag

err_console = Console(stderr=True)

KIND_REGISTRY = "registry"
KIND_LAYOUT = "oci-layout"


class RemoteOptions(BaseModel):
    """Registry connection flags common to every command."""

    model_config = ConfigDict(frozen=True)

    plain_http: bool = False
    insecure: bool = False
    username: str | None = None
    password: str | None = None

    def open(self, reference: Reference | str) -> RemoteRepository:
        return RemoteRepository(
            reference,
            plain_http=self.plain_http,
            insecure=self.insecure,
            username=self.username,
            password=self.password,
            timeout=settings.request_timeout,
            user_agent=settings.user_agent,
        )


class TargetHandle(BaseModel):
    """An opened target plus how the user named it."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    target: Any
    kind: str
    path: str
    reference: str = ""
    raw: str = ""

    def close(self) -> None:
        if isinstance(self.target, OCILayoutArchive):
            self.target.close()


def configure_logging(debug: bool = False) -> None:
    """Route log records through Rich at the configured level."""
    level = "DEBUG" if debug else settings.effective_log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def open_layout_source(path: str) -> Any:
    """Open an existing layout directory or layout tar for reading.

    A directory without ``index.json`` is refused rather than initialised.
    """
    location = Path(path)
    if location.is_file():
        return OCILayoutArchive(location)
    if not location.is_dir():
        raise ReplicaError(f"OCI layout {path} does not exist", operation="open")
    if not (location / INDEX_FILE).is_file():
        raise ReplicaError(f"{path} is not an OCI layout: missing {INDEX_FILE}", operation="open")
    return OCILayoutStore(location)


def open_source(raw: str, *, oci_layout: bool, remote: RemoteOptions) -> TargetHandle:
    """Open the copy source.  The reference part must not be empty."""
    if oci_layout:
        path, reference = parse_layout_reference(raw)
        handle = TargetHandle(
            target=open_layout_source(path), kind=KIND_LAYOUT, path=path, reference=reference, raw=raw
        )
    else:
        ref = Reference.parse(raw)
        handle = TargetHandle(
            target=remote.open(ref), kind=KIND_REGISTRY, path=ref.locator, reference=ref.reference, raw=raw
        )
    if not handle.reference:
        handle.close()
        raise InvalidReferenceError(
            f'"{raw}": no tag or digest specified',
            usage="ocireplica cp [flags] <from>{:<tag>|@<digest>} <to>[:<tag>[,<tag>][...]]",
            recommendation="specify a reference in the form of <registry>/<repository>:<tag> or <registry>/<repository>@<digest>",
        )
    return handle


def open_destination(
    raw: str, *, oci_layout: bool, remote: RemoteOptions
) -> tuple[TargetHandle, list[str]]:
    """Open the copy destination ``<target>[:<tag>[,<tag>...]]``.

    Returns the handle, whose reference is the first tag, and the extra
    tags.
    """
    head, _, rest = raw.partition(",")
    extra_tags = [validate_tag(tag.strip(), raw) for tag in rest.split(",") if tag.strip()]
    if oci_layout:
        path, reference = parse_layout_reference(head)
        handle = TargetHandle(
            target=OCILayoutStore(Path(path)), kind=KIND_LAYOUT, path=path, reference=reference, raw=head
        )
    else:
        ref = Reference.parse(head)
        handle = TargetHandle(
            target=remote.open(ref), kind=KIND_REGISTRY, path=ref.locator, reference=ref.reference, raw=head
        )
    if extra_tags and not handle.reference:
        raise InvalidReferenceError(
            f'"{raw}": extra tags need a destination tag first',
            usage="ocireplica cp [flags] <from>{:<tag>|@<digest>} <to>[:<tag>[,<tag>][...]]",
        )
    return handle, extra_tags


def report_error(
    err: ReplicaError,
    *,
    source: TargetHandle | None = None,
    destination: TargetHandle | None = None,
) -> None:
    """Print *err* with its origin prefix, usage and recommendation."""
    origin = err.__cause__ if isinstance(err, ExtraTagError) else err
    prefix = error_prefix(
        origin,
        source_kind=source.kind if source else KIND_REGISTRY,
        source_ref=source.raw if source else "",
        destination_kind=destination.kind if destination else KIND_REGISTRY,
        destination_ref=destination.raw if destination else "",
    )
    err_console.print(f"[bold red]{prefix}[/bold red] {escape(str(unwrap_copy_error(err)))}", highlight=False)
    if err.usage:
        err_console.print(f"Usage: {err.usage}", markup=False, highlight=False)
    if err.recommendation:
        err_console.print(err.recommendation, markup=False, highlight=False)
