"""Backup orchestrator: pull tagged artifacts into a local OCI layout.

The output path's suffix selects the representation: ``.tar`` produces a
single uncompressed archive, anything else a layout directory.  Tags are
processed one at a time, in the order given (or discovered); each tag's
graph copy runs concurrently inside the engine.

Failure handling
----------------
- Any tag failure aborts the whole backup.  A directory output keeps the
  content copied so far; a tar output is never written.
- The staging directory of a tar backup is removed on every exit path.
- The temporary archive is removed when it cannot be moved into place.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import tempfile
import threading
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ocireplica.core import engine
from ocireplica.core.archive import tar_directory
from ocireplica.core.closure import referrer_closure
from ocireplica.core.content import TagLister
from ocireplica.core.copier import recursive_copy
from ocireplica.core.errors import BackupError, CopyCancelledError, ReplicaError, unwrap_copy_error
from ocireplica.core.layout import INGEST_DIR, OCILayoutStore
from ocireplica.models.descriptors import Descriptor
from ocireplica.models.options import (
    DEFAULT_CONCURRENCY,
    ExtendedCopyGraphOptions,
)
from ocireplica.models.references import parse_artifacts_to_backup
from ocireplica.monitor.tracker import BackupMetadataHandler, StatusTracker, tracking

logger = logging.getLogger(__name__)

BACKUP_USAGE = "ocireplica backup [flags] --output <path> <registry>/<repository>[:<ref1>[,<ref2>...]]"


class OutputFormat(str, Enum):
    DIRECTORY = "dir"
    TAR = "tar"


class BackupRequest(BaseModel):
    """A backup invocation.

    ``reference`` is ``registry/repo[:tag1[,tag2...]]``; digests are
    rejected.  Without tags every tag in the repository is backed up.
    """

    model_config = ConfigDict(frozen=True)

    reference: str
    output: Path
    include_referrers: bool = False
    concurrency: int = Field(DEFAULT_CONCURRENCY, ge=1)

    @property
    def output_format(self) -> OutputFormat:
        if str(self.output).endswith(".tar"):
            return OutputFormat.TAR
        return OutputFormat.DIRECTORY


class BackupResult(BaseModel):
    """Outcome of a successful backup.  ``referrer_counts`` follows ``tags``."""

    model_config = ConfigDict(frozen=True)

    repository: str
    tags: list[str]
    referrer_counts: list[int]
    digests: list[str]
    output: Path
    output_format: OutputFormat
    size: int


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def find_tags_to_backup(source: Any, tags: list[str]) -> list[str]:
    """Explicit *tags* win; otherwise list every tag of *source*."""
    if tags:
        return list(tags)
    if not isinstance(source, TagLister):
        raise ReplicaError("source does not support listing tags", operation="tags")
    return list(source.tags())


def backup_tag(
    src: Any,
    dst: Any,
    tag: str,
    include_referrers: bool,
    opts: ExtendedCopyGraphOptions,
    referrer_store: Any = None,
) -> tuple[Descriptor, int]:
    """Copy one tag into *dst*; return its root and referrer count.

    Without referrers this is a plain tagged copy and the count is 0.
    With referrers the root's referrer closure is copied too and the
    referrers of the root are then counted at *referrer_store* (the
    unwrapped destination, defaulting to *dst*).
    """
    if not include_referrers:
        desc = engine.copy(src, tag, dst, tag, opts.graph_options())
        return desc, 0

    try:
        root = engine.resolve(src, tag)
    except Exception as exc:
        raise ReplicaError(f"failed to resolve {tag}: {exc}", operation="resolve") from exc
    recursive_copy(src, dst, tag, root, opts)
    found = referrer_closure(referrer_store if referrer_store is not None else dst, root)
    return root, len(found)


def remove_ingest(root: Path) -> None:
    ingest = root / INGEST_DIR
    if not ingest.exists():
        return
    try:
        shutil.rmtree(ingest)
    except OSError as exc:
        logger.debug("Failed to remove ingest directory %s: %s", ingest, exc)


def export_tar(
    staging: Path,
    output: Path,
    *,
    cancel_event: threading.Event | None = None,
) -> int:
    """Archive *staging* and move it to *output* atomically.

    The archive is written next to *output* first.  Returns its size.
    """
    output = output.absolute()
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise BackupError(f"failed to create directory for output file {output}: {exc}") from exc

    fd, tmp = tempfile.mkstemp(prefix=".ocireplica-backup-", suffix=".tar", dir=output.parent)
    tmp_path = Path(tmp)
    try:
        with os.fdopen(fd, "wb") as fh:
            tar_directory(fh, staging, cancel_event=cancel_event)
        os.replace(tmp_path, output)
    except BaseException as exc:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError as remove_exc:
            logger.debug("Failed to remove temporary tar file %s: %s", tmp_path, remove_exc)
        if isinstance(exc, (OSError, tarfile.TarError)):
            raise BackupError(f"failed to create tar archive {output}: {exc}") from exc
        raise
    return output.stat().st_size


def directory_size(root: Path) -> int:
    return sum(p.stat().st_size for p in root.rglob("*") if p.is_file())


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class BackupOrchestrator:
    """Back up tags from a registry repository to a local layout.

    Parameters
    ----------
    source_factory:
        Called with the repository string (``registry/repo``) to open the
        source target.  Called only after the request has been parsed.
    tracker:
        Optional ``StatusTracker``; a fresh scope is opened for each tag.
    metadata:
        Optional ``BackupMetadataHandler`` receiving progress callbacks.
    temp_dir:
        Parent directory for the staging directory of tar backups.
        ``None`` uses the system default.
    cancel_event:
        Setting it aborts the copy in progress.
    """

    def __init__(
        self,
        source_factory: Callable[[str], Any],
        tracker: StatusTracker | None = None,
        metadata: BackupMetadataHandler | None = None,
        *,
        temp_dir: Path | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._source_factory = source_factory
        self._tracker = tracker
        self._metadata = metadata
        self._temp_dir = temp_dir
        self._cancel_event = cancel_event

    def _options(self, concurrency: int) -> ExtendedCopyGraphOptions:
        opts = ExtendedCopyGraphOptions(concurrency=concurrency, cancel_event=self._cancel_event)
        if self._tracker is not None:
            opts = opts.model_copy(
                update={
                    "pre_copy": self._tracker.pre_copy,
                    "post_copy": self._tracker.post_copy,
                    "on_copy_skipped": self._tracker.on_copy_skipped,
                }
            )
        return opts

    def run(self, request: BackupRequest) -> BackupResult:
        repository, explicit_tags = parse_artifacts_to_backup(request.reference)

        if request.output_format is OutputFormat.TAR:
            staging = Path(tempfile.mkdtemp(prefix="ocireplica-backup-", dir=self._temp_dir))
            try:
                return self._backup(request, repository, explicit_tags, staging)
            finally:
                try:
                    shutil.rmtree(staging)
                except OSError as exc:
                    logger.debug("Failed to remove temporary directory %s: %s", staging, exc)
        return self._backup(request, repository, explicit_tags, request.output)

    def _backup(
        self,
        request: BackupRequest,
        repository: str,
        explicit_tags: list[str],
        staging: Path,
    ) -> BackupResult:
        src = self._source_factory(repository)
        try:
            dst = OCILayoutStore(staging)
        except (ReplicaError, OSError) as exc:
            raise BackupError(f"failed to create OCI store: {exc}") from exc

        try:
            tags = find_tags_to_backup(src, explicit_tags)
        except ReplicaError as exc:
            raise BackupError(f"failed to get tags to back up: {exc}") from exc
        if not tags:
            raise ReplicaError(
                f"no tags found in repository {repository}, please specify at least one tag to back up",
                operation="tags",
                usage=BACKUP_USAGE,
                recommendation=f'If you want to list available tags in {repository}, use "ocireplica tags"',
            )
        if self._metadata is not None:
            self._metadata.on_tags_found(repository, tags)

        opts = self._options(request.concurrency)
        counts: list[int] = []
        digests: list[str] = []
        for tag in tags:
            try:
                with tracking(self._tracker, dst) as tracked:
                    desc, count = backup_tag(
                        src, tracked, tag, request.include_referrers, opts, referrer_store=dst
                    )
            except CopyCancelledError:
                raise
            except (ReplicaError, OSError) as exc:
                cause = unwrap_copy_error(exc)
                raise BackupError(f"failed to copy ref {tag}: {cause}") from exc
            logger.debug("Backed up %s@%s with %d referrer(s)", tag, desc.digest, count)
            counts.append(count)
            digests.append(desc.digest)
            if self._metadata is not None:
                self._metadata.on_artifact_pulled(tag, count, desc)

        remove_ingest(staging)
        if request.output_format is OutputFormat.TAR:
            if self._metadata is not None:
                self._metadata.on_tar_exporting(str(request.output))
            size = export_tar(staging, request.output, cancel_event=self._cancel_event)
            if self._metadata is not None:
                self._metadata.on_tar_exported(str(request.output), size)
        else:
            size = directory_size(staging)

        if self._metadata is not None:
            self._metadata.on_backup_completed(len(tags), str(request.output))
        return BackupResult(
            repository=repository,
            tags=tags,
            referrer_counts=counts,
            digests=digests,
            output=request.output,
            output_format=request.output_format,
            size=size,
        )
