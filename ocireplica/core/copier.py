"""Copy orchestrator: replicate one artifact between two targets.

Mode selection
--------------
- **direct**   : no destination reference.  Resolve and copy the graph,
  nothing is tagged.
- **tagged**   : destination reference, not recursive.  Resolve, copy and
  tag the destination in one engine call.
- **recursive**: copy the graph plus its referrers.  For an index root the
  referrers of its children are included too (see ``core.closure``).

Extra destination tags are applied afterwards.  A failing extra tag
aborts the run; tags applied before it stay applied.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ocireplica.core import engine
from ocireplica.core.closure import default_lookup, prepare_closure
from ocireplica.core.errors import (
    CopyError,
    ExtraTagError,
    ResolveError,
)
from ocireplica.models.descriptors import Descriptor, Platform
from ocireplica.models.options import (
    DEFAULT_CONCURRENCY,
    ExtendedCopyGraphOptions,
    MountFrom,
)
from ocireplica.models.references import is_digest, validate_tag
from ocireplica.monitor.tracker import CopyMetadataHandler, StatusTracker, tracking

logger = logging.getLogger(__name__)


class CopyRequest(BaseModel):
    """What to copy and how.

    ``destination_reference`` is the first destination tag; ``extra_tags``
    are applied to the copied root after the copy succeeds.
    """

    model_config = ConfigDict(frozen=True)

    source_reference: str
    destination_reference: str = ""
    extra_tags: list[str] = []
    recursive: bool = False
    concurrency: int = Field(DEFAULT_CONCURRENCY, ge=1)
    platform: Platform | None = None

    @field_validator("extra_tags")
    @classmethod
    def _validate_extra_tags(cls, tags: list[str]) -> list[str]:
        return [validate_tag(tag) for tag in tags]


def mount_hint(src: Any, dst: Any) -> MountFrom | None:
    """Offer the source repository as a mount candidate.

    Only when both sides are registry repositories on the same host.
    """
    src_identity = src.host_identity()
    dst_identity = dst.host_identity()
    if src_identity is None or dst_identity is None:
        return None
    if src_identity.host != dst_identity.host:
        return None
    repository = src_identity.repository
    return lambda desc: [repository]


def recursive_copy(
    src: Any,
    dst: Any,
    dst_ref: str,
    root: Descriptor,
    opts: ExtendedCopyGraphOptions,
) -> None:
    """Copy *root* with its referrer closure.

    The destination is tagged only when *dst_ref* is set and differs from
    the root digest.
    """
    lookup = prepare_closure(
        src, root, opts.find_predecessors or default_lookup, opts.concurrency
    )
    opts = opts.model_copy(update={"find_predecessors": lookup})
    if not dst_ref or dst_ref == root.digest:
        engine.extended_copy_graph(src, dst, root, opts)
    else:
        engine.extended_copy(src, root.digest, dst, dst_ref, opts)


def display_source(path: str, reference: str, desc: Descriptor) -> str:
    """Source name for reports.

    A digest reference is replaced by the digest actually copied when the
    two differ, e.g. after platform selection narrowed an index.
    """
    if is_digest(reference) and reference != desc.digest:
        return f"{path}@{desc.digest}"
    if not reference:
        return path
    sep = "@" if is_digest(reference) else ":"
    return f"{path}{sep}{reference}"


class CopyOrchestrator:
    """Runs one copy request from *src* to *dst*.

    Parameters
    ----------
    src:
        Readable graph target holding the artifact.
    dst:
        Writable target receiving it.
    tracker:
        Optional ``StatusTracker`` receiving node events.  One tracking
        scope is opened per copy and always closed.
    cancel_event:
        Setting it aborts pending node operations.
    """

    def __init__(
        self,
        src: Any,
        dst: Any,
        tracker: StatusTracker | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._src = src
        self._dst = dst
        self._tracker = tracker
        self._cancel_event = cancel_event

    def _options(self, request: CopyRequest) -> ExtendedCopyGraphOptions:
        opts = ExtendedCopyGraphOptions(
            concurrency=request.concurrency,
            mount_from=mount_hint(self._src, self._dst),
            cancel_event=self._cancel_event,
        )
        if self._tracker is not None:
            opts = opts.model_copy(
                update={
                    "pre_copy": self._tracker.pre_copy,
                    "post_copy": self._tracker.post_copy,
                    "on_copy_skipped": self._tracker.on_copy_skipped,
                    "on_mounted": self._tracker.on_mounted,
                }
            )
        return opts

    def _resolve(self, request: CopyRequest) -> Descriptor:
        try:
            return engine.resolve(self._src, request.source_reference, request.platform)
        except Exception as exc:
            raise ResolveError(
                request.source_reference,
                f"failed to resolve {request.source_reference}: {exc}",
            ) from exc

    def copy(self, request: CopyRequest) -> Descriptor:
        """Copy the artifact and return the root descriptor that was copied."""
        opts = self._options(request)
        with tracking(self._tracker, self._dst) as dst:
            if request.recursive:
                root = self._resolve(request)
                logger.debug("Recursive copy of %s", root.digest)
                recursive_copy(self._src, dst, request.destination_reference, root, opts)
                return root
            if not request.destination_reference:
                root = self._resolve(request)
                engine.copy_graph(self._src, dst, root, opts.graph_options())
                return root
            return engine.copy(
                self._src,
                request.source_reference,
                dst,
                request.destination_reference,
                opts.graph_options(),
                request.platform,
            )

    def apply_extra_tags(
        self,
        desc: Descriptor,
        request: CopyRequest,
        on_tagged=None,
    ) -> None:
        """Tag *desc* at the destination with every extra tag.

        Raises ``ExtraTagError`` carrying *desc* on the first failure.
        """
        if not request.extra_tags:
            return
        with tracking(self._tracker, self._dst) as dst:
            try:
                engine.tag_n(dst, desc, request.extra_tags, request.concurrency, on_tagged)
            except CopyError as exc:
                raise ExtraTagError(str(exc.err), desc) from exc

    def run(
        self,
        request: CopyRequest,
        metadata: CopyMetadataHandler | None = None,
        *,
        source_path: str = "",
        destination: str = "",
    ) -> Descriptor:
        """Copy, report the result, then apply extra tags."""
        desc = self.copy(request)
        if metadata is not None:
            metadata.on_copied(
                display_source(source_path, request.source_reference, desc),
                destination,
                desc,
            )
        self.apply_extra_tags(
            desc, request, metadata.on_tagged if metadata is not None else None
        )
        return desc
