"""Options handed to the graph replication engine."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ocireplica.models.descriptors import Descriptor

DEFAULT_CONCURRENCY = 3

NodeCallback = Callable[[Descriptor], None]
MountFrom = Callable[[Descriptor], list[str]]
# (storage, descriptor) -> predecessors of descriptor in storage
PredecessorLookup = Callable[[Any, Descriptor], list[Descriptor]]


class CopyGraphOptions(BaseModel):
    """Tuning and lifecycle hooks for copying one rooted graph.

    Parameters
    ----------
    concurrency:
        Maximum node operations in flight at once.
    pre_copy / post_copy:
        Called around each node that is fetched and pushed.
    on_copy_skipped:
        Called for nodes already present at the destination.
    on_mounted:
        Called for blobs mounted from another repository instead of copied.
    mount_from:
        Returns candidate source repositories for a cross-repository mount.
        ``None`` disables mounting.
    cancel_event:
        When set, pending node operations abort with ``CopyCancelledError``.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    concurrency: int = Field(DEFAULT_CONCURRENCY, ge=1)
    pre_copy: NodeCallback | None = None
    post_copy: NodeCallback | None = None
    on_copy_skipped: NodeCallback | None = None
    on_mounted: NodeCallback | None = None
    mount_from: MountFrom | None = None
    cancel_event: threading.Event | None = None


class ExtendedCopyGraphOptions(CopyGraphOptions):
    """Options for copying a graph together with its predecessors.

    ``find_predecessors`` defaults to the store's referrers.  ``depth``
    bounds how far up the predecessor walk goes; 0 means unbounded.
    """

    find_predecessors: PredecessorLookup | None = None
    depth: int = Field(0, ge=0)

    def graph_options(self) -> CopyGraphOptions:
        return CopyGraphOptions(
            **{name: getattr(self, name) for name in CopyGraphOptions.model_fields}
        )
