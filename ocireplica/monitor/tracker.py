"""Status tracking for copy and backup runs.

A ``StatusTracker`` receives per-node lifecycle events from the engine and
opens one tracking scope per destination.  ``tracking()`` binds a scope to
a ``with`` block so it is always closed, and only lets a teardown error
escape when the body itself succeeded.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from ocireplica.core.content import Mounter
from ocireplica.core.errors import ReplicaError
from ocireplica.models.descriptors import Descriptor
from ocireplica.models.references import RegistryIdentity

logger = logging.getLogger(__name__)


class TrackEvent(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    MOUNTED = "mounted"
    TAGGED = "tagged"


@runtime_checkable
class StatusTracker(Protocol):
    """Sink for node lifecycle events."""

    def start_tracking(self, target: Any) -> Any: ...

    def stop_tracking(self) -> None: ...

    def pre_copy(self, desc: Descriptor) -> None: ...

    def post_copy(self, desc: Descriptor) -> None: ...

    def on_copy_skipped(self, desc: Descriptor) -> None: ...

    def on_mounted(self, desc: Descriptor) -> None: ...

    def on_tagged(self, desc: Descriptor, reference: str) -> None: ...


class TrackedTarget:
    """Wrap a target so tags applied through it are reported.

    Only the operations the engine needs are forwarded.  Optional
    capabilities such as referrer listing are left to the wrapped target.
    """

    def __init__(self, target: Any, on_tagged: Callable[[Descriptor, str], None]) -> None:
        self._target = target
        self._on_tagged = on_tagged

    @property
    def inner(self) -> Any:
        return self._target

    def fetch(self, desc: Descriptor) -> bytes:
        return self._target.fetch(desc)

    def push(self, desc: Descriptor, data: bytes) -> None:
        self._target.push(desc, data)

    def exists(self, desc: Descriptor) -> bool:
        return self._target.exists(desc)

    def resolve(self, reference: str) -> Descriptor:
        return self._target.resolve(reference)

    def tag(self, desc: Descriptor, reference: str) -> None:
        self._target.tag(desc, reference)
        self._on_tagged(desc, reference)

    def host_identity(self) -> RegistryIdentity | None:
        return self._target.host_identity()

    def mount(
        self,
        desc: Descriptor,
        from_repository: str,
        get_content: Callable[[], bytes] | None = None,
    ) -> None:
        if not isinstance(self._target, Mounter):
            raise ReplicaError("destination does not support cross-repository mounts", operation="mount")
        self._target.mount(desc, from_repository, get_content)


class TrackRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: TrackEvent
    digest: str
    media_type: str
    reference: str = ""


class RecordingTracker:
    """Tracker that keeps an ordered, thread-safe event log.

    ``scopes`` counts opened scopes; ``open_scopes`` those not yet closed.
    Set ``fail_on_stop`` to make ``stop_tracking`` raise it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: list[TrackRecord] = []
        self.scopes = 0
        self.open_scopes = 0
        self.fail_on_stop: Exception | None = None

    def _record(self, event: TrackEvent, desc: Descriptor, reference: str = "") -> None:
        with self._lock:
            self.records.append(
                TrackRecord(event=event, digest=desc.digest, media_type=desc.media_type, reference=reference)
            )

    def start_tracking(self, target: Any) -> TrackedTarget:
        with self._lock:
            self.scopes += 1
            self.open_scopes += 1
        return TrackedTarget(target, self.on_tagged)

    def stop_tracking(self) -> None:
        with self._lock:
            self.open_scopes -= 1
        if self.fail_on_stop is not None:
            raise self.fail_on_stop

    def pre_copy(self, desc: Descriptor) -> None:
        self._record(TrackEvent.STARTED, desc)

    def post_copy(self, desc: Descriptor) -> None:
        self._record(TrackEvent.COMPLETED, desc)

    def on_copy_skipped(self, desc: Descriptor) -> None:
        self._record(TrackEvent.SKIPPED, desc)

    def on_mounted(self, desc: Descriptor) -> None:
        self._record(TrackEvent.MOUNTED, desc)

    def on_tagged(self, desc: Descriptor, reference: str) -> None:
        self._record(TrackEvent.TAGGED, desc, reference)

    def digests(self, event: TrackEvent) -> list[str]:
        with self._lock:
            return [r.digest for r in self.records if r.event is event]


@contextmanager
def tracking(tracker: StatusTracker | None, target: Any) -> Iterator[Any]:
    """Open a tracking scope on *target* for the duration of the block.

    Yields the tracked target (or *target* itself when *tracker* is
    ``None``).  A ``stop_tracking`` failure is raised only if the block
    completed; otherwise it is logged and the block's error propagates.
    """
    if tracker is None:
        yield target
        return
    tracked = tracker.start_tracking(target)
    try:
        yield tracked
    except BaseException:
        try:
            tracker.stop_tracking()
        except Exception as exc:
            logger.debug("Tracking teardown failed after an earlier error: %s", exc)
        raise
    tracker.stop_tracking()


# ---------------------------------------------------------------------------
# Metadata handlers
# ---------------------------------------------------------------------------


class CopyMetadataHandler(Protocol):
    def on_copied(self, source: str, destination: str, desc: Descriptor) -> None: ...

    def on_tagged(self, desc: Descriptor, reference: str) -> None: ...


class BackupMetadataHandler(Protocol):
    def on_tags_found(self, repository: str, tags: list[str]) -> None: ...

    def on_artifact_pulled(self, tag: str, referrer_count: int, desc: Descriptor) -> None: ...

    def on_tar_exporting(self, path: str) -> None: ...

    def on_tar_exported(self, path: str, size: int) -> None: ...

    def on_backup_completed(self, tag_count: int, output: str) -> None: ...


class RecordingMetadata:
    """Collects copy and backup metadata callbacks as ``(name, args)`` tuples."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def on_copied(self, source: str, destination: str, desc: Descriptor) -> None:
        self.calls.append(("on_copied", (source, destination, desc)))

    def on_tagged(self, desc: Descriptor, reference: str) -> None:
        self.calls.append(("on_tagged", (desc, reference)))

    def on_tags_found(self, repository: str, tags: list[str]) -> None:
        self.calls.append(("on_tags_found", (repository, list(tags))))

    def on_artifact_pulled(self, tag: str, referrer_count: int, desc: Descriptor) -> None:
        self.calls.append(("on_artifact_pulled", (tag, referrer_count, desc)))

    def on_tar_exporting(self, path: str) -> None:
        self.calls.append(("on_tar_exporting", (path,)))

    def on_tar_exported(self, path: str, size: int) -> None:
        self.calls.append(("on_tar_exported", (path, size)))

    def on_backup_completed(self, tag_count: int, output: str) -> None:
        self.calls.append(("on_backup_completed", (tag_count, output)))
