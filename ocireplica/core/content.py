"""Store capabilities consumed by the replication engine and orchestrators.

Stores are duck-typed.  The required surface is ``Storage`` (fetch, push,
exists) plus ``Target`` (resolve, tag) or ``GraphStorage``
(predecessors).  Tag listing, referrer listing and cross-repository
mounting are optional capabilities probed with ``isinstance`` against the
runtime-checkable Protocols below.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from ocireplica.core.digests import verify_content
from ocireplica.models.descriptors import (
    Descriptor,
    decode_subject,
    decode_successors,
    is_manifest,
)
from ocireplica.models.references import RegistryIdentity

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Storage(Protocol):
    """Content-addressed bytes keyed by descriptor."""

    def fetch(self, desc: Descriptor) -> bytes: ...

    def push(self, desc: Descriptor, data: bytes) -> None: ...

    def exists(self, desc: Descriptor) -> bool: ...


@runtime_checkable
class GraphStorage(Storage, Protocol):
    """Storage that can answer "which nodes point at this one"."""

    def predecessors(self, desc: Descriptor) -> list[Descriptor]: ...


@runtime_checkable
class Target(Storage, Protocol):
    """Storage with named references."""

    def resolve(self, reference: str) -> Descriptor: ...

    def tag(self, desc: Descriptor, reference: str) -> None: ...

    def host_identity(self) -> RegistryIdentity | None:
        """Registry host and repository for remote stores, ``None`` otherwise."""
        ...


@runtime_checkable
class GraphTarget(GraphStorage, Target, Protocol):
    pass


@runtime_checkable
class TagLister(Protocol):
    def tags(self) -> list[str]: ...


@runtime_checkable
class ReferrerLister(Protocol):
    def referrers(self, desc: Descriptor, artifact_type: str = "") -> list[Descriptor]: ...


@runtime_checkable
class Mounter(Protocol):
    def mount(
        self,
        desc: Descriptor,
        from_repository: str,
        get_content: Callable[[], bytes] | None = None,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def fetch_all(storage: Storage, desc: Descriptor) -> bytes:
    """Fetch the full content of *desc* and verify its size and digest."""
    data = storage.fetch(desc)
    verify_content(data, desc.digest, desc.size)
    return data


def successors(storage: Storage, desc: Descriptor) -> list[Descriptor]:
    """Return child nodes of *desc*; blobs have none."""
    if not is_manifest(desc):
        return []
    return decode_successors(desc, fetch_all(storage, desc))


def referrers(
    storage: Storage, desc: Descriptor, artifact_type: str = ""
) -> list[Descriptor]:
    """Return manifests whose ``subject`` is *desc*.

    Uses the store's own referrer listing when it has one; otherwise
    filters its predecessors down to manifests that declare *desc* as
    subject (and match *artifact_type* when given).
    """
    if isinstance(storage, ReferrerLister):
        return storage.referrers(desc, artifact_type)
    if not isinstance(storage, GraphStorage):
        return []

    results: list[Descriptor] = []
    for node in storage.predecessors(desc):
        if not is_manifest(node):
            continue
        subject, node_artifact_type = decode_subject(node, fetch_all(storage, node))
        if subject is None or subject != desc:
            continue
        if artifact_type and node_artifact_type != artifact_type:
            continue
        if node.artifact_type is None and node_artifact_type:
            node = node.model_copy(update={"artifact_type": node_artifact_type})
        results.append(node)
    return results


class GraphIndex:
    """Thread-safe reverse edge index: node -> nodes that point to it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._predecessors: dict[tuple[str, str, int], dict[tuple[str, str, int], Descriptor]] = {}

    def index(self, node: Descriptor, children: list[Descriptor]) -> None:
        with self._lock:
            for child in children:
                self._predecessors.setdefault(child.key, {})[node.key] = node

    def index_content(self, node: Descriptor, content: bytes) -> None:
        """Index the edges encoded in *content* when *node* is a manifest."""
        if is_manifest(node):
            self.index(node, decode_successors(node, content))

    def predecessors(self, desc: Descriptor) -> list[Descriptor]:
        with self._lock:
            return list(self._predecessors.get(desc.key, {}).values())
