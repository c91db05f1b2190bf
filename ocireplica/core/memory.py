"""In-memory graph target.

Handy as a scratch destination and as the backing store in tests.  Every
operation is guarded by one lock so the engine may push concurrently.
"""

from __future__ import annotations

import threading

from ocireplica.core.content import GraphIndex
from ocireplica.core.digests import verify_content
from ocireplica.core.errors import NotFoundError
from ocireplica.models.descriptors import Descriptor, is_manifest
from ocireplica.models.references import RegistryIdentity, is_digest


class MemoryStore:
    """Dict-backed, content-addressed store with tags and a graph index.

    Storing the same content twice is a no-op (idempotent).  ``push_count``
    counts pushes that actually wrote new content.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._content: dict[tuple[str, str, int], bytes] = {}
        self._by_digest: dict[str, Descriptor] = {}
        self._tags: dict[str, Descriptor] = {}
        self._graph = GraphIndex()
        self.push_count = 0

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def fetch(self, desc: Descriptor) -> bytes:
        with self._lock:
            try:
                return self._content[desc.key]
            except KeyError:
                raise NotFoundError(f"{desc.digest}: not found") from None

    def push(self, desc: Descriptor, data: bytes) -> None:
        verify_content(data, desc.digest, desc.size)
        with self._lock:
            if desc.key in self._content:
                return
            self._content[desc.key] = data
            self._by_digest.setdefault(desc.digest, desc)
            self.push_count += 1
        self._graph.index_content(desc, data)

    def exists(self, desc: Descriptor) -> bool:
        with self._lock:
            return desc.key in self._content

    # ------------------------------------------------------------------
    # Target
    # ------------------------------------------------------------------

    def resolve(self, reference: str) -> Descriptor:
        with self._lock:
            if reference in self._tags:
                return self._tags[reference]
            if is_digest(reference) and reference in self._by_digest:
                return self._by_digest[reference]
        raise NotFoundError(f"{reference}: not found")

    def tag(self, desc: Descriptor, reference: str) -> None:
        if not self.exists(desc):
            raise NotFoundError(f"{desc.digest}: not found")
        with self._lock:
            self._tags[reference] = desc

    def tags(self) -> list[str]:
        with self._lock:
            return sorted(self._tags)

    def predecessors(self, desc: Descriptor) -> list[Descriptor]:
        return self._graph.predecessors(desc)

    def host_identity(self) -> RegistryIdentity | None:
        return None

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def manifests(self) -> list[Descriptor]:
        with self._lock:
            return [d for d in self._by_digest.values() if is_manifest(d)]

    def __contains__(self, digest: str) -> bool:
        with self._lock:
            return digest in self._by_digest

    def __len__(self) -> int:
        with self._lock:
            return len(self._content)
