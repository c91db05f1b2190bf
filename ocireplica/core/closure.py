"""Referrer closure for recursive copies of an index.

Referrers attached to the children of an index are not found by walking
up from the index itself.  ``prepare_closure`` collects them and returns a
predecessor lookup that reports them as referrers of the root, so an
extended copy of the index carries them along.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from ocireplica.core.content import Storage, fetch_all, referrers
from ocireplica.core.errors import CopyError, CopyErrorOrigin, ReplicaError
from ocireplica.models.descriptors import Descriptor, Index, is_index
from ocireplica.models.options import PredecessorLookup

logger = logging.getLogger(__name__)


def default_lookup(storage: Any, desc: Descriptor) -> list[Descriptor]:
    return referrers(storage, desc)


class ClosureLookup:
    """Predecessor lookup that adds the child referrers to the root's answer.

    Lookups for any other node go straight to *base*.
    """

    def __init__(
        self,
        base: PredecessorLookup,
        root: Descriptor,
        closure: list[Descriptor],
    ) -> None:
        self._base = base
        self._root = root
        self._closure = tuple(closure)

    @property
    def closure(self) -> tuple[Descriptor, ...]:
        return self._closure

    def __call__(self, storage: Any, desc: Descriptor) -> list[Descriptor]:
        found = self._base(storage, desc)
        if desc != self._root:
            return found
        merged: dict[tuple[str, str, int], Descriptor] = {d.key: d for d in found}
        for extra in self._closure:
            merged.setdefault(extra.key, extra)
        return list(merged.values())


def find_child_referrers(
    src: Storage,
    root: Descriptor,
    lookup: PredecessorLookup = default_lookup,
    concurrency: int = 1,
) -> list[Descriptor]:
    """Referrers of every direct child of the index *root*.

    Results are deduplicated in child order; the root itself never appears.
    """
    try:
        content = fetch_all(src, root)
    except (ReplicaError, OSError) as exc:
        raise CopyError(CopyErrorOrigin.SOURCE, "Fetch", exc) from exc
    children = Index.parse(content).manifests
    if not children:
        return []
    with ThreadPoolExecutor(max_workers=max(concurrency, 1)) as pool:
        per_child = list(pool.map(lambda child: lookup(src, child), children))

    found: dict[tuple[str, str, int], Descriptor] = {}
    for child_referrers in per_child:
        for desc in child_referrers:
            if desc.key != root.key:
                found.setdefault(desc.key, desc)
    return list(found.values())


def prepare_closure(
    src: Storage,
    root: Descriptor,
    base_lookup: PredecessorLookup = default_lookup,
    concurrency: int = 1,
) -> PredecessorLookup:
    """Build the predecessor lookup for an extended copy of *root*.

    Returns *base_lookup* itself when *root* is not an index or none of its
    children has referrers; a ``ClosureLookup`` otherwise.
    """
    if not is_index(root):
        return base_lookup
    closure = find_child_referrers(src, root, base_lookup, concurrency)
    if not closure:
        return base_lookup
    logger.debug("Index %s: %d child referrer(s) attached", root.digest, len(closure))
    return ClosureLookup(base_lookup, root, closure)


def referrer_closure(
    storage: Storage,
    root: Descriptor,
    lookup: PredecessorLookup = default_lookup,
) -> list[Descriptor]:
    """Direct referrers of *root* plus, for an index, those of its children."""
    return prepare_closure(storage, root, lookup)(storage, root)
