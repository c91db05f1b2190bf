"""Graph replication engine.

Copies a rooted descriptor graph from a source store to a destination
store.  A copy runs in two phases:

1. **Plan** (sequential): walk the graph from the roots.  Nodes the
   destination already has are reported as skipped and not descended.
   Manifests are fetched once, their content cached for the push.
2. **Execute** (concurrent): copy nodes leaves-first, one height level at
   a time, on a thread pool bounded by ``concurrency``.  A node is only
   pushed after every child it references, so the destination never holds
   a manifest whose children are missing.

Nothing is rolled back on failure or cancellation; content already written
stays, which makes a retry cheap.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from contextlib import contextmanager

from ocireplica.core.content import Mounter, Storage, Target, fetch_all, referrers
from ocireplica.core.errors import (
    CopyCancelledError,
    CopyError,
    CopyErrorOrigin,
    NotFoundError,
    ReplicaError,
)
from ocireplica.models.descriptors import (
    Descriptor,
    Index,
    Manifest,
    Platform,
    decode_successors,
    is_index,
    is_manifest,
)
from ocireplica.models.options import (
    CopyGraphOptions,
    ExtendedCopyGraphOptions,
    PredecessorLookup,
)

logger = logging.getLogger(__name__)

_Key = tuple[str, str, int]


@contextmanager
def _origin(origin: CopyErrorOrigin, op: str) -> Iterator[None]:
    """Tag any failure inside the block with the side that produced it."""
    try:
        yield
    except (CopyError, CopyCancelledError):
        raise
    except Exception as exc:
        raise CopyError(origin, op, exc) from exc


def _check_cancelled(opts: CopyGraphOptions) -> None:
    if opts.cancel_event is not None and opts.cancel_event.is_set():
        raise CopyCancelledError("copy cancelled")


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class _CopyPlan:
    """Nodes to copy, grouped by height (0 = no children left to copy)."""

    def __init__(self) -> None:
        self.nodes: dict[_Key, Descriptor] = {}
        self.children: dict[_Key, list[_Key]] = {}
        self.contents: dict[_Key, bytes] = {}
        self.skipped: set[_Key] = set()

    def levels(self) -> list[list[Descriptor]]:
        heights: dict[_Key, int] = {}
        for key in self.nodes:
            self._height(key, heights)
        grouped: dict[int, list[Descriptor]] = {}
        for key, desc in self.nodes.items():
            grouped.setdefault(heights[key], []).append(desc)
        return [grouped[h] for h in sorted(grouped)]

    def _height(self, start: _Key, heights: dict[_Key, int]) -> int:
        # iterative post-order so deep graphs do not hit the recursion limit
        stack: list[tuple[_Key, bool]] = [(start, False)]
        while stack:
            key, expanded = stack.pop()
            if key in heights:
                continue
            pending = [c for c in self.children.get(key, []) if c in self.nodes]
            if expanded:
                heights[key] = 1 + max((heights[c] for c in pending), default=-1)
                continue
            stack.append((key, True))
            stack.extend((c, False) for c in pending if c not in heights)
        return heights[start]


def _plan(
    src: Storage,
    dst: Storage,
    roots: list[Descriptor],
    opts: CopyGraphOptions,
) -> _CopyPlan:
    plan = _CopyPlan()
    visited: set[_Key] = set()
    stack = list(reversed(roots))
    while stack:
        node = stack.pop()
        if node.key in visited:
            continue
        visited.add(node.key)
        _check_cancelled(opts)

        with _origin(CopyErrorOrigin.DESTINATION, "Exists"):
            present = dst.exists(node)
        if present:
            plan.skipped.add(node.key)
            if opts.on_copy_skipped is not None:
                opts.on_copy_skipped(node)
            continue

        plan.nodes[node.key] = node
        if not is_manifest(node):
            continue
        with _origin(CopyErrorOrigin.SOURCE, "Fetch"):
            content = fetch_all(src, node)
            children = decode_successors(node, content)
        plan.contents[node.key] = content
        plan.children[node.key] = [c.key for c in children]
        stack.extend(reversed(children))
    return plan


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _copy_node(
    src: Storage,
    dst: Storage,
    node: Descriptor,
    plan: _CopyPlan,
    opts: CopyGraphOptions,
) -> None:
    _check_cancelled(opts)

    if opts.mount_from is not None and not is_manifest(node) and isinstance(dst, Mounter):
        if _try_mount(src, dst, node, opts):
            return

    if opts.pre_copy is not None:
        opts.pre_copy(node)
    content = plan.contents.get(node.key)
    if content is None:
        with _origin(CopyErrorOrigin.SOURCE, "Fetch"):
            content = fetch_all(src, node)
    with _origin(CopyErrorOrigin.DESTINATION, "Push"):
        dst.push(node, content)
    if opts.post_copy is not None:
        opts.post_copy(node)


def _try_mount(src: Storage, dst: Mounter, node: Descriptor, opts: CopyGraphOptions) -> bool:
    """Mount *node* from a sibling repository.  False means fall back to copy."""
    with _origin(CopyErrorOrigin.SOURCE, "MountFrom"):
        candidates = opts.mount_from(node)

    def get_content() -> bytes:
        with _origin(CopyErrorOrigin.SOURCE, "Fetch"):
            return fetch_all(src, node)

    for repository in candidates:
        try:
            dst.mount(node, repository, get_content)
        except (ReplicaError, OSError) as exc:
            logger.debug("Mounting %s from %s failed, falling back: %s", node.digest, repository, exc)
            continue
        if opts.on_mounted is not None:
            opts.on_mounted(node)
        return True
    return False


def _execute(src: Storage, dst: Storage, plan: _CopyPlan, opts: CopyGraphOptions) -> None:
    if not plan.nodes:
        return
    with ThreadPoolExecutor(max_workers=opts.concurrency, thread_name_prefix="ocireplica") as pool:
        for level in plan.levels():
            futures = [pool.submit(_copy_node, src, dst, node, plan, opts) for node in level]
            done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
            for future in not_done:
                future.cancel()
            for future in futures:
                if future in done and future.exception() is not None:
                    # let in-flight siblings finish before surfacing the error
                    wait(not_done)
                    raise future.exception()


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def copy_graph(
    src: Storage,
    dst: Storage,
    root: Descriptor,
    opts: CopyGraphOptions | None = None,
) -> None:
    """Copy the graph rooted at *root* from *src* to *dst*."""
    opts = opts or CopyGraphOptions()
    plan = _plan(src, dst, [root], opts)
    logger.debug(
        "Copying %s: %d node(s) to copy, %d already present",
        root.digest, len(plan.nodes), len(plan.skipped),
    )
    _execute(src, dst, plan, opts)


def find_roots(
    src: Storage,
    node: Descriptor,
    opts: ExtendedCopyGraphOptions,
) -> list[Descriptor]:
    """Walk predecessors upward from *node*; nodes with none are roots."""
    lookup: PredecessorLookup = opts.find_predecessors or referrers
    visited: set[_Key] = set()
    roots: dict[_Key, Descriptor] = {}
    stack: list[tuple[Descriptor, int]] = [(node, 0)]
    while stack:
        current, depth = stack.pop()
        if current.key in visited:
            continue
        visited.add(current.key)
        if opts.depth and depth == opts.depth:
            roots.setdefault(current.key, current)
            continue
        _check_cancelled(opts)
        with _origin(CopyErrorOrigin.SOURCE, "FindPredecessors"):
            found = lookup(src, current)
        if not found:
            roots.setdefault(current.key, current)
            continue
        stack.extend((p, depth + 1) for p in found if p.key not in visited)
    return list(roots.values())


def extended_copy_graph(
    src: Storage,
    dst: Storage,
    node: Descriptor,
    opts: ExtendedCopyGraphOptions | None = None,
) -> None:
    """Copy *node*'s graph plus every graph reachable through its predecessors.

    *node* itself is always copied, together with the sub-graph of every
    root found by walking ``find_predecessors`` upward from it.
    """
    opts = opts or ExtendedCopyGraphOptions()
    roots = find_roots(src, node, opts)
    plan = _plan(src, dst, [node, *roots], opts)
    logger.debug(
        "Extended copy of %s: %d root(s), %d node(s) to copy, %d already present",
        node.digest, len(roots), len(plan.nodes), len(plan.skipped),
    )
    _execute(src, dst, plan, opts)


def resolve(target: Target, reference: str, platform: Platform | None = None) -> Descriptor:
    """Resolve *reference*, narrowing an index to one platform when asked."""
    desc = target.resolve(reference)
    if platform is None:
        return desc
    return select_platform(target, desc, platform)


def select_platform(storage: Storage, desc: Descriptor, platform: Platform) -> Descriptor:
    """Pick the manifest matching *platform* from an index.

    A plain manifest is accepted when its config declares a matching
    platform.  Raises ``NotFoundError`` otherwise.
    """
    if is_index(desc):
        index = Index.parse(fetch_all(storage, desc))
        for child in index.manifests:
            if platform.matches(child.platform):
                return child
        raise NotFoundError(f"{desc.digest}: no matching manifest for platform {platform}")
    if is_manifest(desc):
        manifest = Manifest.parse(fetch_all(storage, desc))
        if manifest.config is not None:
            config = Platform.model_validate_json(fetch_all(storage, manifest.config))
            if platform.matches(config):
                return desc
        raise NotFoundError(f"{desc.digest}: manifest does not match platform {platform}")
    raise NotFoundError(f"{desc.digest}: {desc.media_type} is not a manifest")


def copy(
    src: Target,
    src_ref: str,
    dst: Target,
    dst_ref: str = "",
    opts: CopyGraphOptions | None = None,
    platform: Platform | None = None,
) -> Descriptor:
    """Resolve *src_ref*, copy its graph and tag it as *dst_ref* at *dst*.

    *dst_ref* defaults to *src_ref*.  Returns the copied root.
    """
    with _origin(CopyErrorOrigin.SOURCE, "Resolve"):
        root = resolve(src, src_ref, platform)
    copy_graph(src, dst, root, opts)
    with _origin(CopyErrorOrigin.DESTINATION, "Tag"):
        dst.tag(root, dst_ref or src_ref)
    return root


def extended_copy(
    src: Target,
    src_ref: str,
    dst: Target,
    dst_ref: str = "",
    opts: ExtendedCopyGraphOptions | None = None,
) -> Descriptor:
    """Like :func:`copy` but includes everything found via predecessors."""
    with _origin(CopyErrorOrigin.SOURCE, "Resolve"):
        root = src.resolve(src_ref)
    extended_copy_graph(src, dst, root, opts)
    with _origin(CopyErrorOrigin.DESTINATION, "Tag"):
        dst.tag(root, dst_ref or src_ref)
    return root


def tag_n(
    target: Target,
    desc: Descriptor,
    references: list[str],
    concurrency: int = 3,
    on_tagged: Callable[[Descriptor, str], None] | None = None,
) -> None:
    """Apply every tag in *references* to *desc*, *concurrency* at a time.

    The first failure is raised once in-flight tags finish; tags already
    applied stay applied.
    """
    if not references:
        return

    def apply(reference: str) -> None:
        with _origin(CopyErrorOrigin.DESTINATION, "Tag"):
            target.tag(desc, reference)
        if on_tagged is not None:
            on_tagged(desc, reference)

    with ThreadPoolExecutor(max_workers=max(concurrency, 1), thread_name_prefix="ocireplica-tag") as pool:
        futures = [pool.submit(apply, ref) for ref in references]
        done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        for future in not_done:
            future.cancel()
        wait(not_done)
        for future in futures:
            if future in done and future.exception() is not None:
                raise future.exception()
