"""OCI image layout store, on disk or read from a tar archive.

Layout::

    {root}/oci-layout
    {root}/index.json
    {root}/blobs/{algorithm}/{encoded}

Blobs are written to ``{root}/ingest/`` first and renamed into place, so a
blob path never holds partial content.  Every manifest ever pushed is
listed in ``index.json``; tagged ones carry the
``org.opencontainers.image.ref.name`` annotation.  There is no delete.
"""

from __future__ import annotations

import json
import logging
import os
import tarfile
import tempfile
import threading
from pathlib import Path, PurePosixPath

from ocireplica.core.content import GraphIndex
from ocireplica.core.digests import split_digest, verify_content
from ocireplica.core.errors import NotFoundError, ReadOnlyStoreError, ReplicaError
from ocireplica.models.descriptors import (
    ANNOTATION_REF_NAME,
    MEDIA_TYPE_IMAGE_INDEX,
    Descriptor,
    Index,
    decode_successors,
    is_manifest,
)
from ocireplica.models.references import RegistryIdentity, is_digest

logger = logging.getLogger(__name__)

LAYOUT_FILE = "oci-layout"
INDEX_FILE = "index.json"
BLOBS_DIR = "blobs"
INGEST_DIR = "ingest"
LAYOUT_VERSION = "1.0.0"


def blob_path(digest: str) -> PurePosixPath:
    """Relative path of a blob inside a layout: ``blobs/<alg>/<encoded>``."""
    algorithm, encoded = split_digest(digest)
    return PurePosixPath(BLOBS_DIR, algorithm, encoded)


class _LayoutIndex:
    """Tag map and manifest list shared by the directory and archive views."""

    def __init__(self) -> None:
        self.tags: dict[str, Descriptor] = {}
        self.manifests: dict[str, Descriptor] = {}
        self.graph = GraphIndex()

    def load(self, index: Index, read_blob) -> None:
        pending = list(index.manifests)
        seen: set[str] = set()
        for desc in index.manifests:
            ref_name = (desc.annotations or {}).get(ANNOTATION_REF_NAME)
            plain = desc.model_copy(update={"annotations": _strip_ref(desc.annotations)})
            if ref_name:
                self.tags[ref_name] = plain
            self.manifests.setdefault(plain.digest, plain)
        while pending:
            desc = pending.pop()
            if desc.digest in seen or not is_manifest(desc):
                continue
            seen.add(desc.digest)
            try:
                content = read_blob(desc.digest)
            except FileNotFoundError:
                logger.debug("Layout lists %s but its blob is missing", desc.digest)
                continue
            children = decode_successors(desc, content)
            self.graph.index(desc, children)
            for child in children:
                if is_manifest(child):
                    self.manifests.setdefault(child.digest, child)
                    pending.append(child)

    def resolve(self, reference: str) -> Descriptor:
        if reference in self.tags:
            return self.tags[reference]
        if is_digest(reference) and reference in self.manifests:
            return self.manifests[reference]
        raise NotFoundError(f"{reference}: not found")

    def to_index(self) -> Index:
        entries: list[Descriptor] = []
        tagged: set[str] = set()
        for name, desc in self.tags.items():
            annotations = dict(desc.annotations or {})
            annotations[ANNOTATION_REF_NAME] = name
            entries.append(desc.model_copy(update={"annotations": annotations}))
            tagged.add(desc.digest)
        for digest, desc in self.manifests.items():
            if digest not in tagged:
                entries.append(desc)
        return Index(schemaVersion=2, mediaType=MEDIA_TYPE_IMAGE_INDEX, manifests=entries)


def _strip_ref(annotations: dict[str, str] | None) -> dict[str, str] | None:
    if not annotations:
        return annotations
    rest = {k: v for k, v in annotations.items() if k != ANNOTATION_REF_NAME}
    return rest or None


class OCILayoutStore:
    """A writable OCI image layout directory.

    Parameters
    ----------
    root:
        Layout directory.  Created, with ``oci-layout`` and an empty
        ``index.json``, when missing.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._lock = threading.RLock()
        self._index = _LayoutIndex()
        self._init_layout()
        self._load()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, digest: str) -> Path:
        return self._root / blob_path(digest)

    def _init_layout(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        layout_file = self._root / LAYOUT_FILE
        if not layout_file.exists():
            layout_file.write_text(json.dumps({"imageLayoutVersion": LAYOUT_VERSION}))
        else:
            version = json.loads(layout_file.read_text()).get("imageLayoutVersion")
            if version != LAYOUT_VERSION:
                raise ReplicaError(
                    f"unsupported OCI layout version {version!r} at {self._root}"
                )

    def _load(self) -> None:
        index_file = self._root / INDEX_FILE
        if not index_file.exists():
            self._save_index()
            return
        self._index.load(
            Index.parse(index_file.read_bytes()),
            lambda digest: self._path(digest).read_bytes(),
        )

    def _save_index(self) -> None:
        """Atomically rewrite index.json."""
        payload = self._index.to_index().to_bytes()
        fd, tmp = tempfile.mkstemp(prefix=".index-", dir=self._root)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
            os.replace(tmp, self._root / INDEX_FILE)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def fetch(self, desc: Descriptor) -> bytes:
        path = self._path(desc.digest)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"{desc.digest}: not found") from None

    def push(self, desc: Descriptor, data: bytes) -> None:
        """Write *data* under its digest.  Existing content is left untouched."""
        verify_content(data, desc.digest, desc.size)
        path = self._path(desc.digest)
        if not path.exists():
            ingest = self._root / INGEST_DIR
            ingest.mkdir(exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=ingest)
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                path.parent.mkdir(parents=True, exist_ok=True)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise

        if is_manifest(desc):
            self._index.graph.index(desc, decode_successors(desc, data))
            with self._lock:
                if desc.digest not in self._index.manifests:
                    self._index.manifests[desc.digest] = desc.model_copy(
                        update={"annotations": _strip_ref(desc.annotations)}
                    )
                    self._save_index()

    def exists(self, desc: Descriptor) -> bool:
        return self._path(desc.digest).exists()

    # ------------------------------------------------------------------
    # Target
    # ------------------------------------------------------------------

    def resolve(self, reference: str) -> Descriptor:
        with self._lock:
            return self._index.resolve(reference)

    def tag(self, desc: Descriptor, reference: str) -> None:
        if not self.exists(desc):
            raise NotFoundError(f"{desc.digest}: not found")
        plain = desc.model_copy(update={"annotations": _strip_ref(desc.annotations)})
        with self._lock:
            self._index.tags[reference] = plain
            self._index.manifests.setdefault(plain.digest, plain)
            self._save_index()

    def tags(self) -> list[str]:
        with self._lock:
            return sorted(self._index.tags)

    def predecessors(self, desc: Descriptor) -> list[Descriptor]:
        return self._index.graph.predecessors(desc)

    def host_identity(self) -> RegistryIdentity | None:
        return None


class OCILayoutArchive:
    """Read-only view of an OCI image layout packed in an (uncompressed) tar."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._index = _LayoutIndex()
        try:
            self._tar = tarfile.open(self._path, mode="r:")
        except (OSError, tarfile.TarError) as exc:
            raise ReplicaError(f"failed to open OCI layout archive {self._path}: {exc}") from exc
        self._members = {
            _normalise(member.name): member for member in self._tar.getmembers() if member.isfile()
        }
        if INDEX_FILE not in self._members:
            self._tar.close()
            raise ReplicaError(f"{self._path} is not an OCI layout archive: missing {INDEX_FILE}")
        try:
            self._index.load(Index.parse(self._read(INDEX_FILE)), self._read_blob)
        except Exception:
            self._tar.close()
            raise

    def _read(self, name: str) -> bytes:
        member = self._members.get(name)
        if member is None:
            raise FileNotFoundError(name)
        with self._lock:
            fh = self._tar.extractfile(member)
            if fh is None:
                raise FileNotFoundError(name)
            with fh:
                return fh.read()

    def _read_blob(self, digest: str) -> bytes:
        return self._read(str(blob_path(digest)))

    def close(self) -> None:
        self._tar.close()

    def __enter__(self) -> OCILayoutArchive:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def fetch(self, desc: Descriptor) -> bytes:
        try:
            return self._read_blob(desc.digest)
        except FileNotFoundError:
            raise NotFoundError(f"{desc.digest}: not found") from None

    def push(self, desc: Descriptor, data: bytes) -> None:
        raise ReadOnlyStoreError(f"{self._path} is a read-only OCI layout archive")

    def exists(self, desc: Descriptor) -> bool:
        return str(blob_path(desc.digest)) in self._members

    def resolve(self, reference: str) -> Descriptor:
        return self._index.resolve(reference)

    def tag(self, desc: Descriptor, reference: str) -> None:
        raise ReadOnlyStoreError(f"{self._path} is a read-only OCI layout archive")

    def tags(self) -> list[str]:
        return sorted(self._index.tags)

    def predecessors(self, desc: Descriptor) -> list[Descriptor]:
        return self._index.graph.predecessors(desc)

    def host_identity(self) -> RegistryIdentity | None:
        return None


def _normalise(name: str) -> str:
    return str(PurePosixPath(name.lstrip("/"))).removeprefix("./")
