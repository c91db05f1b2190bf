"""Shared test fixtures for ocireplica."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from ocireplica.core.digests import compute_digest
from ocireplica.core.layout import OCILayoutStore
from ocireplica.core.memory import MemoryStore
from ocireplica.models.descriptors import (
    ANNOTATION_TITLE,
    MEDIA_TYPE_EMPTY_JSON,
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_INDEX,
    MEDIA_TYPE_IMAGE_LAYER,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Descriptor,
    Index,
    Manifest,
    Platform,
)

SIGNATURE_TYPE = "application/vnd.example.signature.v1"
SBOM_TYPE = "application/vnd.example.sbom.v1"

Node = tuple[Descriptor, bytes]


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def blob(content: bytes, media_type: str = MEDIA_TYPE_IMAGE_LAYER, title: str | None = None) -> Node:
    annotations = {ANNOTATION_TITLE: title} if title else None
    desc = Descriptor(
        media_type=media_type,
        digest=compute_digest(content),
        size=len(content),
        annotations=annotations,
    )
    return desc, content


def manifest(
    config: Descriptor,
    layers: list[Descriptor],
    *,
    subject: Descriptor | None = None,
    artifact_type: str | None = None,
) -> Node:
    content = Manifest(
        schema_version=2,
        media_type=MEDIA_TYPE_IMAGE_MANIFEST,
        artifact_type=artifact_type,
        config=config,
        layers=layers,
        subject=subject,
    ).to_bytes()
    desc = Descriptor(
        media_type=MEDIA_TYPE_IMAGE_MANIFEST,
        digest=compute_digest(content),
        size=len(content),
        artifact_type=artifact_type,
    )
    return desc, content


def index(children: list[Descriptor], *, subject: Descriptor | None = None) -> Node:
    content = Index(
        schema_version=2,
        media_type=MEDIA_TYPE_IMAGE_INDEX,
        manifests=children,
        subject=subject,
    ).to_bytes()
    desc = Descriptor(media_type=MEDIA_TYPE_IMAGE_INDEX, digest=compute_digest(content), size=len(content))
    return desc, content


def image_config(os: str, architecture: str) -> Node:
    payload = json.dumps({"architecture": architecture, "os": os}).encode()
    return blob(payload, MEDIA_TYPE_IMAGE_CONFIG)


def push_all(store: Any, nodes: list[Node]) -> None:
    for desc, content in nodes:
        store.push(desc, content)


class ArtifactGraph:
    """Index ``aaa`` with children ``bbb`` (amd64) and ``ccc`` (arm64).

    ``ddd`` is a signature whose subject is ``ccc``.  ``eee`` is an SBOM
    whose subject is the index itself.  ``nodes`` lists every node in
    push order (children before parents).
    """

    def __init__(self, *, with_root_referrer: bool = False) -> None:
        self.empty = blob(b"{}", MEDIA_TYPE_EMPTY_JSON)
        self.config_amd64 = image_config("linux", "amd64")
        self.config_arm64 = image_config("linux", "arm64")
        self.layer_amd64 = blob(b"layer for amd64", title="rootfs-amd64.tar")
        self.layer_arm64 = blob(b"layer for arm64", title="rootfs-arm64.tar")
        self.signature_blob = blob(b"signature bytes")

        bbb, bbb_content = manifest(self.config_amd64[0], [self.layer_amd64[0]])
        ccc, ccc_content = manifest(self.config_arm64[0], [self.layer_arm64[0]])
        self.bbb = (
            bbb.model_copy(update={"platform": Platform(os="linux", architecture="amd64")}),
            bbb_content,
        )
        self.ccc = (
            ccc.model_copy(update={"platform": Platform(os="linux", architecture="arm64")}),
            ccc_content,
        )
        self.aaa = index([self.bbb[0], self.ccc[0]])
        self.ddd = manifest(
            self.empty[0], [self.signature_blob[0]], subject=self.ccc[0], artifact_type=SIGNATURE_TYPE
        )
        self.nodes: list[Node] = [
            self.empty,
            self.config_amd64,
            self.config_arm64,
            self.layer_amd64,
            self.layer_arm64,
            self.signature_blob,
            self.bbb,
            self.ccc,
            self.aaa,
            self.ddd,
        ]
        self.sbom_blob = blob(b"sbom bytes")
        self.eee: Node | None = None
        if with_root_referrer:
            self.eee = manifest(
                self.empty[0], [self.sbom_blob[0]], subject=self.aaa[0], artifact_type=SBOM_TYPE
            )
            self.nodes.insert(0, self.sbom_blob)
            self.nodes.append(self.eee)

    @property
    def root(self) -> Descriptor:
        return self.aaa[0]

    @property
    def referrer(self) -> Descriptor:
        return self.ddd[0]

    def digests(self) -> set[str]:
        return {desc.digest for desc, _ in self.nodes}

    def image_digests(self) -> set[str]:
        """Digests reachable from the root without any referrer."""
        referrer_nodes = {self.ddd[0].digest, self.signature_blob[0].digest, self.empty[0].digest}
        if self.eee is not None:
            referrer_nodes |= {self.eee[0].digest, self.sbom_blob[0].digest}
        return self.digests() - referrer_nodes

    def populate(self, store: Any, tag: str = "v1") -> Any:
        push_all(store, self.nodes)
        store.tag(self.root, tag)
        return store


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_blob() -> Callable[..., Node]:
    """Factory fixture: a layer blob and its content."""
    return blob


@pytest.fixture
def make_manifest() -> Callable[..., Node]:
    """Factory fixture: an image manifest and its content."""
    return manifest


@pytest.fixture
def make_index() -> Callable[..., Node]:
    """Factory fixture: an image index and its content."""
    return index


@pytest.fixture
def make_image(make_blob, make_manifest) -> Callable[..., tuple[Node, list[Node]]]:
    """Factory fixture: ``(manifest, [config, layer])`` for a single image."""

    def _factory(payload: bytes = b"layer", os: str = "linux", architecture: str = "amd64"):
        config = image_config(os, architecture)
        layer = make_blob(payload, title="layer.tar")
        return make_manifest(config[0], [layer[0]]), [config, layer]

    return _factory


@pytest.fixture
def artifact_graph() -> ArtifactGraph:
    """An index with two platform children and one child referrer."""
    return ArtifactGraph()


@pytest.fixture
def source_store(artifact_graph: ArtifactGraph) -> MemoryStore:
    """MemoryStore holding ``artifact_graph`` with tag ``v1`` on the index."""
    return artifact_graph.populate(MemoryStore())


@pytest.fixture
def memory_store() -> MemoryStore:
    """An empty in-memory target."""
    return MemoryStore()


@pytest.fixture
def layout_store(tmp_path: Path) -> OCILayoutStore:
    """An empty OCI layout directory in a temp dir."""
    return OCILayoutStore(tmp_path / "layout")


@pytest.fixture
def make_graph() -> type[ArtifactGraph]:
    """Factory fixture: build a fresh ``ArtifactGraph``."""
    return ArtifactGraph


@pytest.fixture
def make_config() -> Callable[[str, str], Node]:
    """Factory fixture: an image config blob declaring os/arch."""
    return image_config
