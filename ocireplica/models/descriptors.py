"""OCI descriptor and manifest models (immutable, content-addressed).

A ``Descriptor`` identifies one node of an artifact graph.  Two descriptors
are equal when media type, digest and size match; annotations and the
other optional fields do not take part in equality.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ocireplica.core.errors import ManifestDecodeError

# ---------------------------------------------------------------------------
# Media types and well-known annotations
# ---------------------------------------------------------------------------

MEDIA_TYPE_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_EMPTY_JSON = "application/vnd.oci.empty.v1+json"
MEDIA_TYPE_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
MEDIA_TYPE_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
MEDIA_TYPE_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_DOCKER_MANIFEST_LIST = (
    "application/vnd.docker.distribution.manifest.list.v2+json"
)

ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"
ANNOTATION_TITLE = "org.opencontainers.image.title"

INDEX_MEDIA_TYPES = frozenset({MEDIA_TYPE_IMAGE_INDEX, MEDIA_TYPE_DOCKER_MANIFEST_LIST})
MANIFEST_MEDIA_TYPES = frozenset(
    {MEDIA_TYPE_IMAGE_MANIFEST, MEDIA_TYPE_DOCKER_MANIFEST} | INDEX_MEDIA_TYPES
)


# ---------------------------------------------------------------------------
# Platform
# ---------------------------------------------------------------------------


class Platform(BaseModel):
    """Target platform of a manifest, e.g. ``linux/arm64/v8``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    os: str = ""
    architecture: str = ""
    variant: str = ""
    os_version: str = Field("", alias="os.version")

    @classmethod
    def parse(cls, value: str) -> Platform:
        """Parse ``os/arch[/variant]``.  Raises ``ValueError`` on bad input."""
        parts = value.split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(
                f"invalid platform {value!r}: expected <os>/<arch>[/<variant>]"
            )
        return cls(
            os=parts[0],
            architecture=parts[1],
            variant=parts[2] if len(parts) == 3 else "",
        )

    def matches(self, other: Platform | None) -> bool:
        """True when *other* satisfies every non-empty field of this platform."""
        if other is None:
            return False
        for field in ("os", "architecture", "variant", "os_version"):
            wanted = getattr(self, field)
            if wanted and wanted != getattr(other, field):
                return False
        return True

    def __str__(self) -> str:
        parts = [self.os, self.architecture]
        if self.variant:
            parts.append(self.variant)
        return "/".join(parts)


# ---------------------------------------------------------------------------
# Descriptor
# ---------------------------------------------------------------------------


class Descriptor(BaseModel):
    """An immutable reference to a content-addressed node.

    Serialise with :meth:`to_oci` to obtain the wire (camelCase) form.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    media_type: str = Field(alias="mediaType")
    digest: str
    size: int = Field(ge=0)
    annotations: dict[str, str] | None = None
    artifact_type: str | None = Field(None, alias="artifactType")
    platform: Platform | None = None
    urls: list[str] | None = None
    data: str | None = None

    @property
    def key(self) -> tuple[str, str, int]:
        """Identity used for equality, hashing and de-duplication."""
        return (self.media_type, self.digest, self.size)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Descriptor):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def to_oci(self) -> dict[str, Any]:
        """Return the OCI JSON form of this descriptor."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @property
    def title(self) -> str:
        """Human-facing name: the title or ref annotation, else empty."""
        annotations = self.annotations or {}
        return annotations.get(ANNOTATION_TITLE) or annotations.get(ANNOTATION_REF_NAME, "")

    def short_digest(self, length: int = 12) -> str:
        return self.digest.split(":", 1)[-1][:length]


def content_equal(a: Descriptor, b: Descriptor) -> bool:
    """Descriptor equality ignoring annotations."""
    return a.key == b.key


def is_index(desc: Descriptor) -> bool:
    """True for OCI image indexes and Docker manifest lists."""
    return desc.media_type in INDEX_MEDIA_TYPES


def is_manifest(desc: Descriptor) -> bool:
    """True for any manifest variant, indexes included."""
    return desc.media_type in MANIFEST_MEDIA_TYPES


# ---------------------------------------------------------------------------
# Manifest documents
# ---------------------------------------------------------------------------


class _Document(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    schema_version: int = Field(2, alias="schemaVersion")
    media_type: str | None = Field(None, alias="mediaType")
    artifact_type: str | None = Field(None, alias="artifactType")
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    @classmethod
    def parse(cls, content: bytes):
        try:
            return cls.model_validate(json.loads(content))
        except (ValueError, ValidationError) as exc:
            raise ManifestDecodeError(f"invalid {cls.__name__.lower()} content: {exc}") from exc

    def to_bytes(self) -> bytes:
        return json.dumps(
            self.model_dump(by_alias=True, exclude_none=True), separators=(",", ":")
        ).encode("utf-8")


class Manifest(_Document):
    """An image manifest (OCI or Docker schema 2)."""

    config: Descriptor | None = None
    layers: list[Descriptor] = []

    def successors(self) -> list[Descriptor]:
        nodes = ([self.config] if self.config else []) + list(self.layers)
        if self.subject is not None:
            nodes.append(self.subject)
        return nodes


class Index(_Document):
    """An image index (OCI) or manifest list (Docker)."""

    manifests: list[Descriptor] = []

    def successors(self) -> list[Descriptor]:
        nodes = list(self.manifests)
        if self.subject is not None:
            nodes.append(self.subject)
        return nodes


def decode_successors(desc: Descriptor, content: bytes) -> list[Descriptor]:
    """Return the child nodes of *desc* given its raw content.

    Blobs have no successors.  Malformed manifests raise
    ``ManifestDecodeError``.
    """
    if is_index(desc):
        return Index.parse(content).successors()
    if is_manifest(desc):
        return Manifest.parse(content).successors()
    return []


def decode_subject(desc: Descriptor, content: bytes) -> tuple[Descriptor | None, str | None]:
    """Return ``(subject, artifact_type)`` of a manifest."""
    document = Index.parse(content) if is_index(desc) else Manifest.parse(content)
    artifact_type = document.artifact_type
    if artifact_type is None and isinstance(document, Manifest) and document.config:
        artifact_type = document.config.media_type
    return document.subject, artifact_type
