"""ocireplica data models: all Pydantic v2, frozen where they describe content."""

from ocireplica.models.descriptors import (
    INDEX_MEDIA_TYPES,
    MANIFEST_MEDIA_TYPES,
    MEDIA_TYPE_DOCKER_MANIFEST,
    MEDIA_TYPE_DOCKER_MANIFEST_LIST,
    MEDIA_TYPE_EMPTY_JSON,
    MEDIA_TYPE_IMAGE_INDEX,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Descriptor,
    Index,
    Manifest,
    Platform,
    content_equal,
    is_index,
    is_manifest,
)
from ocireplica.models.options import (
    DEFAULT_CONCURRENCY,
    CopyGraphOptions,
    ExtendedCopyGraphOptions,
)
from ocireplica.models.references import (
    TAG_PATTERN,
    Reference,
    RegistryIdentity,
    parse_artifacts_to_backup,
    parse_layout_reference,
    validate_tag,
)

__all__ = [
    # descriptors
    "Descriptor",
    "Index",
    "Manifest",
    "Platform",
    "content_equal",
    "is_index",
    "is_manifest",
    "INDEX_MEDIA_TYPES",
    "MANIFEST_MEDIA_TYPES",
    "MEDIA_TYPE_DOCKER_MANIFEST",
    "MEDIA_TYPE_DOCKER_MANIFEST_LIST",
    "MEDIA_TYPE_EMPTY_JSON",
    "MEDIA_TYPE_IMAGE_INDEX",
    "MEDIA_TYPE_IMAGE_MANIFEST",
    # options
    "DEFAULT_CONCURRENCY",
    "CopyGraphOptions",
    "ExtendedCopyGraphOptions",
    # references
    "TAG_PATTERN",
    "Reference",
    "RegistryIdentity",
    "parse_artifacts_to_backup",
    "parse_layout_reference",
    "validate_tag",
]
