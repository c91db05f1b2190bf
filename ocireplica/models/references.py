"""Artifact reference parsing and validation.

Grammar follows the OCI distribution API:

- repository components are lower-case alphanumerics joined by ``.``,
  ``_``, ``__`` or runs of ``-``;
- tags match ``^[\\w][\\w.-]{0,127}$``;
- digests are ``<algorithm>:<encoded>``.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

from ocireplica.core.errors import InvalidReferenceError

_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|[-]*)[a-z0-9]+)*"
REPOSITORY_PATTERN = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")
TAG_PATTERN = re.compile(r"^[\w][\w.-]{0,127}$", re.ASCII)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")
_REGISTRY_PATTERN = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*"
    r"(?::[0-9]+)?$|^\[[0-9a-fA-F:]+\](?::[0-9]+)?$"
)


def is_digest(value: str) -> bool:
    return bool(DIGEST_PATTERN.match(value))


def validate_tag(tag: str, context: str = "") -> str:
    """Return *tag* unchanged or raise ``InvalidReferenceError`` naming it."""
    if not TAG_PATTERN.fullmatch(tag):
        where = f" in reference {context!r}" if context else ""
        raise InvalidReferenceError(
            f"invalid tag {tag!r}{where}: tag must match {TAG_PATTERN.pattern}"
        )
    return tag


class RegistryIdentity(BaseModel):
    """Where a remote repository lives; local stores have none."""

    model_config = ConfigDict(frozen=True)

    host: str
    repository: str


class Reference(BaseModel):
    """A parsed ``registry/repository[:tag|@digest]`` reference."""

    model_config = ConfigDict(frozen=True)

    registry: str
    repository: str
    reference: str = ""

    @classmethod
    def parse(cls, raw: str) -> Reference:
        registry, sep, path = raw.partition("/")
        if not sep or not path:
            raise InvalidReferenceError(f"invalid reference {raw!r}: missing repository")
        if not _REGISTRY_PATTERN.match(registry):
            raise InvalidReferenceError(f"invalid reference {raw!r}: invalid registry {registry!r}")

        repository, at, digest = path.partition("@")
        if at:
            # a tag before the digest is ignored, as docker does
            repository = repository.rsplit(":", 1)[0] if ":" in repository else repository
            if not is_digest(digest):
                raise InvalidReferenceError(f"invalid reference {raw!r}: invalid digest {digest!r}")
            reference = digest
        else:
            reference = ""
            head, colon, tag = repository.rpartition(":")
            if colon and "/" not in tag:
                repository, reference = head, tag
                validate_tag(reference, raw)

        if not REPOSITORY_PATTERN.match(repository):
            raise InvalidReferenceError(
                f"invalid reference {raw!r}: invalid repository {repository!r}"
            )
        return cls(registry=registry, repository=repository, reference=reference)

    @property
    def is_digest(self) -> bool:
        return is_digest(self.reference)

    @property
    def locator(self) -> str:
        """``registry/repository`` without tag or digest."""
        return f"{self.registry}/{self.repository}"

    def with_reference(self, reference: str) -> Reference:
        return self.model_copy(update={"reference": reference})

    def __str__(self) -> str:
        if not self.reference:
            return self.locator
        sep = "@" if self.is_digest else ":"
        return f"{self.locator}{sep}{self.reference}"


def parse_layout_reference(raw: str) -> tuple[str, str]:
    """Split ``<path>[:<tag>|@<digest>]`` into ``(path, reference)``.

    A colon only starts a tag when it follows the last path separator, so
    Windows drive letters and ``host:port`` style directories survive.
    """
    path, at, digest = raw.partition("@")
    if at:
        if not is_digest(digest):
            raise InvalidReferenceError(f"invalid digest {digest!r} in {raw!r}")
        return path, digest
    last_sep = max(raw.rfind("/"), raw.rfind("\\"))
    colon = raw.rfind(":")
    if colon > last_sep and colon > 1:
        return raw[:colon], raw[colon + 1 :]
    return raw, ""


def parse_artifacts_to_backup(raw: str) -> tuple[str, list[str]]:
    """Parse ``registry/repo[:tag1[,tag2...]]`` into repository and tags.

    Digest references are rejected: backups operate on tags.  Empty tag
    entries are skipped; order and duplicates are preserved.
    """
    if not raw:
        raise InvalidReferenceError("empty reference")
    if "@" in raw:
        raise InvalidReferenceError(f"digest references are not supported: {raw!r}")

    last_slash = raw.rfind("/")
    last_colon = raw.rfind(":")
    if last_colon != -1 and last_colon > last_slash:
        repo_part, tags_part = raw[:last_colon], raw[last_colon + 1 :]
    else:
        repo_part, tags_part = raw, ""

    try:
        repository = str(Reference.parse(repo_part))
    except InvalidReferenceError as exc:
        raise InvalidReferenceError(f"invalid repository {repo_part!r}: {exc}") from exc

    tags: list[str] = []
    for tag in tags_part.split(","):
        tag = tag.strip()
        if not tag:
            continue
        tags.append(validate_tag(tag, raw))
    return repository, tags
