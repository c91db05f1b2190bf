"""Error taxonomy for copy and backup operations.

Input errors surface before any network activity.  Transfer errors carry
the side (source or destination) that produced them so the CLI can prefix
the message, e.g. ``Error from source registry for "<ref>":``.
"""

from __future__ import annotations

from enum import Enum


class ReplicaError(RuntimeError):
    """Base class for every error raised by ocireplica.

    Parameters
    ----------
    message:
        Human-readable description.
    operation:
        What was being attempted (``"resolve"``, ``"push"``, ...).
    usage:
        Command usage line shown by the CLI, if relevant.
    recommendation:
        A remediating hint shown by the CLI, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        usage: str = "",
        recommendation: str = "",
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.usage = usage
        self.recommendation = recommendation


class InvalidReferenceError(ReplicaError, ValueError):
    """Raised for malformed references, tags or digest-where-tag-required."""


class NotFoundError(ReplicaError):
    """Raised when a reference or descriptor does not exist in a store."""


class ResolveError(ReplicaError):
    """Raised when a reference cannot be resolved to a descriptor."""

    def __init__(self, reference: str, message: str = "") -> None:
        super().__init__(
            message or f"failed to resolve {reference}", operation="resolve"
        )
        self.reference = reference


class DigestMismatchError(ReplicaError):
    """Raised when fetched or pushed bytes do not hash to the expected digest."""


class ManifestDecodeError(ReplicaError, ValueError):
    """Raised when manifest or index content cannot be parsed."""


class ReadOnlyStoreError(ReplicaError):
    """Raised when writing to a read-only store (e.g. a layout archive)."""


class RegistryError(ReplicaError):
    """Raised for unexpected registry HTTP responses."""

    def __init__(self, method: str, url: str, status: int, detail: str = "") -> None:
        message = f"{method} {url}: response status code {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, operation=method.lower())
        self.method = method
        self.url = url
        self.status = status


class CopyCancelledError(ReplicaError):
    """Raised when a copy is cancelled; the destination is not rolled back."""


class BackupError(ReplicaError):
    """Raised when a backup step fails.  The cause is chained."""


class CopyErrorOrigin(str, Enum):
    SOURCE = "source"
    DESTINATION = "destination"


class CopyError(ReplicaError):
    """A transfer failure tagged with the side that produced it."""

    def __init__(self, origin: CopyErrorOrigin, op: str, err: BaseException) -> None:
        super().__init__(f"{op}: {err}", operation=op)
        self.origin = origin
        self.op = op
        self.err = err


class ExtraTagError(ReplicaError):
    """Raised when an extra destination tag fails after a successful copy.

    ``descriptor`` is the root that *was* copied; tags applied before the
    failure stay applied.
    """

    def __init__(self, message: str, descriptor) -> None:
        super().__init__(message, operation="tag")
        self.descriptor = descriptor


def unwrap_copy_error(err: BaseException) -> BaseException:
    """Return the inner error when *err* is itself a ``CopyError``."""
    if isinstance(err, CopyError):
        return err.err
    return err


def error_prefix(
    err: BaseException,
    *,
    source_kind: str = "registry",
    source_ref: str = "",
    destination_kind: str = "registry",
    destination_ref: str = "",
) -> str:
    """Build the CLI message prefix for *err*.

    Only a top-level ``CopyError`` gets an origin-specific prefix; errors
    that merely wrap one are reported as-is.
    """
    if isinstance(err, CopyError):
        if err.origin is CopyErrorOrigin.SOURCE and source_ref:
            return f'Error from source {source_kind} for "{source_ref}":'
        if err.origin is CopyErrorOrigin.DESTINATION and destination_ref:
            return f'Error from destination {destination_kind} for "{destination_ref}":'
    return "Error:"
