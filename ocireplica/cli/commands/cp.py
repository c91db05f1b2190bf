"""``ocireplica cp SOURCE DEST``: copy an artifact between targets.

SOURCE and DEST are registry references (``registry/repo:tag``) or, with
``--from-oci-layout`` / ``--to-oci-layout``, OCI layout paths
(``path:tag``).  DEST may carry extra tags: ``registry/repo:v1,v2,v3``.
"""

from __future__ import annotations

import typer
from rich.console import Console

from ocireplica.cli.common import (
    RemoteOptions,
    TargetHandle,
    configure_logging,
    open_destination,
    open_source,
    report_error,
)
from ocireplica.config import settings
from ocireplica.core.copier import CopyOrchestrator, CopyRequest
from ocireplica.core.errors import ExtraTagError, ReplicaError
from ocireplica.models.descriptors import Platform
from ocireplica.monitor.renderer import ConsoleStatusTracker, CopyMetadataPrinter

console = Console()


def cp_cmd(
    source: str = typer.Argument(..., help="Source reference, with tag or digest."),
    destination: str = typer.Argument(..., help="Destination reference, optionally with extra tags."),
    recursive: bool = typer.Option(
        False, "--recursive", "-r", help="Also copy referrers (and referrers of index children)."
    ),
    concurrency: int = typer.Option(
        settings.concurrency, "--concurrency", min=1, help="Concurrent node operations."
    ),
    platform: str | None = typer.Option(
        None, "--platform", help="Copy only the manifest for os/arch\\[/variant]."
    ),
    from_oci_layout: bool = typer.Option(False, "--from-oci-layout", help="SOURCE is an OCI layout."),
    to_oci_layout: bool = typer.Option(False, "--to-oci-layout", help="DEST is an OCI layout."),
    plain_http: bool = typer.Option(settings.plain_http, "--plain-http", help="Use HTTP instead of HTTPS."),
    insecure: bool = typer.Option(settings.insecure, "--insecure", help="Skip TLS certificate verification."),
    username: str | None = typer.Option(settings.username, "--username", "-u", help="Registry username."),
    password: str | None = typer.Option(settings.password, "--password", "-p", help="Registry password."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Also show unnamed blobs."),
    debug: bool = typer.Option(settings.debug, "--debug", "-d", help="Log debug output."),
) -> None:
    """Copy an artifact from SOURCE to DEST."""
    configure_logging(debug)
    remote = RemoteOptions(plain_http=plain_http, insecure=insecure, username=username, password=password)

    src: TargetHandle | None = None
    dst: TargetHandle | None = None
    try:
        target_platform = Platform.parse(platform) if platform else None
        src = open_source(source, oci_layout=from_oci_layout, remote=remote)
        dst, extra_tags = open_destination(destination, oci_layout=to_oci_layout, remote=remote)
        request = CopyRequest(
            source_reference=src.reference,
            destination_reference=dst.reference,
            extra_tags=extra_tags,
            recursive=recursive,
            concurrency=concurrency,
            platform=target_platform,
        )
        metadata = CopyMetadataPrinter(console)
        orchestrator = CopyOrchestrator(
            src.target, dst.target, ConsoleStatusTracker(console, verbose=verbose)
        )
        orchestrator.run(request, metadata, source_path=src.path, destination=dst.raw)
    except ExtraTagError as exc:
        metadata.print_summary()
        report_error(exc, source=src, destination=dst)
        raise typer.Exit(code=1)
    except ReplicaError as exc:
        report_error(exc, source=src, destination=dst)
        raise typer.Exit(code=1)
    except ValueError as exc:
        report_error(ReplicaError(str(exc)))
        raise typer.Exit(code=1)
    finally:
        if src is not None:
            src.close()

    metadata.print_summary()
