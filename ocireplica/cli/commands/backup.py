"""``ocireplica backup REGISTRY/REPO[:TAGS] --output PATH``.

Pulls the given tags (all tags when none are given) into an OCI layout.
An output path ending in ``.tar`` produces a single archive.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from ocireplica.cli.common import RemoteOptions, configure_logging, report_error
from ocireplica.config import settings
from ocireplica.core.backup import BackupOrchestrator, BackupRequest
from ocireplica.core.errors import ReplicaError
from ocireplica.monitor.renderer import BackupMetadataPrinter, ConsoleStatusTracker

console = Console()


def backup_cmd(
    reference: str = typer.Argument(..., help="registry/repository[:tag1[,tag2...]]"),
    output: Path = typer.Option(..., "--output", "-o", help="Output directory, or a .tar file."),
    include_referrers: bool = typer.Option(
        False, "--include-referrers", help="Also back up referrers of each tag."
    ),
    concurrency: int = typer.Option(
        settings.concurrency, "--concurrency", min=1, help="Concurrent node operations."
    ),
    plain_http: bool = typer.Option(settings.plain_http, "--plain-http", help="Use HTTP instead of HTTPS."),
    insecure: bool = typer.Option(settings.insecure, "--insecure", help="Skip TLS certificate verification."),
    username: str | None = typer.Option(settings.username, "--username", "-u", help="Registry username."),
    password: str | None = typer.Option(settings.password, "--password", "-p", help="Registry password."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Also show unnamed blobs."),
    debug: bool = typer.Option(settings.debug, "--debug", "-d", help="Log debug output."),
) -> None:
    """Back up tagged artifacts from a registry repository."""
    configure_logging(debug)
    remote = RemoteOptions(plain_http=plain_http, insecure=insecure, username=username, password=password)

    orchestrator = BackupOrchestrator(
        remote.open,
        ConsoleStatusTracker(console, verbose=verbose),
        BackupMetadataPrinter(console),
        temp_dir=settings.temp_dir,
    )
    try:
        orchestrator.run(
            BackupRequest(
                reference=reference,
                output=output,
                include_referrers=include_referrers,
                concurrency=concurrency,
            )
        )
    except ReplicaError as exc:
        report_error(exc)
        raise typer.Exit(code=1)
