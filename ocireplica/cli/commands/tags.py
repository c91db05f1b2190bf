"""``ocireplica tags TARGET``: list the tags of a repository or layout."""

from __future__ import annotations

import typer
from rich.console import Console

from ocireplica.cli.common import (
    KIND_LAYOUT,
    RemoteOptions,
    TargetHandle,
    configure_logging,
    open_layout_source,
    report_error,
)
from ocireplica.config import settings
from ocireplica.core.content import TagLister
from ocireplica.core.errors import ReplicaError

console = Console()


def tags_cmd(
    target: str = typer.Argument(..., help="registry/repository, or a layout path with --oci-layout."),
    oci_layout: bool = typer.Option(False, "--oci-layout", help="TARGET is an OCI layout."),
    plain_http: bool = typer.Option(settings.plain_http, "--plain-http", help="Use HTTP instead of HTTPS."),
    insecure: bool = typer.Option(settings.insecure, "--insecure", help="Skip TLS certificate verification."),
    username: str | None = typer.Option(settings.username, "--username", "-u", help="Registry username."),
    password: str | None = typer.Option(settings.password, "--password", "-p", help="Registry password."),
    debug: bool = typer.Option(settings.debug, "--debug", "-d", help="Log debug output."),
) -> None:
    """List tags, one per line."""
    configure_logging(debug)
    remote = RemoteOptions(plain_http=plain_http, insecure=insecure, username=username, password=password)

    handle: TargetHandle | None = None
    try:
        if oci_layout:
            handle = TargetHandle(target=open_layout_source(target), kind=KIND_LAYOUT, path=target, raw=target)
        else:
            handle = TargetHandle(target=remote.open(target), kind="registry", path=target, raw=target)
        if not isinstance(handle.target, TagLister):
            raise ReplicaError(f"{target} does not support listing tags", operation="tags")
        tags = handle.target.tags()
    except ReplicaError as exc:
        report_error(exc)
        raise typer.Exit(code=1)
    finally:
        if handle is not None:
            handle.close()

    for tag in tags:
        console.print(tag, highlight=False, markup=False)
