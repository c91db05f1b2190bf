"""Rich terminal output for copy and backup runs.

Status lines
------------
- ``Copying`` / ``Copied`` : node fetched and pushed
- ``Exists``               : node already at the destination
- ``Mounted``              : blob mounted from a sibling repository
- ``Tagged``               : reference applied at the destination

Unnamed blobs (no title annotation) are hidden unless ``verbose`` is set.
"""

from __future__ import annotations

import threading
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ocireplica.models.descriptors import Descriptor, is_manifest
from ocireplica.monitor.tracker import TrackedTarget

_STATUS_STYLES: dict[str, str] = {
    "Copying": "yellow",
    "Copied": "green",
    "Exists": "dim",
    "Mounted": "cyan",
    "Tagged": "magenta",
}


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{size} B"


class ConsoleStatusTracker:
    """Prints one line per node event.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    verbose:
        Also print blobs that carry no title annotation.
    """

    def __init__(self, console: Console | None = None, *, verbose: bool = False) -> None:
        self.console = console or Console()
        self.verbose = verbose
        self._lock = threading.Lock()

    def _print(self, status: str, desc: Descriptor, suffix: str = "") -> None:
        if not self.verbose and not is_manifest(desc) and not desc.title:
            return
        style = _STATUS_STYLES.get(status, "")
        name = desc.title or desc.media_type
        line = f"[{style}]{status:<8}[/{style}] {desc.short_digest()} {name}"
        if suffix:
            line = f"{line} {suffix}"
        with self._lock:
            self.console.print(line, highlight=False)

    def start_tracking(self, target: Any) -> TrackedTarget:
        return TrackedTarget(target, self.on_tagged)

    def stop_tracking(self) -> None:
        return None

    def pre_copy(self, desc: Descriptor) -> None:
        self._print("Copying", desc)

    def post_copy(self, desc: Descriptor) -> None:
        self._print("Copied", desc)

    def on_copy_skipped(self, desc: Descriptor) -> None:
        self._print("Exists", desc)

    def on_mounted(self, desc: Descriptor) -> None:
        self._print("Mounted", desc)

    def on_tagged(self, desc: Descriptor, reference: str) -> None:
        with self._lock:
            self.console.print(
                f"[{_STATUS_STYLES['Tagged']}]Tagged  [/{_STATUS_STYLES['Tagged']}] {reference}",
                highlight=False,
            )


class CopyMetadataPrinter:
    """Summarises a finished copy as a Rich panel."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self.source = ""
        self.destination = ""
        self.descriptor: Descriptor | None = None
        self.tags: list[str] = []

    def on_copied(self, source: str, destination: str, desc: Descriptor) -> None:
        self.source = source
        self.destination = destination
        self.descriptor = desc

    def on_tagged(self, desc: Descriptor, reference: str) -> None:
        self.tags.append(reference)

    def render(self) -> Panel:
        table = Table(show_header=False, box=None, pad_edge=False)
        table.add_column(style="bold")
        table.add_column()
        table.add_row("Source", self.source)
        table.add_row("Destination", self.destination)
        if self.descriptor is not None:
            table.add_row("Digest", self.descriptor.digest)
            table.add_row("Media type", self.descriptor.media_type)
        if self.tags:
            table.add_row("Extra tags", ", ".join(self.tags))
        return Panel(table, title="[bold green]Copied[/bold green]", border_style="green")

    def print_summary(self) -> None:
        self.console.print(self.render())


class BackupMetadataPrinter:
    """Prints backup progress and a closing summary panel."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self.repository = ""
        self.pulled: list[tuple[str, int, str]] = []
        self.output = ""
        self.size: int | None = None

    def on_tags_found(self, repository: str, tags: list[str]) -> None:
        self.repository = repository
        self.console.print(f"Found [bold]{len(tags)}[/bold] tag(s) in {repository}: {', '.join(tags)}")

    def on_artifact_pulled(self, tag: str, referrer_count: int, desc: Descriptor) -> None:
        self.pulled.append((tag, referrer_count, desc.digest))
        line = f"[green]Pulled[/green] {tag} {desc.short_digest()}"
        if referrer_count:
            line = f"{line} with {referrer_count} referrer(s)"
        self.console.print(line, highlight=False)

    def on_tar_exporting(self, path: str) -> None:
        self.console.print(f"Exporting to {path}")

    def on_tar_exported(self, path: str, size: int) -> None:
        self.size = size
        self.console.print(f"Exported to {path} ({_human_size(size)})")

    def on_backup_completed(self, tag_count: int, output: str) -> None:
        self.output = output
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Tag")
        table.add_column("Digest")
        table.add_column("Referrers", justify="right")
        for tag, count, digest in self.pulled:
            table.add_row(tag, digest, str(count))
        self.console.print(
            Panel(
                table,
                title=f"[bold green]Backed up {tag_count} tag(s) to {output}[/bold green]",
                border_style="green",
            )
        )
