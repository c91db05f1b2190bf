"""Main Typer application: registers all CLI commands.

Entry point: ``ocireplica`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from ocireplica import __version__
from ocireplica.cli.commands.backup import backup_cmd
from ocireplica.cli.commands.cp import cp_cmd
from ocireplica.cli.commands.tags import tags_cmd

app = typer.Typer(
    name="ocireplica",
    help="ocireplica: copy and back up OCI artifacts with their referrers.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

app.command(name="cp", help="Copy an artifact between registries and OCI layouts.")(cp_cmd)
app.command(name="backup", help="Back up tagged artifacts to an OCI layout directory or tar.")(backup_cmd)
app.command(name="tags", help="List the tags of a repository or OCI layout.")(tags_cmd)


@app.command(name="version", help="Show the ocireplica version.")
def version_cmd() -> None:
    typer.echo(f"ocireplica {__version__}")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
