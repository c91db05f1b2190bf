"""Unit tests for the CLI: Typer command registration and behavior.

Commands run against OCI layouts in a temp working directory so no
registry is needed.
"""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from ocireplica import __version__
from ocireplica.cli.app import app
from ocireplica.core.layout import OCILayoutStore

runner = CliRunner()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run inside tmp_path so layout paths stay short and relative."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def source_layout(workdir, artifact_graph):
    artifact_graph.populate(OCILayoutStore(workdir / "src"), tag="v1")
    return workdir / "src"


# ---------------------------------------------------------------------------
# Test: CLI help and registration
# ---------------------------------------------------------------------------


class TestCliApp:
    """The CLI must register all expected commands and show help."""

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code in (0, 2)
        assert "usage" in result.output.lower()

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("cp", "backup", "tags", "version"):
            assert command in result.output

    @pytest.mark.parametrize("command", ["cp", "backup", "tags"])
    def test_command_help(self, command):
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output


# ---------------------------------------------------------------------------
# Test: cp
# ---------------------------------------------------------------------------


class TestCpCommand:
    def test_copy_between_layouts_with_extra_tags(self, source_layout, artifact_graph):
        result = runner.invoke(
            app, ["cp", "--from-oci-layout", "--to-oci-layout", "src:v1", "dst:v1,stable,v1.0"]
        )
        assert result.exit_code == 0, result.output
        store = OCILayoutStore(source_layout.parent / "dst")
        for tag in ("v1", "stable", "v1.0"):
            assert store.resolve(tag) == artifact_graph.root
        assert not store.exists(artifact_graph.referrer)
        assert "Copied" in result.output

    def test_recursive_copy(self, source_layout, artifact_graph):
        result = runner.invoke(app, ["cp", "-r", "--from-oci-layout", "--to-oci-layout", "src:v1", "dst:v1"])
        assert result.exit_code == 0, result.output
        assert OCILayoutStore(source_layout.parent / "dst").exists(artifact_graph.referrer)

    def test_platform_copy(self, source_layout, artifact_graph):
        result = runner.invoke(
            app,
            ["cp", "--platform", "linux/arm64", "--from-oci-layout", "--to-oci-layout", "src:v1", "dst:arm"],
        )
        assert result.exit_code == 0, result.output
        assert OCILayoutStore(source_layout.parent / "dst").resolve("arm") == artifact_graph.ccc[0]

    def test_missing_source_tag(self, source_layout):
        result = runner.invoke(app, ["cp", "--from-oci-layout", "--to-oci-layout", "src:nope", "dst:v1"])
        assert result.exit_code == 1
        assert 'Error from source oci-layout for "src:nope":' in result.output

    def test_source_without_reference(self, source_layout):
        result = runner.invoke(app, ["cp", "--from-oci-layout", "--to-oci-layout", "src", "dst:v1"])
        assert result.exit_code == 1
        assert "no tag or digest specified" in result.output
        assert "Usage: ocireplica cp" in result.output

    def test_missing_source_layout(self, workdir):
        result = runner.invoke(app, ["cp", "--from-oci-layout", "--to-oci-layout", "absent:v1", "dst:v1"])
        assert result.exit_code == 1
        assert "does not exist" in result.output

    def test_source_directory_without_index_is_left_alone(self, workdir):
        (workdir / "plain").mkdir()
        result = runner.invoke(app, ["cp", "--from-oci-layout", "--to-oci-layout", "plain:v1", "dst:v1"])
        assert result.exit_code == 1
        assert "missing index.json" in result.output
        assert list((workdir / "plain").iterdir()) == []

    def test_invalid_extra_tag(self, source_layout):
        result = runner.invoke(app, ["cp", "--from-oci-layout", "--to-oci-layout", "src:v1", "dst:v1,-bad"])
        assert result.exit_code == 1
        assert "-bad" in result.output
        assert not (source_layout.parent / "dst" / "index.json").exists()

    def test_invalid_platform(self, source_layout):
        result = runner.invoke(
            app, ["cp", "--platform", "linux", "--from-oci-layout", "--to-oci-layout", "src:v1", "dst:v1"]
        )
        assert result.exit_code == 1
        assert "invalid platform" in result.output


# ---------------------------------------------------------------------------
# Test: tags and backup
# ---------------------------------------------------------------------------


class TestTagsCommand:
    def test_lists_layout_tags(self, source_layout, artifact_graph):
        OCILayoutStore(source_layout).tag(artifact_graph.bbb[0], "amd")
        result = runner.invoke(app, ["tags", "--oci-layout", "src"])
        assert result.exit_code == 0, result.output
        assert result.output.split() == ["amd", "v1"]

    def test_missing_layout(self, workdir):
        result = runner.invoke(app, ["tags", "--oci-layout", "absent"])
        assert result.exit_code == 1
        assert "does not exist" in result.output

    def test_directory_without_index_is_left_alone(self, workdir):
        (workdir / "plain").mkdir()
        result = runner.invoke(app, ["tags", "--oci-layout", "plain"])
        assert result.exit_code == 1
        assert "missing index.json" in result.output
        assert list((workdir / "plain").iterdir()) == []


class TestBackupCommand:
    def test_output_required(self):
        result = runner.invoke(app, ["backup", "localhost:5000/app:v1"])
        assert result.exit_code != 0

    def test_digest_reference_rejected(self, workdir):
        reference = "localhost:5000/app@sha256:" + "a" * 64
        result = runner.invoke(app, ["backup", "-o", "out", reference])
        assert result.exit_code == 1
        assert "digest references are not supported" in result.output
        assert not (workdir / "out").exists()
