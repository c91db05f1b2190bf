"""Tests for reference parsing, the tag grammar and digest helpers."""

from __future__ import annotations

import pytest

from ocireplica.core.digests import compute_digest, split_digest, verify_content
from ocireplica.core.errors import DigestMismatchError, InvalidReferenceError
from ocireplica.models.references import (
    Reference,
    parse_artifacts_to_backup,
    parse_layout_reference,
    validate_tag,
)

DIGEST = "sha256:" + "b" * 64


class TestTagGrammar:
    @pytest.mark.parametrize("tag", ["v1", "latest", "_private", "1.0.0-rc.1", "A" * 128, "a_b.c-d"])
    def test_accepts_valid_tags(self, tag):
        assert validate_tag(tag) == tag

    @pytest.mark.parametrize("tag", [".hidden", "-dash", "has space", "a" * 129, "", "v1\n", "täg"])
    def test_rejects_invalid_tags_naming_them(self, tag):
        with pytest.raises(InvalidReferenceError) as exc_info:
            validate_tag(tag)
        assert repr(tag) in str(exc_info.value)


class TestReference:
    def test_parse_tag(self):
        ref = Reference.parse("registry.example.com:5000/team/app:v1")
        assert ref.registry == "registry.example.com:5000"
        assert ref.repository == "team/app"
        assert ref.reference == "v1"
        assert not ref.is_digest
        assert str(ref) == "registry.example.com:5000/team/app:v1"

    def test_parse_digest(self):
        ref = Reference.parse(f"localhost/app@{DIGEST}")
        assert ref.reference == DIGEST
        assert ref.is_digest
        assert ref.locator == "localhost/app"

    def test_parse_without_reference(self):
        ref = Reference.parse("localhost:5000/app")
        assert ref.reference == ""
        assert str(ref) == "localhost:5000/app"

    @pytest.mark.parametrize("raw", ["app", "localhost/App", "localhost/app@sha256:", "localhost/app:-bad"])
    def test_parse_rejects_malformed(self, raw):
        with pytest.raises(InvalidReferenceError):
            Reference.parse(raw)


class TestLayoutReference:
    def test_tag_suffix(self):
        assert parse_layout_reference("out/layout:v1") == ("out/layout", "v1")

    def test_digest_suffix(self):
        assert parse_layout_reference(f"out/layout@{DIGEST}") == ("out/layout", DIGEST)

    def test_no_reference(self):
        assert parse_layout_reference("out/layout") == ("out/layout", "")

    def test_colon_before_separator_is_part_of_path(self):
        assert parse_layout_reference("a:b/layout") == ("a:b/layout", "")


class TestParseArtifactsToBackup:
    def test_repository_only(self):
        assert parse_artifacts_to_backup("localhost:5000/app") == ("localhost:5000/app", [])

    def test_tags_keep_order_and_duplicates(self):
        repository, tags = parse_artifacts_to_backup("localhost:5000/app:v2, v1,,v2")
        assert repository == "localhost:5000/app"
        assert tags == ["v2", "v1", "v2"]

    def test_rejects_empty(self):
        with pytest.raises(InvalidReferenceError, match="empty reference"):
            parse_artifacts_to_backup("")

    def test_rejects_digest(self):
        with pytest.raises(InvalidReferenceError, match="digest references are not supported"):
            parse_artifacts_to_backup(f"localhost/app@{DIGEST}")

    def test_rejects_bad_tag(self):
        with pytest.raises(InvalidReferenceError, match="'-bad'"):
            parse_artifacts_to_backup("localhost/app:v1,-bad")

    def test_rejects_bad_repository(self):
        with pytest.raises(InvalidReferenceError, match="invalid repository"):
            parse_artifacts_to_backup("localhost/UPPER:v1")


class TestDigests:
    def test_compute_and_split(self):
        digest = compute_digest(b"hello")
        algorithm, encoded = split_digest(digest)
        assert algorithm == "sha256"
        assert len(encoded) == 64

    @pytest.mark.parametrize("digest", ["sha256:abc", "md5:" + "a" * 32, "sha256" + "a" * 64, "sha256:" + "A" * 64])
    def test_split_rejects_malformed(self, digest):
        with pytest.raises(InvalidReferenceError):
            split_digest(digest)

    def test_verify_content(self):
        verify_content(b"hello", compute_digest(b"hello"), 5)
        with pytest.raises(DigestMismatchError):
            verify_content(b"hello", compute_digest(b"world"))
        with pytest.raises(DigestMismatchError, match="size"):
            verify_content(b"hello", compute_digest(b"hello"), 4)
