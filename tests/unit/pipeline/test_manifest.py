"""Unit tests for manifest reading and version rewriting."""

from __future__ import annotations

import builtins
from pathlib import Path
from unittest import mock

import pytest

from extforge.pipeline.manifest import (
    ExtensionManifest,
    load_manifest,
    read_manifest,
    read_manifest_text,
    rewrite_version,
    write_manifest_version,
)
from extforge.utils.exceptions import ManifestParseError, PrerequisiteError

from conftest import MANIFEST_TEXT


def test_read_manifest() -> None:
    manifest = read_manifest(MANIFEST_TEXT)
    assert manifest.name == "com.example:myext"
    assert str(manifest.version) == "1.2"
    assert manifest.uses_python is False


def test_read_manifest_quoted_values() -> None:
    manifest = read_manifest('name: "custom:my.ext-name_1"\nversion: "2.0.1"\n')
    assert manifest.name == "custom:my.ext-name_1"
    assert str(manifest.version) == "2.0.1"


def test_read_manifest_ignores_nested_keys() -> None:
    text = "author:\n  name: Someone\n  version: 9.9\nname: custom:ext\nversion: 1.0.0\n"
    manifest = read_manifest(text)
    assert manifest.name == "custom:ext"
    assert str(manifest.version) == "1.0.0"


def test_read_manifest_with_trailing_comment_and_crlf() -> None:
    manifest = read_manifest("name: custom:ext  # id\r\nversion: 1.4  # bumped\r\n")
    assert manifest.name == "custom:ext"
    assert str(manifest.version) == "1.4"


def test_read_manifest_detects_python_block() -> None:
    manifest = read_manifest("name: custom:py\nversion: 1.0.0\npython:\n  runtime:\n    module: py_ext\n")
    assert manifest.uses_python is True


@pytest.mark.parametrize(
    "text, field",
    [
        ("version: 1.0\n", "name"),
        ("name: custom:ext\n", "version"),
        ("name: bad name!\nversion: 1.0\n", "name"),
        ("name: custom:ext\nversion: one\n", "version"),
        ("name: custom:ext\nversion: 1..0\n", "version"),
    ],
)
def test_read_manifest_errors(text: str, field: str) -> None:
    with pytest.raises(ManifestParseError) as exc_info:
        read_manifest(text)
    assert exc_info.value.details["field"] == field


def test_archive_name_replaces_colons() -> None:
    manifest = read_manifest(MANIFEST_TEXT)
    assert manifest.file_stem == "com.example_myext"
    assert manifest.archive_name() == "com.example_myext-1.2.zip"
    assert manifest.archive_name("1.3") == "com.example_myext-1.3.zip"


def test_manifest_model_rejects_invalid_name() -> None:
    with pytest.raises(ValueError):
        ExtensionManifest(name="no spaces allowed", version="1.0")


def test_rewrite_version_preserves_other_content() -> None:
    updated = rewrite_version(MANIFEST_TEXT, "1.3")
    assert "version: 1.3\n" in updated
    assert updated.replace("version: 1.3", "version: 1.2") == MANIFEST_TEXT


def test_rewrite_version_preserves_quotes_and_line_endings() -> None:
    text = 'name: custom:ext\r\nversion: "1.2"\r\nauthor:\r\n  version: 1.2\r\n'
    updated = rewrite_version(text, "1.3")
    assert updated == 'name: custom:ext\r\nversion: "1.3"\r\nauthor:\r\n  version: 1.2\r\n'


def test_rewrite_version_without_version_line() -> None:
    with pytest.raises(ManifestParseError):
        rewrite_version("name: custom:ext\n", "1.0")


def test_load_manifest(manifest_path: Path) -> None:
    manifest = load_manifest(manifest_path)
    assert manifest.name == "com.example:myext"
    assert manifest.path == manifest_path


def test_load_manifest_missing(tmp_path: Path) -> None:
    with pytest.raises(PrerequisiteError):
        load_manifest(tmp_path / "extension.yaml")


def test_write_manifest_version(manifest_path: Path) -> None:
    manifest = write_manifest_version(manifest_path, "1.3")
    assert str(manifest.version) == "1.3"
    assert load_manifest(manifest_path).version == "1.3"
    assert manifest_path.read_text(encoding="utf-8") == MANIFEST_TEXT.replace("version: 1.2", "version: 1.3")


def test_write_manifest_version_keeps_crlf(tmp_path: Path) -> None:
    path = tmp_path / "extension.yaml"
    path.write_bytes(b"name: custom:ext\r\nversion: 1.0.0\r\n")
    write_manifest_version(path, "1.0.1")
    assert path.read_bytes() == b"name: custom:ext\r\nversion: 1.0.1\r\n"


@pytest.mark.parametrize(
    "line, expected",
    [
        ("version: 1.2 # bumped by CI", "version: 1.3 # bumped by CI"),
        ("version:   1.2\t  # note", "version:   1.3\t  # note"),
        ('version: "1.2"  # quoted', 'version: "1.3"  # quoted'),
        ("version:\t1.2", "version:\t1.3"),
    ],
)
def test_rewrite_version_keeps_spacing_and_comments(line: str, expected: str) -> None:
    updated = rewrite_version(f"name: custom:ext\n{line}\n", "1.3")
    assert updated == f"name: custom:ext\n{expected}\n"
    assert str(read_manifest(updated).version) == "1.3"


def test_read_manifest_text_rejects_non_utf8(tmp_path: Path) -> None:
    path = tmp_path / "extension.yaml"
    path.write_bytes(b"name: custom:ext\nversion: 1.0\ndescription: caf\xe9\n")
    with pytest.raises(ManifestParseError):
        read_manifest_text(path)
    with pytest.raises(ManifestParseError):
        load_manifest(path)


def test_read_manifest_text_unreadable(tmp_path: Path) -> None:
    with pytest.raises(PrerequisiteError):
        read_manifest_text(tmp_path)


def test_write_manifest_version_unwritable(manifest_path: Path) -> None:
    real_open = builtins.open

    def fake_open(file, mode="r", *args, **kwargs):
        if "w" in mode:
            raise PermissionError(13, "Permission denied", str(file))
        return real_open(file, mode, *args, **kwargs)

    with mock.patch("builtins.open", side_effect=fake_open):
        with pytest.raises(PrerequisiteError) as exc_info:
            write_manifest_version(manifest_path, "1.3")

    assert "Permission denied" in str(exc_info.value)
    assert manifest_path.read_text(encoding="utf-8") == MANIFEST_TEXT
