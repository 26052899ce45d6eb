"""Extension manifest reading and version rewriting.

The manifest (``extension.yaml``) is treated as line-oriented text: the
pipeline only needs the top-level ``name`` and ``version`` scalars, and it
must be able to rewrite the ``version`` line without disturbing anything
else in the file, including line endings.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Union

import pydantic
from pydantic import ConfigDict, field_validator

from extforge.core.logging_manager import get_logger
from extforge.pipeline.versioning import Version
from extforge.utils.exceptions import ManifestParseError, PrerequisiteError

logger = get_logger(__name__)

MANIFEST_FILENAME = 'extension.yaml'

NAME_LINE = re.compile(r'^name:[ \t]*"?([:a-zA-Z0-9.\-_]+)"?[ \t]*(?:#.*)?\r?$', re.MULTILINE)
VERSION_LINE = re.compile(r'^version:([ \t]*)("?)([0-9.]+)("?)([ \t]*)(?=\r?$|#)', re.MULTILINE)
NAME_KEY = re.compile(r'^name:', re.MULTILINE)
VERSION_KEY = re.compile(r'^version:', re.MULTILINE)
PYTHON_KEY = re.compile(r'^python:[ \t]*\r?$', re.MULTILINE)
NAME_REGEX = re.compile(r'^[:a-zA-Z0-9.\-_]+$')


class ExtensionManifest(pydantic.BaseModel):
    """Identity of a publishable extension.

    Attributes:
        name: Extension name, e.g. ``custom:com.example.my-extension``
        version: Version declared in the manifest
        uses_python: Whether the manifest declares a top-level ``python:`` block
        path: File the manifest was read from
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    version: Version
    uses_python: bool = False
    path: Optional[Path] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not NAME_REGEX.match(v):
            raise ValueError(
                'Extension name may only contain letters, digits, colons, dots, hyphens and underscores'
            )
        return v

    @field_validator('version', mode='before')
    @classmethod
    def validate_version(cls, v: Union[str, Version]) -> Version:
        return Version.parse(v)

    @property
    def file_stem(self) -> str:
        """Name as used in archive file names (colons become underscores)."""
        return self.name.replace(':', '_')

    def archive_name(self, version: Optional[Union[str, Version]] = None) -> str:
        """File name of the distributable archive for ``version``."""
        return f"{self.file_stem}-{version if version is not None else self.version}.zip"


def read_manifest(text: str, path: Optional[Path] = None) -> ExtensionManifest:
    """Extract identity from manifest text.

    Args:
        text: Manifest content
        path: Where the text came from (for error messages)

    Returns:
        Parsed manifest

    Raises:
        ManifestParseError: If ``name`` or ``version`` is missing or malformed
    """
    where = str(path) if path else '<manifest>'

    name_match = NAME_LINE.search(text)
    if name_match is None:
        if NAME_KEY.search(text):
            raise ManifestParseError(f"Malformed extension name in {where}", field='name', path=where)
        raise ManifestParseError(f"No top-level 'name' in {where}", field='name', path=where)

    version_match = VERSION_LINE.search(text)
    if version_match is None:
        if VERSION_KEY.search(text):
            raise ManifestParseError(f"Malformed extension version in {where}", field='version', path=where)
        raise ManifestParseError(f"No top-level 'version' in {where}", field='version', path=where)

    try:
        return ExtensionManifest(
            name=name_match.group(1),
            version=version_match.group(3),
            uses_python=PYTHON_KEY.search(text) is not None,
            path=path,
        )
    except pydantic.ValidationError as e:
        raise ManifestParseError(f"Invalid manifest {where}: {e}", path=where) from e


def load_manifest(path: Union[str, Path]) -> ExtensionManifest:
    """Read and parse a manifest file.

    Raises:
        PrerequisiteError: If the file does not exist
        ManifestParseError: If the content is invalid
    """
    path = Path(path)
    if not path.is_file():
        raise PrerequisiteError(f"Manifest file not found: {path}", path=str(path))
    return read_manifest(read_manifest_text(path), path)


def read_manifest_text(path: Path) -> str:
    """Read manifest text exactly as stored.

    Raises:
        PrerequisiteError: If the file cannot be read
        ManifestParseError: If the file is not UTF-8 text
    """
    # newline='' keeps \r\n intact for the rewrite
    try:
        with open(path, 'r', encoding='utf-8', newline='') as f:
            return f.read()
    except UnicodeDecodeError as e:
        raise ManifestParseError(f"Manifest {path} is not valid UTF-8: {e.reason}", path=str(path)) from e
    except OSError as e:
        raise PrerequisiteError(f"Cannot read manifest {path}: {e.strerror or e}", path=str(path)) from e


def rewrite_version(text: str, version: Union[str, Version]) -> str:
    """Replace the top-level ``version`` value, keeping everything else.

    The original quoting style of the value and the spacing around it,
    including before a trailing comment, are preserved.

    Raises:
        ManifestParseError: If the text has no top-level version line
    """
    if VERSION_LINE.search(text) is None:
        raise ManifestParseError("No top-level 'version' to rewrite", field='version')
    return VERSION_LINE.sub(
        lambda m: f"version:{m.group(1)}{m.group(2)}{version}{m.group(4)}{m.group(5)}", text
    )


def write_manifest_version(path: Union[str, Path], version: Union[str, Version]) -> ExtensionManifest:
    """Rewrite the manifest file in place to declare ``version``.

    Returns:
        The manifest as re-read from the rewritten file

    Raises:
        PrerequisiteError: If the file cannot be read or written
        ManifestParseError: If the file has no rewritable version line
    """
    path = Path(path)
    text = read_manifest_text(path)
    updated = rewrite_version(text, version)
    try:
        with open(path, 'w', encoding='utf-8', newline='') as f:
            f.write(updated)
    except OSError as e:
        raise PrerequisiteError(f"Cannot write manifest {path}: {e.strerror or e}", path=str(path)) from e
    logger.info("Manifest version updated", path=str(path), version=str(version))
    return read_manifest(updated, path)
