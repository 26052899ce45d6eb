"""Archive assembly for extension packages.

An extension is shipped as an *outer* zip holding exactly two entries:
the *inner* zip of the extension directory and its detached signature.
"""

from __future__ import annotations

import io
import os
import stat
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from extforge.core.logging_manager import get_logger
from extforge.pipeline.versioning import Version
from extforge.utils.exceptions import PackagingError

logger = get_logger(__name__)

INNER_ARCHIVE_NAME = 'extension.zip'
SIGNATURE_NAME = 'extension.zip.sig'

# zip cannot store dates before 1980
FIXED_TIMESTAMP = (1980, 1, 1, 0, 0, 0)


@dataclass
class BuildArtifact:
    """A signed, staged extension archive.

    Attributes:
        name: Extension name
        version: Version the archive was built for
        inner_bytes: The inner archive
        signature: Detached signature over ``inner_bytes``
        outer_path: Location of the outer archive in the staging area
    """

    name: str
    version: Version
    inner_bytes: bytes
    signature: bytes
    outer_path: Path

    @property
    def file_name(self) -> str:
        return artifact_file_name(self.name, self.version)

    @property
    def outer_bytes(self) -> bytes:
        try:
            return self.outer_path.read_bytes()
        except OSError as e:
            raise PackagingError(
                f"Cannot read staged archive {self.outer_path}: {e}", path=str(self.outer_path)
            ) from e


def artifact_file_name(name: str, version: Union[str, Version]) -> str:
    """Distributable file name, ``<name with ':' as '_'>-<version>.zip``."""
    return f"{name.replace(':', '_')}-{version}.zip"


class ArchiveAssembler:
    """Builds inner and outer extension archives.

    Inner archives are reproducible: entries are written in path order
    with a fixed timestamp, so the same tree always yields the same bytes.
    """

    def __init__(self, compression: int = zipfile.ZIP_DEFLATED) -> None:
        self.compression = compression

    def assemble_inner(self, extension_dir: Union[str, Path]) -> bytes:
        """Zip every file under ``extension_dir``.

        Args:
            extension_dir: Directory holding ``extension.yaml`` and its assets

        Returns:
            The inner archive bytes

        Raises:
            PackagingError: If the directory is missing, empty or unreadable
        """
        source_dir = Path(extension_dir)
        if not source_dir.exists():
            raise PackagingError(f"Extension directory not found: {source_dir}", path=str(source_dir))
        if not source_dir.is_dir():
            raise PackagingError(f"Not a directory: {source_dir}", path=str(source_dir))

        files = self._collect_files(source_dir)
        if not files:
            raise PackagingError(f"Extension directory is empty: {source_dir}", path=str(source_dir))

        buffer = io.BytesIO()
        try:
            with zipfile.ZipFile(buffer, 'w', self.compression) as zf:
                for file_path in files:
                    rel_path = file_path.relative_to(source_dir).as_posix()
                    self._write_entry(zf, rel_path, file_path.read_bytes(), file_path.stat().st_mode)
        except OSError as e:
            raise PackagingError(f"Failed to create inner archive: {e}", path=str(source_dir)) from e

        logger.debug("Inner archive assembled", path=str(source_dir), entries=len(files))
        return buffer.getvalue()

    def assemble_outer(self, inner: bytes, signature: bytes) -> bytes:
        """Wrap an inner archive and its signature into the outer archive."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, 'w', self.compression) as zf:
            self._write_entry(zf, INNER_ARCHIVE_NAME, inner)
            self._write_entry(zf, SIGNATURE_NAME, signature)
        return buffer.getvalue()

    def write_staged(
            self,
            staging_dir: Union[str, Path],
            name: str,
            version: Union[str, Version],
            inner: bytes,
            signature: bytes,
    ) -> BuildArtifact:
        """Write the inner archive, its signature and the outer archive to staging.

        Returns:
            The staged artifact

        Raises:
            PackagingError: If a file cannot be written
        """
        staging_dir = Path(staging_dir)
        version = Version.parse(version)
        outer_path = staging_dir / artifact_file_name(name, version)
        try:
            staging_dir.mkdir(parents=True, exist_ok=True)
            (staging_dir / INNER_ARCHIVE_NAME).write_bytes(inner)
            (staging_dir / SIGNATURE_NAME).write_bytes(signature)
            outer_path.write_bytes(self.assemble_outer(inner, signature))
        except OSError as e:
            raise PackagingError(f"Failed to write staged archive: {e}", path=str(staging_dir)) from e

        logger.info("Archive staged", name=name, version=str(version), path=str(outer_path))
        return BuildArtifact(
            name=name,
            version=version,
            inner_bytes=inner,
            signature=signature,
            outer_path=outer_path,
        )

    @staticmethod
    def list_entries(data: bytes) -> List[str]:
        """Names of the entries in an archive, in stored order.

        Raises:
            PackagingError: If ``data`` is not a zip archive
        """
        try:
            with zipfile.ZipFile(io.BytesIO(data), 'r') as zf:
                return zf.namelist()
        except zipfile.BadZipFile as e:
            raise PackagingError(f"Not a valid archive: {e}") from e

    @staticmethod
    def extract_entries(data: bytes) -> Dict[str, bytes]:
        """Read every entry of an archive into memory.

        Raises:
            PackagingError: If ``data`` is not a zip archive
        """
        try:
            with zipfile.ZipFile(io.BytesIO(data), 'r') as zf:
                return {info.filename: zf.read(info) for info in zf.infolist() if not info.is_dir()}
        except zipfile.BadZipFile as e:
            raise PackagingError(f"Not a valid archive: {e}") from e

    @classmethod
    def split_outer(cls, data: bytes) -> tuple[bytes, bytes]:
        """Return ``(inner, signature)`` from an outer archive.

        Raises:
            PackagingError: If the archive does not have the two expected entries
        """
        entries = cls.extract_entries(data)
        if sorted(entries) != sorted([INNER_ARCHIVE_NAME, SIGNATURE_NAME]):
            raise PackagingError(
                f"Expected exactly {INNER_ARCHIVE_NAME} and {SIGNATURE_NAME}, found {sorted(entries)}"
            )
        return entries[INNER_ARCHIVE_NAME], entries[SIGNATURE_NAME]

    def _write_entry(
            self,
            zf: zipfile.ZipFile,
            arcname: str,
            data: bytes,
            mode: Optional[int] = None,
    ) -> None:
        info = zipfile.ZipInfo(arcname, date_time=FIXED_TIMESTAMP)
        info.compress_type = self.compression
        info.external_attr = ((stat.S_IMODE(mode) if mode is not None else 0o644) | stat.S_IFREG) << 16
        zf.writestr(info, data)

    @staticmethod
    def _collect_files(source_dir: Path) -> List[Path]:
        files: List[Path] = []
        for root, dirs, names in os.walk(source_dir, onerror=_raise_walk_error):
            dirs.sort()
            root_path = Path(root)
            for name in names:
                file_path = root_path / name
                if file_path.is_file():
                    files.append(file_path)
        return sorted(files, key=lambda p: p.relative_to(source_dir).as_posix())


def _raise_walk_error(error: OSError) -> None:
    raise PackagingError(f"Cannot read {error.filename}: {error.strerror}", path=error.filename)
