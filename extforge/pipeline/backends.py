"""Packaging backends.

A backend turns an extension directory into a signed, staged outer
archive. The standard backend does everything in-process; the SDK backend
delegates to an external build tool, which is needed for extensions that
bundle Python code.
"""

from __future__ import annotations

import abc
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from extforge.core.logging_manager import get_logger
from extforge.pipeline.manifest import ExtensionManifest
from extforge.pipeline.package import ArchiveAssembler, BuildArtifact, artifact_file_name
from extforge.pipeline.signing import Signer
from extforge.pipeline.versioning import Version
from extforge.utils.exceptions import BackendError, PackagingError

logger = get_logger(__name__)

FUSED_CREDENTIAL_NAME = 'developer-fused.pem'


class PackagingBackend(abc.ABC):
    """Builds a signed outer archive into the staging directory."""

    name = 'abstract'

    @abc.abstractmethod
    def build(
            self,
            manifest: ExtensionManifest,
            version: Version,
            extension_dir: Path,
            staging_dir: Path,
            signer: Signer,
    ) -> BuildArtifact:
        """Build and stage the archive for ``version``.

        Raises:
            PrerequisiteError: If a required tool is missing
            PackagingError: If the archive cannot be produced
            SigningError: If signing fails
        """


class StandardBackend(PackagingBackend):
    """Zips the extension directory and signs it in-process."""

    name = 'standard'

    def __init__(self, assembler: Optional[ArchiveAssembler] = None) -> None:
        self.assembler = assembler or ArchiveAssembler()

    def build(
            self,
            manifest: ExtensionManifest,
            version: Version,
            extension_dir: Path,
            staging_dir: Path,
            signer: Signer,
    ) -> BuildArtifact:
        inner = self.assembler.assemble_inner(extension_dir)
        signature = signer.sign(inner)
        return self.assembler.write_staged(staging_dir, manifest.name, version, inner, signature)


class SdkBackend(PackagingBackend):
    """Builds through an external SDK command such as ``dt-sdk``.

    Attributes:
        command: SDK executable
        python_path: Interpreter whose environment the SDK should run in
        extra_platform: Additional wheel platform to bundle
    """

    name = 'sdk'

    def __init__(
            self,
            command: str = 'dt-sdk',
            python_path: Optional[Union[str, Path]] = None,
            extra_platform: Optional[str] = None,
            timeout: Optional[float] = None,
    ) -> None:
        self.command = command
        self.python_path = Path(python_path) if python_path else None
        self.extra_platform = extra_platform or self.default_extra_platform()
        self.timeout = timeout

    @staticmethod
    def default_extra_platform() -> str:
        """The platform the host does not cover natively."""
        return 'linux_x86_64' if sys.platform == 'win32' else 'win_amd64'

    def environment(self) -> Dict[str, str]:
        """Process environment for the SDK, pointing at ``python_path`` if set."""
        env = dict(os.environ)
        if self.python_path is not None:
            bin_dir = self.python_path.parent
            env['PATH'] = f"{bin_dir}{os.pathsep}{env.get('PATH', '')}"
            env['VIRTUAL_ENV'] = str(bin_dir.parent)
        return env

    def check_available(self) -> None:
        """Make sure the SDK command can be run.

        Raises:
            BackendError: If the command is missing or broken
        """
        try:
            result = subprocess.run(
                [self.command, '--help'],
                capture_output=True,
                text=True,
                env=self.environment(),
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BackendError(
                f"'{self.command}' is required to build Python extensions but could not be run: {e}",
                tool=self.command,
            ) from e
        if result.returncode != 0:
            raise BackendError(
                f"'{self.command} --help' exited with code {result.returncode}",
                tool=self.command,
                stderr=result.stderr.strip() or None,
            )

    def build(
            self,
            manifest: ExtensionManifest,
            version: Version,
            extension_dir: Path,
            staging_dir: Path,
            signer: Signer,
    ) -> BuildArtifact:
        self.check_available()

        fused_path = staging_dir / FUSED_CREDENTIAL_NAME
        try:
            staging_dir.mkdir(parents=True, exist_ok=True)
            fused_path.write_bytes(signer.fused_pem())
            os.chmod(fused_path, 0o600)
        except OSError as e:
            raise PackagingError(f"Cannot write SDK credential file: {e}", path=str(fused_path)) from e

        cmd = self.build_command(fused_path, extension_dir.parent, staging_dir)
        logger.info("Running SDK build", command=' '.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env=self.environment(),
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BackendError(f"Failed to run '{self.command}': {e}", tool=self.command) from e
        finally:
            fused_path.unlink(missing_ok=True)

        for line in result.stdout.splitlines():
            logger.debug(line.strip(), tool=self.command)

        message, details = parse_sdk_errors(result.stderr)
        if result.returncode != 0 or message:
            raise PackagingError(
                message or f"'{self.command} build' exited with code {result.returncode}",
                tool=self.command,
                errors=details or None,
                returncode=result.returncode,
            )

        outer_path = staging_dir / artifact_file_name(manifest.name, version)
        if not outer_path.is_file():
            raise PackagingError(
                f"SDK build did not produce {outer_path.name}", path=str(outer_path)
            )
        outer = outer_path.read_bytes()
        inner, signature = ArchiveAssembler.split_outer(outer)
        return BuildArtifact(
            name=manifest.name,
            version=version,
            inner_bytes=inner,
            signature=signature,
            outer_path=outer_path,
        )

    def build_command(self, fused_path: Path, project_dir: Path, staging_dir: Path) -> List[str]:
        return [
            self.command,
            'build',
            '-k', str(fused_path),
            str(project_dir),
            '-t', str(staging_dir),
            '-e', self.extra_platform,
        ]


def parse_sdk_errors(stderr: str) -> Tuple[Optional[str], List[str]]:
    """Extract the error message and ``+``-prefixed detail lines from SDK output.

    Returns:
        ``(message, details)``; message is None when the output has no ERROR
    """
    if not stderr or 'ERROR' not in stderr:
        return None, []

    tail = stderr[stderr.index('ERROR') + len('ERROR'):]
    lines = tail.splitlines()
    message = lines[0].strip(' :-\t') if lines else ''
    details = [line.strip()[1:].strip() for line in lines[1:] if line.strip().startswith('+')]
    if '+' in message:
        message, _, first = message.partition('+')
        details.insert(0, first.strip())
        message = message.strip()
    return message or 'SDK build failed', details


def select_backend(
        manifest: ExtensionManifest,
        standard: Optional[PackagingBackend] = None,
        sdk: Optional[PackagingBackend] = None,
) -> PackagingBackend:
    """Pick the SDK backend for manifests with a ``python:`` block."""
    if manifest.uses_python:
        return sdk or SdkBackend()
    return standard or StandardBackend()
