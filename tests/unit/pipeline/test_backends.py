"""Unit tests for the packaging backends."""

from __future__ import annotations

import subprocess
from pathlib import Path
from types import SimpleNamespace
from typing import List
from unittest import mock

import pytest

from extforge.pipeline.backends import (
    FUSED_CREDENTIAL_NAME,
    SdkBackend,
    StandardBackend,
    parse_sdk_errors,
    select_backend,
)
from extforge.pipeline.manifest import read_manifest
from extforge.pipeline.package import ArchiveAssembler
from extforge.pipeline.signing import SignatureVerifier, Signer
from extforge.pipeline.versioning import Version
from extforge.utils.exceptions import BackendError, PackagingError

from conftest import MANIFEST_TEXT

PYTHON_MANIFEST = MANIFEST_TEXT + "\npython:\n  runtime:\n    module: myext\n"


@pytest.fixture
def signer(pki: SimpleNamespace) -> Signer:
    return Signer(pki.dev_key, pki.dev_cert)


@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    path = tmp_path / "staging"
    path.mkdir()
    return path


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_select_backend() -> None:
    standard, sdk = StandardBackend(), SdkBackend()
    assert select_backend(read_manifest(MANIFEST_TEXT), standard, sdk) is standard
    assert select_backend(read_manifest(PYTHON_MANIFEST), standard, sdk) is sdk
    assert isinstance(select_backend(read_manifest(PYTHON_MANIFEST)), SdkBackend)


def test_standard_backend_builds_signed_archive(
        extension_project: Path, staging_dir: Path, signer: Signer, pki: SimpleNamespace
) -> None:
    manifest = read_manifest(MANIFEST_TEXT)
    artifact = StandardBackend().build(
        manifest, Version.parse("1.3"), extension_project / "extension", staging_dir, signer
    )

    assert artifact.outer_path == staging_dir / "com.example_myext-1.3.zip"
    assert artifact.outer_path.exists()
    assert SignatureVerifier(pki.ca_cert).verify_archive(artifact.outer_bytes)


class TestSdkBackend:
    """The external SDK backend, with the subprocess mocked."""

    def test_missing_command(self) -> None:
        backend = SdkBackend(command="dt-sdk")
        with mock.patch("extforge.pipeline.backends.subprocess.run", side_effect=FileNotFoundError("dt-sdk")):
            with pytest.raises(BackendError) as exc_info:
                backend.check_available()
        assert exc_info.value.details["tool"] == "dt-sdk"

    def test_help_failure(self) -> None:
        with mock.patch("extforge.pipeline.backends.subprocess.run", return_value=_completed(2, stderr="boom")):
            with pytest.raises(BackendError, match="exited with code 2"):
                SdkBackend().check_available()

    def test_build_success(
            self, extension_project: Path, staging_dir: Path, signer: Signer, pki: SimpleNamespace
    ) -> None:
        manifest = read_manifest(PYTHON_MANIFEST)
        extension_dir = extension_project / "extension"
        commands: List[List[str]] = []
        fused_seen: List[bytes] = []

        def run(cmd, **kwargs):
            commands.append(cmd)
            if cmd[1] == "build":
                fused_seen.append(Path(cmd[3]).read_bytes())
                assembler = ArchiveAssembler()
                inner = assembler.assemble_inner(extension_dir)
                outer = assembler.assemble_outer(inner, signer.sign(inner))
                (staging_dir / "com.example_myext-1.3.zip").write_bytes(outer)
                return _completed(stdout="Building extension\nDone\n")
            return _completed(stdout="usage: dt-sdk")

        backend = SdkBackend(command="dt-sdk", extra_platform="win_amd64")
        with mock.patch("extforge.pipeline.backends.subprocess.run", side_effect=run):
            artifact = backend.build(manifest, Version.parse("1.3"), extension_dir, staging_dir, signer)

        assert commands[0] == ["dt-sdk", "--help"]
        assert commands[1] == [
            "dt-sdk", "build",
            "-k", str(staging_dir / FUSED_CREDENTIAL_NAME),
            str(extension_project),
            "-t", str(staging_dir),
            "-e", "win_amd64",
        ]
        assert fused_seen == [signer.fused_pem()]
        assert not (staging_dir / FUSED_CREDENTIAL_NAME).exists()
        assert artifact.outer_path == staging_dir / "com.example_myext-1.3.zip"
        assert SignatureVerifier(pki.ca_cert).verify(artifact.inner_bytes, artifact.signature)

    def test_build_reports_sdk_errors(self, extension_project: Path, staging_dir: Path, signer: Signer) -> None:
        stderr = (
            "Building extension\n"
            "ERROR: Extension validation failed\n"
            "  + dashboards/overview.json: unknown tile type\n"
            "  + alerts/cpu.json: missing metric\n"
        )

        def run(cmd, **kwargs):
            if cmd[1] == "build":
                return _completed(1, stderr=stderr)
            return _completed()

        with mock.patch("extforge.pipeline.backends.subprocess.run", side_effect=run):
            with pytest.raises(PackagingError) as exc_info:
                SdkBackend().build(
                    read_manifest(PYTHON_MANIFEST), Version.parse("1.3"),
                    extension_project / "extension", staging_dir, signer,
                )

        assert exc_info.value.message == "Extension validation failed"
        assert exc_info.value.details["errors"] == [
            "dashboards/overview.json: unknown tile type",
            "alerts/cpu.json: missing metric",
        ]
        assert not (staging_dir / FUSED_CREDENTIAL_NAME).exists()

    def test_build_without_output(self, extension_project: Path, staging_dir: Path, signer: Signer) -> None:
        with mock.patch("extforge.pipeline.backends.subprocess.run", return_value=_completed()):
            with pytest.raises(PackagingError, match="did not produce"):
                SdkBackend().build(
                    read_manifest(PYTHON_MANIFEST), Version.parse("1.3"),
                    extension_project / "extension", staging_dir, signer,
                )

    def test_environment_points_at_interpreter(self, tmp_path: Path) -> None:
        python = tmp_path / "venv" / "bin" / "python"
        env = SdkBackend(python_path=python).environment()
        assert env["PATH"].startswith(str(python.parent))
        assert env["VIRTUAL_ENV"] == str(tmp_path / "venv")

    def test_default_extra_platform(self) -> None:
        with mock.patch("extforge.pipeline.backends.sys.platform", "win32"):
            assert SdkBackend.default_extra_platform() == "linux_x86_64"
        with mock.patch("extforge.pipeline.backends.sys.platform", "linux"):
            assert SdkBackend.default_extra_platform() == "win_amd64"


@pytest.mark.parametrize(
    "stderr, expected",
    [
        ("", (None, [])),
        ("warning: something\n", (None, [])),
        ("ERROR: bad manifest\n", ("bad manifest", [])),
        ("ERROR bad thing + first detail\n + second\n", ("bad thing", ["first detail", "second"])),
        ("ERROR\n", ("SDK build failed", [])),
    ],
)
def test_parse_sdk_errors(stderr: str, expected) -> None:
    assert parse_sdk_errors(stderr) == expected
