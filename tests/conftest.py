"""Pytest configuration and fixtures for extforge tests."""

from __future__ import annotations

import datetime
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Set

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from extforge.pipeline.context import BuildContext
from extforge.pipeline.orchestrator import manifest_from_archive
from extforge.pipeline.registry import RegistryClient, RemoteVersion
from extforge.utils.exceptions import RegistryError

EXTENSION_NAME = "com.example:myext"

MANIFEST_TEXT = """name: com.example:myext
version: 1.2
minDynatraceVersion: "1.250"
author:
  name: Example Inc.

dashboards:
  - path: dashboards/overview.json

alerts:
  - path: alerts/cpu.json
"""

EXTENSION_FILES = {
    "dashboards/overview.json": b'{"dashboardMetadata": {"name": "Overview"}}\n',
    "alerts/cpu.json": b'{"name": "High CPU", "threshold": 90}\n',
    "activationSchema.json": b'{"types": {}, "properties": {}}\n',
}


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(
        common_name: str,
        public_key: Any,
        issuer_name: x509.Name,
        signing_key: Any,
        not_before: datetime.datetime,
        not_after: datetime.datetime,
        ca: bool = False,
) -> x509.Certificate:
    return (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(issuer_name)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


def key_pem(key: Any) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def cert_pem(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def pki() -> SimpleNamespace:
    """A root CA, a developer certificate it issued and an unrelated CA."""
    now = _now()
    ca_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ca_cert = _certificate(
        "Extension Test Root CA", ca_key.public_key(), _name("Extension Test Root CA"), ca_key,
        now - datetime.timedelta(days=1), now + datetime.timedelta(days=365), ca=True,
    )

    dev_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    dev_cert = _certificate(
        "Extension Developer", dev_key.public_key(), ca_cert.subject, ca_key,
        now - datetime.timedelta(days=1), now + datetime.timedelta(days=30),
    )

    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    other_cert = _certificate(
        "Unrelated Root CA", other_key.public_key(), _name("Unrelated Root CA"), other_key,
        now - datetime.timedelta(days=1), now + datetime.timedelta(days=365), ca=True,
    )

    return SimpleNamespace(
        ca_key=ca_key,
        ca_cert=ca_cert,
        dev_key=dev_key,
        dev_cert=dev_cert,
        other_key=other_key,
        other_cert=other_cert,
    )


@pytest.fixture
def issue_certificate(pki: SimpleNamespace) -> Callable[..., x509.Certificate]:
    """Issue a developer certificate for ``public_key`` with custom validity."""

    def issue(
            public_key: Any,
            not_before: Optional[datetime.datetime] = None,
            not_after: Optional[datetime.datetime] = None,
    ) -> x509.Certificate:
        now = _now()
        return _certificate(
            "Extension Developer", public_key, pki.ca_cert.subject, pki.ca_key,
            not_before or now - datetime.timedelta(days=1),
            not_after or now + datetime.timedelta(days=30),
        )

    return issue


@pytest.fixture
def credentials(tmp_path: Path, pki: SimpleNamespace) -> SimpleNamespace:
    """Developer key, developer certificate and CA certificate written as PEM files."""
    cert_dir = tmp_path / "project" / "certificates"
    cert_dir.mkdir(parents=True)
    key_path = cert_dir / "developer.key"
    cert_path = cert_dir / "developer.pem"
    ca_path = cert_dir / "ca.pem"
    key_path.write_bytes(key_pem(pki.dev_key))
    cert_path.write_bytes(cert_pem(pki.dev_cert))
    ca_path.write_bytes(cert_pem(pki.ca_cert))
    return SimpleNamespace(key_path=key_path, cert_path=cert_path, ca_path=ca_path)


@pytest.fixture
def extension_project(tmp_path: Path, credentials: SimpleNamespace) -> Path:
    """An extension project with a manifest, a few assets and credentials."""
    project = tmp_path / "project"
    extension_dir = project / "extension"
    extension_dir.mkdir(parents=True)
    (extension_dir / "extension.yaml").write_text(MANIFEST_TEXT, encoding="utf-8")
    for rel_path, content in EXTENSION_FILES.items():
        target = extension_dir / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
    return project


@pytest.fixture
def manifest_path(extension_project: Path) -> Path:
    return extension_project / "extension" / "extension.yaml"


class FakeRegistry(RegistryClient):
    """In-memory registry.

    Attributes:
        versions: Versions per extension name, oldest first
        calls: Every call made, as tuples
        list_error: Raised by list_versions when set
        undeletable: Versions whose deletion fails
        upload_errors: Errors returned by successive real uploads (None = success)
        dry_run_error: Raised by dry-run uploads when set
        activate_error: Raised by activate when set
    """

    def __init__(self, versions: Optional[Dict[str, List[str]]] = None) -> None:
        self.versions: Dict[str, List[str]] = {k: list(v) for k, v in (versions or {}).items()}
        self.calls: List[tuple] = []
        self.list_error: Optional[RegistryError] = None
        self.undeletable: Set[str] = set()
        self.upload_errors: List[Optional[RegistryError]] = []
        self.dry_run_error: Optional[RegistryError] = None
        self.activate_error: Optional[RegistryError] = None
        self.uploaded: List[bytes] = []
        self.active: Dict[str, str] = {}
        self.closed = False

    def list_versions(self, name: str) -> List[RemoteVersion]:
        self.calls.append(("list_versions", name))
        if self.list_error is not None:
            raise self.list_error
        return [
            RemoteVersion(version, {"extensionName": name, "version": version})
            for version in self.versions.get(name, [])
        ]

    def delete_version(self, name: str, version: str) -> None:
        self.calls.append(("delete_version", name, version))
        if version in self.undeletable:
            raise RegistryError(f"Version {version} is active and cannot be deleted", status_code=400)
        self.versions[name].remove(version)

    def upload(self, data: bytes, dry_run: bool = False) -> Dict[str, Any]:
        self.calls.append(("upload", dry_run))
        if dry_run:
            if self.dry_run_error is not None:
                raise self.dry_run_error
            return {}
        if self.upload_errors:
            error = self.upload_errors.pop(0)
            if error is not None:
                raise error
        manifest = manifest_from_archive(data)
        self.uploaded.append(data)
        self.versions.setdefault(manifest.name, []).append(str(manifest.version))
        return {"extensionName": manifest.name, "version": str(manifest.version)}

    def activate(self, name: str, version: str) -> None:
        self.calls.append(("activate", name, version))
        if self.activate_error is not None:
            raise self.activate_error
        self.active[name] = version

    def close(self) -> None:
        self.closed = True

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


def quota_error() -> RegistryError:
    return RegistryError(
        "Extension versions quantity limit reached. Remove unused versions and try again.",
        status_code=400,
        data={"error": {"code": 400, "message": "Extension versions quantity limit reached."}},
    )


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def context(extension_project: Path) -> BuildContext:
    """Local-only build context for the test project."""
    return BuildContext.for_project(extension_project, retry_delay=0.0)


@pytest.fixture
def remote_context(extension_project: Path, registry: FakeRegistry) -> BuildContext:
    """Build context connected to the in-memory registry."""
    return BuildContext.for_project(extension_project, registry=registry, retry_delay=0.0)


@pytest.fixture
def config_file(extension_project: Path) -> Path:
    """A YAML configuration for the test project."""
    path = extension_project / "extforge.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "project": {"dist_dir": "dist"},
                "upload": {"retry_delay": 0.0, "max_attempts": 5},
                "logging": {"level": "DEBUG", "console": {"enabled": False}},
            }
        ),
        encoding="utf-8",
    )
    return path
