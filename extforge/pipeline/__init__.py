"""Extension build, sign and publish pipeline.

Modules:
    manifest: Reading the extension manifest and rewriting its version
    versioning: Version parsing and publish-version negotiation
    package: Inner and outer archive assembly
    signing: Detached CMS signatures and their verification
    staging: Exclusive staging area for in-flight files
    registry: Registry client interface and HTTP implementation
    validation: Dry-run validation gate
    upload: Quota-aware upload and activation
    backends: Standard and SDK packaging backends
    orchestrator: Manual and fast build workflows
"""

from __future__ import annotations

from extforge.pipeline.backends import PackagingBackend, SdkBackend, StandardBackend
from extforge.pipeline.context import BuildContext
from extforge.pipeline.manifest import ExtensionManifest, load_manifest, read_manifest, rewrite_version
from extforge.pipeline.orchestrator import BuildMode, BuildOrchestrator, BuildResult, BuildStatus
from extforge.pipeline.package import ArchiveAssembler, BuildArtifact
from extforge.pipeline.registry import HttpRegistryClient, RegistryClient, RemoteVersion
from extforge.pipeline.reporting import BuildReporter, FailureDetail, LoggingReporter, ProgressEvent, RecordingReporter
from extforge.pipeline.signing import SignatureVerifier, Signer
from extforge.pipeline.staging import StagingArea
from extforge.pipeline.upload import CancellationToken, EvictionOutcome, UploadManager, UploadOutcome, UploadState
from extforge.pipeline.validation import ValidationGate
from extforge.pipeline.versioning import Version, increment, negotiate

__all__ = [
    "ArchiveAssembler",
    "BuildArtifact",
    "BuildContext",
    "BuildMode",
    "BuildOrchestrator",
    "BuildReporter",
    "BuildResult",
    "BuildStatus",
    "CancellationToken",
    "EvictionOutcome",
    "ExtensionManifest",
    "FailureDetail",
    "HttpRegistryClient",
    "LoggingReporter",
    "PackagingBackend",
    "ProgressEvent",
    "RecordingReporter",
    "RegistryClient",
    "RemoteVersion",
    "SdkBackend",
    "SignatureVerifier",
    "Signer",
    "StagingArea",
    "StandardBackend",
    "UploadManager",
    "UploadOutcome",
    "UploadState",
    "ValidationGate",
    "Version",
    "increment",
    "load_manifest",
    "negotiate",
    "read_manifest",
    "rewrite_version",
]
