"""Build orchestration.

The orchestrator runs one build from manifest to dist:

    read manifest -> negotiate version -> package and sign -> validate (manual)
                                                           -> upload and activate (fast)

Every build owns the project's staging area for its whole duration and
leaves it empty, whatever the outcome.
"""

from __future__ import annotations

import enum
import io
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

from extforge.core.logging_manager import get_logger
from extforge.pipeline.backends import PackagingBackend, SdkBackend, StandardBackend, select_backend
from extforge.pipeline.context import BuildContext
from extforge.pipeline.manifest import (
    MANIFEST_FILENAME,
    ExtensionManifest,
    load_manifest,
    read_manifest,
    write_manifest_version,
)
from extforge.pipeline.package import ArchiveAssembler
from extforge.pipeline.reporting import (
    PHASE_CHECKING_PREREQUISITES,
    PHASE_PACKAGING,
    PHASE_UPLOADING,
    PHASE_VALIDATING,
    BuildReporter,
    FailureDetail,
    LoggingReporter,
    ProgressEvent,
)
from extforge.pipeline.signing import Signer
from extforge.pipeline.staging import StagingArea
from extforge.pipeline.upload import CancellationToken, UploadManager, UploadOutcome, UploadState
from extforge.pipeline.validation import ValidationGate
from extforge.pipeline.versioning import Version, fetch_remote_versions, list_remote_versions, negotiate
from extforge.utils.exceptions import (
    BuildCancelledError,
    ExtforgeError,
    PackagingError,
    PrerequisiteError,
)

logger = get_logger(__name__)


class BuildMode(str, enum.Enum):
    """Workflow of a build.

    MANUAL packages and validates; uploading is a separate, confirmed step.
    FAST always bumps the version, then uploads and activates.
    """

    MANUAL = 'manual'
    FAST = 'fast'


class BuildStatus(str, enum.Enum):
    VALIDATED = 'validated'
    INVALID = 'invalid'
    ACTIVATED = 'activated'
    UPLOADED = 'uploaded'
    PARTIAL = 'partial'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


UPLOAD_STATUS = {
    UploadState.ACTIVATED: BuildStatus.ACTIVATED,
    UploadState.UPLOADED: BuildStatus.UPLOADED,
    UploadState.PARTIAL: BuildStatus.PARTIAL,
    UploadState.FAILED: BuildStatus.FAILED,
    UploadState.CANCELLED: BuildStatus.CANCELLED,
}


@dataclass
class BuildResult:
    """What a build or publish produced.

    Attributes:
        mode: Workflow that ran, None for a publish
        status: Final status
        name: Extension name, when the manifest could be read
        version: Version built or published
        manifest_rewritten: Whether the manifest file was changed
        dist_path: Archive in the dist directory, if any
        failure: Structured failure detail
        upload: Upload state machine outcome
        published: Result of the follow-up publish after a confirmed manual build
    """

    mode: Optional[BuildMode]
    status: BuildStatus
    name: Optional[str] = None
    version: Optional[str] = None
    manifest_rewritten: bool = False
    dist_path: Optional[Path] = None
    failure: Optional[FailureDetail] = None
    upload: Optional[UploadOutcome] = None
    published: Optional[BuildResult] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (BuildStatus.VALIDATED, BuildStatus.ACTIVATED, BuildStatus.UPLOADED)


class BuildOrchestrator:
    """Runs builds and publishes for one project.

    Attributes:
        context: Project paths, credentials and registry
        reporter: Receives progress events, failures and status changes
    """

    def __init__(
            self,
            context: BuildContext,
            reporter: Optional[BuildReporter] = None,
            standard_backend: Optional[PackagingBackend] = None,
            sdk_backend: Optional[PackagingBackend] = None,
            sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            context: Project paths, credentials and registry
            reporter: Progress and failure sink, logs by default
            standard_backend: Backend for plain extensions
            sdk_backend: Backend for extensions declaring ``python:``
            sleep: Replaces the wait between upload quota retries
        """
        self.context = context
        self.reporter = reporter or LoggingReporter()
        self.standard_backend = standard_backend or StandardBackend()
        self.sdk_backend = sdk_backend or SdkBackend(
            command=context.sdk_command,
            python_path=context.sdk_python_path,
            extra_platform=context.sdk_extra_platform,
        )
        self._sleep = sleep
        self.staging = StagingArea(context.staging_dir)

    def build(
            self,
            mode: BuildMode = BuildMode.MANUAL,
            force_increment: bool = False,
            cancel: Optional[CancellationToken] = None,
            confirm_upload: Optional[Callable[[BuildResult], bool]] = None,
            blocking: bool = True,
    ) -> BuildResult:
        """Build the project.

        Args:
            mode: MANUAL (validate) or FAST (upload and activate)
            force_increment: Bump the version even without a remote conflict
            cancel: Cancels the build, including waits for the registry quota
            confirm_upload: Asked after a successful manual build whether to
                publish the result; a true answer runs :meth:`publish`
            blocking: Wait for a concurrent build of the same project

        Returns:
            The build result; failures are reported, not raised
        """
        mode = BuildMode(mode)
        cancel = cancel or CancellationToken()
        ctx = self.context
        stage = 'prerequisites'
        name: Optional[str] = None
        version: Optional[Version] = None
        rewritten = False

        try:
            with self.staging.session(blocking=blocking) as staging_dir:
                self._emit(PHASE_CHECKING_PREREQUISITES)
                manifest = load_manifest(ctx.manifest_path)
                name, version = manifest.name, manifest.version
                signer = Signer.from_files(ctx.key_path, ctx.certificate_path, ctx.key_password)
                if mode is BuildMode.FAST and ctx.registry is None:
                    raise PrerequisiteError('Fast builds need a registry connection')
                self._ensure_dist_dir()

                stage = 'negotiation'
                force = force_increment or mode is BuildMode.FAST
                remote_versions = None if force else fetch_remote_versions(ctx.registry, manifest.name)
                negotiation = negotiate(manifest.version, force, remote_versions)
                if negotiation.manifest_rewritten:
                    manifest = write_manifest_version(ctx.manifest_path, negotiation.version)
                    rewritten = True
                    self.reporter.info(f"Version changed to {negotiation.version} ({negotiation.reason})")
                version = negotiation.version
                cancel.raise_if_cancelled()

                stage = 'packaging'
                self._emit(PHASE_PACKAGING, f"{manifest.name} {version}")
                backend = select_backend(manifest, self.standard_backend, self.sdk_backend)
                logger.info("Packaging", name=manifest.name, version=str(version), backend=backend.name)
                artifact = backend.build(manifest, version, ctx.extension_dir, staging_dir, signer)
                cancel.raise_if_cancelled()

                if mode is BuildMode.MANUAL:
                    stage = 'validation'
                    self._emit(PHASE_VALIDATING)
                    gate = ValidationGate(ctx.registry, ctx.dist_dir, self.reporter)
                    validation = gate.check(artifact)
                    result = BuildResult(
                        mode=mode,
                        status=BuildStatus.VALIDATED if validation.valid else BuildStatus.INVALID,
                        name=name,
                        version=str(version),
                        manifest_rewritten=rewritten,
                        dist_path=validation.dist_path,
                        failure=validation.failure,
                    )
                else:
                    stage = 'upload'
                    self._emit(PHASE_UPLOADING)
                    outcome = self._upload_manager().upload(artifact, cancel)
                    result = BuildResult(
                        mode=mode,
                        status=UPLOAD_STATUS[outcome.state],
                        name=name,
                        version=str(version),
                        manifest_rewritten=rewritten,
                        dist_path=outcome.dist_path,
                        failure=outcome.failure,
                        upload=outcome,
                    )
        except BuildCancelledError:
            logger.warning("Build cancelled", stage=stage, name=name)
            self.reporter.info("Build cancelled")
            return self._result(mode, BuildStatus.CANCELLED, name, version, rewritten)
        except ExtforgeError as e:
            failure = FailureDetail.from_error(stage, e, name=name, version=version)
            logger.error("Build aborted", stage=stage, name=name, version=str(version), error=e.message)
            self.reporter.failure(failure)
            self.reporter.status(str(version) if version else None, passing=False)
            return self._result(mode, BuildStatus.FAILED, name, version, rewritten, failure)

        if (
                result.status is BuildStatus.VALIDATED
                and result.dist_path is not None
                and confirm_upload is not None
                and ctx.registry is not None
                and confirm_upload(result)
        ):
            result.published = self.publish(result.dist_path, cancel=cancel)
        return result

    def publish(
            self,
            archive_path: Union[str, Path],
            activate: bool = True,
            name: Optional[str] = None,
            version: Optional[str] = None,
            cancel: Optional[CancellationToken] = None,
    ) -> BuildResult:
        """Upload an archive that was built earlier.

        Name and version are read from the manifest inside the archive
        unless given.

        Returns:
            The publish result; failures are reported, not raised
        """
        archive_path = Path(archive_path)
        try:
            if self.context.registry is None:
                raise PrerequisiteError('Publishing needs a registry connection')
            if not archive_path.is_file():
                raise PrerequisiteError(f"Archive not found: {archive_path}", path=str(archive_path))
            data = archive_path.read_bytes()
            if name is None or version is None:
                manifest = manifest_from_archive(data)
                name = name or manifest.name
                version = version or str(manifest.version)
        except (ExtforgeError, OSError) as e:
            error = e if isinstance(e, ExtforgeError) else PackagingError(str(e), path=str(archive_path))
            failure = FailureDetail.from_error('publish', error, name=name, version=version)
            self.reporter.failure(failure)
            self.reporter.status(version, passing=False)
            return BuildResult(mode=None, status=BuildStatus.FAILED, name=name, version=version, failure=failure)

        self._emit(PHASE_UPLOADING, f"{name} {version}")
        outcome = self._upload_manager().submit(data, name, str(version), activate=activate, cancel=cancel)
        return BuildResult(
            mode=None,
            status=UPLOAD_STATUS[outcome.state],
            name=name,
            version=str(version),
            dist_path=archive_path,
            failure=outcome.failure,
            upload=outcome,
        )

    def remote_versions(self) -> List[str]:
        """Versions of this project's extension in the registry.

        Raises:
            PrerequisiteError: Without a registry or manifest
            NegotiationError: If the registry cannot list versions
        """
        if self.context.registry is None:
            raise PrerequisiteError('Listing versions needs a registry connection')
        manifest = load_manifest(self.context.manifest_path)
        return list_remote_versions(self.context.registry, manifest.name)

    def _upload_manager(self) -> UploadManager:
        if self.context.registry is None:
            raise PrerequisiteError('Uploading needs a registry connection')
        return UploadManager(
            self.context.registry,
            self.context.dist_dir,
            reporter=self.reporter,
            version_ceiling=self.context.version_ceiling,
            retry_delay=self.context.retry_delay,
            max_attempts=self.context.max_attempts,
            sleep=self._sleep,
        )

    def _ensure_dist_dir(self) -> None:
        try:
            self.context.dist_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PrerequisiteError(
                f"Cannot create dist directory {self.context.dist_dir}: {e}",
                path=str(self.context.dist_dir),
            ) from e

    def _emit(self, phase: str, message: Optional[str] = None) -> None:
        self.reporter.progress(ProgressEvent(phase, message))

    @staticmethod
    def _result(
            mode: BuildMode,
            status: BuildStatus,
            name: Optional[str],
            version: Optional[Version],
            rewritten: bool,
            failure: Optional[FailureDetail] = None,
    ) -> BuildResult:
        return BuildResult(
            mode=mode,
            status=status,
            name=name,
            version=str(version) if version is not None else None,
            manifest_rewritten=rewritten,
            failure=failure,
        )


def manifest_from_archive(data: bytes) -> ExtensionManifest:
    """Read the manifest stored in an outer archive's inner archive.

    Raises:
        PackagingError: If the archive has no manifest
        ManifestParseError: If the manifest is invalid
    """
    inner, _ = ArchiveAssembler.split_outer(data)
    try:
        with zipfile.ZipFile(io.BytesIO(inner), 'r') as zf:
            text = zf.read(MANIFEST_FILENAME).decode('utf-8')
    except (KeyError, zipfile.BadZipFile, UnicodeDecodeError) as e:
        raise PackagingError(f"Archive has no readable {MANIFEST_FILENAME}: {e}") from e
    return read_manifest(text)
