"""Dry-run validation of built archives against the registry."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from extforge.core.logging_manager import get_logger
from extforge.pipeline.package import BuildArtifact
from extforge.pipeline.registry import RegistryClient
from extforge.pipeline.reporting import BuildReporter, FailureDetail
from extforge.pipeline.staging import StagingArea
from extforge.utils.exceptions import PackagingError, PrerequisiteError, RegistryError, ValidationRejection

logger = get_logger(__name__)


@dataclass
class ValidationResult:
    """Outcome of a validation.

    Attributes:
        valid: Whether the archive was accepted
        dist_path: Copy of the archive in the dist directory, when valid
        checked_remotely: False when no registry was configured
        failure: Rejection detail, when invalid
    """

    valid: bool
    dist_path: Optional[Path] = None
    checked_remotely: bool = True
    failure: Optional[FailureDetail] = None

    def __bool__(self) -> bool:
        return self.valid


class ValidationGate:
    """Checks an archive with a registry dry-run before it reaches dist.

    Without a registry client every archive is valid.
    """

    def __init__(
            self,
            client: Optional[RegistryClient],
            dist_dir: Union[str, Path],
            reporter: Optional[BuildReporter] = None,
    ) -> None:
        self.client = client
        self.dist_dir = Path(dist_dir)
        self.reporter = reporter or BuildReporter()

    def validate(self, artifact: BuildArtifact) -> bool:
        """Validate a staged artifact; see :meth:`check` for the details."""
        return self.check(artifact).valid

    def check(self, artifact: BuildArtifact) -> ValidationResult:
        """Validate a staged artifact.

        Valid archives are copied to the dist directory. The staged archive
        is removed whatever the outcome.

        Raises:
            PackagingError: If the staged archive cannot be read or copied
        """
        version = str(artifact.version)
        try:
            if self.client is None:
                result = ValidationResult(valid=True, checked_remotely=False)
            else:
                result = self._dry_run(artifact, version)

            if result.valid:
                result.dist_path = self._copy_to_dist(artifact)
                self.reporter.status(version, passing=True)
            return result
        finally:
            StagingArea.remove(artifact.outer_path)

    def _dry_run(self, artifact: BuildArtifact, version: str) -> ValidationResult:
        if self.client is None:
            raise PrerequisiteError('Validation needs a registry connection')
        try:
            self.client.upload(artifact.outer_bytes, dry_run=True)
        except RegistryError as e:
            rejection = ValidationRejection(
                f"Registry rejected {artifact.name} {version}: {e.message}",
                status_code=e.status_code,
                data=e.data,
            )
            failure = FailureDetail.from_error('validation', rejection, name=artifact.name, version=version)
            logger.warning(
                "Validation rejected",
                name=artifact.name,
                version=version,
                error=e.message,
            )
            self.reporter.failure(failure)
            self.reporter.status(version, passing=False)
            return ValidationResult(valid=False, failure=failure)

        logger.info("Validation passed", name=artifact.name, version=version)
        return ValidationResult(valid=True)

    def _copy_to_dist(self, artifact: BuildArtifact) -> Path:
        target = self.dist_dir / artifact.file_name
        try:
            self.dist_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(artifact.outer_path, target)
        except OSError as e:
            raise PackagingError(f"Could not copy archive to {target}: {e}", path=str(target)) from e
        logger.info("Archive copied to dist", path=str(target))
        return target
