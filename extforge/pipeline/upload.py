"""Quota-aware upload and activation of extension archives.

The registry keeps a limited number of versions per extension. Before
uploading, a full version list triggers eviction of one version; while
the registry still reports the limit as exceeded the upload is retried
with a fixed delay. A successful upload is then activated.
"""

from __future__ import annotations

import enum
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from extforge.core.logging_manager import get_logger
from extforge.pipeline.package import BuildArtifact
from extforge.pipeline.registry import RegistryClient, RemoteVersion
from extforge.pipeline.reporting import BuildReporter, FailureDetail
from extforge.pipeline.staging import StagingArea
from extforge.utils.exceptions import (
    ActivationError,
    BuildCancelledError,
    ExtforgeError,
    QuotaTransientError,
    RegistryError,
    UploadError,
)

logger = get_logger(__name__)

QUOTA_LIMIT_MESSAGE = 'Extension versions quantity limit'
DEFAULT_VERSION_CEILING = 10
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_MAX_ATTEMPTS = 120


class UploadState(str, enum.Enum):
    START = 'start'
    QUOTA_CHECK = 'quota_check'
    EVICT_IF_FULL = 'evict_if_full'
    UPLOAD_ATTEMPT = 'upload_attempt'
    ACTIVATING = 'activating'
    ACTIVATED = 'activated'
    UPLOADED = 'uploaded'
    PARTIAL = 'partial'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    UploadState.ACTIVATED,
    UploadState.UPLOADED,
    UploadState.PARTIAL,
    UploadState.FAILED,
    UploadState.CANCELLED,
})


class EvictionOutcome(str, enum.Enum):
    """Which version, if any, eviction removed."""

    OLDEST = 'oldest'
    NEWEST = 'newest'
    NONE = 'none'


class CancellationToken:
    """Signals that the surrounding build was cancelled."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise BuildCancelledError("Build was cancelled")


@dataclass
class UploadOutcome:
    """Result of one upload run.

    Attributes:
        name: Extension name
        version: Uploaded version
        state: Terminal state
        history: Every state visited, in order
        eviction: Eviction result when the quota was full
        attempts: Number of upload attempts made
        dist_path: Copy of the archive in the dist directory
        failure: Failure detail for FAILED and PARTIAL outcomes
    """

    name: str
    version: str
    state: UploadState = UploadState.START
    history: List[UploadState] = field(default_factory=lambda: [UploadState.START])
    eviction: Optional[EvictionOutcome] = None
    attempts: int = 0
    dist_path: Optional[Path] = None
    failure: Optional[FailureDetail] = None
    response: Dict[str, Any] = field(default_factory=dict)

    def advance(self, state: UploadState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def succeeded(self) -> bool:
        return self.state in (UploadState.ACTIVATED, UploadState.UPLOADED)


def evict_one(client: RegistryClient, name: str, versions: List[RemoteVersion]) -> EvictionOutcome:
    """Free one slot in the registry.

    Deletes the oldest version (first in registry order); if that fails the
    newest (last) is deleted instead. If both fail nothing is removed and
    the caller uploads anyway.
    """
    if not versions:
        return EvictionOutcome.NONE

    oldest = versions[0].version
    try:
        client.delete_version(name, oldest)
        logger.info("Evicted oldest version", name=name, version=oldest)
        return EvictionOutcome.OLDEST
    except RegistryError as e:
        logger.warning("Could not evict oldest version", name=name, version=oldest, error=e.message)

    newest = versions[-1].version
    if len(versions) > 1:
        try:
            client.delete_version(name, newest)
            logger.info("Evicted newest version", name=name, version=newest)
            return EvictionOutcome.NEWEST
        except RegistryError as e:
            logger.warning("Could not evict newest version", name=name, version=newest, error=e.message)

    logger.warning("No version evicted, uploading anyway", name=name)
    return EvictionOutcome.NONE


class UploadManager:
    """Uploads archives to the registry and activates them.

    Attributes:
        client: Registry client
        dist_dir: Where uploaded archives are copied
        version_ceiling: Version count that triggers eviction
        retry_delay: Seconds between quota retries
        max_attempts: Upload attempts before a quota error becomes fatal
    """

    def __init__(
            self,
            client: RegistryClient,
            dist_dir: Union[str, Path],
            reporter: Optional[BuildReporter] = None,
            version_ceiling: int = DEFAULT_VERSION_CEILING,
            retry_delay: float = DEFAULT_RETRY_DELAY,
            max_attempts: int = DEFAULT_MAX_ATTEMPTS,
            sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        """Initialize the upload manager.

        Args:
            client: Registry client
            dist_dir: Where uploaded archives are copied
            reporter: Receives status changes and failures
            version_ceiling: Version count that triggers eviction
            retry_delay: Seconds between quota retries
            max_attempts: Upload attempts before a quota error becomes fatal
            sleep: Replaces the cancellable wait between retries
        """
        self.client = client
        self.dist_dir = Path(dist_dir)
        self.reporter = reporter or BuildReporter()
        self.version_ceiling = version_ceiling
        self.retry_delay = retry_delay
        self.max_attempts = max_attempts
        self._sleep = sleep

    def upload(self, artifact: BuildArtifact, cancel: Optional[CancellationToken] = None) -> UploadOutcome:
        """Upload and activate a staged artifact.

        ACTIVATED and PARTIAL outcomes copy the archive into the dist
        directory. The staged archive is removed in every case.
        """
        version = str(artifact.version)
        try:
            try:
                data = artifact.outer_bytes
            except ExtforgeError as e:
                outcome = UploadOutcome(name=artifact.name, version=version)
                self._fail(outcome, UploadState.START.value, e)
                return outcome

            outcome = self._run(data, artifact.name, version, cancel, activate=True)
            if outcome.state in (UploadState.ACTIVATED, UploadState.PARTIAL):
                outcome.dist_path = self._copy_to_dist(artifact.outer_path, artifact.file_name)
            return outcome
        finally:
            StagingArea.remove(artifact.outer_path)

    def submit(
            self,
            data: bytes,
            name: str,
            version: str,
            activate: bool = True,
            cancel: Optional[CancellationToken] = None,
    ) -> UploadOutcome:
        """Run the upload state machine on raw archive bytes.

        Nothing is staged or copied; used to publish an archive that is
        already in the dist directory.
        """
        return self._run(data, name, str(version), cancel, activate=activate)

    def _run(
            self,
            data: bytes,
            name: str,
            version: str,
            cancel: Optional[CancellationToken],
            activate: bool,
    ) -> UploadOutcome:
        cancel = cancel or CancellationToken()
        outcome = UploadOutcome(name=name, version=version)
        log = logger.bind(name=name, version=version)

        try:
            cancel.raise_if_cancelled()

            outcome.advance(UploadState.QUOTA_CHECK)
            try:
                versions = self.client.list_versions(name)
            except RegistryError as e:
                self._fail(outcome, UploadState.QUOTA_CHECK.value, e)
                return outcome

            if len(versions) >= self.version_ceiling:
                outcome.advance(UploadState.EVICT_IF_FULL)
                log.info("Version quota reached", count=len(versions), ceiling=self.version_ceiling)
                outcome.eviction = evict_one(self.client, name, versions)

            outcome.advance(UploadState.UPLOAD_ATTEMPT)
            try:
                outcome.response = self._upload_with_retry(data, outcome, cancel)
            except (QuotaTransientError, UploadError) as e:
                self._fail(outcome, UploadState.UPLOAD_ATTEMPT.value, e)
                return outcome
        except BuildCancelledError:
            log.warning("Upload cancelled", attempts=outcome.attempts)
            outcome.advance(UploadState.CANCELLED)
            self.reporter.info(f"Upload of {name} {version} cancelled")
            return outcome

        log.info("Upload accepted", attempts=outcome.attempts)
        if not activate:
            outcome.advance(UploadState.UPLOADED)
            self.reporter.status(version, passing=True)
            return outcome

        outcome.advance(UploadState.ACTIVATING)
        try:
            self._activate(name, version)
        except ActivationError as e:
            outcome.failure = FailureDetail.from_error('activation', e, name=name, version=version)
            outcome.advance(UploadState.PARTIAL)
            log.error("Activation failed after upload", error=e.message)
            self.reporter.failure(outcome.failure)
            self.reporter.status(version, passing=False)
            return outcome

        outcome.advance(UploadState.ACTIVATED)
        log.info("Version activated")
        self.reporter.info(f"{name} {version} uploaded and activated")
        self.reporter.status(version, passing=True)
        return outcome

    def _upload_with_retry(
            self,
            data: bytes,
            outcome: UploadOutcome,
            cancel: CancellationToken,
    ) -> Dict[str, Any]:
        """Upload, retrying with a fixed delay while the quota is exceeded.

        Raises:
            QuotaTransientError: If the quota is still exceeded after ``max_attempts``
            UploadError: For any other registry error
            BuildCancelledError: If cancelled while waiting
        """
        def sleep(seconds: float) -> None:
            if self._sleep is not None:
                self._sleep(seconds)
                cancel.raise_if_cancelled()
            elif cancel.wait(seconds):
                raise BuildCancelledError("Build was cancelled while waiting for the registry quota")

        def before_sleep(retry_state: Any) -> None:
            logger.info(
                "Version quota still exceeded, retrying",
                name=outcome.name,
                version=outcome.version,
                attempt=retry_state.attempt_number,
                delay=self.retry_delay,
            )

        retrying = Retrying(
            retry=retry_if_exception_type(QuotaTransientError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay),
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                cancel.raise_if_cancelled()
                outcome.attempts += 1
                return self._attempt_upload(data)
        raise UploadError("Upload was not attempted")

    def _attempt_upload(self, data: bytes) -> Dict[str, Any]:
        try:
            return self.client.upload(data, dry_run=False)
        except RegistryError as e:
            if e.message.startswith(QUOTA_LIMIT_MESSAGE):
                raise QuotaTransientError(e.message, status_code=e.status_code, data=e.data) from e
            raise UploadError(e.message, status_code=e.status_code, data=e.data) from e

    def _activate(self, name: str, version: str) -> None:
        try:
            self.client.activate(name, version)
        except RegistryError as e:
            raise ActivationError(
                f"Uploaded but could not activate {name} {version}: {e.message}",
                status_code=e.status_code,
                data=e.data,
            ) from e

    def _fail(self, outcome: UploadOutcome, stage: str, error: ExtforgeError) -> None:
        outcome.failure = FailureDetail.from_error(stage, error, name=outcome.name, version=outcome.version)
        outcome.advance(UploadState.FAILED)
        logger.error(
            "Upload failed",
            name=outcome.name,
            version=outcome.version,
            stage=stage,
            error=error.message,
        )
        self.reporter.failure(outcome.failure)
        self.reporter.status(outcome.version, passing=False)

    def _copy_to_dist(self, source: Path, file_name: str) -> Optional[Path]:
        target = self.dist_dir / file_name
        try:
            self.dist_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
        except OSError as e:
            logger.error("Could not copy archive to dist", path=str(target), error=str(e))
            return None
        return target

