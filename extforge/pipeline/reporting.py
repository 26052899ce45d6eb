"""Progress events and failure reporting for builds."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from extforge.core.logging_manager import get_logger
from extforge.utils.exceptions import ExtforgeError, RegistryError

PHASE_CHECKING_PREREQUISITES = 'checking_prerequisites'
PHASE_PACKAGING = 'packaging'
PHASE_VALIDATING = 'validating'
PHASE_UPLOADING = 'uploading'


@dataclass(frozen=True)
class ProgressEvent:
    """A coarse build phase boundary.

    Attributes:
        phase: Phase name, e.g. ``packaging``
        message: Optional human-readable detail
    """

    phase: str
    message: Optional[str] = None


@dataclass
class FailureDetail:
    """Structured description of a failed stage.

    Attributes:
        stage: Pipeline stage that failed
        name: Extension name, when known
        version: Version being built, when known
        message: Underlying error message
        error_type: Exception class name
        data: Registry payload or other error details
    """

    stage: str
    name: Optional[str]
    version: Optional[str]
    message: str
    error_type: str = 'ExtforgeError'
    data: Any = None

    @classmethod
    def from_error(
            cls,
            stage: str,
            error: Exception,
            name: Optional[str] = None,
            version: Optional[Any] = None,
    ) -> FailureDetail:
        if isinstance(error, RegistryError):
            data: Any = error.data if error.data is not None else error.details or None
        elif isinstance(error, ExtforgeError):
            data = error.details or None
        else:
            data = None
        return cls(
            stage=stage,
            name=name,
            version=str(version) if version is not None else None,
            message=getattr(error, 'message', str(error)),
            error_type=type(error).__name__,
            data=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)


class BuildReporter:
    """Receives build progress, messages, failures and status changes.

    The base class ignores everything; subclasses decide how to render.
    """

    def progress(self, event: ProgressEvent) -> None:
        pass

    def info(self, message: str) -> None:
        pass

    def failure(self, detail: FailureDetail) -> None:
        pass

    def status(self, version: Optional[str], passing: bool) -> None:
        """Set or clear the failure indicator for ``version``."""
        pass


class LoggingReporter(BuildReporter):
    """Reporter that writes everything to the structured log."""

    def __init__(self, logger_name: str = 'extforge.build') -> None:
        self._logger = get_logger(logger_name)

    def progress(self, event: ProgressEvent) -> None:
        self._logger.info("Build phase", phase=event.phase, detail=event.message)

    def info(self, message: str) -> None:
        self._logger.info(message)

    def failure(self, detail: FailureDetail) -> None:
        self._logger.error(
            "Build failed",
            stage=detail.stage,
            name=detail.name,
            version=detail.version,
            error=detail.message,
            error_type=detail.error_type,
            data=detail.data,
        )

    def status(self, version: Optional[str], passing: bool) -> None:
        self._logger.info("Build status", version=version, passing=passing)


class RecordingReporter(BuildReporter):
    """Keeps every report in memory, optionally forwarding to another reporter.

    Attributes:
        events: Progress events in emission order
        messages: Informational messages
        failures: Reported failures
        statuses: ``(version, passing)`` pairs
    """

    def __init__(self, forward: Optional[BuildReporter] = None) -> None:
        self.events: List[ProgressEvent] = []
        self.messages: List[str] = []
        self.failures: List[FailureDetail] = []
        self.statuses: List[tuple] = []
        self._forward = forward

    @property
    def phases(self) -> List[str]:
        return [event.phase for event in self.events]

    @property
    def passing(self) -> Optional[bool]:
        """Latest status, or None when no status was reported."""
        return self.statuses[-1][1] if self.statuses else None

    def progress(self, event: ProgressEvent) -> None:
        self.events.append(event)
        if self._forward:
            self._forward.progress(event)

    def info(self, message: str) -> None:
        self.messages.append(message)
        if self._forward:
            self._forward.info(message)

    def failure(self, detail: FailureDetail) -> None:
        self.failures.append(detail)
        if self._forward:
            self._forward.failure(detail)

    def status(self, version: Optional[str], passing: bool) -> None:
        self.statuses.append((version, passing))
        if self._forward:
            self._forward.status(version, passing)
