from __future__ import annotations

from typing import Any, Dict, Optional


class ExtforgeError(Exception):
    """Base exception for all extforge errors."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        """
        Initialize exception.

        Args:
            message: Error message
            **kwargs: Additional error information
        """
        self.message = message
        details = kwargs.pop("details", None) or {}
        details.update({k: v for k, v in kwargs.items() if v is not None})
        self.details: Dict[str, Any] = details
        super().__init__(message)

    def __str__(self) -> str:
        """String representation."""
        return f"{self.message}"


class ConfigurationError(ExtforgeError):
    """Exception raised for configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any) -> None:
        """Initialize a ConfigurationError.

        Args:
            message: A descriptive error message.
            config_key: The configuration key that caused the error.
            **kwargs: Additional error information.
        """
        super().__init__(message, config_key=config_key, **kwargs)


class PrerequisiteError(ExtforgeError):
    """A file or tool the build needs is not available."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, path=path, **kwargs)


class BackendError(PrerequisiteError):
    """The external packaging tool could not be run."""

    def __init__(self, message: str, tool: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, tool=tool, **kwargs)


class ManifestParseError(ExtforgeError):
    """The manifest has a missing or malformed name/version."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, field=field, **kwargs)


class PackagingError(ExtforgeError):
    """Exception raised when an archive cannot be assembled."""

    pass


class SigningError(ExtforgeError):
    """Exception raised for unreadable, mismatched or expired key material."""

    pass


class VerificationError(ExtforgeError):
    """Exception raised when a signature envelope does not verify."""

    pass


class StagingBusyError(ExtforgeError):
    """Another build currently owns the staging area."""

    pass


class BuildCancelledError(ExtforgeError):
    """The surrounding build was cancelled."""

    pass


class RegistryError(ExtforgeError):
    """Exception raised for errors returned by the extension registry.

    Attributes:
        status_code: HTTP status code, if the error came from a response
        data: Parsed error payload as returned by the registry
    """

    def __init__(
            self,
            message: str,
            status_code: Optional[int] = None,
            data: Optional[Any] = None,
            **kwargs: Any
    ) -> None:
        """Initialize a RegistryError.

        Args:
            message: A descriptive error message.
            status_code: HTTP status code of the failed call.
            data: Structured error payload.
            **kwargs: Additional error information.
        """
        super().__init__(message, status_code=status_code, **kwargs)
        self.status_code = status_code
        self.data = data


class NegotiationError(RegistryError):
    """The remote version list could not be fetched during negotiation."""

    pass


class ValidationRejection(RegistryError):
    """The registry rejected the archive in a dry-run upload."""

    pass


class QuotaTransientError(RegistryError):
    """The registry still reports the version quantity limit as exceeded."""

    pass


class UploadError(RegistryError):
    """A non-quota upload failure."""

    pass


class ActivationError(RegistryError):
    """Activating an uploaded version failed."""

    pass
