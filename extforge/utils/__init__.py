"""Utility functions and classes for extforge."""

from extforge.utils.exceptions import (
    ActivationError,
    BackendError,
    BuildCancelledError,
    ConfigurationError,
    ExtforgeError,
    ManifestParseError,
    NegotiationError,
    PackagingError,
    PrerequisiteError,
    QuotaTransientError,
    RegistryError,
    SigningError,
    StagingBusyError,
    UploadError,
    ValidationRejection,
    VerificationError,
)
