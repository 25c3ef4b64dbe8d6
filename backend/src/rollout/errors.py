"""Error taxonomy shared by the release engine and its callers."""


class ReleaseError(RuntimeError):
    """Base class for release engine errors."""


class ValidationError(ReleaseError):
    """Raised when a plan, filter or command is malformed."""


class ConflictError(ReleaseError):
    """Raised when an entity is not in the state an operation requires."""


class NotFoundError(ReleaseError):
    """Raised when a release, stage or active release does not exist."""


class ExternalServiceError(ReleaseError):
    """Raised when the deployment controller or telemetry API fails."""


class ConfigurationError(ReleaseError):
    """Raised when the configured backends cannot serve the requested command."""
