"""Error types raised by the refinery core."""


class RefineryError(Exception):
    """Base error for the refinery core."""


class ConfigError(RefineryError):
    """Raised when configuration loading or validation fails."""


class ValidationError(RefineryError):
    """Raised when a prompt or schema is rejected before any request is sent."""


class TransportError(RefineryError):
    """Raised when the generation backend fails."""


class GenerationCancelled(RefineryError):
    """Raised by a generator that stopped because its run was cancelled."""


class NotFoundError(RefineryError):
    """Raised when a session or preset id no longer resolves."""


class StorageIncompatibleVersionError(RefineryError):
    """Raised when persisted data was written by a newer storage version."""

    def __init__(self, found: int, expected: int) -> None:
        super().__init__(
            f"Stored data has version {found}, this build supports up to {expected}"
        )
        self.found = found
        self.expected = expected


class MigrationError(RefineryError):
    """Raised when a storage migration step fails."""


class StageAlreadyRunningError(RefineryError):
    """Raised when a stage is started while another one is still running."""


class InvalidTransitionError(RefineryError):
    """Raised on an illegal stage status transition."""
