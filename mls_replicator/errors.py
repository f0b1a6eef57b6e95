"""
Replicator error types.

Every failure the pipeline raises is a ReplicatorError subclass, so callers
(scheduler jobs, CLI commands) can tell pipeline failures apart from bugs.
"""


class ReplicatorError(Exception):
    """Base class for all replication errors."""


class ConfigurationError(ReplicatorError):
    """Invalid source configuration (bad indexes, unknown adapters...).

    Fatal at startup: an affected source must never be scheduled.
    """


class FetchError(ReplicatorError):
    """A network or HTTP error while talking to the MLS."""

    def __init__(self, url: str, message: str, status_code: int = 0) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(f"{message} ({url})")


class DestinationError(ReplicatorError):
    """A destination adapter call failed."""

    def __init__(self, destination: str, message: str) -> None:
        self.destination = destination
        super().__init__(f"Destination '{destination}': {message}")


class SchemaMappingError(ReplicatorError):
    """An upstream metadata type could not be mapped to a storage type."""

    def __init__(self, resource: str, field: str, edm_type: str | None) -> None:
        self.resource = resource
        self.field = field
        self.edm_type = edm_type
        super().__init__(f"Unknown type {edm_type!r} for {resource}.{field}")


class DiffError(ReplicatorError):
    """The reconcile diff task failed."""
