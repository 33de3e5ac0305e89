"""Exceptions related to the feature manager."""

__all__ = [
    "FeatureManagerException",
    "InputException",
    "ObjectNotFoundError",
    "StoreException",
    "StatusWriteConflict",
    "DeployError",
    "DeployTimeout",
    "IndexInvariantViolation",
]


class FeatureManagerException(Exception):
    """Generic base exception used for this library."""


class InputException(FeatureManagerException):
    """Raised when resource documents are not formatted as expected."""

    reason = "InvalidConfiguration"


class ObjectNotFoundError(FeatureManagerException):
    """Raised when an object is not found in the store."""


class StoreException(FeatureManagerException):
    """Raised when the resource store rejects an operation."""


class StatusWriteConflict(StoreException):
    """Raised when a resource was modified since it was read."""

    def __init__(self, resource_name: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Resource {resource_name} was modified (resource version {actual}, "
            f"expected {expected})"
        )
        self.resource_name = resource_name
        self.expected = expected
        self.actual = actual


class DeployError(FeatureManagerException):
    """Raised when deploying or undeploying a feature on a target cluster failed."""

    reason = "DeployFailed"


class DeployTimeout(DeployError):
    """Raised when a deploy request did not complete in time."""

    reason = "Timeout"


class IndexInvariantViolation(FeatureManagerException):
    """Raised when the two maps of the reference index disagree."""

    def __init__(self, consumer: str, detail: str) -> None:
        super().__init__(f"Reference index inconsistent for {consumer}: {detail}")
        self.consumer = consumer
