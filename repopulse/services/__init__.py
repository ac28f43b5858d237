"""Service layer over the DAOs; services are stateless and take a session per call."""

from repopulse.exceptions import RepoPulseError


class ServiceError(RepoPulseError):
    """Base service exception."""


class NotFoundError(ServiceError):
    """Repository not found in the store."""


__all__ = ["NotFoundError", "ServiceError"]
