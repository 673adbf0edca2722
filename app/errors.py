class ServiceError(Exception):
    """Base error for request handling. `status_code` is the HTTP status it maps to."""

    status_code = 500


class ValidationError(ServiceError):
    status_code = 400


class PlanMismatchError(ValidationError):
    pass


class InsufficientCreditsError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class StoreUnavailableError(ServiceError):
    status_code = 503


class StoreError(ServiceError):
    """The primary store failed while reading or writing."""


class UpstreamError(ServiceError):
    """The AI gateway failed or returned nothing usable."""
