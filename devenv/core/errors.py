from __future__ import annotations


class DevenvError(RuntimeError):
    status_code = 500
    default_code = "devenv_error"

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(DevenvError):
    status_code = 404
    default_code = "not_found"


class ContainerNotFoundError(NotFoundError):
    default_code = "container_not_found"


class RouteNotFoundError(NotFoundError):
    default_code = "route_not_found"


class ConflictError(DevenvError):
    status_code = 400
    default_code = "conflict"


class ValidationError(DevenvError):
    status_code = 400
    default_code = "validation_error"


class ExternalServiceError(DevenvError):
    """Non-2xx answer (or transport failure) from Docker or the proxy admin API.

    ``upstream_status`` keeps the status reported by the upstream service, which
    is not necessarily the status the HTTP boundary answers with.
    """

    status_code = 500
    default_code = "external_service_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        upstream_status: int | None = None,
    ):
        super().__init__(message, code=code)
        self.upstream_status = upstream_status
