"""
Error taxonomy shared by the services and the HTTP layer.

Services raise these; `install_error_handlers()` turns them into
`{"detail": ...}` JSON responses with the status code carried by the class.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse

logger = logging.getLogger(__name__)


class GalaError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(GalaError):
    status_code = 400


class ProductNotFound(ValidationError):
    """Cart references a product that does not exist or is inactive."""


class InsufficientInventory(ValidationError):
    pass


class AuthorizationError(GalaError):
    status_code = 401


class ForbiddenError(AuthorizationError):
    status_code = 403


class NotFoundError(GalaError):
    status_code = 404


class ConflictError(GalaError):
    status_code = 409


class AlreadyFulfilledError(ConflictError):
    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} is already paid")
        self.order_id = order_id


class UpstreamError(GalaError):
    status_code = 502


def _first_error(exc: RequestValidationError) -> str:
    errs = exc.errors()
    if not errs:
        return "invalid request"
    e = errs[0]
    where = ".".join(str(p) for p in e.get("loc", ()) if p != "body")
    return f"{where}: {e.get('msg', 'invalid')}" if where else e.get("msg")


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GalaError)
    async def _gala_error(request: Request, exc: GalaError):
        if exc.status_code >= 500:
            logger.error("%s %s: %s", request.method, request.url.path,
                         exc.detail)
        return ORJSONResponse(
            status_code=exc.status_code, content={"detail": exc.detail}
        )

    @app.exception_handler(RequestValidationError)
    async def _bad_body(request: Request, exc: RequestValidationError):
        return ORJSONResponse(
            status_code=400, content={"detail": _first_error(exc)}
        )
