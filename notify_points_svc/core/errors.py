from __future__ import annotations
from fastapi import Request
from fastapi.responses import JSONResponse

class ServiceError(Exception):
    """Error with a stable code that callable endpoints surface as-is."""
    code = "internal"
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

class Unauthenticated(ServiceError):
    code = "unauthenticated"
    status_code = 401

class InvalidArgument(ServiceError):
    code = "invalid-argument"
    status_code = 400

class PermissionDenied(ServiceError):
    code = "permission-denied"
    status_code = 403

class NotFound(ServiceError):
    code = "not-found"
    status_code = 404

async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "detail": exc.detail})
