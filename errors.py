"""
Error taxonomy shared by every component.

Each error carries the HTTP status it maps to and a stable machine-readable
code. Clients map ``error`` codes to UI copy; ``message`` is for humans.
"""
from typing import Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class ApiError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None):
        self.code = code or self.code
        self.message = message or self.code.replace("_", " ")
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(ApiError):
    status_code = 400
    code = "validation"


class AuthError(ApiError):
    status_code = 401
    code = "unauthorized"


class ForbiddenError(ApiError):
    status_code = 403
    code = "forbidden"


class NotFoundError(ApiError):
    status_code = 404
    code = "not_found"


class ConflictError(ApiError):
    status_code = 409
    code = "conflict"


class UpstreamError(ApiError):
    status_code = 502
    code = "upstream_failure"


class ConfigurationError(ApiError):
    status_code = 500
    code = "configuration"

    def __init__(self, message: Optional[str] = None):
        super().__init__("configuration", message or "Server configuration is incomplete")


class CardDeclinedError(ValidationError):
    code = "card_declined"

    def __init__(self, message: Optional[str] = None, decline_code: Optional[str] = None):
        super().__init__("card_declined", message or "Your card was declined")
        self.decline_code = decline_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["decline_code"] = self.decline_code
        return data


async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    if where:
        message = f"{where}: {message}"
    return JSONResponse(status_code=400, content={"error": "validation", "message": message})
