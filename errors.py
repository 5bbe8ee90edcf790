"""
Error taxonomy for the Vehicle Catalog API.

Every error carries the HTTP status it maps to and a message that is safe to
return to clients. Internal details are logged server-side, never returned.
"""
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class CatalogError(Exception):
    status_code = 500
    message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def body(self) -> Dict[str, Any]:
        return {"message": self.message}


class AuthDenied(CatalogError):
    status_code = 401
    message = "Unauthorized"


class ValidationFailed(CatalogError):
    status_code = 400
    message = "Invalid request"

    def __init__(self, issues: List[Dict[str, str]], message: Optional[str] = None):
        super().__init__(message)
        self.issues = issues

    def body(self) -> Dict[str, Any]:
        return {"message": self.message, "issues": self.issues}


class RateLimited(CatalogError):
    status_code = 429
    message = "Too many requests"


class BackendUnavailable(CatalogError):
    status_code = 500
    message = "Backend unavailable"


class ConfigurationMissing(CatalogError):
    status_code = 500
    message = "Missing credentials"


def issues_from_pydantic(errors) -> List[Dict[str, str]]:
    out = []
    for err in errors:
        # first element is the location kind (body/query) for request errors
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query")]
        out.append({"field": ".".join(loc) or "__root__", "message": err.get("msg", "invalid")})
    return out


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CatalogError)
    async def catalog_error_handler(request: Request, exc: CatalogError):
        return JSONResponse(status_code=exc.status_code, content=exc.body())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        issues = issues_from_pydantic(exc.errors())
        return JSONResponse(status_code=400, content={"message": "Invalid request", "issues": issues})
