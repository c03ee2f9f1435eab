"""Error taxonomy shared by the HTTP surface and the relay, plus the FastAPI handlers for it."""
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger("CollabBackend.errors")


class AppError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(AppError):
    # 401 when no credentials were supplied, 403 when they were supplied but rejected
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class AccessDeniedError(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class InternalError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def envelope(message: str, status_code: int, headers=None):
    return JSONResponse(status_code=status_code, content={"success": False, "message": message}, headers=headers)


def register_error_handlers(app: FastAPI):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
        return envelope(exc.message, exc.status_code, headers)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code == status.HTTP_404_NOT_FOUND and message == "Not Found":
            message = "Endpoint not found"
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {message}")
        return envelope(message, exc.status_code, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            problems.append(f"{location}: {err.get('msg')}" if location else err.get("msg", "invalid"))
        message = "; ".join(problems) or "Invalid request"
        logger.warning(f"{request.method} {request.url.path} -> 400: {message}")
        return envelope(message, status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return envelope("Internal server error", status.HTTP_500_INTERNAL_SERVER_ERROR)
