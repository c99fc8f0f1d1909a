from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from logging_config import get_logger

logger = get_logger(__name__)


class RoomServiceError(Exception):
    """Base error for room operations.

    `message` is safe to show to a client: it goes into the HTTP failure
    envelope and into `error` events on the WebSocket.
    """

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(RoomServiceError):
    status_code = 400
    default_message = "Invalid input"


class InvalidPrediction(InvalidInput):
    default_message = "Invalid prediction data"


class RoomNotFound(RoomServiceError):
    status_code = 404
    default_message = "Room not found"


class AssigneeNotFound(RoomServiceError):
    status_code = 400
    default_message = "Assigned user not found in the room"


class StoreFailure(RoomServiceError):
    status_code = 500


def failure_body(message: str) -> dict:
    return {"success": False, "message": message}


def register_exception_handlers(app: FastAPI) -> None:
    """Translate room errors, payload validation errors and crashes into failure envelopes."""

    @app.exception_handler(RoomServiceError)
    async def _room_error_handler(request: Request, exc: RoomServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=failure_body(exc.message))

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info(f"{request.method} {request.url.path} rejected: invalid payload")
        return JSONResponse(status_code=400, content=failure_body("Invalid request data"))

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content=failure_body(StoreFailure.default_message))
