from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import List, Optional
import traceback
from .logger import logger


class ReelPipeBaseException(Exception):
    """Base exception for the video job engine"""
    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)


class JobNotFoundError(ReelPipeBaseException):
    """Raised when job is not found"""
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", "JOB_NOT_FOUND", 404)


class InvalidJobStateError(ReelPipeBaseException):
    """Raised when job is in invalid state for operation"""
    def __init__(self, job_id: str, current_state: str, expected_state: str):
        self.job_id = job_id
        self.current_state = current_state
        super().__init__(
            f"Job {job_id} is in state '{current_state}', expected '{expected_state}'",
            "INVALID_JOB_STATE",
            400,
        )


class RequestValidationError(ReelPipeBaseException):
    """Raised when a submission payload is unusable"""
    def __init__(self, message: str):
        super().__init__(message, "VALIDATION_ERROR", 400)


class RateLimitExceededError(ReelPipeBaseException):
    """Raised when a requester exceeds the submission window"""
    def __init__(self, requester: str, limit: int, window_seconds: int):
        super().__init__(
            f"Rate limit exceeded for {requester}: {limit} requests per {window_seconds}s",
            "RATE_LIMIT_EXCEEDED",
            429,
        )


class StorageError(ReelPipeBaseException):
    """Raised when blob storage operations fail"""
    def __init__(self, message: str = "Storage operation failed"):
        super().__init__(message, "STORAGE_ERROR", 502)


class TextGenerationError(ReelPipeBaseException):
    """Raised when the text generation capability fails"""
    def __init__(self, message: str = "Text generation failed"):
        super().__init__(message, "TEXT_GENERATION_ERROR", 502)


class SpeechSynthesisError(ReelPipeBaseException):
    """Raised when every speech synthesis key fails"""
    def __init__(self, message: str = "Speech synthesis failed"):
        super().__init__(message, "SPEECH_SYNTHESIS_ERROR", 502)


class ImageGenerationFailed(ReelPipeBaseException):
    """Raised when the image retry ladder is exhausted"""
    def __init__(self, prompt: str, errors: Optional[List[str]] = None):
        self.prompt = prompt
        self.errors = errors or []
        detail = "; ".join(self.errors[-3:]) if self.errors else "no attempts made"
        super().__init__(
            f"Image generation failed after {len(self.errors)} attempts: {detail}",
            "IMAGE_GENERATION_FAILED",
            502,
        )


async def reelpipe_exception_handler(request: Request, exc: ReelPipeBaseException):
    """Handle custom application exceptions"""
    logger.error(
        f"Application exception: {exc.code} - {exc.message}",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "request_path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "status_code": exc.status_code,
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    logger.warning(
        f"HTTP {exc.status_code}: {exc.detail}",
        extra={
            "http_status_code": exc.status_code,
            "http_detail": exc.detail,
            "request_path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": exc.detail,
            "status_code": exc.status_code,
        }
    )


async def generic_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__} - {str(exc)}",
        extra={
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
            "request_path": request.url.path,
            "exc_traceback": traceback.format_exc(),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_SERVER_ERROR",
            "message": "An internal error occurred. Please try again later.",
        }
    )
