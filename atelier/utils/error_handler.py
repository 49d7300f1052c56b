"""
Error taxonomy and error handling utilities for the order pipeline
"""

import uuid
import traceback
import logging
from typing import Iterable, Optional
from datetime import datetime, timezone
from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for every error the pipeline reports"""
    error_code = "PIPELINE_ERROR"
    status_code = 500

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


class ValidationError(PipelineError):
    """Malformed input to a public operation; no store I/O was attempted"""
    error_code = "VALIDATION_ERROR"
    status_code = 400


class InvalidTransition(PipelineError):
    """Requested stage move is not a legal successor"""
    error_code = "INVALID_TRANSITION"
    status_code = 409


class NotFoundError(PipelineError):
    """Record vanished, or no row matched the write"""
    error_code = "NOT_FOUND"
    status_code = 404


class ConstraintViolation(PipelineError):
    """Store rejected a value"""
    error_code = "CONSTRAINT_VIOLATION"
    status_code = 422


class SchemaMismatch(PipelineError):
    """A referenced column does not exist in this deployment"""
    error_code = "SCHEMA_MISMATCH"
    status_code = 422

    def __init__(self, message: str, columns: Iterable[str] = (), original_error: Optional[Exception] = None):
        self.columns = tuple(columns)
        super().__init__(message, original_error)


class TransientIO(PipelineError):
    """Network or store unavailability; safe to retry"""
    error_code = "TRANSIENT_IO"
    status_code = 503


def classify_store_error(error: Exception) -> PipelineError:
    """Map an arbitrary store exception onto the taxonomy"""
    if isinstance(error, PipelineError):
        return error
    if isinstance(error, IntegrityError):
        return ConstraintViolation(f"Database constraint rejected the write: {error.orig}", error)
    if isinstance(error, OperationalError):
        message = str(error.orig) if error.orig is not None else str(error)
        if "no such column" in message or "has no column" in message or "does not exist" in message:
            return SchemaMismatch(f"Column missing in this deployment: {message}", original_error=error)
        return TransientIO(f"Database unavailable: {message}", error)
    if isinstance(error, SQLAlchemyError):
        return TransientIO(f"Database operation failed: {error}", error)
    return TransientIO(f"Store operation failed: {error}", error)


class ErrorContext:
    """Request facts attached to every error response and log line"""

    def __init__(self, request: Request):
        self.request = request
        self.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        self.endpoint = request.url.path
        self.method = request.method
        self.order_id = request.path_params.get("order_id")
        self.client_ip = self._client_ip(request)
        self.timestamp = datetime.now(timezone.utc)

    @staticmethod
    def _client_ip(request: Request) -> Optional[str]:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.headers.get("x-real-ip"):
            return request.headers["x-real-ip"]
        return request.client.host if request.client else None


class ErrorHandler:
    """Centralized error rendering"""

    @staticmethod
    def create_error_response(
        error_context: ErrorContext,
        error: Exception,
        status_code: Optional[int] = None,
        include_details: bool = False
    ) -> JSONResponse:
        """Render `error` in the standard envelope"""
        if status_code is None:
            status_code = getattr(error, "status_code", 500) if isinstance(error, PipelineError) else 500

        body = {
            "code": ErrorHandler._get_error_code(error),
            "message": ErrorHandler._get_user_friendly_message(error),
            "request_id": error_context.request_id,
            "timestamp": error_context.timestamp.isoformat(),
            "endpoint": error_context.endpoint,
            "method": error_context.method,
        }
        if error_context.order_id is not None:
            body["order_id"] = error_context.order_id
        if isinstance(error, SchemaMismatch) and error.columns:
            body["missing_columns"] = list(error.columns)
        if include_details:
            body["details"] = {
                "error_type": type(error).__name__,
                "original_error": str(error.original_error or error) if isinstance(error, PipelineError) else str(error),
                "stack_trace": traceback.format_exc(),
            }

        ErrorHandler._log_error(error_context, error, status_code)
        return JSONResponse(status_code=status_code, content={"error": body})

    @staticmethod
    def _get_error_code(error: Exception) -> str:
        if isinstance(error, PipelineError):
            return error.error_code
        elif isinstance(error, ValueError):
            return "VALIDATION_ERROR"
        return "INTERNAL_ERROR"

    @staticmethod
    def _get_user_friendly_message(error: Exception) -> str:
        if isinstance(error, TransientIO):
            return "The order store is temporarily unavailable. Please try again."
        elif isinstance(error, PipelineError):
            return error.message
        elif isinstance(error, ValueError):
            return "Invalid input provided. Please check your data and try again."
        return "An unexpected error occurred. Please try again later."

    @staticmethod
    def _log_error(error_context: ErrorContext, error: Exception, status_code: int):
        """Client errors are warnings, everything else is an error"""
        logger.log(
            logging.WARNING if status_code < 500 else logging.ERROR,
            f"{error_context.method} {error_context.endpoint} -> {status_code} "
            f"{type(error).__name__}: {error} [{error_context.request_id}]",
            extra={
                "request_id": error_context.request_id,
                "endpoint": error_context.endpoint,
                "method": error_context.method,
                "order_id": error_context.order_id,
                "status_code": status_code,
                "client_ip": error_context.client_ip,
                "error_type": type(error).__name__,
            }
        )


class DatabaseManager:
    """
    Async session scope for one store operation.

    Commits on success and rolls back on failure; SQLAlchemy errors leave
    the block already classified into the pipeline taxonomy.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.db: Optional[AsyncSession] = None

    async def __aenter__(self) -> AsyncSession:
        try:
            self.db = self.session_factory()
        except SQLAlchemyError as e:
            raise TransientIO(f"Could not open a database session: {e}", e)
        return self.db

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        db, self.db = self.db, None
        if db is None:
            return False
        try:
            if exc_type is not None:
                await db.rollback()
                if isinstance(exc_val, SQLAlchemyError):
                    raise classify_store_error(exc_val) from exc_val
                return False
            try:
                await db.commit()
            except SQLAlchemyError as e:
                logger.error(f"Commit failed: {e}")
                await db.rollback()
                raise classify_store_error(e) from e
            return False
        finally:
            await db.close()
