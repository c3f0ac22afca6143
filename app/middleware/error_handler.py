"""
Global error handling middleware.
"""
import logging
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Callable

from app.infrastructure.external_api_client import ExternalAPIError
from app.services.application.group_formation_service import (
    SubmissionBlockedError,
    WorkflowStateError,
)

logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Global error handling middleware.

    Catches unhandled exceptions and returns consistent error responses.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        """
        Process the request and handle any exceptions.

        Args:
            request: The incoming request
            call_next: The next middleware or route handler

        Returns:
            Response object
        """
        log_extra = {"path": request.url.path, "method": request.method}
        try:
            response = await call_next(request)
            return response

        except ExternalAPIError as e:
            logger.error(
                f"Grouping service error: {e.message}",
                extra={**log_extra, "status_code": e.status_code},
            )
            # Upstream 4xx passes through; everything else is a bad gateway
            status_code = e.status_code if 400 <= e.status_code < 500 else status.HTTP_502_BAD_GATEWAY
            return JSONResponse(
                status_code=status_code,
                content={
                    "error": "Grouping service error",
                    "detail": e.message,
                }
            )

        except SubmissionBlockedError as e:
            logger.info(f"Submission blocked: {e}", extra=log_extra)
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={
                    "error": "Validation failed",
                    "detail": str(e),
                    "findings": [
                        {
                            "severity": f.severity,
                            "message": f.message,
                            "groupNumber": f.group_number,
                        }
                        for f in e.findings
                    ],
                }
            )

        except WorkflowStateError as e:
            logger.warning(f"Workflow state error: {e}", extra=log_extra)
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={
                    "error": "Conflict",
                    "detail": str(e),
                }
            )

        except LookupError as e:
            logger.info(f"Not found: {e}", extra=log_extra)
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={
                    "error": "Not found",
                    "detail": str(e),
                }
            )

        except ValueError as e:
            # Illegal edits and invalid parameters
            logger.warning(f"Validation error: {e}", extra=log_extra)
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={
                    "error": "Invalid request",
                    "detail": str(e),
                }
            )

        except Exception as e:
            logger.exception(f"Unhandled exception: {e}", extra=log_extra)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "Internal server error",
                    "detail": "An unexpected error occurred",
                }
            )
