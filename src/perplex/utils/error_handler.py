"""
Error handling for the chat streaming service.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import openai
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error categories for classification."""
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    QUOTA = "quota"
    RATE_LIMIT = "rate_limit"
    UPSTREAM_MODEL = "upstream_model"
    TOOL = "tool"
    STORAGE = "storage"
    PERSISTENCE = "persistence"
    TIMEOUT = "timeout"
    NETWORK = "network"
    INTERNAL = "internal"


STATUS_MAPPING = {
    ErrorCategory.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    ErrorCategory.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorCategory.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCategory.QUOTA: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCategory.RATE_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCategory.UPSTREAM_MODEL: status.HTTP_502_BAD_GATEWAY,
    ErrorCategory.TOOL: status.HTTP_502_BAD_GATEWAY,
    ErrorCategory.STORAGE: status.HTTP_502_BAD_GATEWAY,
    ErrorCategory.PERSISTENCE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCategory.NETWORK: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class ServiceError(Exception):
    """Base exception for service errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True
    ):
        self.message = message
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.timestamp = datetime.utcnow()
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return STATUS_MAPPING.get(self.category, status.HTTP_500_INTERNAL_SERVER_ERROR)


class ChatErrorHandler:
    """Centralized error handling for the chat service."""

    @staticmethod
    def handle_model_error(error: Exception) -> ServiceError:
        """
        Normalize a model backend failure.

        Args:
            error: The original exception

        Returns:
            ServiceError with quota, rate limit, timeout, network or upstream category
        """
        if isinstance(error, ServiceError):
            return error

        code = getattr(error, "code", None)
        details = {"service": "model", "error": str(error), "code": code}

        if code == "insufficient_quota":
            return ServiceError(
                message="AI service quota exceeded",
                category=ErrorCategory.QUOTA,
                details=details,
                recoverable=False
            )
        if isinstance(error, openai.RateLimitError) or code == "rate_limit_exceeded":
            return ServiceError(
                message="Rate limit exceeded. Please try again later.",
                category=ErrorCategory.RATE_LIMIT,
                details=details,
                recoverable=True
            )
        if isinstance(error, openai.APITimeoutError):
            return ServiceError(
                message="AI service request timed out",
                category=ErrorCategory.TIMEOUT,
                details=details,
                recoverable=True
            )
        if isinstance(error, openai.APIConnectionError):
            return ServiceError(
                message="Unable to connect to AI service",
                category=ErrorCategory.NETWORK,
                details=details,
                recoverable=True
            )
        if isinstance(error, openai.APIStatusError):
            details["status_code"] = error.status_code
        return ServiceError(
            message="Failed to get response from AI service",
            category=ErrorCategory.UPSTREAM_MODEL,
            details=details,
            recoverable=True
        )

    @staticmethod
    def to_stream_payload(service_error: ServiceError) -> Dict[str, Any]:
        """
        Body of the in-band error event.

        Args:
            service_error: The service error

        Returns:
            Dict with message, status, code and category
        """
        return {
            "message": service_error.message,
            "status": service_error.status_code,
            "code": service_error.details.get("code"),
            "category": service_error.category.value,
        }

    @staticmethod
    def to_http_exception(service_error: ServiceError) -> HTTPException:
        """
        Convert ServiceError to HTTPException for API responses.

        Args:
            service_error: The service error

        Returns:
            HTTPException with appropriate status code
        """
        return HTTPException(
            status_code=service_error.status_code,
            detail={
                "message": service_error.message,
                "category": service_error.category.value,
                "details": service_error.details,
                "recoverable": service_error.recoverable,
                "timestamp": service_error.timestamp.isoformat()
            }
        )


def validation_error(message: str, **details) -> ServiceError:
    return ServiceError(message, ErrorCategory.VALIDATION, details=details, recoverable=False)


def authorization_error(message: str, **details) -> ServiceError:
    return ServiceError(message, ErrorCategory.AUTHORIZATION, details=details, recoverable=False)


def not_found_error(message: str, **details) -> ServiceError:
    return ServiceError(message, ErrorCategory.NOT_FOUND, details=details, recoverable=False)
