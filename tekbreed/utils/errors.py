"""
Domain exceptions shared by services and routes.

Services raise these; routes translate them to HTTP status codes with
`to_http_exception`.
"""

from typing import Optional

from fastapi import HTTPException, status


class TekBreedError(Exception):
    """Base class for domain errors."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ValidationError(TekBreedError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(TekBreedError):
    status_code = status.HTTP_404_NOT_FOUND


class PermissionDeniedError(TekBreedError):
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(TekBreedError):
    status_code = status.HTTP_409_CONFLICT


class ExternalServiceError(TekBreedError):
    """Raised when a third-party API (Polar, Sanity, ...) returns an error."""
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, service: str, message: str, upstream_status: Optional[int] = None):
        self.service = service
        self.upstream_status = upstream_status
        super().__init__(f"{service}: {message}")


def invariant(condition, message: str):
    """Raise ValidationError when condition is falsy."""
    if not condition:
        raise ValidationError(message)


def invariant_response(condition, message: str, status_code: int = status.HTTP_400_BAD_REQUEST):
    """Like `invariant`, but carries an explicit HTTP status code."""
    if not condition:
        raise TekBreedError(message, status_code=status_code)


def to_http_exception(error: TekBreedError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)
