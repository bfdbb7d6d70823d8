"""
Error taxonomy for the reporting core.

Every terminal failure carries a stable ``kind`` and a human-readable message;
blueprints render them with ``to_dict()`` and ``status``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ReportingError(Exception):
    """Base class for errors surfaced to callers."""

    status = 500

    def __init__(self, message: str, kind: str = 'INTERNAL_ERROR',
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {'error': self.kind, 'message': self.message}
        if self.details:
            out['details'] = self.details
        return out


class ValidationError(ReportingError):
    """Missing or malformed required input."""

    status = 400

    def __init__(self, message: str, field: str = 'unknown',
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, kind='VALIDATION_ERROR',
                         details={'field': field, **(details or {})})
        self.field = field


class AuthenticationError(ReportingError):
    """No resolved caller identity on the request."""

    status = 401

    def __init__(self, message: str = 'Unauthorized: please log in'):
        super().__init__(message, kind='UNAUTHORIZED')


class NotFoundError(ReportingError):
    status = 404

    def __init__(self, message: str, resource: str = 'unknown',
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, kind='NOT_FOUND',
                         details={'resource': resource, **(details or {})})
        self.resource = resource


class AccessDeniedError(ReportingError):
    """The entity exists but the caller has no relation to it."""

    status = 403

    def __init__(self, message: str = 'Access denied',
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, kind='ACCESS_DENIED', details=details)


class UpstreamStoreError(ReportingError):
    """The relational store call itself failed."""

    status = 502

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message, kind='UPSTREAM_STORE_ERROR',
                         details={'table': table} if table else None)
        self.table = table
