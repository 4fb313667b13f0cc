"""
Service-layer exceptions.

Each carries the HTTP status the API answers with; main.py registers one
handler for the whole family.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Bad coordinates, unknown enum value, missing field"""
    status_code = 422


class AuthorizationError(ServiceError):
    """Missing, invalid or expired token"""
    status_code = 401


class PermissionDenied(ServiceError):
    """Valid token, role not allowed"""
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    """State does not allow the change (unit unavailable, incident resolved)"""
    status_code = 409
