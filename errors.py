"""
Error taxonomy shared by every service module.

Services raise these; main.py turns them into JSON responses of the same
shape FastAPI uses for HTTPException ({"detail": ...}).
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidArgument(ServiceError):
    status_code = 400


class Unauthenticated(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


class Internal(ServiceError):
    status_code = 500
