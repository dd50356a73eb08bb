from typing import Optional


class PixieError(Exception):
    """Failure that maps onto an explicit HTTP result. Messages are client-safe."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequest(PixieError):
    status_code = 400


class AuthorizationFailure(PixieError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFound(PixieError):
    status_code = 404

    def __init__(self, message: str = "Pixel not found"):
        super().__init__(message)


class Misconfiguration(PixieError):
    status_code = 500
