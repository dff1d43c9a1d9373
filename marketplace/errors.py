"""Domain errors raised by the service layer.

These subclass ``HTTPException`` so FastAPI renders them directly; background
sweeps catch them like any other exception.
"""

from fastapi import HTTPException


class NotFoundError(HTTPException):
    def __init__(self, resource: str = "Resource") -> None:
        super().__init__(status_code=404, detail=f"{resource} not found")


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "Forbidden") -> None:
        super().__init__(status_code=403, detail=detail)


class ConflictError(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=409, detail=detail)


class UnprocessableError(HTTPException):
    """Illegal state transition or business-rule violation."""

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=422, detail=detail)


class GatewayError(Exception):
    """The payment gateway rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
