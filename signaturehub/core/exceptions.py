from typing import List, Optional
from fastapi import HTTPException, status


class ValidationError(HTTPException):
    """
    Malformed input, a missing contact method, or a role rule violation.
    Age checks are batched, so `errors` can hold several messages at once.
    """

    def __init__(self, detail: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        payload = {"message": detail, "errors": self.errors} if errors else detail
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=payload)


class NotFoundError(HTTPException):
    def __init__(self, detail: str = "Resource not found."):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "Not allowed."):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class GoneError(HTTPException):
    """
    Raised for unknown AND expired signing tokens alike, so callers cannot
    discover which tokens ever existed.
    """

    def __init__(self, detail: str = "This signature request has expired or is no longer available."):
        super().__init__(status_code=status.HTTP_410_GONE, detail=detail)


class StateConflictError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class RateLimitError(HTTPException):
    def __init__(self, detail: str = "Too many verification requests. Please try again later."):
        super().__init__(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)


class TooManyAttemptsError(RateLimitError):
    def __init__(self):
        super().__init__(detail="Too many attempts. Please request a new code.")


class NotifierError(Exception):
    """Delivery failure inside a notification channel. Never leaves the notifier layer."""
