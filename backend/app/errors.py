"""
Application error hierarchy.

Each error carries the HTTP status and the stable error code returned in the
`{"error": {"code", "message"}}` envelope. Operational errors are expected
outcomes (bad input, missing resources, conflicts); non-operational ones are
bugs and surface as a generic 500.
"""


class AppError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        is_operational: bool = True,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.is_operational = is_operational


class BadRequestError(AppError):
    def __init__(self, message: str, code: str = "BAD_REQUEST"):
        super().__init__(message, 400, code)


class ValidationError(AppError):
    def __init__(self, message: str):
        super().__init__(message, 400, "VALIDATION_ERROR")


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Authentication required", code: str = "UNAUTHORIZED"):
        super().__init__(message, 401, code)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, 403, "FORBIDDEN")


class NotFoundError(AppError):
    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found", 404, "NOT_FOUND")


class ConflictError(AppError):
    def __init__(self, message: str, code: str = "CONFLICT"):
        super().__init__(message, 409, code)


class ProcessingInProgressError(AppError):
    def __init__(self):
        super().__init__("Processing already in progress", 423, "PROCESSING_IN_PROGRESS")


class RateLimitError(AppError):
    def __init__(self):
        super().__init__("Rate limit exceeded. Please try again later.", 429, "RATE_LIMIT_EXCEEDED")


class InternalError(AppError):
    def __init__(self, message: str = "Internal server error"):
        super().__init__(message, 500, "INTERNAL_ERROR", is_operational=False)


# HTTP status -> error code for errors raised as plain HTTPException
STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    423: "PROCESSING_IN_PROGRESS",
    429: "RATE_LIMIT_EXCEEDED",
}
