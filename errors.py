"""
Error taxonomy shared by the stores and the checkout coordinator.

Every error carries the HTTP status it maps to; main.py turns them into the
``{"success": false, "message": ...}`` envelope.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400


class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    # 409 would be more accurate, clients expect 400
    status_code = 400


class InsufficientStock(Conflict):
    pass


class CourseFull(Conflict):
    pass


class AlreadyEnrolled(Conflict):
    pass


class DuplicateEntry(Conflict):
    pass


class InternalError(AppError):
    status_code = 500


def validation_message(exc) -> str:
    """Flatten a pydantic/FastAPI validation error into one readable line."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return ", ".join(parts) or "Invalid input"
