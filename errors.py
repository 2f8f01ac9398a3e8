"""
Application error taxonomy.

Service code raises these; ``main.py`` maps them to JSON responses of the
form ``{"detail": "..."}`` with the class's status code.
"""


class AppError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(AppError):
    status_code = 404
    default_detail = "Not found"


class Forbidden(AppError):
    status_code = 403
    default_detail = "You do not have permission to perform this action"


class Conflict(AppError):
    status_code = 409
    default_detail = "Conflict"


class Gone(Conflict):
    status_code = 410
    default_detail = "Resource has expired"


class ValidationError(AppError):
    status_code = 400
    default_detail = "Invalid request"
