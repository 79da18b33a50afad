from __future__ import annotations


class BoardError(Exception):
    error_code = "BOARD_ERROR"
    status_code = 500

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_json(self) -> dict[str, str]:
        body = {"errorCode": self.error_code, "message": self.message}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(BoardError):
    error_code = "VALIDATION_ERROR"
    status_code = 400


class NotFound(BoardError):
    error_code = "NOT_FOUND"
    status_code = 404


class Conflict(BoardError):
    error_code = "CONFLICT"
    status_code = 409


class PersistenceFailure(BoardError):
    error_code = "PERSISTENCE_FAILURE"
    status_code = 500
