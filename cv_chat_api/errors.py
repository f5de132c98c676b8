"""Errors reported to API callers as ``{"error": ..., "message": ...}``."""

from typing import Any


class ApiError(Exception):
    """An error that aborts the request with a JSON error body."""

    status_code = 500

    def __init__(self, error: str, message: str | None = None, status_code: int | None = None):
        super().__init__(error)
        self.error = error
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.message:
            body["message"] = self.message
        return body


class InputError(ApiError):
    """Missing or malformed input, or a source that could not be read."""

    status_code = 400


class NotFoundError(ApiError):
    status_code = 404
