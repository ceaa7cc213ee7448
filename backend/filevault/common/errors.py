from __future__ import annotations

from typing import Any

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException


class APIError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}


class FileSystemError(Exception):
    """Base class for errors raised by the filesystem services."""


class ContentNotFound(FileSystemError):
    def __init__(self, locator: str) -> None:
        super().__init__(f"Content object not found: {locator}")
        self.locator = locator


class InvalidMoveError(FileSystemError):
    pass


class ArchiveError(FileSystemError):
    pass


def error_payload(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        }
    }


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(APIError)
    def handle_api_error(error: APIError):  # type: ignore[no-untyped-def]
        return jsonify(error_payload(error.code, error.message, error.details)), error.status_code

    @app.errorhandler(ContentNotFound)
    def handle_content_not_found(error: ContentNotFound):  # type: ignore[no-untyped-def]
        app.logger.warning("Content object missing: %s", error.locator)
        return jsonify(error_payload("CONTENT_MISSING", "File content not found on server.")), 404

    @app.errorhandler(InvalidMoveError)
    def handle_invalid_move(error: InvalidMoveError):  # type: ignore[no-untyped-def]
        return jsonify(error_payload("INVALID_MOVE", str(error))), 400

    @app.errorhandler(ArchiveError)
    def handle_archive_error(error: ArchiveError):  # type: ignore[no-untyped-def]
        return jsonify(error_payload("INVALID_ARCHIVE", str(error))), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):  # type: ignore[no-untyped-def]
        return (
            jsonify(error_payload("HTTP_ERROR", error.description, {"status": error.code})),
            error.code or 500,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):  # type: ignore[no-untyped-def]
        app.logger.exception("Unhandled exception", exc_info=error)
        return jsonify(error_payload("INTERNAL_ERROR", "An unexpected error occurred.")), 500
