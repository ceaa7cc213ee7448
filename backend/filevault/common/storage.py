from __future__ import annotations

import os
import re
import secrets
import shutil
import time
from pathlib import Path
from typing import BinaryIO

from flask import current_app
from werkzeug.utils import secure_filename

from .errors import APIError, ContentNotFound


INVALID_NAME_PATTERN = re.compile(r"[\\/\x00]")
DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES: dict[str, str] = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".txt": "text/plain",
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".zip": "application/zip",
}


def validate_node_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise APIError(400, "INVALID_NAME", "Name cannot be empty.")
    if len(cleaned) > 255:
        raise APIError(400, "INVALID_NAME", "Name must be <= 255 characters.")
    if INVALID_NAME_PATTERN.search(cleaned):
        raise APIError(400, "INVALID_NAME", "Name contains invalid characters.")
    if cleaned in {".", ".."}:
        raise APIError(400, "INVALID_NAME", "Reserved name.")
    return cleaned


def guess_mime_type(name: str) -> str:
    return MIME_TYPES.get(Path(name).suffix.lower(), DEFAULT_MIME_TYPE)


def is_zip_name(name: str) -> bool:
    return name.lower().endswith(".zip")


class ContentStore:
    """Write-once byte objects in a local directory, addressed by opaque locators.

    Locators embed a millisecond timestamp, a random token and the sanitized
    original name, so concurrent writers never collide without coordination.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def _safe_resolve(self, locator: str) -> Path:
        candidate = (self.root / locator).resolve()
        if os.path.commonpath([str(self.root), str(candidate)]) != str(self.root):
            raise APIError(400, "INVALID_PATH", "Invalid storage path.")
        return candidate

    def _new_locator(self, original_name: str) -> str:
        safe_name = secure_filename(original_name) or "blob"
        token = secrets.token_hex(6)
        return f"{token[:2]}/{int(time.time() * 1000)}-{token}-{safe_name}"

    def put(self, stream: BinaryIO, original_name: str) -> str:
        locator = self._new_locator(original_name)
        target = self._safe_resolve(locator)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with target.open("wb") as output:
                shutil.copyfileobj(stream, output)
        except BaseException:
            # Never leave a half-written object behind a failed read.
            target.unlink(missing_ok=True)
            raise
        return locator

    def put_bytes(self, data: bytes, original_name: str) -> str:
        locator = self._new_locator(original_name)
        target = self._safe_resolve(locator)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return locator

    def path(self, locator: str) -> Path:
        target = self._safe_resolve(locator)
        if not target.is_file():
            raise ContentNotFound(locator)
        return target

    def exists(self, locator: str | None) -> bool:
        if not locator:
            return False
        return self._safe_resolve(locator).is_file()

    def open(self, locator: str) -> BinaryIO:
        try:
            return self.path(locator).open("rb")
        except FileNotFoundError as error:
            raise ContentNotFound(locator) from error

    def delete(self, locator: str | None) -> bool:
        """Remove an object. Returns False when it was already gone."""
        if not locator:
            return False
        target = self._safe_resolve(locator)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        return True


def get_content_store() -> ContentStore:
    return ContentStore(current_app.config["STORAGE_ROOT"])


def purge_content(store: ContentStore, locators: list[str]) -> int:
    """Delete backing objects after their rows are gone; absent objects are only logged."""
    removed = 0
    for locator in locators:
        try:
            if store.delete(locator):
                removed += 1
            else:
                current_app.logger.warning("Content object already absent: %s", locator)
        except OSError:
            current_app.logger.warning("Failed to delete content object %s", locator, exc_info=True)
    return removed
