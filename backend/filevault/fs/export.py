"""Streamed ZIP exports of folders and mixed selections.

Entries are planned up front, while the request still owns the database
session, and the archive is then produced chunk by chunk so the response
starts before the archive is complete.
"""

from __future__ import annotations

import logging
import posixpath
import zipfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from ..common.errors import ContentNotFound
from ..common.rbac import check_access
from ..common.storage import ContentStore
from ..extensions import db
from ..models import AccessLevel, File, Folder, TargetType, User


ZIP64_MARGIN = 1.05


@dataclass(frozen=True)
class ExportEntry:
    locator: str
    arcname: str
    size: int


class _StreamSink:
    """Write-only buffer handed to ``ZipFile``; having no ``seek`` makes it emit data descriptors."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._offset = 0

    def write(self, data: bytes) -> int:
        self._buffer.extend(data)
        self._offset += len(data)
        return len(data)

    def tell(self) -> int:
        return self._offset

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


class ExportPlanner:
    def __init__(self, store: ContentStore, user: User, *, trust_folder_access: bool = False) -> None:
        self.store = store
        self.user = user
        self.trust_folder_access = trust_folder_access
        self.entries: list[ExportEntry] = []
        self.skipped = 0
        self._names: set[str] = set()

    def _unique(self, arcname: str) -> str:
        if arcname not in self._names:
            self._names.add(arcname)
            return arcname
        root, ext = posixpath.splitext(arcname)
        counter = 1
        while f"{root} ({counter}){ext}" in self._names:
            counter += 1
        candidate = f"{root} ({counter}){ext}"
        self._names.add(candidate)
        return candidate

    def _add_file(self, file: File, prefix: str, *, check: bool) -> None:
        if file.is_deleted:
            self.skipped += 1
            return
        if check and not check_access(file.id, TargetType.FILE, self.user.id, AccessLevel.DOWNLOAD):
            self.skipped += 1
            return
        if not self.store.exists(file.storage_path):
            self.skipped += 1
            return
        arcname = posixpath.join(prefix, file.name) if prefix else file.name
        self.entries.append(ExportEntry(file.storage_path, self._unique(arcname), int(file.size or 0)))

    def add_file(self, file_id: int) -> None:
        file = db.session.get(File, file_id)
        if file is None:
            self.skipped += 1
            return
        self._add_file(file, "", check=True)

    def add_folder(self, folder: Folder, prefix: str) -> None:
        """Depth-first walk of non-deleted contents, arcnames joined from folder names."""
        files = (
            File.query.filter(File.folder_id == folder.id, File.is_deleted.is_(False))
            .order_by(File.name.asc(), File.id.asc())
            .all()
        )
        for file in files:
            self._add_file(file, prefix, check=not self.trust_folder_access)

        children = (
            Folder.query.filter(Folder.parent_id == folder.id, Folder.is_deleted.is_(False))
            .order_by(Folder.name.asc(), Folder.id.asc())
            .all()
        )
        for child in children:
            self.add_folder(child, posixpath.join(prefix, child.name) if prefix else child.name)

    def add_selected_folder(self, folder_id: int) -> None:
        folder = db.session.get(Folder, folder_id)
        if folder is None or folder.is_deleted:
            self.skipped += 1
            return
        if not check_access(folder.id, TargetType.FOLDER, self.user.id, AccessLevel.DOWNLOAD):
            self.skipped += 1
            return
        self.add_folder(folder, folder.name)


def plan_folder_export(store: ContentStore, user: User, folder: Folder, *, trust_folder_access: bool = False) -> list[ExportEntry]:
    planner = ExportPlanner(store, user, trust_folder_access=trust_folder_access)
    planner.add_folder(folder, "")
    return planner.entries


def plan_bulk_export(
    store: ContentStore,
    user: User,
    file_ids: Iterable[int],
    folder_ids: Iterable[int],
    *,
    trust_folder_access: bool = False,
) -> ExportPlanner:
    planner = ExportPlanner(store, user, trust_folder_access=trust_folder_access)
    for file_id in file_ids:
        planner.add_file(file_id)
    for folder_id in folder_ids:
        planner.add_selected_folder(folder_id)
    return planner


def stream_zip(
    store: ContentStore,
    entries: list[ExportEntry],
    *,
    chunk_size: int,
    logger: logging.Logger,
) -> Iterator[bytes]:
    """Yield a deflate-compressed ZIP of ``entries`` as it is produced.

    Content that vanished since planning is skipped. Source handles are
    closed on every exit, including the client disconnecting mid-stream.
    """
    sink = _StreamSink()
    written = 0
    try:
        with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for entry in entries:
                try:
                    source = store.open(entry.locator)
                except ContentNotFound:
                    logger.warning("Skipping export entry %s: content missing", entry.arcname)
                    continue

                force_zip64 = entry.size * ZIP64_MARGIN > zipfile.ZIP64_LIMIT
                with source, archive.open(entry.arcname, "w", force_zip64=force_zip64) as target:
                    while True:
                        chunk = source.read(chunk_size)
                        if not chunk:
                            break
                        target.write(chunk)
                        data = sink.drain()
                        if data:
                            yield data
                written += 1
                data = sink.drain()
                if data:
                    yield data
    except Exception:
        logger.exception("ZIP export failed after %s of %s entries", written, len(entries))
        return

    tail = sink.drain()
    if tail:
        yield tail
