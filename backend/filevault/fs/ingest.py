"""Turn ZIP archives and browser folder uploads into folder and file rows.

Every pass resolves relative paths through one :class:`FolderResolver`, so a
path is materialized at most once however many entries share it. Nested
``.zip`` entries are expanded into a folder named after the archive stem
instead of being stored.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import BinaryIO

from flask import current_app

from ..common.audit import audit
from ..common.errors import ArchiveError
from ..common.rbac import check_access
from ..common.storage import ContentStore, guess_mime_type, is_zip_name, purge_content
from ..extensions import db
from ..models import AccessLevel, File, Folder, TargetType, User
from .hierarchy import list_folders, permanent_delete_file


NESTED_SKIP = "skip"
NESTED_STORE = "store"
ZIP_MIME_TYPES = {"application/zip", "application/x-zip-compressed"}
MAX_SEGMENT_LENGTH = 255
SPOOL_MAX_BYTES = 16 * 1024 * 1024

# What reading a damaged, encrypted or exotic archive can raise.
ARCHIVE_READ_ERRORS = (
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    zlib.error,
    RuntimeError,
    NotImplementedError,
    EOFError,
)
NESTED_READ_ERRORS = ARCHIVE_READ_ERRORS + (OSError,)


def split_path(path: str) -> list[str]:
    """Normalize an archive or browser relative path into clean segments."""
    segments = []
    for segment in (path or "").replace("\\", "/").split("/"):
        cleaned = segment.strip()
        if cleaned in {"", ".", ".."}:
            continue
        segments.append(cleaned[:MAX_SEGMENT_LENGTH])
    return segments


def archive_stem(name: str) -> str:
    return name[:-4] if is_zip_name(name) else name


def looks_like_zip(file: File) -> bool:
    return is_zip_name(file.name) or (file.mime_type or "") in ZIP_MIME_TYPES


@dataclass
class IngestReport:
    files: list[File] = field(default_factory=list)
    folders_created: list[Folder] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "files_created": len(self.files),
            "folders_created": len(self.folders_created),
            "skipped": list(self.skipped),
        }

    def mark(self) -> tuple[int, int, int]:
        return len(self.files), len(self.folders_created), len(self.skipped)

    def rewind(self, mark: tuple[int, int, int]) -> list[File]:
        """Forget everything recorded since ``mark``; returns the dropped files."""
        files_at, folders_at, skipped_at = mark
        dropped = self.files[files_at:]
        del self.files[files_at:]
        del self.folders_created[folders_at:]
        del self.skipped[skipped_at:]
        return dropped


class FolderResolver:
    """Map relative paths under one root folder to folder ids, creating what is missing.

    Existing non-deleted folders with the same name under the same parent are
    reused; at the top level only the acting user's own folders qualify.
    """

    def __init__(self, owner: User, root_id: int | None, report: IngestReport | None = None) -> None:
        self.owner = owner
        self.report = report if report is not None else IngestReport()
        self._cache: dict[str, int | None] = {"": root_id}

    @property
    def root_id(self) -> int | None:
        return self._cache[""]

    def snapshot(self) -> dict[str, int | None]:
        return dict(self._cache)

    def restore(self, snapshot: dict[str, int | None]) -> None:
        self._cache = dict(snapshot)

    def _find_or_create(self, name: str, parent_id: int | None) -> int:
        query = Folder.query.filter(Folder.name == name, Folder.is_deleted.is_(False))
        if parent_id is None:
            query = query.filter(Folder.parent_id.is_(None), Folder.owner_id == self.owner.id)
        else:
            query = query.filter(Folder.parent_id == parent_id)
        existing = query.order_by(Folder.id.asc()).first()
        if existing is not None:
            return existing.id

        folder = Folder(name=name, parent_id=parent_id, owner_id=self.owner.id)
        db.session.add(folder)
        db.session.flush()
        self.report.folders_created.append(folder)
        return folder.id

    def resolve(self, path: str | list[str]) -> int | None:
        segments = split_path(path) if isinstance(path, str) else list(path)
        key = ""
        parent_id = self._cache[""]
        for segment in segments:
            key = f"{key}/{segment}" if key else segment
            if key not in self._cache:
                self._cache[key] = self._find_or_create(segment, parent_id)
            parent_id = self._cache[key]
        return parent_id


class ArchiveIngestor:
    def __init__(
        self,
        store: ContentStore,
        owner: User,
        *,
        nested_failure: str = NESTED_SKIP,
        max_depth: int = 8,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.owner = owner
        self.nested_failure = nested_failure if nested_failure in {NESTED_SKIP, NESTED_STORE} else NESTED_SKIP
        self.max_depth = max(1, max_depth)
        self.logger = logger or current_app.logger

    @classmethod
    def from_config(cls, store: ContentStore, owner: User) -> "ArchiveIngestor":
        return cls(
            store,
            owner,
            nested_failure=current_app.config.get("ARCHIVE_NESTED_FAILURE", NESTED_SKIP),
            max_depth=int(current_app.config.get("ARCHIVE_MAX_DEPTH", 8)),
        )

    def ingest(
        self,
        archive: zipfile.ZipFile,
        target_folder_id: int | None,
        *,
        subfolder: str | None = None,
        report: IngestReport | None = None,
    ) -> IngestReport:
        """Materialize ``archive`` under ``target_folder_id``, optionally inside a named subfolder.

        Pass ``report`` to keep access to the objects already written if the
        walk fails part way.
        """
        resolver = FolderResolver(self.owner, target_folder_id, report)
        prefix = split_path(subfolder) if subfolder else []
        if prefix:
            resolver.resolve(prefix)
        self._walk(archive, resolver, prefix, depth=1)
        return resolver.report

    def ingest_stream(
        self,
        stream: BinaryIO,
        target_folder_id: int | None,
        *,
        report: IngestReport | None = None,
    ) -> IngestReport:
        try:
            with zipfile.ZipFile(stream) as archive:
                return self.ingest(archive, target_folder_id, report=report)
        except ARCHIVE_READ_ERRORS as error:
            raise ArchiveError("Uploaded file is not a readable ZIP archive.") from error

    def _store_leaf(self, source: BinaryIO, name: str, size: int, folder_id: int | None, report: IngestReport) -> File:
        locator = self.store.put(source, name)
        record = File(
            name=name,
            folder_id=folder_id,
            size=size,
            mime_type=guess_mime_type(name),
            storage_path=locator,
            created_by=self.owner.id,
        )
        db.session.add(record)
        report.files.append(record)
        return record

    def _walk(self, archive: zipfile.ZipFile, resolver: FolderResolver, prefix: list[str], depth: int) -> None:
        report = resolver.report
        for info in archive.infolist():
            segments = split_path(info.filename)
            if info.is_dir():
                resolver.resolve(prefix + segments)
                continue
            if not segments:
                continue

            *parents, name = segments
            if is_zip_name(name):
                self._expand_nested(archive, info, resolver, prefix + parents, name, depth)
                continue

            folder_id = resolver.resolve(prefix + parents)
            with archive.open(info) as source:
                self._store_leaf(source, name, info.file_size, folder_id, report)
        db.session.flush()

    def _expand_nested(
        self,
        archive: zipfile.ZipFile,
        info: zipfile.ZipInfo,
        resolver: FolderResolver,
        parents: list[str],
        name: str,
        depth: int,
    ) -> None:
        entry_path = "/".join(parents + [name])
        if depth >= self.max_depth:
            self.logger.warning("Nested archive %s exceeds maximum depth %s", entry_path, self.max_depth)
            self._nested_fallback(archive, info, resolver, parents, name)
            return

        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES) as spool:
            with archive.open(info) as source:
                shutil.copyfileobj(source, spool)
            spool.seek(0)

            report = resolver.report
            mark = report.mark()
            cache = resolver.snapshot()
            stem_path = parents + [archive_stem(name)]
            try:
                with db.session.begin_nested():
                    with zipfile.ZipFile(spool) as nested:
                        resolver.resolve(stem_path)
                        self._walk(nested, resolver, stem_path, depth + 1)
            except NESTED_READ_ERRORS:
                self.logger.warning("Nested archive %s could not be read", entry_path, exc_info=True)
                dropped = report.rewind(mark)
                resolver.restore(cache)
                purge_content(self.store, [item.storage_path for item in dropped])
                self._nested_fallback(archive, info, resolver, parents, name)

    def _nested_fallback(
        self,
        archive: zipfile.ZipFile,
        info: zipfile.ZipInfo,
        resolver: FolderResolver,
        parents: list[str],
        name: str,
    ) -> None:
        entry_path = "/".join(parents + [name])
        if self.nested_failure == NESTED_STORE:
            folder_id = resolver.resolve(parents)
            with archive.open(info) as source:
                self._store_leaf(source, name, info.file_size, folder_id, resolver.report)
        else:
            resolver.report.skipped.append(entry_path)


def ingest_folder_upload(
    store: ContentStore,
    owner: User,
    uploads: list[tuple[BinaryIO, str, str]],
    target_folder_id: int | None,
    *,
    report: IngestReport | None = None,
) -> IngestReport:
    """Store browser folder uploads, each given as ``(stream, relative_path, mime_type)``."""
    resolver = FolderResolver(owner, target_folder_id, report)
    for stream, relative_path, mime_type in uploads:
        segments = split_path(relative_path)
        if not segments:
            resolver.report.skipped.append(relative_path)
            continue
        *parents, name = segments
        folder_id = resolver.resolve(parents)

        locator = store.put(stream, name)
        size = store.path(locator).stat().st_size
        record = File(
            name=name,
            folder_id=folder_id,
            size=size,
            mime_type=mime_type or guess_mime_type(name),
            storage_path=locator,
            created_by=owner.id,
        )
        db.session.add(record)
        resolver.report.files.append(record)
    db.session.flush()
    return resolver.report


def auto_extract_archives(store: ContentStore, viewer: User, folder_id: int | None, files: list[File]) -> int:
    """Expand ZIP files found while listing a folder, each into a sibling folder named after its stem.

    Each archive is committed on its own. A failure rolls back that archive,
    removes the objects it already wrote and leaves the ZIP in place.
    """
    candidates = [item for item in files if looks_like_zip(item)]
    if not candidates:
        return 0

    logger = current_app.logger
    ingestor = ArchiveIngestor.from_config(store, viewer)
    extracted = 0
    for zip_file in candidates:
        stem = archive_stem(zip_file.name)
        if any(folder.name == stem for folder in list_folders(folder_id, viewer.id)):
            continue
        if not check_access(zip_file.id, TargetType.FILE, viewer.id, AccessLevel.EDIT):
            continue
        if not store.exists(zip_file.storage_path):
            continue

        zip_id, zip_name, zip_locator = zip_file.id, zip_file.name, zip_file.storage_path
        report = IngestReport()
        try:
            with store.open(zip_locator) as handle, zipfile.ZipFile(handle) as archive:
                ingestor.ingest(archive, folder_id, subfolder=stem, report=report)
            permanent_delete_file(zip_file)
            audit(
                "auto_extract_zip",
                actor=viewer,
                target_type="file",
                target_id=zip_id,
                details=f"Auto-extracted ZIP {zip_name} into folder {stem}",
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            purge_content(store, [item.storage_path for item in report.files])
            logger.warning("Failed to auto-extract ZIP %s (file %s)", zip_name, zip_id, exc_info=True)
            continue

        purge_content(store, [zip_locator])
        logger.info("Auto-extracted ZIP %s into folder %s", zip_name, stem)
        extracted += 1
    return extracted
