"""
In-process storage for files and their translation units.

Everything handed out is a copy: callers mutate their copy and hand it back
through ``save``, which only succeeds when the revision they read is still
the current one.
"""
import copy
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .errors import ConcurrentUpdateError, NotFoundError
from .logger import get_logger
from .models import FileRecord, FileStatus, SegmentStatus, TranslationUnit

logger = get_logger(__name__)

TRANSLATED_STATUSES = (
    SegmentStatus.TRANSLATED,
    SegmentStatus.TRANSLATED_TM,
    SegmentStatus.REVIEWING,
    SegmentStatus.REVIEW_PENDING,
    SegmentStatus.REVIEW_FAILED,
    SegmentStatus.REVIEW_COMPLETED,
    SegmentStatus.COMPLETED,
)

REVIEW_STATUSES = (
    SegmentStatus.REVIEWING,
    SegmentStatus.REVIEW_PENDING,
    SegmentStatus.REVIEW_FAILED,
    SegmentStatus.REVIEW_COMPLETED,
)


class UnitRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._units: Dict[str, Dict[int, TranslationUnit]] = {}

    def replace_file(self, file_id: str, units: Iterable[TranslationUnit]) -> int:
        """Drops every unit of the file and inserts the new set in one step."""
        fresh = {}
        for unit in units:
            stored = copy.deepcopy(unit)
            stored.file_id = file_id
            stored.revision = 1
            fresh[stored.index] = stored
        with self._lock:
            self._units[file_id] = fresh
        logger.debug(f"Stored {len(fresh)} units for file {file_id}")
        return len(fresh)

    def delete_file(self, file_id: str) -> None:
        with self._lock:
            self._units.pop(file_id, None)

    def get(self, unit_id: str) -> TranslationUnit:
        file_id, index = self._split(unit_id)
        with self._lock:
            unit = self._units.get(file_id, {}).get(index)
            if unit is None:
                raise NotFoundError(f"Unit {unit_id} not found")
            return copy.deepcopy(unit)

    def list_by_file(self, file_id: str,
                     statuses: Optional[Iterable[SegmentStatus]] = None) -> List[TranslationUnit]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            units = sorted(self._units.get(file_id, {}).values(), key=lambda u: u.index)
            return [copy.deepcopy(u) for u in units if wanted is None or u.status in wanted]

    def save(self, unit: TranslationUnit) -> TranslationUnit:
        """Compare-and-swap on ``revision``; returns the stored copy with the new revision."""
        with self._lock:
            current = self._units.get(unit.file_id, {}).get(unit.index)
            if current is None:
                raise NotFoundError(f"Unit {unit.unit_id} not found")
            if current.revision != unit.revision:
                raise ConcurrentUpdateError(unit.unit_id, unit.revision, current.revision)
            stored = copy.deepcopy(unit)
            stored.revision = current.revision + 1
            self._units[unit.file_id][unit.index] = stored
            return copy.deepcopy(stored)

    @staticmethod
    def _split(unit_id: str):
        file_id, sep, index = unit_id.rpartition(":")
        if not sep or not index.isdigit():
            raise NotFoundError(f"Malformed unit id '{unit_id}'")
        return file_id, int(index)


class FileRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._files: Dict[str, FileRecord] = {}

    def add(self, record: FileRecord) -> FileRecord:
        with self._lock:
            self._files[record.file_id] = copy.deepcopy(record)
        return record

    def get(self, file_id: str) -> FileRecord:
        with self._lock:
            record = self._files.get(file_id)
            if record is None:
                raise NotFoundError(f"File {file_id} not found")
            return copy.deepcopy(record)

    def list_by_project(self, project_id: str) -> List[FileRecord]:
        with self._lock:
            return [copy.deepcopy(f) for f in self._files.values() if f.project_id == project_id]

    def update(self, record: FileRecord) -> FileRecord:
        with self._lock:
            if record.file_id not in self._files:
                raise NotFoundError(f"File {record.file_id} not found")
            self._files[record.file_id] = copy.deepcopy(record)
        return record


@dataclass
class FileProgress:
    total: int = 0
    translated: int = 0
    failed: int = 0
    completed: int = 0
    reviewing: int = 0
    pending: int = 0
    percentage: int = 0
    status: FileStatus = FileStatus.PENDING
    error_details: Optional[str] = None


def summarize_file(units: Iterable[TranslationUnit]) -> FileProgress:
    """Aggregates unit statuses into a file-level progress snapshot."""
    progress = FileProgress()
    for unit in units:
        progress.total += 1
        if unit.status in TRANSLATED_STATUSES:
            progress.translated += 1
        if unit.status in (SegmentStatus.ERROR, SegmentStatus.REVIEW_FAILED):
            progress.failed += 1
        if unit.status == SegmentStatus.COMPLETED:
            progress.completed += 1
        if unit.status in REVIEW_STATUSES:
            progress.reviewing += 1
        if unit.status == SegmentStatus.PENDING:
            progress.pending += 1

    if progress.total:
        progress.percentage = round(progress.translated / progress.total * 100)

    if progress.failed > 0:
        progress.status = FileStatus.ERROR
        progress.error_details = f"{progress.failed} segment(s) failed"
    elif progress.total and progress.completed == progress.total:
        progress.status = FileStatus.COMPLETED
    elif progress.reviewing > 0:
        progress.status = FileStatus.REVIEWING
    elif progress.total and progress.translated == progress.total:
        progress.status = FileStatus.TRANSLATED
    elif progress.translated > 0 or progress.total - progress.pending > 0:
        progress.status = FileStatus.PROCESSING
    return progress
