import os
import uuid
from typing import List, Optional

from .codec import BitextCodec
from .logger import get_logger
from .models import FileRecord, FileStatus, SegmentStatus, utcnow
from .repository import FileProgress, FileRepository, UnitRepository, summarize_file

logger = get_logger(__name__)


class FileService:
    """Imports bitext files into units, exports them back and keeps file aggregates current."""

    def __init__(self, files: FileRepository, units: UnitRepository, codec: Optional[BitextCodec] = None):
        self.files = files
        self.units = units
        self.codec = codec or BitextCodec()

    def import_file(self, path: str, project_id: str, file_id: Optional[str] = None) -> FileRecord:
        """
        Extracts ``path`` and stores its units. Importing again under the same
        file id replaces every unit of that file.
        """
        extracted, metadata = self.codec.extract(path)
        file_id = file_id or uuid.uuid4().hex
        record = FileRecord(
            file_id=file_id,
            project_id=project_id,
            path=path,
            filename=os.path.basename(path),
            metadata=metadata,
        )
        self.units.replace_file(file_id, [u.to_unit(file_id) for u in extracted])
        self.files.add(record)
        self.refresh_file_progress(file_id)
        logger.info(f"Imported {path} as file {file_id} ({len(extracted)} units)")
        return self.files.get(file_id)

    def reextract(self, file_id: str) -> FileRecord:
        record = self.files.get(file_id)
        return self.import_file(record.path, record.project_id, file_id=file_id)

    def export_file(self, file_id: str, output_path: Optional[str] = None) -> str:
        record = self.files.get(file_id)
        units = self.units.list_by_file(file_id)
        return self.codec.write(units, record.path, output_path)

    def delete_file(self, file_id: str) -> None:
        self.files.get(file_id)
        self.units.delete_file(file_id)
        logger.info(f"Deleted units of file {file_id}")

    def list_project_files(self, project_id: str) -> List[FileRecord]:
        return self.files.list_by_project(project_id)

    def mark_processing(self, file_id: str) -> FileRecord:
        record = self.files.get(file_id)
        record.status = FileStatus.PROCESSING
        record.processing_started_at = utcnow()
        record.processing_completed_at = None
        return self.files.update(record)

    def refresh_file_progress(self, file_id: str, finished: bool = False) -> FileProgress:
        """Recomputes the file aggregate from the current unit statuses."""
        progress = summarize_file(self.units.list_by_file(file_id))
        record = self.files.get(file_id)
        record.progress = progress.percentage
        record.translated_count = progress.translated
        record.failed_count = progress.failed
        record.error_details = progress.error_details
        if finished or progress.status in (FileStatus.ERROR, FileStatus.COMPLETED) \
                or record.status != FileStatus.PROCESSING:
            record.status = progress.status
        if finished:
            record.processing_completed_at = utcnow()
        self.files.update(record)
        return progress

    def mark_file_completed_if_done(self, file_id: str) -> bool:
        units = self.units.list_by_file(file_id)
        if not units or any(u.status != SegmentStatus.COMPLETED for u in units):
            return False
        record = self.files.get(file_id)
        record.status = FileStatus.COMPLETED
        record.progress = 100
        self.files.update(record)
        logger.info(f"File {file_id} marked as completed")
        return True
