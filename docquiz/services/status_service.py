"""
Status projection for polling clients.

The progress/message tables are keyed by the status enums and checked for
completeness at import, so a new status cannot silently fall back to a default.
"""
from typing import Any, Dict, Optional, Tuple

from docquiz.domain.models.db_models import FileStatus, GenerationJob, GenerationStatus, ParsingStatus
from docquiz.domain.repositories import IFileRepository, IGenerationJobRepository, IParsingJobRepository
from docquiz.domain.errors import ForbiddenError, NotFoundError
from docquiz.infrastructure.blob_store import BlobStore
from docquiz.services.file_service import get_owned_file
from dq_utils.file_utils import parsed_key

# status -> (progress, message); None means "use the stored error"
PARSING_PROGRESS: Dict[ParsingStatus, Tuple[int, Optional[str]]] = {
    ParsingStatus.QUEUED: (10, "Document queued for parsing"),
    ParsingStatus.PROCESSING: (50, "Parsing document content..."),
    ParsingStatus.COMPLETED: (100, "Document parsing completed"),
    ParsingStatus.FAILED: (0, None),
}

FILE_PROGRESS: Dict[FileStatus, Tuple[int, Optional[str]]] = {
    FileStatus.PENDING: (10, "File uploaded, waiting to process"),
    FileStatus.PROCESSING: (50, "Parsing document content..."),
    FileStatus.COMPLETED: (100, "Document parsing completed"),
    FileStatus.ERROR: (0, None),
}

GENERATION_PROGRESS: Dict[GenerationStatus, Tuple[int, Optional[str]]] = {
    GenerationStatus.QUEUED: (10, "Quiz generation queued"),
    GenerationStatus.PROCESSING: (50, "Generating quiz questions..."),
    GenerationStatus.COMPLETED: (100, "Quiz generation completed"),
    GenerationStatus.FAILED: (0, None),
}

PARSING_FAILED_MESSAGE = "Document parsing failed"
GENERATION_FAILED_MESSAGE = "Quiz generation failed"

for _table, _enum in ((PARSING_PROGRESS, ParsingStatus), (FILE_PROGRESS, FileStatus),
                      (GENERATION_PROGRESS, GenerationStatus)):
    if set(_table) != set(_enum):
        raise RuntimeError(f"Progress table for {_enum.__name__} is incomplete")


def project(table, status, error: Optional[str], failure_message: str) -> Tuple[int, str]:
    progress, message = table[status]
    if message is None:
        message = error or failure_message
    return progress, message


class StatusService:
    def __init__(
        self,
        files: IFileRepository,
        parsing_jobs: IParsingJobRepository,
        generation_jobs: IGenerationJobRepository,
        blob_store: BlobStore,
    ):
        self.files = files
        self.parsing_jobs = parsing_jobs
        self.generation_jobs = generation_jobs
        self.blob_store = blob_store

    def get_status(self, file_id: str, user_id: str) -> Dict[str, Any]:
        file = get_owned_file(self.files, file_id, user_id)
        job = self.parsing_jobs.get_latest_for_file(file.id)

        # The job row is written before the file row, so it wins when present.
        if job is not None:
            status = job.status.value
            progress, message = project(PARSING_PROGRESS, job.status, job.error, PARSING_FAILED_MESSAGE)
            error = job.error
        else:
            status = file.status.value
            progress, message = project(FILE_PROGRESS, file.status, None, PARSING_FAILED_MESSAGE)
            error = None

        return {
            "fileId": file.id,
            "status": status,
            "progress": progress,
            "message": message,
            "hasContent": self.blob_store.head(parsed_key(file.id)),
            "pageCount": file.page_count,
            "jobId": job.id if job else None,
            "error": error,
        }

    def get_generation_status(self, job_id: str, user_id: str) -> Dict[str, Any]:
        job: Optional[GenerationJob] = self.generation_jobs.get_by_id(job_id)
        if job is None:
            raise NotFoundError("Generation job", job_id)
        if job.owner_id != user_id:
            raise ForbiddenError("You do not have access to this job")

        progress, message = project(GENERATION_PROGRESS, job.status, job.error, GENERATION_FAILED_MESSAGE)
        return {
            "id": job.id,
            "status": job.status.value,
            "progress": progress,
            "message": message,
            "error": job.error,
            "metadata": job.metadata,
            "retryCount": job.retry_count,
            "createdAt": job.created_at.isoformat(),
            "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        }
