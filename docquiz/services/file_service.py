from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from docquiz.domain.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from docquiz.domain.models.db_models import File, FileStatus, ParsedContent, ParsingJob
from docquiz.domain.repositories import (
    IFileRepository, IGenerationJobRepository, IParsingJobRepository,
    IQuizIndexRepository, IQuizRepository,
)
from docquiz.infrastructure.blob_store import BlobStore
from docquiz.services.webhook_service import ParseResultService
from dq_utils.file_utils import parsed_key
from dq_utils.logger_utils import logger

STALE_JOB_MESSAGE = "Document parsing timed out"


def get_owned_file(files: IFileRepository, file_id: str, user_id: str) -> File:
    file = files.get_by_id(file_id)
    if file is None:
        raise NotFoundError("File", file_id)
    if file.owner_id != user_id:
        raise ForbiddenError("You do not have access to this file")
    return file


def load_parsed_content(blob_store: BlobStore, file_id: str) -> Optional[ParsedContent]:
    raw = blob_store.get(parsed_key(file_id))
    if raw is None:
        return None
    return ParsedContent.from_json_bytes(raw)


class FileService:
    def __init__(
        self,
        settings,
        files: IFileRepository,
        parsing_jobs: IParsingJobRepository,
        generation_jobs: IGenerationJobRepository,
        quiz_index: IQuizIndexRepository,
        quizzes: IQuizRepository,
        blob_store: BlobStore,
        results: ParseResultService,
    ):
        self.settings = settings
        self.files = files
        self.parsing_jobs = parsing_jobs
        self.generation_jobs = generation_jobs
        self.quiz_index = quiz_index
        self.quizzes = quizzes
        self.blob_store = blob_store
        self.results = results

    def get_file(self, file_id: str, user_id: str) -> Dict[str, Any]:
        file = get_owned_file(self.files, file_id, user_id)
        data: Dict[str, Any] = {"file": file.to_api()}
        if file.status != FileStatus.COMPLETED:
            data["message"] = f"File is {file.status.value}. Content will be available once processing completes."
            return data

        content = load_parsed_content(self.blob_store, file.id)
        if content is None:
            data["message"] = "Parsed content is not available"
        else:
            data["content"] = content.model_dump(by_alias=True, mode="json")
        return data

    def list_files(self, user_id: str, status: Optional[str] = None,
                   limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        status_filter = None
        if status:
            try:
                status_filter = FileStatus(status)
            except ValueError:
                raise BadRequestError(f"Invalid status filter '{status}'") from None
        limit = max(1, min(limit, 100))
        offset = max(0, offset)

        listed = []
        for file in self.files.list_by_owner(user_id, status_filter, limit, offset):
            item = file.to_api()
            item["hasContent"] = file.status == FileStatus.COMPLETED and self.blob_store.head(parsed_key(file.id))
            listed.append(item)
        return listed

    def download(self, key: str) -> Optional[bytes]:
        return self.blob_store.get(key)

    def delete_file(self, file_id: str, user_id: str) -> None:
        """Remove the file's blobs, jobs and quizzes, then the file row itself."""
        file = get_owned_file(self.files, file_id, user_id)

        self.blob_store.delete(file.blob_key)
        self.blob_store.delete(parsed_key(file.id))
        parsing = self.parsing_jobs.delete_for_file(file.id)
        generation = self.generation_jobs.delete_for_file(file.id)
        self.quiz_index.delete_for_file(file.id)
        quizzes = self.quizzes.delete_for_file(file.id)
        self.files.delete(file.id)
        logger.info(
            "File deleted",
            extra={
                "file_id": file.id,
                "parsing_jobs": parsing,
                "generation_jobs": generation,
                "quizzes": quizzes,
            },
        )

    def prepare_reprocessing(self, file_id: str, user_id: str) -> tuple:
        """Reset a failed file to pending and open a fresh parsing job for it."""
        file = get_owned_file(self.files, file_id, user_id)
        if file.status != FileStatus.ERROR:
            raise BadRequestError("Only files that failed processing can be reprocessed")
        if self.parsing_jobs.has_active_for_file(file.id):
            raise ConflictError("File already has a parsing job in progress")
        if file.classification is None:
            raise BadRequestError("File is missing its classification and must be uploaded again")
        if not self.blob_store.head(file.blob_key):
            raise NotFoundError("Uploaded content", file.id)
        if not self.files.reset_for_reprocessing(file.id):
            raise ConflictError("File status changed, please retry")

        job = ParsingJob(file_id=file.id, owner_id=user_id)
        self.parsing_jobs.create(job)
        logger.info("File requeued for parsing", extra={"file_id": file.id, "job_id": job.id})
        return self.files.get_by_id(file.id), job

    def expire_stale_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """Fail parsing jobs whose callback never arrived so their files reach a terminal state."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self.settings.STALE_JOB_MINUTES)
        expired = []
        for job in self.parsing_jobs.find_stale(cutoff, self.settings.STALE_JOB_BATCH_SIZE):
            if self.results.apply_failure(job, STALE_JOB_MESSAGE):
                expired.append(job.id)
        if expired:
            logger.warning("Expired stale parsing jobs", extra={"job_ids": expired})
        return expired
