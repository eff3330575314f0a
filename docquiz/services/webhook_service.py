"""
Applies parser results to the ledger and blob store.

Used by the parse webhooks and by the direct upload path. Every write that
closes a job is conditional on the job still being active, so redelivered
or racing callbacks leave a finished job untouched.
"""
from typing import Any, Dict, Optional

from docquiz.domain.errors import BadRequestError, NotFoundError
from docquiz.domain.models.api_models import ParserResult
from docquiz.domain.models.db_models import (
    ACTIVE_PARSING_STATUSES, FileStatus, ParsedContent, ParsedPage, ParsingJob,
)
from docquiz.domain.repositories import IFileRepository, IParsingJobRepository
from docquiz.infrastructure.blob_store import BlobStore
from docquiz.services.parser_client import normalize_parser_response
from dq_utils.file_utils import parsed_key
from dq_utils.logger_utils import logger

DEFAULT_FAILURE_MESSAGE = "Document parsing failed"


class ParseResultService:
    def __init__(self, files: IFileRepository, parsing_jobs: IParsingJobRepository, blob_store: BlobStore):
        self.files = files
        self.parsing_jobs = parsing_jobs
        self.blob_store = blob_store

    def apply_success(self, job: ParsingJob, result: ParserResult) -> bool:
        key = parsed_key(job.file_id)
        page_count = len(result.pages) or result.page_count or 1
        content = ParsedContent(
            text=result.text,
            page_count=page_count,
            pages=[ParsedPage(page_number=p["pageNumber"], content=p["content"]) for p in result.pages],
            metadata=result.metadata,
            file_id=job.file_id,
            # one value per job: every delivery for a job serializes the same bytes
            parsed_at=job.created_at,
        )
        self.blob_store.put(key, content.to_json_bytes(), "application/json")

        if not self.parsing_jobs.mark_completed(job.id, key, result.metrics or None):
            logger.info("Parsing job already closed, completion ignored", extra={"job_id": job.id})
            return False
        self.files.transition(job.file_id, FileStatus.COMPLETED, page_count=page_count)
        logger.info(
            "Parsing completed",
            extra={"job_id": job.id, "file_id": job.file_id, "page_count": page_count},
        )
        return True

    def apply_failure(self, job: ParsingJob, message: Optional[str]) -> bool:
        message = message or DEFAULT_FAILURE_MESSAGE
        if not self.parsing_jobs.mark_failed(job.id, message):
            logger.info("Parsing job already closed, failure ignored", extra={"job_id": job.id})
            return False
        self.files.transition(job.file_id, FileStatus.ERROR)
        logger.warning("Parsing failed", extra={"job_id": job.id, "file_id": job.file_id, "error": message})
        return True

    def handle_complete(self, payload: Dict[str, Any], job_id_hint: Optional[str] = None) -> Dict[str, Any]:
        result = normalize_parser_response(payload)
        job = self._resolve_job(result, job_id_hint)
        if job.status not in ACTIVE_PARSING_STATUSES:
            return {"status": "ignored", "jobId": job.id, "jobStatus": job.status.value}

        if not result.success:
            applied = self.apply_failure(job, result.error_message)
            return {"status": "failed" if applied else "ignored", "jobId": job.id}

        applied = self.apply_success(job, result)
        return {"status": "completed" if applied else "ignored", "jobId": job.id}

    def handle_failed(self, payload: Dict[str, Any], job_id_hint: Optional[str] = None) -> Dict[str, Any]:
        result = normalize_parser_response(payload)
        job = self._resolve_job(result, job_id_hint)
        if job.status not in ACTIVE_PARSING_STATUSES:
            return {"status": "ignored", "jobId": job.id, "jobStatus": job.status.value}

        applied = self.apply_failure(job, result.error_message)
        return {"status": "failed" if applied else "ignored", "jobId": job.id}

    def _resolve_job(self, result: ParserResult, job_id_hint: Optional[str]) -> ParsingJob:
        job_id = result.job_id or job_id_hint
        if not job_id:
            raise BadRequestError("Missing job_id in webhook payload")
        if not result.file_id:
            raise BadRequestError("Missing file_id in webhook payload")

        job = self.parsing_jobs.get_by_id(job_id)
        if job is None:
            raise NotFoundError("Parsing job", job_id)
        if result.file_id != job.file_id:
            raise BadRequestError(f"file_id '{result.file_id}' does not belong to job '{job_id}'")
        return job
