from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from werkzeug.datastructures import FileStorage

from docquiz.domain.errors import BadRequestError, InternalError, RateLimitedError, UnprocessableError
from docquiz.domain.models.db_models import (
    Classification, DocumentType, File, FileStatus, Language, ParsingJob, Subject, UserTier,
)
from docquiz.domain.repositories import IFileRepository, IParsingJobRepository, IUserRepository
from docquiz.infrastructure.blob_store import BlobStore
from docquiz.services.parser_client import DIRECT, QUEUED, ParserClient
from docquiz.services.rate_limiter import RateLimiter
from docquiz.services.webhook_service import ParseResultService
from dq_utils.file_utils import measure_stream, secure_name, upload_key
from dq_utils.logger_utils import logger
from dq_utils.validation import MISSING, validate_choice, validate_upload

DIRECT_SUCCESS_MESSAGE = "Document processed successfully!"
QUEUED_SUCCESS_MESSAGE = "Your document is being processed. We'll notify you when it's ready!"

CLASSIFICATION_FIELDS = (
    ("language", Language),
    ("subject", Subject),
    ("documentType", DocumentType),
)


@dataclass
class UploadOutcome:
    file: File
    parsing_job_id: str
    mode: str
    message: str
    success: bool = True
    message_id: Optional[str] = None
    content: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None
    retryable: bool = False

    def to_api(self) -> Dict[str, Any]:
        data = {
            "file": self.file.to_api(),
            "parsingJobId": self.parsing_job_id,
            "mode": self.mode,
            "message": self.message,
        }
        if self.message_id and self.mode == QUEUED:
            data["messageId"] = self.message_id
        if self.content is not None:
            data["content"] = self.content
        return data


def _raise_violation(violation) -> None:
    kind, message = violation
    if kind == MISSING:
        raise BadRequestError(message)
    raise UnprocessableError(message)


def parse_classification(form: Mapping[str, Any]) -> Classification:
    """Missing fields are a 400, values outside the enumeration a 422."""
    for field, enum in CLASSIFICATION_FIELDS:
        violation = validate_choice(field, form.get(field), [member.value for member in enum])
        if violation:
            _raise_violation(violation)
    return Classification(
        language=form["language"],
        subject=form["subject"],
        document_type=form["documentType"],
    )


class UploadService:
    def __init__(
        self,
        settings,
        users: IUserRepository,
        files: IFileRepository,
        parsing_jobs: IParsingJobRepository,
        blob_store: BlobStore,
        parser: ParserClient,
        results: ParseResultService,
        rate_limiter: RateLimiter,
    ):
        self.settings = settings
        self.users = users
        self.files = files
        self.parsing_jobs = parsing_jobs
        self.blob_store = blob_store
        self.parser = parser
        self.results = results
        self.rate_limiter = rate_limiter

    def upload(self, upload: Optional[FileStorage], form: Mapping[str, Any], owner_id: str) -> UploadOutcome:
        if upload is None or not upload.filename:
            raise BadRequestError("No file provided")
        size = measure_stream(upload.stream)
        violation = validate_upload(upload.mimetype, size, self.settings.MAX_UPLOAD_BYTES)
        if violation:
            _raise_violation(violation)
        classification = parse_classification(form)

        user = self.users.get_by_id(owner_id)
        tier = user.tier if user else UserTier.FREE
        limit = self.rate_limiter.check_upload(owner_id, tier)
        if not limit.allowed:
            raise RateLimitedError("Upload limit reached, please try again later", retry_after=limit.retry_after)

        file = File(
            owner_id=owner_id,
            name=secure_name(upload.filename),
            blob_key="",
            size=size,
            mime_type=upload.mimetype,
            language=classification.language,
            subject=classification.subject,
            document_type=classification.document_type,
        )
        file.blob_key = upload_key(file.id, upload.filename)

        self.blob_store.put(file.blob_key, upload.stream.read(), upload.mimetype)
        try:
            self.files.create(file)
            job = ParsingJob(file_id=file.id, owner_id=owner_id)
            self.parsing_jobs.create(job)
        except Exception:
            logger.error("Ledger insert failed, removing uploaded blob", extra={"file_id": file.id})
            self.blob_store.delete(file.blob_key)
            raise

        logger.info(
            "File uploaded",
            extra={"file_id": file.id, "job_id": job.id, "owner_id": owner_id, "size": size},
        )
        return self.dispatch(file, job)

    def dispatch(self, file: File, job: ParsingJob) -> UploadOutcome:
        """Route a queued parsing job to the parser, directly or through the queue."""
        direct = self.parser.should_call_directly(file)
        if direct:
            self.parsing_jobs.mark_processing(job.id)
            self.files.transition(file.id, FileStatus.PROCESSING)

        result = self.parser.queue_or_call_parser(file, job)
        logger.info(
            "Parser dispatched",
            extra={"file_id": file.id, "job_id": job.id, "mode": result.mode, "success": result.success},
        )

        if result.mode == DIRECT:
            if result.success:
                self.results.apply_success(job, result.parsed_data)
                parsed = result.parsed_data
                return UploadOutcome(
                    file=self._reload(file),
                    parsing_job_id=job.id,
                    mode=DIRECT,
                    message=DIRECT_SUCCESS_MESSAGE,
                    message_id=result.message_id,
                    content={
                        "text": parsed.text,
                        "pageCount": len(parsed.pages) or parsed.page_count or 1,
                        "pages": parsed.pages,
                        "metadata": parsed.metadata,
                    },
                )

            self.results.apply_failure(job, result.error)
            return UploadOutcome(
                file=self._reload(file),
                parsing_job_id=job.id,
                mode=DIRECT,
                message=result.error or "Document parsing failed",
                success=False,
                error_code=result.error_code or "PARSE_ERROR",
                retryable=result.retryable,
            )

        if not result.success:
            self.results.apply_failure(job, result.error)
            raise InternalError(f"Failed to queue document for parsing: {result.error}")

        self.parsing_jobs.set_message_id(job.id, result.message_id)
        return UploadOutcome(
            file=self._reload(file),
            parsing_job_id=job.id,
            mode=QUEUED,
            message=QUEUED_SUCCESS_MESSAGE,
            message_id=result.message_id,
        )

    def _reload(self, file: File) -> File:
        return self.files.get_by_id(file.id) or file
