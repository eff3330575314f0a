"""
Client for the external document parser.

Both execution modes send the same request body: direct mode POSTs it to the
parser and returns the parsed result inline, queued mode publishes it through
QStash with callbacks to this service's parse webhooks.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from docquiz.domain.errors import QueueError
from docquiz.domain.models.api_models import ParseRequest, ParserResult
from docquiz.domain.models.db_models import File, ParsingJob
from docquiz.infrastructure.blob_store import BlobUrlSigner
from docquiz.infrastructure.qstash import QStashClient
from dq_utils.logger_utils import logger

DIRECT = "direct"
QUEUED = "queued"


@dataclass
class ParserDispatchResult:
    success: bool
    mode: str
    message_id: Optional[str] = None
    parsed_data: Optional[ParserResult] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False


def _normalize_page(page: Dict[str, Any], position: int) -> Dict[str, Any]:
    number = page.get("pageNumber", page.get("page_number", position))
    content = page.get("content", page.get("text", ""))
    return {"pageNumber": int(number), "content": content or ""}


def normalize_parser_response(payload: Dict[str, Any]) -> ParserResult:
    """
    One internal shape for the parser's direct JSON body and for a decoded
    webhook payload (which additionally carries job_id).
    """
    data = payload.get("data") or {}
    error = payload.get("error") or {}
    if isinstance(error, str):
        error = {"message": error}

    success = bool(payload.get("success", bool(data) and not error))
    pages = [_normalize_page(page, i + 1) for i, page in enumerate(data.get("pages") or [])]
    page_count = len(pages) or int(data.get("pageCount") or data.get("page_count") or 0)

    return ParserResult(
        success=success,
        file_id=payload.get("file_id") or payload.get("fileId"),
        job_id=payload.get("job_id") or payload.get("jobId"),
        text=data.get("text") or "",
        pages=pages,
        page_count=page_count,
        metadata=data.get("metadata") or {},
        metrics=payload.get("processing_metrics") or {},
        error_code=error.get("code"),
        error_message=error.get("message"),
        retryable=bool(error.get("retry_able", error.get("retryable", False))),
    )


class ParserClient:
    def __init__(self, settings, queue: QStashClient, signer: BlobUrlSigner):
        self.settings = settings
        self.queue = queue
        self.signer = signer

    @property
    def base_url(self) -> str:
        return self.settings.PARSER_SERVICE_URL.rstrip("/")

    @property
    def app_url(self) -> str:
        return self.settings.APP_URL.rstrip("/")

    def file_url(self, file: File) -> str:
        """Download route for the raw upload; signed outside development."""
        url = f"{self.app_url}/api/files/download/{quote(file.blob_key)}"
        if self.settings.is_development:
            return url
        return f"{url}?token={self.signer.sign(file.blob_key)}"

    def build_parse_request(self, file: File) -> ParseRequest:
        classification = file.classification
        return ParseRequest(
            file_id=file.id,
            file_url=self.file_url(file),
            mime_type=file.mime_type,
            language=classification.language.value,
            subject=classification.subject.value,
            document_type=classification.document_type.value,
        )

    def should_call_directly(self, file: File) -> bool:
        return self.settings.is_development or file.size < self.settings.DIRECT_PROCESSING_THRESHOLD_BYTES

    def queue_or_call_parser(self, file: File, job: ParsingJob) -> ParserDispatchResult:
        if self.should_call_directly(file):
            return self.call_parser_directly(file, job)
        return self.queue_parse(file, job)

    def call_parser_directly(self, file: File, job: ParsingJob) -> ParserDispatchResult:
        if not self.base_url:
            return ParserDispatchResult(False, DIRECT, error="Parser service URL is not configured",
                                        error_code="PARSER_NOT_CONFIGURED")

        body = self.build_parse_request(file).model_dump()
        logger.info("Calling parser directly", extra={"file_id": file.id, "job_id": job.id})
        try:
            response = requests.post(
                f"{self.base_url}/api/v1/parse",
                json=body,
                timeout=self.settings.PARSER_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            logger.error("Parser unreachable", extra={"file_id": file.id, "error": str(e)})
            return ParserDispatchResult(False, DIRECT, error=f"Parser service unavailable: {e}",
                                        error_code="PARSER_UNAVAILABLE", retryable=True)

        if not response.ok:
            logger.error("Parser returned an error", extra={"file_id": file.id, "status": response.status_code})
            return ParserDispatchResult(False, DIRECT, error=f"Parser service error: {response.text}",
                                        error_code="PARSE_ERROR", retryable=response.status_code >= 500)

        try:
            result = normalize_parser_response(response.json())
        except ValueError:
            return ParserDispatchResult(False, DIRECT, error="Parser service returned invalid JSON",
                                        error_code="PARSE_ERROR", retryable=True)

        if not result.success:
            return ParserDispatchResult(
                False, DIRECT,
                message_id=f"direct-{job.id}",
                parsed_data=result,
                error=result.error_message or "Document parsing failed",
                error_code=result.error_code or "PARSE_ERROR",
                retryable=result.retryable,
            )
        return ParserDispatchResult(True, DIRECT, message_id=f"direct-{job.id}", parsed_data=result)

    def queue_parse(self, file: File, job: ParsingJob) -> ParserDispatchResult:
        if not self.base_url:
            return ParserDispatchResult(False, QUEUED, error="Parser service URL is not configured",
                                        error_code="PARSER_NOT_CONFIGURED")

        job_query = f"job_id={quote(job.id)}"
        try:
            message_id = self.queue.publish(
                f"{self.base_url}/api/v1/parse/qstash",
                self.build_parse_request(file).model_dump(),
                delay_seconds=0,
                callback_url=f"{self.app_url}/api/files/parse-complete?{job_query}",
                failure_callback_url=f"{self.app_url}/api/files/parse-failed?{job_query}",
                retries=self.settings.PARSING_RETRIES,
            )
        except QueueError as e:
            return ParserDispatchResult(False, QUEUED, error=e.message, error_code=e.code, retryable=True)
        return ParserDispatchResult(True, QUEUED, message_id=message_id)
