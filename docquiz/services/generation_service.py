"""
Quiz generation pipeline.

A request creates a GenerationJob and publishes a delayed call to
/api/quiz/process. Processing selects the requested pages of the parsed
document, calls the configured AI provider and stores the quiz. Rate limits
and retryable provider failures put the job back in the queue with a delay,
at most GENERATION_MAX_RETRIES times.
"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from docquiz.domain.errors import (
    ApiError, BadRequestError, InternalError, NotFoundError, QueueError, RateLimitedError,
)
from docquiz.domain.models.api_models import GenerateQuizRequest, ProcessGenerationRequest
from docquiz.domain.models.db_models import (
    ACTIVE_GENERATION_STATUSES, FileStatus, GenerationJob, ParsedContent, Quiz,
    QuizConfig, QuizIndexEntry, QuizStatus, UserTier,
)
from docquiz.domain.repositories import (
    IFileRepository, IGenerationJobRepository, IQuizIndexRepository, IQuizRepository, IUserRepository,
)
from docquiz.infrastructure.blob_store import BlobStore
from docquiz.infrastructure.qstash import QStashClient
from docquiz.services.ai_client import ProviderRegistry, QuizGenerationRequest, classify_provider_error
from docquiz.services.file_service import get_owned_file, load_parsed_content
from docquiz.services.rate_limiter import RateLimiter, RateLimitResult
from dq_utils.logger_utils import logger

QUEUED_MESSAGE = "Quiz generation queued"


def build_config(raw: Optional[Dict[str, Any]]) -> QuizConfig:
    """Fill in defaults for anything the caller left out."""
    try:
        return QuizConfig.model_validate(raw or {})
    except ValidationError as e:
        raise BadRequestError(f"Invalid quiz config: {e.errors()[0]['msg']}") from e


def select_text(content: ParsedContent, from_page: Optional[int], to_page: Optional[int]) -> Tuple[str, bool]:
    """
    Text for the requested page range and whether the range could be applied.

    Without a per-page breakdown the whole text is returned and the second
    value is False.
    """
    full_text = content.text or "\n\n".join(page.content for page in content.pages)
    if from_page is None and to_page is None:
        return full_text, True

    if not content.pages:
        logger.warning(
            "No per-page breakdown, using full text for page range",
            extra={"file_id": content.file_id, "from_page": from_page, "to_page": to_page},
        )
        return full_text, False

    start = from_page or 1
    end = to_page or max(page.page_number for page in content.pages)
    selected = [page for page in content.pages if start <= page.page_number <= end]
    if not selected:
        raise BadRequestError(f"No pages found in range {start}-{end}", code="INVALID_PAGE_RANGE")
    return "\n\n".join(page.content for page in selected), True


class GenerationService:
    def __init__(
        self,
        settings,
        users: IUserRepository,
        files: IFileRepository,
        generation_jobs: IGenerationJobRepository,
        quiz_index: IQuizIndexRepository,
        quizzes: IQuizRepository,
        blob_store: BlobStore,
        queue: QStashClient,
        providers: ProviderRegistry,
        rate_limiter: RateLimiter,
        local_dispatcher: Optional[Callable[[Dict[str, Any], int], None]] = None,
    ):
        self.settings = settings
        self.users = users
        self.files = files
        self.generation_jobs = generation_jobs
        self.quiz_index = quiz_index
        self.quizzes = quizzes
        self.blob_store = blob_store
        self.queue = queue
        self.providers = providers
        self.rate_limiter = rate_limiter
        self.local_dispatcher = local_dispatcher or self._dispatch_in_background

    @property
    def process_url(self) -> str:
        return f"{self.settings.APP_URL.rstrip('/')}/api/quiz/process"

    @property
    def max_retries(self) -> int:
        return self.settings.GENERATION_MAX_RETRIES

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------
    def request_generation(self, request: GenerateQuizRequest, user_id: str) -> Dict[str, Any]:
        file = get_owned_file(self.files, request.file_id, user_id)
        if file.status != FileStatus.COMPLETED:
            raise BadRequestError("File processing not completed")
        self._check_page_range(request.from_page, request.to_page, file.page_count)
        config = build_config(request.config)

        job = GenerationJob(
            file_id=file.id,
            owner_id=user_id,
            metadata={
                "fromPage": request.from_page,
                "toPage": request.to_page,
                "config": config.model_dump(by_alias=True, mode="json"),
            },
        )
        self.generation_jobs.create(job)

        body = ProcessGenerationRequest(
            file_id=file.id,
            user_id=user_id,
            job_id=job.id,
            from_page=request.from_page,
            to_page=request.to_page,
            config=config.model_dump(by_alias=True, mode="json"),
            retry_count=0,
        ).model_dump(by_alias=True)

        try:
            self._enqueue(job.id, body, self.settings.GENERATION_INITIAL_DELAY_SECONDS)
        except QueueError as e:
            self.generation_jobs.mark_failed(job.id, f"Failed to queue quiz generation: {e.message}")
            raise

        logger.info("Quiz generation requested", extra={"job_id": job.id, "file_id": file.id, "user_id": user_id})
        return {"jobId": job.id, "message": QUEUED_MESSAGE}

    @staticmethod
    def _check_page_range(from_page: Optional[int], to_page: Optional[int], page_count: Optional[int]) -> None:
        if from_page is not None and from_page < 1:
            raise BadRequestError("fromPage must be at least 1", code="INVALID_PAGE_RANGE")
        if from_page is not None and to_page is not None and to_page < from_page:
            raise BadRequestError("toPage must not be before fromPage", code="INVALID_PAGE_RANGE")
        if page_count and ((from_page or 1) > page_count or (to_page or 1) > page_count):
            raise BadRequestError(f"Page range exceeds the document's {page_count} pages",
                                  code="INVALID_PAGE_RANGE")

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    def process(self, request: ProcessGenerationRequest) -> Dict[str, Any]:
        job = self.generation_jobs.get_by_id(request.job_id)
        if job is None:
            raise NotFoundError("Generation job", request.job_id)
        if job.file_id != request.file_id or job.owner_id != request.user_id:
            raise BadRequestError("Job does not match the supplied file or user")
        if job.status not in ACTIVE_GENERATION_STATUSES:
            logger.info("Generation job already closed, delivery ignored", extra={"job_id": job.id})
            return {"status": "ignored", "jobStatus": job.status.value}

        try:
            provider = self.providers.get(self.settings.DQ_DEFAULT_PROVIDER)
        except ApiError as e:
            self.generation_jobs.mark_failed(job.id, e.message)
            logger.error("No client for the configured AI provider", extra={"job_id": job.id, "error": e.message})
            raise

        if not self.generation_jobs.mark_processing(job.id, self._claim_cutoff()):
            logger.info("Generation job held by another delivery, ignored", extra={"job_id": job.id})
            return {"status": "ignored"}

        # the ledger, not the message body, decides how many retries were used
        retry_count = job.retry_count
        try:
            limit = self._check_limits(request.user_id, provider.name)
            if limit.allowed:
                return self._generate(job, request, provider)
        except ApiError as e:
            if e.retryable and retry_count < self.max_retries:
                delay = self.settings.GENERATION_RETRY_BASE_SECONDS * (2 ** retry_count)
                return self._schedule_retry(job, request, retry_count + 1, delay, e.message)
            self.generation_jobs.mark_failed(job.id, e.message)
            logger.error("Quiz generation failed", extra={"job_id": job.id, "code": e.code, "error": e.message})
            raise
        except Exception as e:
            self.generation_jobs.mark_failed(job.id, "Unexpected error during quiz generation")
            logger.error("Quiz generation crashed", extra={"job_id": job.id, "error": str(e)}, exc_info=True)
            raise InternalError("Unexpected error during quiz generation") from e

        if retry_count < self.max_retries:
            delay = limit.retry_after or self.settings.GENERATION_RETRY_BASE_SECONDS
            return self._schedule_retry(job, request, retry_count + 1, delay,
                                        f"Rate limited ({limit.key})", status="rate_limited")
        self.generation_jobs.mark_failed(job.id, "Rate limit exceeded")
        raise RateLimitedError("Rate limit exceeded", retry_after=limit.retry_after or 60)

    def _claim_cutoff(self) -> datetime:
        """A processing claim older than this is treated as abandoned."""
        return datetime.now(timezone.utc) - timedelta(seconds=self.settings.GENERATION_CLAIM_TIMEOUT_SECONDS)

    def _check_limits(self, user_id: str, provider_name: str) -> RateLimitResult:
        user = self.users.get_by_id(user_id)
        tier = user.tier if user else UserTier.FREE
        return self.rate_limiter.check_generation(user_id, tier, provider_name)

    def _generate(self, job: GenerationJob, request: ProcessGenerationRequest, provider) -> Dict[str, Any]:
        file = self.files.get_by_id(job.file_id)
        if file is None:
            raise NotFoundError("File", job.file_id)
        content = load_parsed_content(self.blob_store, job.file_id)
        if content is None:
            raise NotFoundError("Parsed content", job.file_id)

        text, range_applied = select_text(content, request.from_page, request.to_page)
        config = build_config(request.config)

        try:
            generated = provider.generate_quiz(QuizGenerationRequest(
                text=text, config=config, topic=content.metadata.get("subject"),
            ))
        except Exception as e:
            raise classify_provider_error(e, provider.name) from e

        page_count = file.page_count or content.page_count or 1
        quiz = Quiz(
            user_id=job.owner_id,
            file_id=job.file_id,
            title=generated.title or f"Quiz: {file.name}",
            topic=content.metadata.get("subject") or generated.topic,
            from_page=request.from_page or 1,
            to_page=request.to_page or page_count,
            provider=generated.provider,
            model=generated.model,
            status=QuizStatus.READY,
            config=config,
            questions=generated.questions,
        )
        self.quizzes.save(quiz)
        self.quiz_index.create(QuizIndexEntry(
            id=quiz.id,
            file_id=quiz.file_id,
            user_id=quiz.user_id,
            from_page=quiz.from_page,
            to_page=quiz.to_page,
            topic=quiz.topic,
            model=quiz.model,
            status=QuizStatus.READY,
        ))

        metadata = dict(job.metadata)
        metadata.update({
            "quizId": quiz.id,
            "provider": generated.provider,
            "model": generated.model,
            "tokensUsed": generated.tokens_used,
            "cost": generated.cost,
            "questionsGenerated": len(generated.questions),
            "pageRangeApplied": range_applied,
        })
        if not self.generation_jobs.mark_completed(job.id, metadata):
            # another delivery closed the job first; its result stands
            self.quiz_index.delete(quiz.id)
            self.quizzes.delete(quiz.id)
            logger.warning("Generation job closed during generation, quiz discarded",
                           extra={"job_id": job.id, "quiz_id": quiz.id})
            return {"status": "ignored"}

        logger.info(
            "Quiz generation completed",
            extra={"job_id": job.id, "quiz_id": quiz.id, "tokens": generated.tokens_used},
        )
        return {"status": "completed", "quizId": quiz.id, "questionsGenerated": len(generated.questions)}

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _schedule_retry(self, job: GenerationJob, request: ProcessGenerationRequest, attempt: int,
                        delay: int, reason: str, status: str = "retrying") -> Dict[str, Any]:
        if not self.generation_jobs.reschedule(job.id, attempt, reason):
            return {"status": "ignored"}

        body = request.model_dump(by_alias=True)
        body["retryCount"] = attempt
        try:
            self._enqueue(job.id, body, delay)
        except QueueError as e:
            self.generation_jobs.mark_failed(job.id, f"Failed to schedule retry: {e.message}")
            raise

        logger.warning(
            "Quiz generation rescheduled",
            extra={"job_id": job.id, "attempt": attempt, "delay": delay, "reason": reason},
        )
        result: Dict[str, Any] = {"status": status, "attempt": attempt, "delay": delay}
        if status == "rate_limited":
            result["retryAfter"] = delay
        return result

    def _enqueue(self, job_id: str, body: Dict[str, Any], delay: int) -> Optional[str]:
        try:
            message_id = self.queue.publish(self.process_url, body, delay_seconds=delay)
        except QueueError as e:
            if not self.settings.is_development:
                raise
            logger.warning(
                "Queue unavailable, running quiz generation in-process (development only)",
                extra={"job_id": job_id, "error": e.message},
            )
            self.local_dispatcher(body, delay)
            return None
        self.generation_jobs.set_message_id(job_id, message_id)
        return message_id

    def _dispatch_in_background(self, body: Dict[str, Any], delay: int) -> None:
        def run():
            try:
                self.process(ProcessGenerationRequest.model_validate(body))
            except Exception:
                logger.error("In-process quiz generation failed", extra={"job_id": body.get("jobId")},
                             exc_info=True)

        timer = threading.Timer(delay, run)
        timer.daemon = True
        timer.start()
