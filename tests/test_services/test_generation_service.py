"""Tests for quiz generation: requesting, processing and retry scheduling."""
import time
from datetime import datetime, timedelta, timezone

import pytest

from docquiz.domain.errors import (
    BadRequestError, ForbiddenError, InternalError, NotFoundError,
    ProviderNotConfiguredError, ProviderQuotaExceededError, ProviderRateLimitedError, QueueError,
    RateLimitedError,
)
from docquiz.domain.models.api_models import GenerateQuizRequest, ProcessGenerationRequest
from docquiz.domain.models.db_models import FileStatus, GenerationStatus, ParsedContent, ParsedPage
from docquiz.services.generation_service import select_text
from dq_utils.file_utils import parsed_key
from tests.conftest import OTHER_USER_ID, USER_ID, make_services, make_settings
from tests.fakes import FakeProvider
from tests.helpers import seed_parsed_file


def _request(services, file, **fields):
    return services.generation.request_generation(GenerateQuizRequest(file_id=file.id, **fields), USER_ID)


def _last_delivery(services):
    return ProcessGenerationRequest.model_validate(services.queue.published[-1]["body"])


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(settings, provider):
    return make_services(settings, provider)


class TestRequestGeneration:
    def test_request_creates_job_and_publishes_delayed_call(self, services):
        file = seed_parsed_file(services, USER_ID)

        result = _request(services, file, from_page=2, to_page=4, config={"numQuestions": 5})

        assert result["message"] == "Quiz generation queued"
        job = services.generation_jobs.get_by_id(result["jobId"])
        assert job.status == GenerationStatus.QUEUED
        assert job.message_id == "msg-1"
        assert job.metadata["fromPage"] == 2
        assert job.metadata["config"]["numQuestions"] == 5

        published = services.queue.published[0]
        assert published["destination"] == "https://app.example.com/api/quiz/process"
        assert published["delay"] == 1
        assert published["body"]["jobId"] == job.id
        assert published["body"]["userId"] == USER_ID
        assert published["body"]["retryCount"] == 0

    def test_config_defaults_are_filled_in(self, services):
        file = seed_parsed_file(services, USER_ID)
        result = _request(services, file)
        config = services.generation_jobs.get_by_id(result["jobId"]).metadata["config"]
        assert config["numQuestions"] == 10
        assert config["questionTypes"] == ["multiple-choice", "true-false"]
        assert config["includeExplanations"] is True

    def test_unknown_file_is_not_found(self, services):
        with pytest.raises(NotFoundError):
            services.generation.request_generation(GenerateQuizRequest(file_id="missing"), USER_ID)

    def test_someone_elses_file_is_forbidden(self, services):
        file = seed_parsed_file(services, OTHER_USER_ID)
        with pytest.raises(ForbiddenError):
            _request(services, file)

    def test_unparsed_file_is_rejected(self, services):
        file = seed_parsed_file(services, USER_ID, status=FileStatus.PROCESSING)
        with pytest.raises(BadRequestError, match="File processing not completed"):
            _request(services, file)
        assert services.queue.published == []

    @pytest.mark.parametrize("from_page,to_page", [(0, 2), (5, 3), (11, 12), (1, 11)])
    def test_invalid_page_ranges_are_rejected(self, services, from_page, to_page):
        file = seed_parsed_file(services, USER_ID)
        with pytest.raises(BadRequestError) as exc_info:
            _request(services, file, from_page=from_page, to_page=to_page)
        assert exc_info.value.code == "INVALID_PAGE_RANGE"

    def test_bad_config_is_rejected(self, services):
        file = seed_parsed_file(services, USER_ID)
        with pytest.raises(BadRequestError, match="Invalid quiz config"):
            _request(services, file, config={"numQuestions": 0})

    def test_queue_failure_in_production_fails_the_job(self, services):
        file = seed_parsed_file(services, USER_ID)
        services.queue.fail_with = "QStash publish failed: 500"

        with pytest.raises(QueueError):
            _request(services, file)

        [job] = services.generation_jobs.jobs.values()
        assert job.status == GenerationStatus.FAILED
        assert job.error.startswith("Failed to queue quiz generation")

    def test_queue_failure_in_development_runs_in_process(self):
        services = make_services(make_settings(FLASK_ENV="development"))
        file = seed_parsed_file(services, USER_ID)
        services.queue.fail_with = "Message queue is not configured"
        dispatched = []
        services.generation.local_dispatcher = lambda body, delay: dispatched.append((body, delay))

        result = _request(services, file)

        [(body, delay)] = dispatched
        assert body["jobId"] == result["jobId"]
        assert delay == 1
        assert services.generation_jobs.get_by_id(result["jobId"]).status == GenerationStatus.QUEUED


class TestProcess:
    def test_page_range_limits_the_text_sent_to_the_provider(self, services, provider):
        file = seed_parsed_file(services, USER_ID, pages=10)
        _request(services, file, from_page=3, to_page=3)

        result = services.generation.process(_last_delivery(services))

        assert result["status"] == "completed"
        [prompt] = provider.prompts
        assert "Content of page 3" in prompt
        assert "Content of page 2" not in prompt
        assert "Content of page 4" not in prompt
        quiz = services.quizzes.get_by_id(result["quizId"])
        assert (quiz.from_page, quiz.to_page) == (3, 3)

    def test_completed_job_records_generation_metadata(self, services):
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)

        result = services.generation.process(_last_delivery(services))

        job = services.generation_jobs.get_by_id(request["jobId"])
        assert job.status == GenerationStatus.COMPLETED
        assert job.metadata["quizId"] == result["quizId"]
        assert job.metadata["provider"] == "gemini"
        assert job.metadata["model"] == "fake-model"
        assert job.metadata["tokensUsed"] == 1000
        assert job.metadata["cost"] == pytest.approx(0.000075)
        assert job.metadata["questionsGenerated"] == 2
        assert job.metadata["pageRangeApplied"] is True

        entry = services.quiz_index.entries[result["quizId"]]
        assert entry.file_id == file.id
        assert (entry.from_page, entry.to_page) == (1, 10)

    def test_true_false_answers_are_stored_as_strings(self, services):
        file = seed_parsed_file(services, USER_ID)
        _request(services, file)

        result = services.generation.process(_last_delivery(services))

        stored = services.quizzes.docs[result["quizId"]]["questions"]
        assert stored[0]["correct_answer"] == 1
        assert stored[1]["correct_answer"] == "false"
        assert stored[1]["options"] is None

    def test_missing_page_breakdown_falls_back_to_full_text(self, services, provider):
        file = seed_parsed_file(services, USER_ID, pages=5, with_pages=False)
        request = _request(services, file, from_page=2, to_page=3)

        services.generation.process(_last_delivery(services))

        assert "Content of page 1" in provider.prompts[0]
        job = services.generation_jobs.get_by_id(request["jobId"])
        assert job.metadata["pageRangeApplied"] is False

    def test_redelivery_after_completion_is_ignored(self, services, provider):
        file = seed_parsed_file(services, USER_ID)
        _request(services, file)
        delivery = _last_delivery(services)
        services.generation.process(delivery)

        result = services.generation.process(delivery)

        assert result == {"status": "ignored", "jobStatus": "completed"}
        assert len(services.quizzes.docs) == 1
        assert len(provider.prompts) == 1

    def test_unregistered_provider_fails_the_job(self):
        services = make_services(make_settings(DQ_DEFAULT_PROVIDER="openai"))
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)

        with pytest.raises(ProviderNotConfiguredError):
            services.generation.process(_last_delivery(services))

        job = services.generation_jobs.get_by_id(request["jobId"])
        assert job.status == GenerationStatus.FAILED
        assert job.error == "Unsupported AI provider: openai"

    def test_delivery_during_generation_is_ignored(self, services, provider):
        file = seed_parsed_file(services, USER_ID)
        _request(services, file)
        delivery = _last_delivery(services)
        overlapping = []
        complete = provider._complete

        def complete_with_redelivery(prompt):
            overlapping.append(services.generation.process(delivery))
            return complete(prompt)

        provider._complete = complete_with_redelivery
        result = services.generation.process(delivery)

        assert overlapping == [{"status": "ignored"}]
        assert result["status"] == "completed"
        assert list(services.quizzes.docs) == [result["quizId"]]
        assert list(services.quiz_index.entries) == [result["quizId"]]
        assert len(provider.prompts) == 1

    def test_abandoned_claim_is_taken_over(self, services):
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)
        job = services.generation_jobs.jobs[request["jobId"]]
        job.status = GenerationStatus.PROCESSING
        job.started_at = datetime.now(timezone.utc) - timedelta(seconds=30)

        assert services.generation.process(_last_delivery(services)) == {"status": "ignored"}

        job.started_at = datetime.now(timezone.utc) - timedelta(minutes=11)
        assert services.generation.process(_last_delivery(services))["status"] == "completed"

    def test_quiz_is_discarded_when_the_job_closes_meanwhile(self, services, provider):
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)
        complete = provider._complete

        def complete_after_close(prompt):
            services.generation_jobs.mark_failed(request["jobId"], "Closed elsewhere")
            return complete(prompt)

        provider._complete = complete_after_close
        result = services.generation.process(_last_delivery(services))

        assert result == {"status": "ignored"}
        assert services.quizzes.docs == {}
        assert services.quiz_index.entries == {}
        job = services.generation_jobs.get_by_id(request["jobId"])
        assert job.status == GenerationStatus.FAILED
        assert job.error == "Closed elsewhere"

    def test_unknown_job_is_not_found(self, services):
        with pytest.raises(NotFoundError):
            services.generation.process(ProcessGenerationRequest(file_id="f", user_id=USER_ID, job_id="nope"))

    def test_mismatched_user_is_rejected(self, services):
        file = seed_parsed_file(services, USER_ID)
        _request(services, file)
        delivery = _last_delivery(services).model_copy(update={"user_id": OTHER_USER_ID})
        with pytest.raises(BadRequestError):
            services.generation.process(delivery)

    def test_corrupt_parsed_content_fails_the_job(self, services):
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)
        services.blob_store.put(parsed_key(file.id), b"not json")

        with pytest.raises(InternalError):
            services.generation.process(_last_delivery(services))
        assert services.generation_jobs.get_by_id(request["jobId"]).status == GenerationStatus.FAILED


class TestRetries:
    def test_retryable_failures_back_off_then_fail(self, settings):
        provider = FakeProvider(errors=[Exception("429 Resource exhausted")] * 4)
        services = make_services(settings, provider)
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)

        results = [services.generation.process(_last_delivery(services)) for _ in range(3)]

        assert [r["delay"] for r in results] == [60, 120, 240]
        assert [r["attempt"] for r in results] == [1, 2, 3]
        assert [p["delay"] for p in services.queue.published[1:]] == [60, 120, 240]
        assert services.queue.published[-1]["body"]["retryCount"] == 3

        with pytest.raises(ProviderRateLimitedError):
            services.generation.process(_last_delivery(services))

        job = services.generation_jobs.get_by_id(request["jobId"])
        assert job.status == GenerationStatus.FAILED
        assert job.retry_count == 3
        assert len(services.queue.published) == 4

    def test_ledger_retry_count_wins_over_message_body(self, settings):
        provider = FakeProvider(errors=[Exception("service timeout")])
        services = make_services(settings, provider)
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)
        services.generation_jobs.jobs[request["jobId"]].retry_count = 2

        result = services.generation.process(_last_delivery(services))

        assert result["attempt"] == 3
        assert result["delay"] == 240

    def test_retry_succeeds_after_transient_failure(self, settings):
        provider = FakeProvider(errors=[Exception("deadline exceeded")])
        services = make_services(settings, provider)
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)

        assert services.generation.process(_last_delivery(services))["status"] == "retrying"
        assert services.generation.process(_last_delivery(services))["status"] == "completed"
        job = services.generation_jobs.get_by_id(request["jobId"])
        assert job.retry_count == 1
        assert job.status == GenerationStatus.COMPLETED

    def test_non_retryable_failure_fails_immediately(self, settings):
        provider = FakeProvider(errors=[Exception("quota exceeded for project")])
        services = make_services(settings, provider)
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)

        with pytest.raises(ProviderQuotaExceededError):
            services.generation.process(_last_delivery(services))

        job = services.generation_jobs.get_by_id(request["jobId"])
        assert job.status == GenerationStatus.FAILED
        assert job.retry_count == 0
        assert len(services.queue.published) == 1

    def test_rate_limited_job_is_rescheduled_after_retry_after(self, services, provider):
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)
        services.rate_limiter.store.windows[f"rate:user:{USER_ID}"] = [time.time()] * 10

        result = services.generation.process(_last_delivery(services))

        assert result["status"] == "rate_limited"
        assert 3500 < result["retryAfter"] <= 3600
        assert services.queue.published[-1]["delay"] == result["retryAfter"]
        job = services.generation_jobs.get_by_id(request["jobId"])
        assert job.status == GenerationStatus.QUEUED
        assert job.retry_count == 1
        assert provider.prompts == []

    def test_rate_limited_job_without_budget_fails(self, services):
        file = seed_parsed_file(services, USER_ID)
        request = _request(services, file)
        services.generation_jobs.jobs[request["jobId"]].retry_count = 3
        services.rate_limiter.store.windows["rate:global"] = [time.time()] * 1000

        with pytest.raises(RateLimitedError):
            services.generation.process(_last_delivery(services))
        assert services.generation_jobs.get_by_id(request["jobId"]).status == GenerationStatus.FAILED


class TestSelectText:
    def _content(self, numbers):
        return ParsedContent(
            file_id="f",
            text="",
            pages=[ParsedPage(page_number=n, content=f"page {n}") for n in numbers],
        )

    def test_no_range_returns_everything(self):
        text, applied = select_text(self._content([1, 2]), None, None)
        assert text == "page 1\n\npage 2"
        assert applied is True

    def test_open_ended_range(self):
        text, _ = select_text(self._content([1, 2, 3]), 2, None)
        assert text == "page 2\n\npage 3"

    def test_range_matching_no_pages_is_rejected(self):
        with pytest.raises(BadRequestError) as exc_info:
            select_text(self._content([1, 2]), 5, 6)
        assert exc_info.value.code == "INVALID_PAGE_RANGE"
