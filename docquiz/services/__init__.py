"""
Wiring of repositories, gateways and pipeline services.

Routes obtain a `Services` instance through `get_services()`; tests install
their own instance built from in-memory collaborators.
"""
from functools import cached_property

from flask import current_app

from docquiz.infrastructure.blob_store import BlobStore, BlobUrlSigner
from docquiz.infrastructure.qstash import QStashClient
from docquiz.infrastructure.repositories import (
    MongoFileRepository, MongoGenerationJobRepository, MongoParsingJobRepository,
    MongoQuizIndexRepository, MongoQuizRepository, MongoRateLimitStore, MongoUserRepository,
)
from docquiz.services.ai_client import ProviderRegistry, build_default_registry
from docquiz.services.file_service import FileService
from docquiz.services.generation_service import GenerationService
from docquiz.services.parser_client import ParserClient
from docquiz.services.quiz_service import QuizService
from docquiz.services.rate_limiter import RateLimiter
from docquiz.services.status_service import StatusService
from docquiz.services.upload_service import UploadService
from docquiz.services.webhook_service import ParseResultService

EXTENSION_KEY = "docquiz.services"


class Services:
    def __init__(self, settings, users, files, parsing_jobs, generation_jobs, quiz_index, quizzes,
                 blob_store, queue: QStashClient, providers: ProviderRegistry, rate_limiter: RateLimiter):
        self.settings = settings
        self.users = users
        self.files = files
        self.parsing_jobs = parsing_jobs
        self.generation_jobs = generation_jobs
        self.quiz_index = quiz_index
        self.quizzes = quizzes
        self.blob_store = blob_store
        self.queue = queue
        self.providers = providers
        self.rate_limiter = rate_limiter

    @cached_property
    def download_signer(self) -> BlobUrlSigner:
        return BlobUrlSigner(self.settings.SECRET_KEY, self.settings.DOWNLOAD_URL_MAX_AGE_SECONDS)

    @cached_property
    def parser(self) -> ParserClient:
        return ParserClient(self.settings, self.queue, self.download_signer)

    @cached_property
    def parse_results(self) -> ParseResultService:
        return ParseResultService(self.files, self.parsing_jobs, self.blob_store)

    @cached_property
    def uploads(self) -> UploadService:
        return UploadService(self.settings, self.users, self.files, self.parsing_jobs, self.blob_store,
                             self.parser, self.parse_results, self.rate_limiter)

    @cached_property
    def file_service(self) -> FileService:
        return FileService(self.settings, self.files, self.parsing_jobs, self.generation_jobs,
                           self.quiz_index, self.quizzes, self.blob_store, self.parse_results)

    @cached_property
    def status(self) -> StatusService:
        return StatusService(self.files, self.parsing_jobs, self.generation_jobs, self.blob_store)

    @cached_property
    def generation(self) -> GenerationService:
        return GenerationService(self.settings, self.users, self.files, self.generation_jobs,
                                 self.quiz_index, self.quizzes, self.blob_store, self.queue,
                                 self.providers, self.rate_limiter)

    @cached_property
    def quiz_editor(self) -> QuizService:
        return QuizService(self.quizzes, self.quiz_index, self.files)


def build_services(database, settings) -> Services:
    """Production wiring on top of a pymongo Database."""
    return Services(
        settings=settings,
        users=MongoUserRepository(database),
        files=MongoFileRepository(database),
        parsing_jobs=MongoParsingJobRepository(database),
        generation_jobs=MongoGenerationJobRepository(database),
        quiz_index=MongoQuizIndexRepository(database),
        quizzes=MongoQuizRepository(database),
        blob_store=BlobStore(database),
        queue=QStashClient(
            settings.QSTASH_URL,
            settings.QSTASH_TOKEN,
            settings.QSTASH_CURRENT_SIGNING_KEY,
            settings.QSTASH_NEXT_SIGNING_KEY,
            settings.QSTASH_TIMEOUT_SECONDS,
        ),
        providers=build_default_registry(settings),
        rate_limiter=RateLimiter(MongoRateLimitStore(database)),
    )


def get_services() -> Services:
    """Services for the current app, built on first use."""
    services = current_app.extensions.get(EXTENSION_KEY)
    if services is None:
        from docquiz.infrastructure.config import settings
        from docquiz.infrastructure.database import get_db

        services = current_app.extensions.setdefault(EXTENSION_KEY, build_services(get_db(), settings))
    return services
