import os

import pytest

# Set required environment variables before any application imports
os.environ.setdefault('SECRET_KEY', 'test-secret-key')
os.environ.setdefault('MONGO_URI', 'mongodb://localhost:27017/test')
os.environ.setdefault('FLASK_ENV', 'testing')

from docquiz.domain.models.db_models import User, UserTier  # noqa: E402
from docquiz.infrastructure.config import Settings  # noqa: E402
from docquiz.services import EXTENSION_KEY, Services  # noqa: E402
from docquiz.services.ai_client import ProviderRegistry  # noqa: E402
from docquiz.services.rate_limiter import RateLimiter  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakeBlobStore, FakeFileRepository, FakeGenerationJobRepository, FakeParsingJobRepository,
    FakeProvider, FakeQueue, FakeQuizIndexRepository, FakeQuizRepository, FakeRateLimitStore,
    FakeUserRepository,
)

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def make_settings(**overrides) -> Settings:
    values = dict(
        SECRET_KEY="test-secret-key",
        MONGO_URI="mongodb://localhost:27017/test",
        FLASK_ENV="testing",
        APP_URL="https://app.example.com",
        PARSER_SERVICE_URL="https://parser.example.com",
        QSTASH_TOKEN="token",
        QSTASH_CURRENT_SIGNING_KEY="current-key",
        QSTASH_NEXT_SIGNING_KEY="next-key",
        CRON_SECRET="cron-secret",
    )
    values.update(overrides)
    return Settings(**values)


def make_services(settings=None, provider=None) -> Services:
    settings = settings or make_settings()
    providers = ProviderRegistry()
    providers.register(provider or FakeProvider())
    users = FakeUserRepository()
    users.add(User(id=USER_ID, email="owner@example.com", tier=UserTier.FREE))
    users.add(User(id=OTHER_USER_ID, email="other@example.com", tier=UserTier.FREE))
    return Services(
        settings=settings,
        users=users,
        files=FakeFileRepository(),
        parsing_jobs=FakeParsingJobRepository(),
        generation_jobs=FakeGenerationJobRepository(),
        quiz_index=FakeQuizIndexRepository(),
        quizzes=FakeQuizRepository(),
        blob_store=FakeBlobStore(),
        queue=FakeQueue(settings.QSTASH_CURRENT_SIGNING_KEY, settings.QSTASH_NEXT_SIGNING_KEY),
        providers=providers,
        rate_limiter=RateLimiter(FakeRateLimitStore()),
    )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def services(settings):
    return make_services(settings)


@pytest.fixture
def app(services):
    """A fresh app wired to in-memory collaborators."""
    from app import create_app
    app = create_app()
    app.config.update({
        "TESTING": True,
        "SECRET_KEY": "test-secret-key",
    })
    app.extensions[EXTENSION_KEY] = services
    yield app


@pytest.fixture
def client(app):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture
def auth_client(client):
    """A test client logged in as USER_ID."""
    with client.session_transaction() as session:
        session['_user_id'] = USER_ID
        session['_fresh'] = True
    return client
