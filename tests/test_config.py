"""
Test configuration settings and derived environment flags.
"""
from tests.conftest import make_settings


def test_pipeline_defaults():
    """Retry and routing defaults match the documented pipeline behaviour."""
    settings = make_settings()

    assert settings.GENERATION_MAX_RETRIES == 3
    assert settings.GENERATION_RETRY_BASE_SECONDS == 60
    assert settings.MAX_UPLOAD_BYTES == 10 * 1024 * 1024
    assert settings.DIRECT_PROCESSING_THRESHOLD_BYTES == 2 * 1024 * 1024
    assert settings.DQ_DEFAULT_PROVIDER == "gemini"
    assert settings.DQ_GEMINI_MODEL == "gemini-2.5-flash"


def test_development_flag():
    assert make_settings(FLASK_ENV="development").is_development
    assert make_settings(FLASK_ENV="testing", PARSER_SERVICE_URL="http://localhost:8000").is_development
    assert not make_settings(FLASK_ENV="testing").is_development
    assert not make_settings(FLASK_ENV="production", PARSER_SERVICE_URL="http://localhost:8000").is_development


def test_download_links_expire_after_a_day_by_default():
    assert make_settings().DOWNLOAD_URL_MAX_AGE_SECONDS == 24 * 60 * 60
