from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

LOCAL_HOSTS = ("localhost", "127.0.0.1")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # --- Core App Settings ---
    FLASK_ENV: str = "production"
    SECRET_KEY: str
    DEBUG: bool = False
    APP_URL: str = "http://localhost:5000"

    # --- Infrastructure ---
    MONGO_URI: str

    # --- Parser Service ---
    PARSER_SERVICE_URL: str = ""
    PARSER_TIMEOUT_SECONDS: int = 120
    DOWNLOAD_URL_MAX_AGE_SECONDS: int = 24 * 60 * 60

    # --- Queue (QStash) ---
    QSTASH_URL: str = "https://qstash.upstash.io"
    QSTASH_TOKEN: str = ""
    QSTASH_CURRENT_SIGNING_KEY: str = ""
    QSTASH_NEXT_SIGNING_KEY: str = ""
    QSTASH_TIMEOUT_SECONDS: int = 10

    # --- AI Services ---
    OPENAI_API_KEY: str = ""
    GEMINI_API_KEY: str = ""

    # AI Model Configuration
    DQ_OPENAI_MODEL: str = "gpt-4o-mini"
    DQ_GEMINI_MODEL: str = "gemini-2.5-flash"
    DQ_DEFAULT_PROVIDER: str = "gemini"
    DQ_PROVIDER_TIMEOUT_SECONDS: int = 60

    # --- Pipeline ---
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    DIRECT_PROCESSING_THRESHOLD_BYTES: int = 2 * 1024 * 1024
    GENERATION_MAX_RETRIES: int = 3
    GENERATION_RETRY_BASE_SECONDS: int = 60
    GENERATION_INITIAL_DELAY_SECONDS: int = 1
    GENERATION_CLAIM_TIMEOUT_SECONDS: int = 600
    PARSING_RETRIES: int = 3
    STALE_JOB_MINUTES: int = 10
    STALE_JOB_BATCH_SIZE: int = 5

    # --- Security ---
    SESSION_COOKIE_SECURE: bool = True
    SESSION_COOKIE_HTTPONLY: bool = True
    SESSION_COOKIE_SAMESITE: str = 'Lax'
    CRON_SECRET: str = ""

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.FLASK_ENV == "production"

    @property
    def is_development(self) -> bool:
        """Local mode: inline parsing, unsigned webhooks, queue bypass allowed."""
        if self.FLASK_ENV == "development":
            return True
        if self.is_production:
            return False
        host = urlparse(self.PARSER_SERVICE_URL).hostname or ""
        return host in LOCAL_HOSTS


# Load settings
settings = Settings()

# Production readiness checks
if settings.FLASK_ENV == "production":
    if not settings.SECRET_KEY or settings.SECRET_KEY == "change-this-to-a-very-secret-key-in-production":
        raise ValueError("CRITICAL: SECRET_KEY is not set for production.")
    if settings.DEBUG:
        raise ValueError("CRITICAL: DEBUG mode must be disabled in production.")
    if not settings.QSTASH_CURRENT_SIGNING_KEY:
        print("WARNING: QSTASH_CURRENT_SIGNING_KEY is not set. All webhook callbacks will be rejected.")
    if not settings.QSTASH_TOKEN:
        print("WARNING: QSTASH_TOKEN is not set. Large uploads and quiz generation cannot be queued.")
