import os

from flask import Flask, request
from flask_cors import CORS
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from docquiz.infrastructure.config import settings
from docquiz.infrastructure.database import init_app as init_db, ensure_indexes, get_db
from docquiz.domain.errors import ApiError
from dq_utils.logger_utils import logger, set_log_level
from docquiz.api.responses import (
    REQUEST_ID_HEADER, assign_request_id, current_request_id, error_response,
)

# Import Blueprints
from docquiz.api.routes_auth import login_manager
from docquiz.api.routes_files import files_bp
from docquiz.api.routes_quiz import quiz_bp
from docquiz.api.routes_cron import cron_bp

DEFAULT_RETRY_AFTER_SECONDS = 60

# Raw text of these errors is not shown to production clients
MASKED_MESSAGES = {
    "INTERNAL_ERROR": "An unexpected error occurred",
    "STORAGE_ERROR": "A storage error occurred",
    "QUEUE_ERROR": "The job queue is unavailable, please try again later",
}


def create_app():
    """Application factory for Flask."""
    app = Flask(__name__)

    # --- Core Configuration ---
    app.config.from_object(settings)
    app.config['JSON_AS_ASCII'] = False
    set_log_level(settings.LOG_LEVEL)

    # --- Security Configuration ---
    app.config['SESSION_COOKIE_SECURE'] = settings.FLASK_ENV == 'production'
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
    CORS(app, resources={r"/api/*": {"origins": "*"}}, supports_credentials=True)
    # Webhook signatures cover the public URL, so honour the proxy's scheme/host
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

    # --- Initialize Extensions ---
    init_db(app)
    login_manager.init_app(app)

    # --- Blueprints Registration ---
    app.register_blueprint(files_bp, url_prefix='/api/files')
    app.register_blueprint(quiz_bp, url_prefix='/api/quiz')
    app.register_blueprint(cron_bp, url_prefix='/api/cron')

    # --- Request Hooks ---
    @app.before_request
    def attach_request_id():
        assign_request_id()

    @app.after_request
    def add_response_headers(response):
        response.headers[REQUEST_ID_HEADER] = current_request_id()
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'SAMEORIGIN'
        return response

    @app.cli.command("init-db")
    def init_db_command():
        """Create the MongoDB indexes the pipeline relies on."""
        ensure_indexes(get_db())

    # --- Health Checks ---
    @app.route('/health')
    def health_check():
        return {"status": "healthy"}, 200

    @app.route('/health/detailed')
    def detailed_health_check():
        health_status = {"status": "healthy", "components": {}}
        try:
            get_db().command('ping')
            health_status["components"]["mongodb"] = {"status": "healthy"}
        except PyMongoError as e:
            logger.error(f"MongoDB health check failed: {e}")
            health_status["components"]["mongodb"] = {"status": "unhealthy"}
            health_status["status"] = "unhealthy"
        return health_status, 503 if health_status["status"] == "unhealthy" else 200

    # --- Error Handling ---
    @app.errorhandler(ApiError)
    def handle_api_error(error):
        log = logger.warning if error.status_code < 500 else logger.error
        log(
            f"{error.code} on {request.path}: {error.message}",
            extra={"request_id": current_request_id(), "status": error.status_code},
        )
        retry_after = getattr(error, "retry_after", None)
        if retry_after is None and error.status_code == 429:
            retry_after = DEFAULT_RETRY_AFTER_SECONDS
        message = error.message
        if settings.is_production and error.code in MASKED_MESSAGES:
            message = MASKED_MESSAGES[error.code]
        return error_response(error.status_code, error.code, message, retry_after=retry_after)

    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        first = error.errors()[0]
        return error_response(400, "BAD_REQUEST", first["msg"])

    @app.errorhandler(DuplicateKeyError)
    def handle_duplicate_key(error):
        logger.warning(f"Duplicate key on {request.path}", extra={"request_id": current_request_id()})
        return error_response(409, "CONFLICT", "Resource already exists")

    @app.errorhandler(PyMongoError)
    def handle_database_error(error):
        logger.error(
            f"Database error on {request.path}: {error}",
            extra={"request_id": current_request_id()},
            exc_info=True,
        )
        message = "A database error occurred" if settings.is_production else str(error)
        return error_response(500, "DATABASE_ERROR", message)

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        logger.warning(f"HTTP {error.code} for path: {request.path}")
        code = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED", 413: "UNPROCESSABLE_ENTITY"}.get(
            error.code, "BAD_REQUEST" if error.code < 500 else "INTERNAL_ERROR"
        )
        return error_response(error.code, code, error.description or error.name)

    @app.errorhandler(Exception)
    def handle_exception(error):
        logger.error(
            f"Unhandled exception for path {request.path}: {error}",
            extra={"request_id": current_request_id()},
            exc_info=True,
        )
        message = "An unexpected error occurred" if settings.is_production else str(error)
        return error_response(500, "INTERNAL_ERROR", message)

    logger.info(f"Flask App created successfully in {settings.FLASK_ENV} mode.")
    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.environ.get("PORT", 5000)))
