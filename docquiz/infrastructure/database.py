from flask import current_app, g
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from werkzeug.local import LocalProxy

from dq_utils.logger_utils import logger


def _get_client() -> MongoClient:
    """
    Lazily create the app-wide client.

    Concurrent first requests may each build a client; the first one stored
    wins and the others are closed.
    """
    client = current_app.extensions.get('mongo_client')
    if client is None:
        candidate = MongoClient(current_app.config['MONGO_URI'])
        client = current_app.extensions.setdefault('mongo_client', candidate)
        if client is not candidate:
            candidate.close()
    return client


def get_db() -> Database:
    """
    Returns the MongoDB database for the current app context.
    The database name is expected to be part of the MONGO_URI,
    e.g. mongodb://host:port/dbname
    """
    if 'db' not in g:
        g.db = _get_client().get_database()
    return g.db


def ensure_indexes(database: Database) -> None:
    """Indexes the pipeline queries rely on. Safe to run repeatedly."""
    database.files.create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
    database.parsing_jobs.create_index([("file_id", ASCENDING), ("created_at", DESCENDING)])
    database.parsing_jobs.create_index([("status", ASCENDING), ("created_at", ASCENDING)])
    database.generation_jobs.create_index([("file_id", ASCENDING)])
    database.quiz_index.create_index([("file_id", ASCENDING)])
    database.quizzes.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database.quizzes.create_index([("file_id", ASCENDING)])
    database.rate_limits.create_index("expires_at", expireAfterSeconds=0)
    logger.info("MongoDB indexes ensured")


def init_app(app):
    """Initialize the database with the Flask app."""
    # Close the database handle when the app context tears down
    @app.teardown_appcontext
    def close_db(exception):
        g.pop('db', None)
        # The client itself is shared via extensions and stays open


# Use a LocalProxy to access the db connection within the application context
db = LocalProxy(get_db)
