from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from docquiz.domain.repositories import (
    IFileRepository, IGenerationJobRepository, IParsingJobRepository,
    IQuizIndexRepository, IQuizRepository, IRateLimitStore, IUserRepository,
)
from docquiz.domain.models.db_models import (
    ACTIVE_GENERATION_STATUSES, ACTIVE_PARSING_STATUSES, File, FileStatus,
    GenerationJob, GenerationStatus, ParsingJob, ParsingStatus, Quiz,
    QuizIndexEntry, User, sources_for,
)
from dq_utils.logger_utils import logger


def _now():
    return datetime.now(timezone.utc)


def _values(statuses) -> List[str]:
    return [status.value for status in statuses]


class MongoUserRepository(IUserRepository):
    """MongoDB implementation of the user repository."""

    def __init__(self, db: Database):
        self.db = db
        self.collection = self.db.users

    def get_by_id(self, user_id: str) -> Optional[User]:
        data = self.collection.find_one({"_id": user_id})
        return User.from_mongo(data) if data else None


class MongoFileRepository(IFileRepository):
    """MongoDB implementation of the file ledger."""

    def __init__(self, db: Database):
        self.db = db
        self.collection = self.db.files

    def create(self, file: File) -> None:
        self.collection.insert_one(file.to_dict())
        logger.info("MongoFileRepository.create", extra={"file_id": file.id, "owner_id": file.owner_id})

    def get_by_id(self, file_id: str) -> Optional[File]:
        data = self.collection.find_one({"_id": file_id})
        return File.from_mongo(data) if data else None

    def list_by_owner(self, owner_id: str, status: Optional[FileStatus] = None,
                      limit: int = 20, offset: int = 0) -> List[File]:
        query: Dict[str, Any] = {"owner_id": owner_id}
        if status is not None:
            query["status"] = status.value
        cursor = self.collection.find(query).sort("created_at", DESCENDING).skip(offset).limit(limit)
        return [File.from_mongo(doc) for doc in cursor]

    def transition(self, file_id: str, status: FileStatus, page_count: Optional[int] = None) -> bool:
        update: Dict[str, Any] = {"status": status.value, "updated_at": _now()}
        if page_count is not None:
            update["page_count"] = page_count
        result = self.collection.update_one(
            {"_id": file_id, "status": {"$in": _values(sources_for(status))}},
            {"$set": update},
        )
        if result.matched_count == 0:
            logger.warning(
                "MongoFileRepository.transition.skipped",
                extra={"file_id": file_id, "target": status.value},
            )
        return result.matched_count == 1

    def reset_for_reprocessing(self, file_id: str) -> bool:
        result = self.collection.update_one(
            {"_id": file_id, "status": FileStatus.ERROR.value},
            {"$set": {"status": FileStatus.PENDING.value, "updated_at": _now()}},
        )
        return result.matched_count == 1

    def delete(self, file_id: str) -> None:
        self.collection.delete_one({"_id": file_id})


class MongoParsingJobRepository(IParsingJobRepository):
    """MongoDB implementation of the parsing job ledger."""

    def __init__(self, db: Database):
        self.db = db
        self.collection = self.db.parsing_jobs

    def create(self, job: ParsingJob) -> None:
        self.collection.insert_one(job.to_dict())

    def get_by_id(self, job_id: str) -> Optional[ParsingJob]:
        data = self.collection.find_one({"_id": job_id})
        return ParsingJob.from_mongo(data) if data else None

    def get_latest_for_file(self, file_id: str) -> Optional[ParsingJob]:
        data = self.collection.find_one({"file_id": file_id}, sort=[("created_at", DESCENDING)])
        return ParsingJob.from_mongo(data) if data else None

    def has_active_for_file(self, file_id: str) -> bool:
        query = {"file_id": file_id, "status": {"$in": _values(ACTIVE_PARSING_STATUSES)}}
        return self.collection.count_documents(query, limit=1) > 0

    def set_message_id(self, job_id: str, message_id: str) -> None:
        self.collection.update_one(
            {"_id": job_id}, {"$set": {"message_id": message_id, "updated_at": _now()}}
        )

    def mark_processing(self, job_id: str) -> bool:
        now = _now()
        result = self.collection.update_one(
            {"_id": job_id, "status": ParsingStatus.QUEUED.value},
            {"$set": {"status": ParsingStatus.PROCESSING.value, "started_at": now, "updated_at": now}},
        )
        return result.matched_count == 1

    def mark_completed(self, job_id: str, parsed_key: str, metrics: Optional[Dict[str, Any]] = None) -> bool:
        now = _now()
        result = self.collection.update_one(
            {"_id": job_id, "status": {"$in": _values(ACTIVE_PARSING_STATUSES)}},
            {"$set": {
                "status": ParsingStatus.COMPLETED.value,
                "parsed_key": parsed_key,
                "metrics": metrics,
                "error": None,
                "completed_at": now,
                "updated_at": now,
            }},
        )
        return result.matched_count == 1

    def mark_failed(self, job_id: str, error: str) -> bool:
        now = _now()
        result = self.collection.update_one(
            {"_id": job_id, "status": {"$in": _values(ACTIVE_PARSING_STATUSES)}},
            {"$set": {
                "status": ParsingStatus.FAILED.value,
                "error": error,
                "completed_at": now,
                "updated_at": now,
            }},
        )
        return result.matched_count == 1

    def find_stale(self, cutoff: datetime, limit: int) -> List[ParsingJob]:
        cursor = self.collection.find({
            "status": {"$in": _values(ACTIVE_PARSING_STATUSES)},
            "created_at": {"$lt": cutoff},
        }).sort("created_at", 1).limit(limit)
        return [ParsingJob.from_mongo(doc) for doc in cursor]

    def delete_for_file(self, file_id: str) -> int:
        return self.collection.delete_many({"file_id": file_id}).deleted_count


class MongoGenerationJobRepository(IGenerationJobRepository):
    """MongoDB implementation of the generation job ledger."""

    def __init__(self, db: Database):
        self.db = db
        self.collection = self.db.generation_jobs

    def create(self, job: GenerationJob) -> None:
        self.collection.insert_one(job.to_dict())

    def get_by_id(self, job_id: str) -> Optional[GenerationJob]:
        data = self.collection.find_one({"_id": job_id})
        return GenerationJob.from_mongo(data) if data else None

    def set_message_id(self, job_id: str, message_id: str) -> None:
        self.collection.update_one(
            {"_id": job_id}, {"$set": {"message_id": message_id, "updated_at": _now()}}
        )

    def mark_processing(self, job_id: str, stale_before: datetime) -> bool:
        now = _now()
        result = self.collection.update_one(
            {
                "_id": job_id,
                "$or": [
                    {"status": GenerationStatus.QUEUED.value},
                    {"status": GenerationStatus.PROCESSING.value, "started_at": {"$lt": stale_before}},
                ],
            },
            {"$set": {"status": GenerationStatus.PROCESSING.value, "started_at": now, "updated_at": now}},
        )
        return result.matched_count == 1

    def reschedule(self, job_id: str, retry_count: int, error: str) -> bool:
        # retry_count only ever grows
        result = self.collection.update_one(
            {
                "_id": job_id,
                "status": {"$in": _values(ACTIVE_GENERATION_STATUSES)},
                "retry_count": {"$lt": retry_count},
            },
            {"$set": {
                "status": GenerationStatus.QUEUED.value,
                "retry_count": retry_count,
                "error": error,
                "updated_at": _now(),
            }},
        )
        return result.matched_count == 1

    def mark_completed(self, job_id: str, metadata: Dict[str, Any]) -> bool:
        now = _now()
        result = self.collection.update_one(
            {"_id": job_id, "status": {"$in": _values(ACTIVE_GENERATION_STATUSES)}},
            {"$set": {
                "status": GenerationStatus.COMPLETED.value,
                "metadata": metadata,
                "error": None,
                "completed_at": now,
                "updated_at": now,
            }},
        )
        return result.matched_count == 1

    def mark_failed(self, job_id: str, error: str) -> bool:
        now = _now()
        result = self.collection.update_one(
            {"_id": job_id, "status": {"$in": _values(ACTIVE_GENERATION_STATUSES)}},
            {"$set": {
                "status": GenerationStatus.FAILED.value,
                "error": error,
                "completed_at": now,
                "updated_at": now,
            }},
        )
        return result.matched_count == 1

    def delete_for_file(self, file_id: str) -> int:
        return self.collection.delete_many({"file_id": file_id}).deleted_count


class MongoQuizIndexRepository(IQuizIndexRepository):
    """Compact quiz rows kept next to the job ledger."""

    def __init__(self, db: Database):
        self.db = db
        self.collection = self.db.quiz_index

    def create(self, entry: QuizIndexEntry) -> None:
        self.collection.insert_one(entry.to_dict())

    def update(self, quiz_id: str, fields: Dict[str, Any]) -> None:
        self.collection.update_one({"_id": quiz_id}, {"$set": fields})

    def list_for_file(self, file_id: str) -> List[QuizIndexEntry]:
        cursor = self.collection.find({"file_id": file_id}).sort("created_at", DESCENDING)
        return [QuizIndexEntry.from_mongo(doc) for doc in cursor]

    def delete(self, quiz_id: str) -> None:
        self.collection.delete_one({"_id": quiz_id})

    def delete_for_file(self, file_id: str) -> int:
        return self.collection.delete_many({"file_id": file_id}).deleted_count


class MongoQuizRepository(IQuizRepository):
    """Full quizzes, questions included."""

    def __init__(self, db: Database):
        self.db = db
        self.collection = self.db.quizzes

    def save(self, quiz: Quiz) -> None:
        self.collection.replace_one({"_id": quiz.id}, quiz.to_dict(), upsert=True)

    def get_by_id(self, quiz_id: str) -> Optional[Quiz]:
        data = self.collection.find_one({"_id": quiz_id})
        return Quiz.from_mongo(data) if data else None

    def update(self, quiz_id: str, fields: Dict[str, Any]) -> None:
        fields = dict(fields, updated_at=_now())
        self.collection.update_one({"_id": quiz_id}, {"$set": fields})

    def list_for_user(self, user_id: str) -> List[Quiz]:
        cursor = self.collection.find({"user_id": user_id}).sort("created_at", DESCENDING)
        return [Quiz.from_mongo(doc) for doc in cursor]

    def list_for_file(self, file_id: str) -> List[Quiz]:
        cursor = self.collection.find({"file_id": file_id}).sort("created_at", DESCENDING)
        return [Quiz.from_mongo(doc) for doc in cursor]

    def delete(self, quiz_id: str) -> None:
        self.collection.delete_one({"_id": quiz_id})

    def delete_for_file(self, file_id: str) -> int:
        return self.collection.delete_many({"file_id": file_id}).deleted_count


class MongoRateLimitStore(IRateLimitStore):
    """Sliding-window timestamps; a TTL index on expires_at drops idle keys."""

    def __init__(self, db: Database):
        self.db = db
        self.collection = self.db.rate_limits

    def try_add(self, key: str, now: float, window_start: float, limit: int,
                expires_at: datetime) -> Tuple[bool, List[float]]:
        self.collection.update_one({"_id": key}, {"$pull": {"requests": {"$lte": window_start}}})
        try:
            # matches only while the window holds fewer than `limit` entries
            data = self.collection.find_one_and_update(
                {"_id": key, f"requests.{limit - 1}": {"$exists": False}},
                {"$push": {"requests": now}, "$set": {"expires_at": expires_at}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # the key exists and the window is full
            data = None
        if data is not None:
            return True, list(data["requests"])

        data = self.collection.find_one({"_id": key}) or {}
        return False, [ts for ts in data.get("requests", []) if ts > window_start]
