from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..models.db_models import (
    File, FileStatus, GenerationJob, ParsingJob, Quiz, QuizIndexEntry, User,
)


class IUserRepository(ABC):
    """Interface for a user repository."""
    @abstractmethod
    def get_by_id(self, user_id: str) -> Optional[User]:
        pass


class IFileRepository(ABC):
    """Interface for the uploaded-file ledger."""
    @abstractmethod
    def create(self, file: File) -> None:
        pass

    @abstractmethod
    def get_by_id(self, file_id: str) -> Optional[File]:
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: str, status: Optional[FileStatus] = None,
                      limit: int = 20, offset: int = 0) -> List[File]:
        pass

    @abstractmethod
    def transition(self, file_id: str, status: FileStatus, page_count: Optional[int] = None) -> bool:
        """Move forward to `status`; returns False if the current status does not allow it."""
        pass

    @abstractmethod
    def reset_for_reprocessing(self, file_id: str) -> bool:
        pass

    @abstractmethod
    def delete(self, file_id: str) -> None:
        pass


class IParsingJobRepository(ABC):
    """Interface for parsing job records."""
    @abstractmethod
    def create(self, job: ParsingJob) -> None:
        pass

    @abstractmethod
    def get_by_id(self, job_id: str) -> Optional[ParsingJob]:
        pass

    @abstractmethod
    def get_latest_for_file(self, file_id: str) -> Optional[ParsingJob]:
        pass

    @abstractmethod
    def has_active_for_file(self, file_id: str) -> bool:
        pass

    @abstractmethod
    def set_message_id(self, job_id: str, message_id: str) -> None:
        pass

    @abstractmethod
    def mark_processing(self, job_id: str) -> bool:
        pass

    @abstractmethod
    def mark_completed(self, job_id: str, parsed_key: str, metrics: Optional[Dict[str, Any]] = None) -> bool:
        """Only applies while the job is still active."""
        pass

    @abstractmethod
    def mark_failed(self, job_id: str, error: str) -> bool:
        """Only applies while the job is still active."""
        pass

    @abstractmethod
    def find_stale(self, cutoff: datetime, limit: int) -> List[ParsingJob]:
        pass

    @abstractmethod
    def delete_for_file(self, file_id: str) -> int:
        pass


class IGenerationJobRepository(ABC):
    """Interface for quiz generation job records."""
    @abstractmethod
    def create(self, job: GenerationJob) -> None:
        pass

    @abstractmethod
    def get_by_id(self, job_id: str) -> Optional[GenerationJob]:
        pass

    @abstractmethod
    def set_message_id(self, job_id: str, message_id: str) -> None:
        pass

    @abstractmethod
    def mark_processing(self, job_id: str, stale_before: datetime) -> bool:
        """Claim a queued job, or a processing one whose claim started before `stale_before`."""
        pass

    @abstractmethod
    def reschedule(self, job_id: str, retry_count: int, error: str) -> bool:
        pass

    @abstractmethod
    def mark_completed(self, job_id: str, metadata: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def mark_failed(self, job_id: str, error: str) -> bool:
        pass

    @abstractmethod
    def delete_for_file(self, file_id: str) -> int:
        pass


class IQuizIndexRepository(ABC):
    """Interface for the ledger-side quiz index."""
    @abstractmethod
    def create(self, entry: QuizIndexEntry) -> None:
        pass

    @abstractmethod
    def update(self, quiz_id: str, fields: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def list_for_file(self, file_id: str) -> List[QuizIndexEntry]:
        pass

    @abstractmethod
    def delete(self, quiz_id: str) -> None:
        pass

    @abstractmethod
    def delete_for_file(self, file_id: str) -> int:
        pass


class IQuizRepository(ABC):
    """Interface for the quiz document store."""
    @abstractmethod
    def save(self, quiz: Quiz) -> None:
        pass

    @abstractmethod
    def get_by_id(self, quiz_id: str) -> Optional[Quiz]:
        pass

    @abstractmethod
    def update(self, quiz_id: str, fields: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[Quiz]:
        pass

    @abstractmethod
    def list_for_file(self, file_id: str) -> List[Quiz]:
        pass

    @abstractmethod
    def delete(self, quiz_id: str) -> None:
        pass

    @abstractmethod
    def delete_for_file(self, file_id: str) -> int:
        pass


class IRateLimitStore(ABC):
    """Sliding-window request timestamps per limiter key."""
    @abstractmethod
    def try_add(self, key: str, now: float, window_start: float, limit: int,
                expires_at: datetime) -> Tuple[bool, List[float]]:
        """
        Atomically drop timestamps at or before `window_start` and append `now`
        if fewer than `limit` remain. Returns whether `now` was recorded and
        the timestamps left in the window.
        """
        pass
