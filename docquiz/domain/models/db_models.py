import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _utc_now():
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ParsingStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QuizStatus(str, Enum):
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple-choice"
    TRUE_FALSE = "true-false"
    SHORT_ANSWER = "short-answer"


class UserTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"


class Language(str, Enum):
    ENGLISH = "en"
    HEBREW = "he"
    ARABIC = "ar"
    SPANISH = "es"
    FRENCH = "fr"
    GERMAN = "de"
    RUSSIAN = "ru"


class Subject(str, Enum):
    MATH = "math"
    PHYSICS = "physics"
    CHEMISTRY = "chemistry"
    BIOLOGY = "biology"
    HISTORY = "history"
    GEOGRAPHY = "geography"
    LITERATURE = "literature"
    LANGUAGE = "language"
    COMPUTER_SCIENCE = "computer_science"
    ECONOMICS = "economics"
    OTHER = "other"


class DocumentType(str, Enum):
    TEXTBOOK = "textbook"
    EXERCISES = "exercises"
    EXAM = "exam"
    NOTES = "notes"
    SUMMARY = "summary"
    ARTICLE = "article"
    OTHER = "other"


# Forward-only file transitions. error -> pending is only done by explicit reprocessing.
FILE_TRANSITIONS = {
    FileStatus.PENDING: {FileStatus.PROCESSING, FileStatus.COMPLETED, FileStatus.ERROR},
    FileStatus.PROCESSING: {FileStatus.COMPLETED, FileStatus.ERROR},
    FileStatus.COMPLETED: set(),
    FileStatus.ERROR: set(),
}

ACTIVE_PARSING_STATUSES = {ParsingStatus.QUEUED, ParsingStatus.PROCESSING}
ACTIVE_GENERATION_STATUSES = {GenerationStatus.QUEUED, GenerationStatus.PROCESSING}


def sources_for(target: FileStatus) -> List[FileStatus]:
    """File statuses from which `target` may be reached."""
    return [source for source, targets in FILE_TRANSITIONS.items() if target in targets]


class MongoModel(BaseModel):
    """
    Base for stored records.

    Stored in MongoDB with snake_case keys and `_id`; served over the API
    with camelCase keys and `id`.
    """
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    @classmethod
    def from_mongo(cls, data: Dict[str, Any]):
        data = dict(data)
        if "_id" in data:
            data["id"] = data.pop("_id")
        return cls(**data)

    def to_dict(self):
        """Convert model to dictionary for MongoDB."""
        data = self.model_dump()
        data["_id"] = data.pop("id")
        return data

    def to_api(self):
        return self.model_dump(by_alias=True, mode="json")


class User(MongoModel):
    id: str
    email: str = ""
    name: str = ""
    tier: UserTier = UserTier.FREE
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utc_now)


class Classification(BaseModel):
    """The three required upload fields forwarded to the parser."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    language: Language
    subject: Subject
    document_type: DocumentType


class File(MongoModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    name: str
    blob_key: str
    size: int
    mime_type: str
    page_count: Optional[int] = None
    status: FileStatus = FileStatus.PENDING
    language: Optional[Language] = None
    subject: Optional[Subject] = None
    document_type: Optional[DocumentType] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def classification(self) -> Optional[Classification]:
        if not (self.language and self.subject and self.document_type):
            return None
        return Classification(language=self.language, subject=self.subject, document_type=self.document_type)


class ParsingJob(MongoModel):
    id: str = Field(default_factory=_new_id)
    file_id: str
    owner_id: str
    status: ParsingStatus = ParsingStatus.QUEUED
    message_id: Optional[str] = None
    retry_count: int = 0
    error: Optional[str] = None
    parsed_key: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class GenerationJob(MongoModel):
    id: str = Field(default_factory=_new_id)
    file_id: str
    owner_id: str
    status: GenerationStatus = GenerationStatus.QUEUED
    message_id: Optional[str] = None
    retry_count: int = 0
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class Question(BaseModel):
    """
    One quiz item.

    correct_answer is an option index for multiple-choice, the string
    "true"/"false" for true-false, and free text for short-answer.
    """
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str = Field(default_factory=_new_id)
    type: QuestionType
    question: str = Field(..., min_length=1)
    options: Optional[List[str]] = None
    correct_answer: Any
    explanation: Optional[str] = None
    difficulty: Optional[str] = "medium"
    topic: Optional[str] = None

    @model_validator(mode="after")
    def _check_answer(self):
        answer = self.correct_answer
        if self.type == QuestionType.MULTIPLE_CHOICE:
            if not self.options or len(self.options) < 2:
                raise ValueError("multiple-choice questions need at least two options")
            if isinstance(answer, str) and answer.strip().isdigit():
                answer = int(answer.strip())
            if isinstance(answer, bool) or not isinstance(answer, int):
                raise ValueError("multiple-choice correctAnswer must be an option index")
            if not 0 <= answer < len(self.options):
                raise ValueError("multiple-choice correctAnswer is out of range")
        elif self.type == QuestionType.TRUE_FALSE:
            if isinstance(answer, bool):
                answer = "true" if answer else "false"
            elif isinstance(answer, str) and answer.strip().lower() in ("true", "false"):
                answer = answer.strip().lower()
            else:
                raise ValueError('true-false correctAnswer must be "true" or "false"')
            self.options = None
        else:
            if answer is None or isinstance(answer, bool) or not str(answer).strip():
                raise ValueError("short-answer correctAnswer must be non-empty text")
            answer = str(answer)
            self.options = None
        # assignment bypasses validation (validate_assignment is off)
        self.correct_answer = answer
        return self


class QuizConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    num_questions: int = Field(10, ge=1, le=50)
    difficulty: str = "mixed"
    question_types: List[QuestionType] = Field(
        default_factory=lambda: [QuestionType.MULTIPLE_CHOICE, QuestionType.TRUE_FALSE]
    )
    language: str = "en"
    include_explanations: bool = True

    @field_validator("question_types")
    @classmethod
    def _non_empty(cls, value):
        if not value:
            raise ValueError("questionTypes must not be empty")
        return value


class Quiz(MongoModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    file_id: str
    title: str = ""
    topic: Optional[str] = None
    from_page: Optional[int] = None
    to_page: Optional[int] = None
    provider: str = ""
    model: str = ""
    status: QuizStatus = QuizStatus.READY
    config: QuizConfig = Field(default_factory=QuizConfig)
    questions: List[Question] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class QuizIndexEntry(MongoModel):
    """Ledger mirror of a quiz for listing by file without loading questions."""
    id: str
    file_id: str
    user_id: str
    from_page: int = 1
    to_page: int = 1
    topic: Optional[str] = None
    model: str = ""
    status: QuizStatus = QuizStatus.READY
    created_at: datetime = Field(default_factory=_utc_now)


class ParsedPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    page_number: int
    content: str = ""


class ParsedContent(BaseModel):
    """The JSON document stored at parsed/{fileId}.json."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    text: str = ""
    page_count: int = 0
    pages: List[ParsedPage] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    file_id: str
    parsed_at: datetime = Field(default_factory=_utc_now)
    version: str = "1.0.0"

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_json_bytes(cls, raw: bytes) -> "ParsedContent":
        return cls.model_validate_json(raw)
