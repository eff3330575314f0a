from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts both camelCase and snake_case keys."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class GenerateQuizRequest(CamelModel):
    """Body of POST /api/quiz/generate."""
    file_id: str = Field(..., min_length=1)
    from_page: Optional[int] = None
    to_page: Optional[int] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class ProcessGenerationRequest(CamelModel):
    """Body the queue delivers to POST /api/quiz/process."""
    file_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    job_id: str = Field(..., min_length=1)
    from_page: Optional[int] = None
    to_page: Optional[int] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0


class QuizMetadataUpdate(CamelModel):
    title: Optional[str] = None
    topic: Optional[str] = None
    status: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class ReorderRequest(CamelModel):
    """Body of PUT /api/quiz/<id>/questions/reorder."""
    new_order: List[StrictInt]


class ParseOptions(BaseModel):
    extract_images: bool = True
    extract_tables: bool = True
    extract_metadata: bool = True
    ocr_enabled: bool = False
    ai_description_enabled: bool = False


class ParseRequest(BaseModel):
    """Request body sent to the parser service, identical for both modes."""
    file_id: str
    file_url: str
    mime_type: str
    language: str
    subject: str
    document_type: str
    options: ParseOptions = Field(default_factory=ParseOptions)


class ParserResult(BaseModel):
    """Parser output normalized from either the direct response or a webhook payload."""
    success: bool
    file_id: Optional[str] = None
    job_id: Optional[str] = None
    text: str = ""
    pages: List[Dict[str, Any]] = Field(default_factory=list)
    page_count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False


class ProviderQuizResponse(BaseModel):
    """Shape every AI provider must return before questions are validated."""
    title: str = ""
    topic: Optional[str] = None
    questions: List[Dict[str, Any]] = Field(..., min_length=1)
