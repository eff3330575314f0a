from typing import Iterable, Optional, Tuple
from .file_utils import allowed_mimetype, MAX_FILE_SIZE_BYTES
import logging

logger = logging.getLogger(__name__)

# Callers branch on the kind: MISSING maps to 400, INVALID to 422.
MISSING = "missing"
INVALID = "invalid"

UPLOAD_ERRORS = {
    "no_file": "No file provided",
    "empty": "File is empty",
    "too_large": "File exceeds the maximum size of 10MB",
    "bad_type": "Unsupported file type. Allowed types: PDF, TXT, DOC, DOCX",
}

Violation = Tuple[str, str]


def validate_upload(mime: Optional[str], size: int, max_size: int = MAX_FILE_SIZE_BYTES) -> Optional[Violation]:
    """
    Validate upload size and MIME type.
    Returns (kind, message) if invalid, otherwise None.
    """
    if size <= 0:
        logger.debug("Validation failed: empty upload (size=%d)", size)
        return MISSING, UPLOAD_ERRORS["empty"]
    if size > max_size:
        logger.debug("Validation failed: too large (size=%d)", size)
        return INVALID, UPLOAD_ERRORS["too_large"]
    if not allowed_mimetype(mime):
        logger.debug("Validation failed: bad MIME type (%s)", mime)
        return INVALID, UPLOAD_ERRORS["bad_type"]
    return None


def validate_choice(field: str, value: Optional[str], allowed: Iterable[str]) -> Optional[Violation]:
    """A required form field whose value must come from a closed set."""
    if value is None or not str(value).strip():
        return MISSING, f"Missing required field: {field}"
    allowed = list(allowed)
    if value not in allowed:
        return INVALID, f"Invalid {field} '{value}'. Allowed values: {', '.join(allowed)}"
    return None
