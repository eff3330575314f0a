import os
from typing import Optional

from werkzeug.utils import secure_filename

ALLOWED_MIMETYPES = {
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

# per-file size limit (10MB)
MAX_FILE_SIZE_BYTES: int = 10 * 1024 * 1024

UPLOADS_PREFIX = "uploads"
PARSED_PREFIX = "parsed"


def secure_name(filename: str) -> str:
    """
    Filename safe for use inside a blob key: no path components,
    no null bytes, limited length. Falls back to "document" when
    nothing usable is left.
    """
    name = os.path.basename((filename or "").replace("\x00", ""))
    safe = secure_filename(name)
    return safe[:200] or "document"


def allowed_mimetype(mime: Optional[str]) -> bool:
    return mime in ALLOWED_MIMETYPES


def upload_key(file_id: str, filename: str) -> str:
    return f"{UPLOADS_PREFIX}/{file_id}-{secure_name(filename)}"


def parsed_key(file_id: str) -> str:
    return f"{PARSED_PREFIX}/{file_id}.json"


def measure_stream(stream) -> int:
    """Size of a seekable upload stream without consuming it."""
    position = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(position)
    return size
