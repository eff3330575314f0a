import io
import json
from unittest.mock import MagicMock

from werkzeug.datastructures import FileStorage

from docquiz.domain.models.db_models import (
    File, FileStatus, ParsedContent, ParsedPage, ParsingJob, ParsingStatus,
)
from dq_utils.file_utils import parsed_key

PDF = "application/pdf"
MB = 1024 * 1024
CLASSIFICATION = {"language": "en", "subject": "math", "documentType": "exercises"}


def make_upload(size=500 * 1024, filename="notes.pdf", content_type=PDF) -> FileStorage:
    return FileStorage(stream=io.BytesIO(b"x" * size), filename=filename, content_type=content_type)


def parser_payload(pages=3, success=True, **extra):
    payload = {
        "success": success,
        "file_id": extra.pop("file_id", None),
        "data": {
            "text": "\n\n".join(f"Page {i} text" for i in range(1, pages + 1)),
            "pageCount": pages,
            "pages": [{"pageNumber": i, "content": f"Page {i} text"} for i in range(1, pages + 1)],
            "metadata": {"title": "Algebra", "subject": "math", "wordCount": 42},
        },
        "processing_metrics": {"duration_ms": 1200, "pages_processed": pages},
    }
    payload.update(extra)
    return payload


def http_response(status=200, body=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.json.return_value = body if body is not None else {}
    response.text = text or json.dumps(body or {})
    return response


def seed_parsed_file(services, owner_id, pages=10, with_pages=True, status=FileStatus.COMPLETED):
    """A file whose parsed content already sits in the blob store."""
    file = File(owner_id=owner_id, name="book.pdf", blob_key="uploads/x-book.pdf", size=1000,
                mime_type=PDF, page_count=pages, status=status,
                language="en", subject="math", document_type="textbook")
    services.files.create(file)
    content = ParsedContent(
        text="\n\n".join(f"Content of page {i}" for i in range(1, pages + 1)),
        page_count=pages,
        pages=[ParsedPage(page_number=i, content=f"Content of page {i}") for i in range(1, pages + 1)]
        if with_pages else [],
        metadata={"subject": "math"},
        file_id=file.id,
    )
    services.blob_store.put(parsed_key(file.id), content.to_json_bytes(), "application/json")
    return file


def seed_queued_job(services, owner_id, size=5 * MB):
    file = File(owner_id=owner_id, name="big.pdf", blob_key="uploads/y-big.pdf", size=size,
                mime_type=PDF, language="en", subject="math", document_type="exercises")
    services.files.create(file)
    job = ParsingJob(file_id=file.id, owner_id=owner_id, status=ParsingStatus.QUEUED)
    services.parsing_jobs.create(job)
    return file, job


def signed_post(client, path, body, key="current-key", query=""):
    """POST a JSON webhook the way the queue would, signed over the public URL."""
    from docquiz.infrastructure.qstash import SIGNATURE_HEADER, compute_signature

    raw = json.dumps(body)
    signature = compute_signature(key, f"http://localhost{path}", raw)
    return client.post(path + query, data=raw, content_type="application/json",
                       headers={SIGNATURE_HEADER: signature})


def upload_form(size=500 * 1024, filename="notes.pdf", content_type=PDF, **fields):
    data = dict(CLASSIFICATION, **fields)
    data["file"] = (io.BytesIO(b"x" * size), filename, content_type)
    return data
