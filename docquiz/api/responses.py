"""Response envelope and request correlation ids."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import g, jsonify, request

REQUEST_ID_HEADER = "x-request-id"


def assign_request_id() -> None:
    g.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())


def current_request_id() -> str:
    request_id = g.get("request_id")
    if request_id is None:
        assign_request_id()
        request_id = g.request_id
    return request_id


def success_response(data: Any = None, status: int = 200):
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def error_body(code: str, message: str, **extra) -> Dict[str, Any]:
    error = {
        "code": code,
        "message": message,
        "requestId": current_request_id(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    error.update({key: value for key, value in extra.items() if value is not None})
    return {"success": False, "error": error}


def error_response(status: int, code: str, message: str, data: Optional[Dict[str, Any]] = None,
                   retry_after: Optional[int] = None, **extra):
    body = error_body(code, message, retryAfter=retry_after, **extra)
    if data is not None:
        body["data"] = data
    response = jsonify(body)
    response.status_code = status
    if retry_after is not None:
        response.headers["Retry-After"] = str(retry_after)
    return response
