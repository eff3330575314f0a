"""
Gateway to the QStash message queue.

Publishing is a plain HTTPS call; inbound callbacks are authenticated with an
HMAC-SHA256 signature over "<full url>.<raw body>" using the current signing
key, falling back to the next key during rotation.
"""
import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

import requests

from docquiz.domain.errors import BadRequestError, QueueError
from dq_utils.logger_utils import logger
from dq_utils.retry_utils import transient_http_retry

SIGNATURE_HEADER = "upstash-signature"


def compute_signature(signing_key: str, url: str, body: str) -> str:
    """Base64url (unpadded) HMAC-SHA256 of url + "." + body."""
    digest = hmac.new(
        signing_key.encode("utf-8"),
        msg=f"{url}.{body}".encode("utf-8"),
        digestmod=hashlib.sha256,
    ).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def decode_callback_body(payload: Any) -> Dict[str, Any]:
    """
    Unwrap a webhook payload.

    The queue either forwards the parser's JSON as-is, or wraps it as
    {"data": "<base64 JSON>"}. A dict under "data" is the parser's own
    result object and is left alone.
    """
    if not isinstance(payload, dict):
        raise BadRequestError("Webhook payload must be a JSON object")

    wrapped = payload.get("data")
    if not isinstance(wrapped, str):
        return payload

    try:
        decoded = json.loads(base64.b64decode(wrapped, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise BadRequestError("Invalid base64 data payload") from e
    if not isinstance(decoded, dict):
        raise BadRequestError("Decoded data payload must be a JSON object")
    return decoded


class QStashClient:
    def __init__(self, base_url: str, token: str, current_signing_key: str = "",
                 next_signing_key: str = "", timeout: int = 10):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.current_signing_key = current_signing_key
        self.next_signing_key = next_signing_key
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def publish(
        self,
        destination: str,
        body: Dict[str, Any],
        delay_seconds: int = 0,
        callback_url: Optional[str] = None,
        failure_callback_url: Optional[str] = None,
        retries: Optional[int] = None,
    ) -> str:
        """Publish a JSON message for delivery to `destination`; returns the message id."""
        if not self.configured:
            raise QueueError("Message queue is not configured")

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Delay": f"{int(delay_seconds)}s",
        }
        if callback_url:
            headers["Upstash-Callback"] = callback_url
        if failure_callback_url:
            headers["Upstash-Failure-Callback"] = failure_callback_url
        if retries is not None:
            headers["Upstash-Retries"] = str(retries)

        try:
            response = self._post(f"{self.base_url}/v2/publish/{destination}", body, headers)
        except requests.RequestException as e:
            logger.error("QStash publish unreachable", extra={"destination": destination, "error": str(e)})
            raise QueueError(f"Message queue unreachable: {e}") from e

        if not response.ok:
            logger.error(
                "QStash publish rejected",
                extra={"destination": destination, "status": response.status_code},
            )
            raise QueueError(f"QStash publish failed: {response.status_code} {response.text}")

        message_id = response.json().get("messageId")
        if not message_id:
            raise QueueError("QStash response did not include a messageId")
        logger.info(
            "Published message",
            extra={"destination": destination, "message_id": message_id, "delay": delay_seconds},
        )
        return message_id

    @transient_http_retry()
    def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> requests.Response:
        return requests.post(url, data=json.dumps(body), headers=headers, timeout=self.timeout)

    def verify_signature(self, signature: Optional[str], url: str, body: str) -> bool:
        """Check the signature against the current key, then the next key."""
        if not signature:
            return False
        for key in (self.current_signing_key, self.next_signing_key):
            if key and hmac.compare_digest(
                signature.encode("utf-8"), compute_signature(key, url, body).encode("utf-8")
            ):
                return True
        return False
