import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from .logger_utils import logger

# Network-level failures only; HTTP status errors are classified by the caller.
TRANSIENT_HTTP_ERRORS = (requests.ConnectionError, requests.Timeout)


def on_retry_callback(retry_state):
    """Callback function to log retry attempts."""
    logger.warning(
        f"Retrying function {retry_state.fn.__name__}, "
        f"attempt {retry_state.attempt_number} after {retry_state.seconds_since_start:.2f}s..."
    )


def transient_http_retry(attempts: int = 3, max_wait: int = 10):
    """Retry decorator for outbound HTTP calls that failed before a response arrived."""
    return retry(
        retry=retry_if_exception_type(TRANSIENT_HTTP_ERRORS),
        wait=wait_exponential(multiplier=1, min=1, max=max_wait),
        stop=stop_after_attempt(attempts),
        before_sleep=on_retry_callback,
        reraise=True,
    )
