import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential


def http_retry():
    """Retry idempotent gateway calls on connection errors and timeouts."""
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
    )
