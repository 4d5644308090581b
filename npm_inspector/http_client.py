# npm_inspector/http_client.py
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import requests

from .errors import ErrorKind, InspectorError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30  # seconds, applied to every registry and advisory call
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS = (1, 2, 4)  # seconds, indexed by attempt

USER_AGENT = "npm-inspector/0.1"


def is_retryable_status(status_code: int) -> bool:
    # 408 request timeout, 429 rate limit, 5xx server errors
    return status_code in (408, 429) or status_code >= 500


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """
    Converts a Retry-After header into seconds to wait.
    Accepts either delay-seconds ("120") or an HTTP-date; returns None when the
    value is missing or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(int(value))
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


def error_for_status(status_code: int, service: str, context: str) -> InspectorError:
    if status_code == 404:
        return InspectorError(ErrorKind.PACKAGE_NOT_FOUND, f"{context} not found. Please check the name and try again.", status_code)
    if status_code == 408:
        return InspectorError(ErrorKind.TIMEOUT_ERROR, f"{service} request timed out ({context}). Please try again.", status_code)
    if status_code == 429:
        return InspectorError(ErrorKind.RATE_LIMIT, "Too many requests. Please wait a moment and try again.", status_code)
    if status_code >= 500:
        return InspectorError(ErrorKind.API_ERROR, f"{service} temporarily unavailable. Please try again in a few moments.", status_code)
    return InspectorError(ErrorKind.API_ERROR, f"{service} rejected the request for {context} (HTTP {status_code}).", status_code)


def request_json(session, method: str, url: str, *, service: str, context: str,
                 timeout: float = DEFAULT_TIMEOUT, json_body: dict | None = None,
                 headers: dict | None = None, sleep=time.sleep):
    """
    Performs one HTTP call with retry and returns the decoded JSON body.

    Connection errors, timeouts, 408, 429 and 5xx responses are retried up to
    MAX_RETRY_ATTEMPTS times. A 429 carrying Retry-After waits exactly as long as
    the server asks; everything else follows RETRY_DELAYS. Other 4xx responses
    fail immediately. Terminal failures raise InspectorError.
    """
    request_headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    if headers:
        request_headers.update(headers)

    for attempt in range(MAX_RETRY_ATTEMPTS):
        is_last_attempt = attempt == MAX_RETRY_ATTEMPTS - 1
        wait_time = RETRY_DELAYS[attempt]
        try:
            response = session.request(method, url, json=json_body, headers=request_headers, timeout=timeout)
        except requests.exceptions.Timeout as e:
            error = InspectorError(ErrorKind.TIMEOUT_ERROR, f"{service} request timed out ({context}). Please try again.", cause=e)
        except requests.exceptions.RequestException as e:
            error = InspectorError(ErrorKind.NETWORK_ERROR, "Network error. Please check your internet connection.", cause=e)
        else:
            if response.status_code < 400:
                try:
                    return response.json()
                except ValueError as e:
                    raise InspectorError(ErrorKind.VALIDATION_ERROR, f"Invalid {service} response for {context}: body is not JSON", response.status_code, e)

            error = error_for_status(response.status_code, service, context)
            if not is_retryable_status(response.status_code):
                raise error
            if response.status_code == 429:
                hinted = parse_retry_after(response.headers.get("Retry-After"))
                if hinted is not None:
                    wait_time = hinted
                    logger.info(f"{service} rate limited ({context}). Waiting {hinted:.0f}s as requested by Retry-After.")

        if is_last_attempt:
            logger.error(f"{service} call failed for {context}: {error.kind} {error.message}")
            raise error

        logger.info(f"Retry attempt {attempt + 1}/{MAX_RETRY_ATTEMPTS} for {context} after {error.kind} (waiting {wait_time}s)")
        sleep(wait_time)

    # unreachable: the loop either returns or raises
    raise InspectorError(ErrorKind.API_ERROR, f"{service} call failed for {context}")
