"""HTTP access to the published sheet."""

from __future__ import annotations

import logging
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

from donation_thermometer.errors import EmptyPayloadError, TransportError
from donation_thermometer.io import decode_payload
from donation_thermometer.utils import now_ms, random_token

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def build_fetch_url(url: str, *, timestamp_ms: int | None = None, token: str | None = None) -> str:
    """Append ``_t`` and ``_r`` query parameters so every request is unique."""
    stamp = now_ms() if timestamp_ms is None else timestamp_ms
    nonce = random_token() if token is None else token
    parts = urlsplit(url)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in ("_t", "_r")
    ]
    query += [("_t", str(stamp)), ("_r", nonce)]
    return urlunsplit(parts._replace(query=urlencode(query)))


def fetch_csv(
    url: str,
    *,
    timeout_s: float,
    session: requests.Session | None = None,
) -> str:
    """GET the CSV at *url* and return its decoded text.

    Raises
    ------
    TransportError
        On connection failures, timeouts and non-2xx responses.
    EmptyPayloadError
        If the body is empty or whitespace only.
    """
    http = session or requests
    fetch_url = build_fetch_url(url)
    logger.debug("Fetching donation data from %s", fetch_url)
    try:
        response = http.get(fetch_url, headers=NO_CACHE_HEADERS, timeout=timeout_s)
    except requests.Timeout as exc:
        raise TransportError(f"Request timed out after {timeout_s:g}s") from exc
    except requests.RequestException as exc:
        raise TransportError(f"Request failed: {exc}") from exc

    if not response.ok:
        raise TransportError(
            f"HTTP error: {response.status_code}", status_code=response.status_code
        )

    text = decode_payload(response.content)
    if not text.strip():
        raise EmptyPayloadError("Empty CSV data received")
    return text


def check_source(
    url: str,
    *,
    timeout_s: float,
    session: requests.Session | None = None,
) -> tuple[bool, str]:
    """HEAD the source to see whether the sheet is published.

    Never raises; returns ``(ok, detail)`` where *detail* is the status code
    or the error message.
    """
    http = session or requests
    try:
        response = http.head(
            url, headers=NO_CACHE_HEADERS, timeout=timeout_s, allow_redirects=True
        )
    except requests.RequestException as exc:
        logger.error("Error checking source %s: %s", url, exc)
        return False, str(exc)

    if not response.ok:
        logger.warning(
            "Sheet may not be published correctly. Response status: %s", response.status_code
        )
        return False, str(response.status_code)
    logger.info("Sheet is published and accessible")
    return True, str(response.status_code)
