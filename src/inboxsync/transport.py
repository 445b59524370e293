"""Summary: Minimal JSON-over-HTTP helpers for provider APIs.

Importance: Gives every outbound call a timeout and a single error mapping.
Alternatives: Use requests or a provider SDK.
"""

from __future__ import annotations

import json
import logging
from typing import Any, NoReturn
import urllib.error
import urllib.parse
import urllib.request

from inboxsync.errors import NeedsReconnect, ProviderRequestError, TransientProviderError


logger = logging.getLogger(__name__)


def request_json(
    method: str,
    url: str,
    *,
    provider: str,
    timeout: float,
    access_token: str | None = None,
    params: dict[str, Any] | None = None,
    json_body: dict[str, Any] | None = None,
    form: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Summary: Send a request and decode the JSON response.

    Importance: Maps 401/403 to NeedsReconnect, 429/5xx and network failures to
    TransientProviderError, and other 4xx to ProviderRequestError.
    Alternatives: Let each provider module handle urllib errors itself.
    """

    if params:
        query = urllib.parse.urlencode(
            {key: value for key, value in params.items() if value is not None}, doseq=True
        )
        url = f"{url}?{query}"
    headers: dict[str, str] = {"Accept": "application/json"}
    data: bytes | None = None
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    if form is not None:
        data = urllib.parse.urlencode(form).encode("utf-8")
        headers["Content-Type"] = "application/x-www-form-urlencoded"
    elif json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        headers["Content-Type"] = "application/json"
    request = urllib.request.Request(url, data=data, headers=headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        _raise_for_status(provider, exc.code, error_body or str(exc.reason))
    except (urllib.error.URLError, TimeoutError, ConnectionError) as exc:
        logger.warning("%s request to %s failed: %s", provider, _redact(url), exc)
        raise TransientProviderError(f"{provider} request failed: {exc}") from exc
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise TransientProviderError(f"{provider} returned invalid JSON") from exc


def error_message(body: str) -> str:
    """Summary: Extract a readable message from a provider error body.

    Importance: Google APIs nest errors as {"error": {...}} while OAuth uses flat fields.
    Alternatives: Surface the raw body.
    """

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body.strip()[:300]
    if not isinstance(payload, dict):
        return body.strip()[:300]
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or error)
    if error:
        description = payload.get("error_description")
        return f"{error}: {description}" if description else str(error)
    return body.strip()[:300]


def _raise_for_status(provider: str, status: int, body: str) -> NoReturn:
    message = error_message(body)
    logger.warning("%s request returned %s: %s", provider, status, message)
    if status in (401, 403):
        raise NeedsReconnect(provider, message)
    if status == 429 or status >= 500:
        raise TransientProviderError(f"{provider} returned {status}: {message}")
    raise ProviderRequestError(status, message)


def _redact(url: str) -> str:
    return url.split("?", 1)[0]
