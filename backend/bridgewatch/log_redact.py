"""Credential redaction for log records and outbound request logging.

The traffic source takes its API key as a ``key=`` query parameter, so any
log line containing a request URL would otherwise leak it.
"""

from __future__ import annotations

import logging
import re
import traceback
from urllib.parse import parse_qsl, quote_plus, urlsplit, urlunsplit

import httpx

MASK = "***"

SENSITIVE_QUERY_KEYS = frozenset({"key", "apikey", "api-key", "token", "access-token", "subscription-key"})
_SENSITIVE_KEY_PATTERN = r"(?:key|apikey|api_key|api-key|token|access_token|subscription-key)"
_URL_PATTERN = re.compile(r"(?i)https?://[^\s\"'<>]+")
_KV_SECRET_PATTERN = re.compile(rf"(?i)(\b{_SENSITIVE_KEY_PATTERN}\b[ \t]*[=:][ \t]*)([^&\s,;\"'<>]+)")
_BEARER_PATTERN = re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._~+\-/]+=*")

_FILTER_LOGGERS = ("", "uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore", "bridgewatch")
_HTTP_LOGGER = logging.getLogger("bridgewatch.http")

# Literal secret values registered at startup (the configured API key).
_registered_secrets: set[str] = set()


def register_secret(value: str | None) -> None:
    """Mask *value* verbatim wherever it appears in a log record."""
    if value and len(value) >= 4:
        _registered_secrets.add(value)


def redact_url(url: str) -> str:
    """Mask sensitive query-parameter values, leaving scheme, host and path intact."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url

    pairs = parse_qsl(parts.query, keep_blank_values=True)
    if not any(name.strip().lower().replace("_", "-") in SENSITIVE_QUERY_KEYS for name, _ in pairs):
        return url

    query = "&".join(
        f"{quote_plus(name)}={MASK}"
        if name.strip().lower().replace("_", "-") in SENSITIVE_QUERY_KEYS
        else f"{quote_plus(name)}={quote_plus(value)}"
        for name, value in pairs
    )
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def redact_text(value: str | None) -> str | None:
    """Mask URLs, key=value pairs, bearer tokens and registered secrets in free text."""
    if value is None:
        return None
    text = str(value)
    for secret in _registered_secrets:
        text = text.replace(secret, MASK)
    text = _URL_PATTERN.sub(lambda match: redact_url(match.group(0)), text)
    text = _KV_SECRET_PATTERN.sub(rf"\1{MASK}", text)
    return _BEARER_PATTERN.sub(f"Bearer {MASK}", text)


class SecretRedactionFilter(logging.Filter):
    """Rewrites each record's message (and traceback) with secrets masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            message = str(record.msg)

        record.msg = redact_text(message) or ""
        record.args = ()
        if record.exc_info:
            record.exc_text = redact_text("".join(traceback.format_exception(*record.exc_info)))
        return True


def install_log_redaction() -> None:
    """Attach the redaction filter to the app, server and httpx loggers and their handlers."""
    redaction_filter = SecretRedactionFilter()
    for logger_name in _FILTER_LOGGERS:
        target = logging.getLogger(logger_name)
        for holder in (target, *target.handlers):
            if not any(isinstance(existing, SecretRedactionFilter) for existing in holder.filters):
                holder.addFilter(redaction_filter)

    # httpx logs every request line at INFO, query string included.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def _log_http_request(request: httpx.Request) -> None:
    _HTTP_LOGGER.debug("HTTP request method=%s url=%s", request.method, redact_url(str(request.url)))


async def _log_http_response(response: httpx.Response) -> None:
    request = response.request
    _HTTP_LOGGER.info(
        "HTTP response method=%s url=%s status=%d",
        request.method,
        redact_url(str(request.url)),
        response.status_code,
    )


def httpx_event_hooks() -> dict[str, list]:
    """Event hooks that log outbound traffic-source calls with redacted URLs."""
    return {
        "request": [_log_http_request],
        "response": [_log_http_response],
    }
