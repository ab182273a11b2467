#!/usr/bin/env python3
"""
Vibecodr: authenticated publish client for generated vibes.

A single-file async client that keeps the Vibecodr CLI credential fresh and
ships a bundle of files to the Vibecodr runtime platform as a published
capsule. Every platform call goes through one resilient HTTP layer (timeouts,
cancellation, Retry-After aware backoff, origin allowlisting, path checks).

Usage:
    vibecodr status                                       # stored credential status
    vibecodr publish <dir> --title <t> [--entry <e>] [--runner <r>] [--visibility <v>] [--dry-run]
    vibecodr retry-upload <capsule-id> <dir> [--skip <path> ...] [--visibility <v>]
    vibecodr retry-publish <capsule-id> [--visibility <v>]

Also importable as a module:
    from vibecodr import VibecodrClient, CredentialManager, CredentialStore, Publisher
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import copy
import email.utils
import getpass
import json
import logging
import os
import re
import secrets
import stat
import subprocess
import sys
import textwrap
import time
import unicodedata
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    before_sleep_log,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

# ---------------------------------------------------------------------------
# Python version guard
# ---------------------------------------------------------------------------

if sys.version_info < (3, 10):
    print("Error: Python 3.10+ is required.", file=sys.stderr)
    sys.exit(1)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VERSION = "0.1.0"
USER_AGENT = f"vibecodr-cli/{VERSION}"
PRODUCT_DIR = "vibecodr"
CONFIG_FILE_NAME = "cli.json"

DEFAULT_API_BASE = "https://api.vibecodr.space"
DEFAULT_PLAYER_BASE = "https://vibecodr.space"

# Network resilience defaults
DEFAULT_TIMEOUT = 30.0  # seconds per attempt
DEFAULT_MAX_RETRIES = 3  # total attempts
DEFAULT_BASE_DELAY = 1.0  # seconds, doubled per attempt
MAX_RETRY_AFTER_SECONDS = 300
RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})

# Credential freshness
DEFAULT_MIN_VALID_SECONDS = 120
MIN_VALID_FLOOR_SECONDS = 10
IDENTITY_REFRESH_WINDOW_SECONDS = 120

# Only these origins ever receive a bearer token.
ALLOWED_API_ORIGINS: Tuple[str, ...] = (
    "https://api.vibecodr.space",
    "https://api.staging.vibecodr.space",
    "http://localhost:8787",
    "http://127.0.0.1:8787",
)
ALLOWED_PLAYER_ORIGINS: Tuple[str, ...] = (
    "https://vibecodr.space",
    "https://staging.vibecodr.space",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
)

# Environment overrides
ENV_API_BASE = "VIBECODR_API_BASE"
ENV_PLAYER_BASE = "VIBECODR_PLAYER_BASE"
ENV_CONFIG = "VIBECODR_CONFIG"
ENV_EXTRA_API_ORIGINS = "VIBECODR_EXTRA_API_ORIGINS"
ENV_EXTRA_PLAYER_ORIGINS = "VIBECODR_EXTRA_PLAYER_ORIGINS"

VISIBILITIES = ("public", "unlisted", "private")

MAX_BUNDLE_SIZE = 5 * 1024 * 1024  # 5 MB
MAX_BUNDLE_FILES = 100

# Names the runtime reserves for itself (or that must never leave the machine)
RESERVED_FILE_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"^entry\.tsx$"),
    re.compile(r"^_vibecodr__"),
    re.compile(r"^__VCSHIM"),
    re.compile(r"^node_modules/"),
    re.compile(r"^package\.json$"),
    re.compile(r"^package-lock\.json$"),
    re.compile(r"^\.env"),
)

MIME_TYPES: Dict[str, str] = {
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".jsx": "application/javascript",
    ".ts": "application/typescript",
    ".tsx": "application/typescript",
    ".json": "application/json",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".eot": "application/vnd.ms-fontobject",
    ".md": "text/markdown",
    ".txt": "text/plain",
    ".xml": "application/xml",
    ".yaml": "text/yaml",
    ".yml": "text/yaml",
    ".wasm": "application/wasm",
    ".map": "application/json",
}

TEXT = "text"
BINARY = "binary"

LOGGER = logging.getLogger("vibecodr")

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class VibecodrError(Exception):
    """Base error for the publish pipeline.

    ``code`` is a stable machine-readable kind. ``context`` holds structured,
    secret-free details (URL, status, affected path, ...). Tokens and raw
    server bodies never go into either.
    """

    code = "VIBECODR_ERROR"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(f"[{self.code}] {message}")


# -- Network ------------------------------------------------------------------


class FetchError(VibecodrError):
    """Transport-level failure (connection refused, reset, DNS, ...)."""

    code = "FETCH_FAILED"

    def __init__(self, message: str, *, url: str = "", original_code: str = "", retryable: bool = False, **context: Any):
        self.url = url
        self.original_code = original_code
        self.retryable = retryable
        super().__init__(message, url=url, original_code=original_code, retryable=retryable, **context)


class FetchTimeout(FetchError):
    code = "FETCH_TIMEOUT"

    def __init__(self, url: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request timed out after {int(timeout * 1000)}ms",
            url=url,
            original_code=self.code,
            retryable=True,
            timeout_ms=int(timeout * 1000),
        )


class FetchRetryExhausted(VibecodrError):
    code = "FETCH_RETRY_EXHAUSTED"

    def __init__(self, url: str, attempts: int, last_status: Optional[int] = None, retry_after: Optional[str] = None):
        self.url = url
        self.attempts = attempts
        self.last_status = last_status
        self.retry_after = retry_after
        super().__init__(
            f"All {attempts} attempts failed for {url}",
            url=url,
            attempts=attempts,
            last_status=last_status,
        )


class FetchJsonHttpError(VibecodrError):
    """Non-2xx response. ``body`` is the parsed (and redacted) JSON error payload."""

    code = "FETCH_JSON_HTTP_ERROR"

    def __init__(self, url: str, status: int, body: Optional[Dict[str, Any]] = None, retry_after: Optional[str] = None):
        self.url = url
        self.status = status
        self.body = body
        self.retry_after = retry_after
        super().__init__(f"HTTP {status} from {url}", url=url, status=status)


class FetchJsonParseError(VibecodrError):
    code = "FETCH_JSON_PARSE_ERROR"

    def __init__(self, url: str, status: int, length: int):
        self.url = url
        self.status = status
        super().__init__(f"Expected JSON from {url} (status={status})", url=url, status=status, body_length=length)


class FetchJsonEmptyResponse(VibecodrError):
    code = "FETCH_JSON_EMPTY_RESPONSE"

    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status
        super().__init__(f"Empty response body from {url} (status={status})", url=url, status=status)


class UntrustedOriginError(VibecodrError):
    """Refused to send credentials to a destination outside the allowlist."""

    code = "UNTRUSTED_ORIGIN"


# -- Credentials ----------------------------------------------------------------


class AuthRequired(VibecodrError):
    code = "AUTH_REQUIRED"


class AuthExpired(VibecodrError):
    code = "AUTH_EXPIRED"


class ConfigReadError(VibecodrError):
    code = "CONFIG_READ_ERROR"


class InsecurePermissionsError(ConfigReadError):
    """The credential file is readable by someone other than its owner."""


class ConfigWriteError(VibecodrError):
    code = "CONFIG_WRITE_ERROR"


class TokenExchangeError(VibecodrError):
    code = "TOKEN_EXCHANGE_ERROR"


class IdentityRefreshError(VibecodrError):
    code = "REFRESH_ERROR"


# -- Publish ------------------------------------------------------------------


@dataclass(frozen=True)
class PublishRecovery:
    """How far a failed publish got, and which recovery call applies."""

    capsule_id: Optional[str] = None
    uploaded_files: Tuple[str, ...] = ()
    failed_file: Optional[str] = None
    total_files: int = 0
    can_retry_upload: bool = False
    can_retry_publish: bool = False
    all_files_uploaded: bool = False
    visibility: Optional[str] = None

    @property
    def files_uploaded(self) -> int:
        return len(self.uploaded_files)

    @property
    def resumable(self) -> bool:
        return bool(self.capsule_id) and (self.can_retry_upload or self.can_retry_publish)


class PublishValidationError(VibecodrError):
    code = "VALIDATION_ERROR"


class ForbiddenFileName(PublishValidationError):
    code = "FORBIDDEN_FILE_NAME"


class BundleTooLarge(PublishValidationError):
    code = "BUNDLE_TOO_LARGE"


class TooManyFiles(PublishValidationError):
    code = "TOO_MANY_FILES"


class CapsuleCreateError(VibecodrError):
    code = "CAPSULE_CREATE_ERROR"


class _RecoverableError(VibecodrError):
    def __init__(self, message: str, recovery: Optional[PublishRecovery] = None, **context: Any):
        self.recovery = recovery or PublishRecovery()
        super().__init__(message, **context)


class FileUploadError(_RecoverableError):
    code = "FILE_UPLOAD_ERROR"


class CapsulePublishError(_RecoverableError):
    code = "CAPSULE_PUBLISH_ERROR"


class SecurityBlockError(VibecodrError):
    code = "SECURITY_BLOCK"

    def __init__(self, message: str, reasons: Sequence[str] = (), tags: Sequence[str] = (), **context: Any):
        self.reasons = tuple(reasons)
        self.tags = tuple(tags)
        super().__init__(message, reasons=list(self.reasons), tags=list(self.tags), **context)


class RateLimitError(VibecodrError):
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None, **context: Any):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, retry_after_seconds=retry_after_seconds, **context)


class PublishFailed(_RecoverableError):
    """Aggregate publish failure. ``__cause__`` is the failing step's error."""

    code = "PUBLISH_FAILED"

    @property
    def step_error(self) -> Optional[BaseException]:
        return self.__cause__

    @property
    def root_cause(self) -> Optional[BaseException]:
        current = self.__cause__
        while current is not None and current.__cause__ is not None:
            current = current.__cause__
        return current


# ---------------------------------------------------------------------------
# Logging & formatting helpers
# ---------------------------------------------------------------------------


def configure_logging(verbose: bool = False) -> None:
    """Send library logs to stderr: DEBUG with ``verbose``, else warnings only."""
    if not LOGGER.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[%(name)s] %(message)s"))
        LOGGER.addHandler(handler)
        LOGGER.propagate = False
    LOGGER.setLevel(logging.DEBUG if verbose else logging.WARNING)


# ANSI colours (disabled if not a TTY)
_USE_COLOR = hasattr(sys.stdout, "isatty") and sys.stdout.isatty() and not os.environ.get("NO_COLOR")


def _c(code: str, text: str) -> str:
    if _USE_COLOR:
        return f"\033[{code}m{text}\033[0m"
    return text


def red(t: str) -> str:
    return _c("31", t)


def yellow(t: str) -> str:
    return _c("33", t)


def green(t: str) -> str:
    return _c("32", t)


def bold(t: str) -> str:
    return _c("1", t)


def dim(t: str) -> str:
    return _c("2", t)


# ---------------------------------------------------------------------------
# Origin allowlist
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OriginCheck:
    valid: bool
    origin: Optional[str] = None
    reason: str = ""


def normalize_origin(url: Any) -> str:
    """Strip trailing slashes: ``https://api.vibecodr.space///`` -> ``https://api.vibecodr.space``."""
    if not url or not isinstance(url, str):
        return ""
    return url.rstrip("/")


def extract_origin(url: str) -> Tuple[Optional[str], str]:
    """
    Return ``(origin, "")`` for a well-formed http(s) URL, else ``(None, reason)``.

    Embedded credentials are rejected outright: ``https://api.vibecodr.space@evil.com``
    actually targets ``evil.com``. Backslashes are rejected because parsers
    disagree on them.
    """
    if "\\" in url:
        return None, "URL contains backslash"
    try:
        parts = urllib.parse.urlsplit(url)
        port = parts.port
    except ValueError:
        return None, "Invalid URL format"
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None, "Invalid URL format"
    if "@" in parts.netloc:
        return None, "URL contains embedded credentials (username/password)"

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    default_port = 443 if parts.scheme == "https" else 80
    origin = f"{parts.scheme}://{host}"
    if port is not None and port != default_port:
        origin += f":{port}"
    return origin, ""


def _origins_from_env(var: str) -> Tuple[str, ...]:
    raw = os.environ.get(var, "")
    origins: List[str] = []
    for item in raw.split(","):
        item = normalize_origin(item.strip())
        if not item:
            continue
        origin, reason = extract_origin(item)
        if origin is None:
            LOGGER.warning("Ignoring invalid origin %r in %s: %s", item, var, reason)
            continue
        origins.append(origin)
    return tuple(origins)


def _validate_origin(
    url: Any,
    allowed: Sequence[str],
    extra_origins: Iterable[str],
    env_var: str,
    label: str,
) -> OriginCheck:
    if not url or not isinstance(url, str):
        return OriginCheck(False, reason=f"{label} base must be a non-empty string")

    origin, error = extract_origin(normalize_origin(url))
    if origin is None:
        return OriginCheck(False, reason=error or f"Invalid URL: {url}")

    trusted = set(allowed) | set(_origins_from_env(env_var))
    trusted.update(normalize_origin(o) for o in extra_origins)
    if origin not in trusted:
        return OriginCheck(
            False,
            origin=origin,
            reason=f'{label} origin "{origin}" is not in the allowed list. Allowed: {", ".join(allowed)}',
        )
    return OriginCheck(True, origin=origin)


def validate_api_base(api_base: Any, extra_origins: Iterable[str] = ()) -> OriginCheck:
    """Check that ``api_base`` may receive a bearer token.

    >>> validate_api_base("https://api.vibecodr.space").valid
    True
    >>> validate_api_base("https://evil.com").valid
    False
    """
    return _validate_origin(api_base, ALLOWED_API_ORIGINS, extra_origins, ENV_EXTRA_API_ORIGINS, "API")


def validate_player_base(player_base: Any, extra_origins: Iterable[str] = ()) -> OriginCheck:
    """Check that ``player_base`` is a trusted viewer origin for result URLs."""
    return _validate_origin(player_base, ALLOWED_PLAYER_ORIGINS, extra_origins, ENV_EXTRA_PLAYER_ORIGINS, "Player")


def _require_secure_url(url: str, what: str) -> None:
    """Reject plain-HTTP destinations other than localhost."""
    parsed = urllib.parse.urlsplit(url)
    if parsed.scheme == "https":
        return
    if parsed.scheme == "http" and parsed.hostname in ("localhost", "127.0.0.1"):
        return
    raise UntrustedOriginError(f"Refusing to contact {what} over insecure connection: {url}", url=url)


# ---------------------------------------------------------------------------
# Path safety
# ---------------------------------------------------------------------------

# Characters that render like "." and are used to sneak ".." past naive checks
_DOT_LOOKALIKES = (
    "\u2024",  # ONE DOT LEADER
    "\uff0e",  # FULLWIDTH FULL STOP
    "\u0701",  # SYRIAC SUPRALINEAR FULL STOP
    "\u0702",  # SYRIAC SUBLINEAR FULL STOP
    "\ufe52",  # SMALL FULL STOP
    "\u2e3c",  # STENOGRAPHIC FULL STOP
)
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:")
_FORBIDDEN_PATH_PATTERNS = (
    re.compile(r"\.\."),
    re.compile(r"%2e%2e", re.IGNORECASE),
    re.compile(r"%252e", re.IGNORECASE),
)


@dataclass(frozen=True)
class PathCheck:
    safe: bool
    reason: str = ""


def is_path_safe(file_path: Any) -> PathCheck:
    """Validate a relative bundle path against traversal tricks.

    Checks run on both the raw path and its NFKD normalization, so
    full-width or lookalike dots cannot stand in for ``..``. Non-ASCII
    names (``src/日本語.tsx``) stay valid.
    """
    if not file_path or not isinstance(file_path, str):
        return PathCheck(False, "Path must be a non-empty string")

    if any(ch in file_path for ch in _DOT_LOOKALIKES):
        return PathCheck(False, "Path contains Unicode lookalike characters")

    normalized = unicodedata.normalize("NFKD", file_path)

    for candidate in (file_path, normalized):
        if candidate.startswith("/") or candidate.startswith("\\\\") or _WINDOWS_DRIVE.match(candidate):
            return PathCheck(False, "Absolute paths are not allowed")

    if "\0" in file_path or "\0" in normalized:
        return PathCheck(False, "Null bytes in path are not allowed")

    if any(part == ".." for part in re.split(r"[/\\]", normalized)):
        return PathCheck(False, "Path traversal (..) is not allowed")

    for pattern in _FORBIDDEN_PATH_PATTERNS:
        if pattern.search(file_path) or pattern.search(normalized):
            return PathCheck(False, "Path contains forbidden pattern")

    if normalized.count(".") > file_path.count("."):
        return PathCheck(False, "Path contains characters that normalize to dots")

    return PathCheck(True)


# ---------------------------------------------------------------------------
# Resilient HTTP client
# ---------------------------------------------------------------------------

_TRANSIENT_TRANSPORT_ERRORS = (
    httpx.ConnectError,  # refused, DNS failure
    httpx.ReadError,  # connection reset
    httpx.WriteError,
    httpx.RemoteProtocolError,  # server hung up mid-response
    httpx.TimeoutException,
)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Convert a Retry-After header (delta-seconds or HTTP-date) to seconds.

    Returns None when the header is missing, malformed, or names a past date;
    the caller then falls back to exponential backoff. Capped at 5 minutes.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(min(int(value), MAX_RETRY_AFTER_SECONDS))
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delay = (when - datetime.now(timezone.utc)).total_seconds()
    if delay <= 0:
        return None
    return min(delay, float(MAX_RETRY_AFTER_SECONDS))


class _RetryAfterOrBackoff(wait_base):
    """429 waits follow Retry-After; everything else doubles ``base_delay``."""

    def __init__(self, base_delay: float) -> None:
        self._backoff = wait_exponential(multiplier=base_delay, exp_base=2)

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and not outcome.failed:
            response = outcome.result()
            if response.status_code == 429:
                delay = parse_retry_after(response.headers.get("Retry-After"))
                if delay is not None:
                    return delay
        return float(self._backoff(retry_state))


def _is_transient_failure(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and exc.retryable


def _is_retryable_response(response: Any) -> bool:
    return isinstance(response, httpx.Response) and response.status_code in RETRYABLE_STATUSES


@dataclass
class _RetryState:
    attempts: int = 0
    last_error: Optional[BaseException] = None
    last_status: Optional[int] = None
    last_retry_after: Optional[str] = None


async def _wait_cancellable(
    awaitable: Awaitable[T],
    cancel_event: Optional[asyncio.Event] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Await ``awaitable`` unless ``cancel_event`` fires or ``timeout`` elapses first.

    Caller cancellation raises ``asyncio.CancelledError``; the timeout raises
    ``asyncio.TimeoutError``. An already-set event raises before anything runs.
    """
    if cancel_event is not None and cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise asyncio.CancelledError("cancelled by caller")
    if cancel_event is None and timeout is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if not task.done():
            task.cancel()

    if task in done:
        return task.result()
    await asyncio.gather(task, return_exceptions=True)
    if cancel_waiter is not None and cancel_waiter in done:
        raise asyncio.CancelledError("cancelled by caller")
    raise asyncio.TimeoutError()


class VibecodrClient:
    """
    Async HTTP client used for every Vibecodr and identity-provider call.

    Wraps httpx with a per-attempt timeout, caller cancellation through an
    ``asyncio.Event``, exponential backoff (tenacity) for 429/502/503/504 and
    transient transport errors, and an origin allowlist in front of anything
    carrying an ``Authorization`` header.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        extra_api_origins: Iterable[str] = (),
        extra_player_origins: Iterable[str] = (),
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.extra_api_origins = tuple(extra_api_origins)
        self.extra_player_origins = tuple(extra_player_origins)
        self._sleep = sleep
        # Redirects stay disabled: a bearer token must only reach the validated origin.
        self._http = httpx.AsyncClient(
            transport=transport,
            timeout=None,
            follow_redirects=False,
            headers={"User-Agent": USER_AGENT},
        )

    async def __aenter__(self) -> "VibecodrClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- Security gates -----------------------------------------------------

    def check_origin(self, url: str, role: str = "api") -> OriginCheck:
        if role == "player":
            return validate_player_base(url, self.extra_player_origins)
        return validate_api_base(url, self.extra_api_origins)

    def require_trusted_origin(self, url: str, role: str = "api") -> str:
        """Return the origin of ``url`` or raise UntrustedOriginError."""
        check = self.check_origin(url, role)
        if not check.valid:
            raise UntrustedOriginError(
                f"Refusing to send credentials to untrusted {role} origin: {check.reason}",
                origin=check.origin,
            )
        return check.origin or ""

    # -- Single attempt -----------------------------------------------------

    async def _send_once(
        self,
        method: str,
        url: str,
        *,
        timeout: float,
        cancel_event: Optional[asyncio.Event],
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await _wait_cancellable(self._http.request(method, url, **kwargs), cancel_event, timeout)
        except asyncio.TimeoutError:
            raise FetchTimeout(url, timeout) from None
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            retryable = isinstance(exc, _TRANSIENT_TRANSPORT_ERRORS)
            raise FetchError(
                f"Fetch failed for {url}: {type(exc).__name__}",
                url=url,
                original_code=type(exc).__name__,
                retryable=retryable,
            ) from exc

    # -- Public API ---------------------------------------------------------

    async def request_with_resilience(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        bearer_token: Optional[str] = None,
        origin_role: str = "api",
        json: Any = None,
        content: Optional[bytes] = None,
        data: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> httpx.Response:
        """
        Send a request with timeout, cancellation and retry.

        Returns the final ``httpx.Response`` for any non-retryable status
        (including 4xx). Raises FetchRetryExhausted once ``max_retries``
        attempts have all hit a retryable condition, FetchError/FetchTimeout
        for non-retryable transport failures, and ``asyncio.CancelledError``
        when ``cancel_event`` fires.
        """
        timeout = self.timeout if timeout is None else timeout
        max_retries = self.max_retries if max_retries is None else max_retries
        base_delay = self.base_delay if base_delay is None else base_delay

        hdrs: Dict[str, str] = dict(headers or {})
        if bearer_token is not None or any(k.lower() == "authorization" for k in hdrs):
            self.require_trusted_origin(url, origin_role)
        if bearer_token is not None:
            hdrs["Authorization"] = f"Bearer {bearer_token}"

        kwargs: Dict[str, Any] = {"headers": hdrs}
        if json is not None:
            kwargs["json"] = json
        if content is not None:
            kwargs["content"] = content
        if data is not None:
            kwargs["data"] = data

        state = _RetryState()

        async def attempt() -> httpx.Response:
            state.attempts += 1
            try:
                response = await self._send_once(method, url, timeout=timeout, cancel_event=cancel_event, **kwargs)
            except FetchError as exc:
                state.last_error = exc
                raise
            state.last_status = response.status_code
            state.last_retry_after = response.headers.get("Retry-After")
            return response

        async def backoff_sleep(delay: float) -> None:
            await _wait_cancellable(self._sleep(delay), cancel_event)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries),
            wait=_RetryAfterOrBackoff(base_delay),
            retry=retry_if_exception(_is_transient_failure) | retry_if_result(_is_retryable_response),
            before_sleep=before_sleep_log(LOGGER, logging.DEBUG),
            sleep=backoff_sleep,
        )
        try:
            return await retrying(attempt)
        except RetryError:
            raise FetchRetryExhausted(
                url,
                attempts=state.attempts,
                last_status=state.last_status,
                retry_after=state.last_retry_after,
            ) from state.last_error

    async def request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        """
        Like ``request_with_resilience`` but decode a JSON body.

        Non-2xx raises FetchJsonHttpError with the parsed error body attached;
        an unparsable 2xx body raises FetchJsonParseError; an empty (or
        ``null``) 2xx body raises FetchJsonEmptyResponse instead of returning None.
        """
        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("Accept", "application/json")
        response = await self.request_with_resilience(method, url, headers=headers, **kwargs)
        text = response.text
        status = response.status_code

        if not response.is_success:
            body = _parse_json_or_none(text)
            raise FetchJsonHttpError(
                url,
                status,
                body=_redact_body(body) if isinstance(body, dict) else None,
                retry_after=response.headers.get("Retry-After"),
            )

        if not text.strip():
            raise FetchJsonEmptyResponse(url, status)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise FetchJsonParseError(url, status, len(text)) from exc
        if payload is None:
            raise FetchJsonEmptyResponse(url, status)
        return payload


def _parse_json_or_none(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _redact_body(body: Dict[str, Any]) -> Dict[str, Any]:
    """Drop anything token-like from an error body before it is kept on an exception."""
    return {
        key: "[redacted]" if "token" in str(key).lower() or "secret" in str(key).lower() else value
        for key, value in body.items()
    }


def is_auth_error(exc: Optional[BaseException]) -> bool:
    """
    True when ``exc`` (or anything in its ``__cause__`` chain) means the
    bearer token was rejected: HTTP 401, an "expiring soon" hint, or an
    ``auth.*`` error code in the response body.
    """
    current = exc
    while current is not None:
        if getattr(current, "status", None) == 401:
            return True
        body = getattr(current, "body", None)
        if isinstance(body, dict):
            hint = body.get("hint") or body.get("message") or ""
            if isinstance(hint, str) and "expiring soon" in hint.lower():
                return True
            code = body.get("errorCode") or body.get("code") or body.get("error")
            if isinstance(code, str) and "auth." in code:
                return True
        current = current.__cause__
    return False


# ---------------------------------------------------------------------------
# Credential storage
# ---------------------------------------------------------------------------


def _is_windows() -> bool:
    return sys.platform == "win32"


def expected_config_dir() -> Path:
    """Directory credential files are expected to live in on this platform."""
    if _is_windows():
        return Path(os.environ.get("APPDATA", "")) / PRODUCT_DIR
    return Path.home() / ".config" / PRODUCT_DIR


def default_config_path() -> Path:
    """Default credential file path, honouring ``VIBECODR_CONFIG``."""
    override = os.environ.get(ENV_CONFIG)
    if override:
        return Path(override).expanduser()
    if _is_windows():
        app_data = os.environ.get("APPDATA")
        if app_data:
            return Path(app_data) / PRODUCT_DIR / CONFIG_FILE_NAME
        profile = os.environ.get("USERPROFILE")
        if profile:
            return Path(profile) / "AppData" / "Roaming" / PRODUCT_DIR / CONFIG_FILE_NAME
    return Path.home() / ".config" / PRODUCT_DIR / CONFIG_FILE_NAME


@dataclass(frozen=True)
class ConfigPathCheck:
    valid: bool
    reason: str = ""
    warning: str = ""


def validate_config_path(config_path: Union[str, Path]) -> ConfigPathCheck:
    """A credential path must be a ``.json`` file; outside the standard directory is only flagged."""
    resolved = Path(os.path.abspath(config_path))
    if resolved.suffix != ".json":
        return ConfigPathCheck(False, reason="Config path must end in .json")

    expected = Path(os.path.abspath(expected_config_dir()))
    if resolved != expected and expected not in resolved.parents:
        return ConfigPathCheck(True, warning="Config path outside standard location")
    return ConfigPathCheck(True)


@dataclass(frozen=True)
class WindowsPermissionCheck:
    secure: bool
    details: str = ""
    warning: str = ""


_INSECURE_ACL_PATTERNS = (
    re.compile(r"Everyone:", re.IGNORECASE),
    re.compile(r"BUILTIN\\Users:", re.IGNORECASE),
    re.compile(r"NT AUTHORITY\\Authenticated Users:", re.IGNORECASE),
)


def _current_windows_user() -> str:
    return os.environ.get("USERNAME") or getpass.getuser()


def check_windows_permissions(path: Path) -> WindowsPermissionCheck:
    """Scan ``icacls`` output for entries granting access to everyone on the machine.

    If icacls cannot run, the file is reported secure with a warning.
    """
    try:
        result = subprocess.run(
            ["icacls", str(path)],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        return WindowsPermissionCheck(True, warning=f"Could not verify Windows permissions: {exc}")

    insecure = [
        line.strip()
        for line in result.stdout.splitlines()
        if line.strip() and any(p.search(line) for p in _INSECURE_ACL_PATTERNS)
    ]
    if insecure:
        return WindowsPermissionCheck(False, details="File has world-readable permissions:\n" + "\n".join(insecure))
    return WindowsPermissionCheck(True)


def _icacls_grant_owner_only(path: Path, grant: str) -> bool:
    try:
        subprocess.run(
            ["icacls", str(path), "/inheritance:r", "/grant:r", f"{_current_windows_user()}:{grant}"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return False
    return True


def set_windows_file_permissions(path: Path) -> bool:
    """Replace inherited ACL entries with a single current-user full-control entry."""
    return _icacls_grant_owner_only(path, "(F)")


def fix_windows_permissions(path: Union[str, Path]) -> bool:
    """Opt-in remediation for a credential file flagged as insecure."""
    path = Path(path)
    LOGGER.info("Running: icacls %s /inheritance:r /grant:r %s:(F)", path, _current_windows_user())
    ok = set_windows_file_permissions(path)
    if not ok:
        LOGGER.warning(
            'Failed to fix permissions on "%s". For security, manually run: '
            'icacls "%s" /inheritance:r /grant:r "%%USERNAME%%:(F)"',
            path,
            path,
        )
    return ok


def verify_file_permissions(path: Path) -> None:
    """
    Refuse to trust a credential file that group/others can access.

    Unix inspects mode bits (anything beyond 0600 fails); Windows scans
    ACL entries. If the check itself cannot run, the file is trusted.
    """
    if _is_windows():
        check = check_windows_permissions(path)
        if check.warning:
            LOGGER.debug(check.warning)
            return
        if not check.secure:
            raise InsecurePermissionsError(
                "Config file has insecure Windows permissions.\n"
                f"{check.details}\n\n"
                "To fix, run one of:\n"
                "  1. Automated: call fix_windows_permissions() from code\n"
                f'  2. Manual: icacls "{path}" /inheritance:r /grant:r "%USERNAME%:(F)"',
                config_path=str(path),
            )
        return

    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return
    except OSError as exc:
        LOGGER.debug("Could not verify permissions on %s: %s", path, exc)
        return
    if mode & 0o077:
        raise InsecurePermissionsError(
            f'Config file has insecure permissions ({mode:o}). Expected 600. Run: chmod 600 "{path}"',
            config_path=str(path),
            actual_mode=f"{mode:o}",
            expected_mode="600",
        )


def _ensure_config_dir(directory: Path) -> None:
    existed = directory.exists()
    directory.mkdir(parents=True, exist_ok=True)
    if existed:
        return
    if _is_windows():
        _icacls_grant_owner_only(directory, "(OI)(CI)(F)")
    else:
        os.chmod(directory, 0o700)


def write_config_atomic(path: Path, data: Dict[str, Any]) -> None:
    """
    Write JSON to ``path`` via a sibling temp file and ``os.replace``.

    Readers never observe a partial file. Unix files are created 0600;
    on Windows the ACL is tightened after the rename, and a failure to do
    so is logged rather than raised.
    """
    try:
        _ensure_config_dir(path.parent)
    except OSError as exc:
        raise ConfigWriteError(f"Failed to create config directory: {exc}", config_path=str(path)) from exc

    text = json.dumps(data, indent=2) + "\n"
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{secrets.token_hex(4)}.tmp")
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise ConfigWriteError(f"Failed to write config atomically: {exc}", config_path=str(path)) from exc

    if _is_windows() and not set_windows_file_permissions(path):
        LOGGER.warning(
            'Could not set secure permissions on "%s". For security, manually run: '
            'icacls "%s" /inheritance:r /grant:r "%%USERNAME%%:(F)"',
            path,
            path,
        )


def _parse_expiry(value: Any) -> Optional[int]:
    """Expiry values may be stored as numbers or numeric strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class CredentialRecord:
    """
    The on-disk CLI credential.

    Serialized in the layout the browser-login helper writes::

        {"clerk": {"access_token", "refresh_token", "expires_at"},
         "vibecodr": {"access_token", "expires_at"},
         "issuer", "client_id", "api_base", "updated_at"}

    Unknown keys are carried through untouched on rewrite.
    """

    identity_token: Optional[str] = None
    identity_refresh_token: Optional[str] = field(default=None, repr=False)
    identity_expires_at: Optional[int] = None
    platform_token: Optional[str] = field(default=None, repr=False)
    platform_expires_at: Optional[int] = None
    issuer: Optional[str] = None
    client_id: Optional[str] = None
    api_base: Optional[str] = None
    updated_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __repr__(self) -> str:
        return (
            f"CredentialRecord(has_identity_token={bool(self.identity_token)}, "
            f"identity_expires_at={self.identity_expires_at}, "
            f"has_platform_token={bool(self.platform_token)}, "
            f"platform_expires_at={self.platform_expires_at}, issuer={self.issuer!r}, "
            f"api_base={self.api_base!r})"
        )

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CredentialRecord":
        identity = data.get("clerk") if isinstance(data.get("clerk"), dict) else {}
        platform = data.get("vibecodr") if isinstance(data.get("vibecodr"), dict) else {}
        return cls(
            identity_token=identity.get("access_token") or None,
            identity_refresh_token=identity.get("refresh_token") or None,
            identity_expires_at=_parse_expiry(identity.get("expires_at")),
            platform_token=platform.get("access_token") or None,
            platform_expires_at=_parse_expiry(platform.get("expires_at")),
            issuer=data.get("issuer") or None,
            client_id=data.get("client_id") or None,
            api_base=data.get("api_base") or None,
            updated_at=data.get("updated_at") or None,
            raw=copy.deepcopy(data),
        )

    def to_json(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.raw)
        identity = dict(data.get("clerk") or {})
        identity.update(
            access_token=self.identity_token,
            refresh_token=self.identity_refresh_token,
            expires_at=self.identity_expires_at,
        )
        platform = dict(data.get("vibecodr") or {})
        platform.update(access_token=self.platform_token, expires_at=self.platform_expires_at)
        data["clerk"] = {k: v for k, v in identity.items() if v is not None}
        data["vibecodr"] = {k: v for k, v in platform.items() if v is not None}
        for key, value in (
            ("issuer", self.issuer),
            ("client_id", self.client_id),
            ("api_base", self.api_base),
            ("updated_at", self.updated_at),
        ):
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class CredentialStatus:
    """Credential presence/expiry without the token itself."""

    has_credentials: bool
    config_path: str
    expires_at: Optional[int] = None
    is_expired: Optional[bool] = None


class CredentialStore:
    """The credential file on disk. Read fresh on every call, written atomically."""

    def __init__(self, path: Optional[Union[str, Path]] = None, *, check_permissions: bool = True):
        self.path = Path(path) if path is not None else default_config_path()
        self.check_permissions = check_permissions

        check = validate_config_path(self.path)
        if not check.valid:
            raise ConfigReadError(f"Invalid config path: {check.reason}", config_path=str(self.path))
        if check.warning:
            LOGGER.warning("%s: %s", check.warning, self.path)

    def load(self) -> Optional[CredentialRecord]:
        """Return the stored record, or None if the file does not exist."""
        if self.check_permissions:
            verify_file_permissions(self.path)
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ConfigReadError(f"Failed to read config file: {exc}", config_path=str(self.path)) from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigReadError("Config file is not valid JSON", config_path=str(self.path)) from exc
        if not isinstance(data, dict):
            raise ConfigReadError("Config file must contain a JSON object", config_path=str(self.path))
        return CredentialRecord.from_json(data)

    def save(self, record: CredentialRecord) -> None:
        write_config_atomic(self.path, record.to_json())

    def status(self, now: Optional[float] = None) -> CredentialStatus:
        record = self.load()
        if record is None or not record.platform_token:
            return CredentialStatus(has_credentials=False, config_path=str(self.path))
        now = time.time() if now is None else now
        expires_at = record.platform_expires_at
        return CredentialStatus(
            has_credentials=True,
            config_path=str(self.path),
            expires_at=expires_at,
            is_expired=None if expires_at is None else expires_at <= int(now),
        )


def get_stored_credential_status(config_path: Optional[Union[str, Path]] = None) -> CredentialStatus:
    """Report whether credentials exist and whether they are expired. Never returns the token."""
    return CredentialStore(config_path).status()


# ---------------------------------------------------------------------------
# Credential lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthToken:
    token: str = field(repr=False)
    expires_at: int = 0


class CredentialManager:
    """
    Produces a valid platform token on demand.

    A stored token is returned as-is while it has more than
    ``max(min_valid_seconds, 10)`` seconds left. Otherwise the identity token
    is exchanged for a new platform token, refreshing the identity token
    through the OIDC provider first when it looks stale. Concurrent callers
    of the same manager share one in-flight refresh.
    """

    def __init__(
        self,
        store: CredentialStore,
        client: VibecodrClient,
        *,
        api_base: str = DEFAULT_API_BASE,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.api_base = normalize_origin(api_base)
        self._clock = clock
        self._inflight: Optional[asyncio.Future] = None

    def _now(self) -> int:
        return int(self._clock())

    async def get_valid_token(
        self,
        min_valid_seconds: int = DEFAULT_MIN_VALID_SECONDS,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AuthToken:
        """Return a token valid for at least ``min_valid_seconds`` (floor 10s)."""
        record = self.store.load()
        if record is None:
            raise AuthRequired(
                "No CLI credentials found. Run the Vibecodr browser login first.",
                config_path=str(self.store.path),
            )
        if not record.platform_token:
            raise AuthRequired(
                "Missing Vibecodr access token. Run the Vibecodr browser login first.",
                config_path=str(self.store.path),
            )

        now = self._now()
        effective_min_valid = max(min_valid_seconds, MIN_VALID_FLOOR_SECONDS)
        expires_at = record.platform_expires_at
        if expires_at is not None and expires_at - now > effective_min_valid:
            LOGGER.debug("Token valid for ~%d minutes", (expires_at - now) // 60)
            return AuthToken(record.platform_token, expires_at)

        LOGGER.debug("Token expired or expiring soon, attempting refresh...")
        return await self._refresh_single_flight(cancel_event)

    async def refresh(self, cancel_event: Optional[asyncio.Event] = None) -> AuthToken:
        """Force a new platform token regardless of the stored expiry."""
        return await self._refresh_single_flight(cancel_event)

    async def _refresh_single_flight(self, cancel_event: Optional[asyncio.Event]) -> AuthToken:
        if cancel_event is not None and cancel_event.is_set():
            raise asyncio.CancelledError("cancelled by caller")
        inflight = self._inflight
        if inflight is None:
            inflight = self._inflight = asyncio.ensure_future(self._run_refresh())
        # shield: one caller giving up must not cancel the refresh others are awaiting
        return await _wait_cancellable(asyncio.shield(inflight), cancel_event)

    async def _run_refresh(self) -> AuthToken:
        try:
            return await self._refresh_platform_token()
        finally:
            self._inflight = None

    @property
    def refresh_in_flight(self) -> bool:
        return self._inflight is not None

    async def _refresh_platform_token(self) -> AuthToken:
        self.client.require_trusted_origin(self.api_base, "api")

        record = self.store.load()
        if record is None:
            raise AuthExpired(
                "No credentials found. Cannot refresh token. Run the Vibecodr browser login first.",
                config_path=str(self.store.path),
            )
        if not record.identity_token:
            raise AuthExpired(
                "Missing identity token. Run the Vibecodr browser login again.",
                config_path=str(self.store.path),
            )

        try:
            return await self._exchange_and_store(record)
        except (ConfigReadError, ConfigWriteError, UntrustedOriginError):
            raise
        except VibecodrError as exchange_err:
            if not record.identity_refresh_token:
                raise AuthExpired(
                    "Token exchange failed and no refresh_token available. Run the Vibecodr browser login again.",
                    config_path=str(self.store.path),
                ) from exchange_err
            if not self._should_refresh_identity(record, exchange_err):
                raise AuthExpired(
                    f"Token exchange failed: {exchange_err.message}",
                    config_path=str(self.store.path),
                ) from exchange_err
            if not record.issuer or not record.client_id:
                raise AuthExpired(
                    "Authentication refresh not configured. Run the Vibecodr browser login again.",
                    config_path=str(self.store.path),
                ) from exchange_err

            try:
                record = await self._refresh_identity_and_store(record)
                return await self._exchange_and_store(record)
            except (ConfigReadError, ConfigWriteError):
                raise
            except VibecodrError as refresh_err:
                raise IdentityRefreshError(
                    f"Failed to refresh authentication: {refresh_err.message}",
                    config_path=str(self.store.path),
                ) from refresh_err

    def _should_refresh_identity(self, record: CredentialRecord, exchange_err: BaseException) -> bool:
        expiring_soon = (
            record.identity_expires_at is not None
            and record.identity_expires_at - self._now() < IDENTITY_REFRESH_WINDOW_SECONDS
        )
        return expiring_soon or is_auth_error(exchange_err)

    async def _exchange_and_store(self, record: CredentialRecord) -> AuthToken:
        LOGGER.debug("Exchanging identity token for Vibecodr token...")
        payload = await self.client.request_json(
            "POST",
            f"{self.api_base}/auth/cli/exchange",
            json={"access_token": record.identity_token},
        )

        token = payload.get("access_token") if isinstance(payload, dict) else None
        expires_at = payload.get("expires_at") if isinstance(payload, dict) else None
        if (
            not isinstance(token, str)
            or not token
            or not isinstance(expires_at, (int, float))
            or isinstance(expires_at, bool)
        ):
            raise TokenExchangeError(
                "Unexpected /auth/cli/exchange response shape",
                has_access_token=isinstance(token, str),
                has_expires_at=isinstance(expires_at, (int, float)) and not isinstance(expires_at, bool),
            )

        extra = {k: v for k, v in payload.items() if k not in ("access_token", "expires_at")}
        record.raw["vibecodr"] = {**(record.raw.get("vibecodr") or {}), **extra}
        record.platform_token = token
        record.platform_expires_at = int(expires_at)
        record.api_base = self.api_base
        record.updated_at = _utc_now_iso()
        self.store.save(record)

        LOGGER.debug("Token refresh successful")
        return AuthToken(token, int(expires_at))

    async def _refresh_identity_and_store(self, record: CredentialRecord) -> CredentialRecord:
        LOGGER.debug("Refreshing identity provider token...")
        issuer = normalize_origin(record.issuer)
        discovery_url = f"{issuer}/.well-known/openid-configuration"
        _require_secure_url(discovery_url, "identity provider")
        oidc = await self.client.request_json("GET", discovery_url)

        token_endpoint = oidc.get("token_endpoint") if isinstance(oidc, dict) else None
        if not isinstance(token_endpoint, str) or not token_endpoint:
            raise IdentityRefreshError("Issuer is missing token_endpoint in openid-configuration", issuer=issuer)
        _require_secure_url(token_endpoint, "token endpoint")

        refreshed = await self.client.request_json(
            "POST",
            token_endpoint,
            data={
                "grant_type": "refresh_token",
                "client_id": record.client_id or "",
                "refresh_token": record.identity_refresh_token or "",
            },
        )
        new_token = refreshed.get("access_token") if isinstance(refreshed, dict) else None
        if not isinstance(new_token, str) or not new_token:
            raise IdentityRefreshError("Token endpoint did not return access_token", issuer=issuer)

        expires_in = refreshed.get("expires_in")
        record.identity_token = new_token
        record.identity_refresh_token = refreshed.get("refresh_token") or record.identity_refresh_token
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            record.identity_expires_at = self._now() + int(expires_in)
        record.updated_at = _utc_now_iso()
        self.store.save(record)
        return record


async def ensure_auth(
    api_base: Optional[str] = None,
    config_path: Optional[Union[str, Path]] = None,
    verbose: bool = False,
    min_valid_seconds: int = DEFAULT_MIN_VALID_SECONDS,
    client: Optional[VibecodrClient] = None,
) -> AuthToken:
    """
    One-shot helper: return a valid platform token, refreshing if needed.

    Each call builds its own CredentialManager. Long-lived callers that
    need concurrent refreshes coalesced should share one manager instead.
    """
    if verbose:
        configure_logging(verbose=True)
    settings = resolve_settings(api_base=api_base, config_path=config_path)
    store = CredentialStore(settings.config_path)
    if client is not None:
        manager = CredentialManager(store, client, api_base=settings.api_base)
        return await manager.get_valid_token(min_valid_seconds)
    async with VibecodrClient() as own_client:
        manager = CredentialManager(store, own_client, api_base=settings.api_base)
        return await manager.get_valid_token(min_valid_seconds)


# ---------------------------------------------------------------------------
# Files & bundle validation
# ---------------------------------------------------------------------------

_BINARY_SAMPLE_SIZE = 4000
_BINARY_THRESHOLD = 0.1


def _sample_is_binary(sample: bytes) -> bool:
    if not sample:
        return False
    if b"\0" in sample:
        return True
    control = sum(1 for byte in sample if byte < 32 and byte not in (9, 10, 13))
    return control / len(sample) > _BINARY_THRESHOLD


def detect_content_class(content: Union[str, bytes]) -> str:
    """Classify content as text or binary by sampling its start, middle and end."""
    if isinstance(content, str) or not content:
        return TEXT
    size = len(content)
    windows = [content[:_BINARY_SAMPLE_SIZE]]
    if size > _BINARY_SAMPLE_SIZE:
        mid = max(0, size // 2 - _BINARY_SAMPLE_SIZE // 2)
        windows.append(content[mid:mid + _BINARY_SAMPLE_SIZE])
        windows.append(content[-_BINARY_SAMPLE_SIZE:])
    return BINARY if any(_sample_is_binary(w) for w in windows) else TEXT


@dataclass(frozen=True)
class FileEntry:
    path: str
    content: Union[str, bytes] = field(repr=False)
    size: int = 0
    content_class: str = TEXT

    @classmethod
    def create(cls, path: str, content: Union[str, bytes]) -> "FileEntry":
        if isinstance(content, str):
            data = content.encode("utf-8")
        elif isinstance(content, (bytes, bytearray, memoryview)):
            data = bytes(content)
        else:
            raise PublishValidationError(
                f"File content must be text or bytes, got {type(content).__name__}",
                path=path,
            )
        return cls(path=path, content=content, size=len(data), content_class=detect_content_class(content))

    def as_bytes(self) -> bytes:
        if isinstance(self.content, str):
            return self.content.encode("utf-8")
        return bytes(self.content)


FileLike = Union[FileEntry, Mapping[str, Any]]


def coerce_file_entry(item: FileLike) -> FileEntry:
    """Accept a FileEntry or a ``{"path": ..., "content": ...}`` mapping."""
    if isinstance(item, FileEntry):
        return item
    if isinstance(item, Mapping) and "path" in item and "content" in item:
        return FileEntry.create(item["path"], item["content"])
    raise PublishValidationError("Each file needs a path and content")


def get_mime_type(file_path: str) -> str:
    """``src/App.tsx`` -> ``application/typescript``; unknown -> ``application/octet-stream``."""
    return MIME_TYPES.get(os.path.splitext(file_path)[1].lower(), "application/octet-stream")


def validate_file_name(file_name: Any) -> Tuple[bool, str]:
    """Check a bundle path against the names the runtime reserves."""
    if not isinstance(file_name, str) or not file_name:
        return False, "File name must be a non-empty string"
    for pattern in RESERVED_FILE_PATTERNS:
        if pattern.search(file_name):
            return False, f'File "{file_name}" matches forbidden pattern: {pattern.pattern}'
    return True, ""


@dataclass(frozen=True)
class BundleSummary:
    valid: bool
    total_size: int
    file_count: int


def validate_bundle(
    files: Sequence[FileLike],
    *,
    max_size: int = MAX_BUNDLE_SIZE,
    max_files: int = MAX_BUNDLE_FILES,
) -> BundleSummary:
    """Validate file count, reserved names, path safety and total size."""
    if isinstance(files, (str, bytes)) or not isinstance(files, Sequence):
        raise ForbiddenFileName("Files must be a list")
    if len(files) > max_files:
        raise TooManyFiles(
            f"Bundle contains {len(files)} files, exceeds limit of {max_files}",
            file_count=len(files),
            max_files=max_files,
        )

    entries = [coerce_file_entry(f) for f in files]
    for entry in entries:
        ok, reason = validate_file_name(entry.path)
        if not ok:
            raise ForbiddenFileName(reason, path=entry.path)
        check = is_path_safe(entry.path)
        if not check.safe:
            raise PublishValidationError(f"Invalid file path: {check.reason}", path=entry.path)

    total_size = sum(entry.size for entry in entries)
    if total_size > max_size:
        raise BundleTooLarge(
            f"Bundle size {total_size / (1024 * 1024):.2f}MB exceeds limit of {max_size / (1024 * 1024):.1f}MB",
            total_size=total_size,
            max_size=max_size,
        )
    return BundleSummary(valid=True, total_size=total_size, file_count=len(entries))


_SKIP_DIRS = {".git", ".svn", "node_modules", "__pycache__", ".venv", "venv"}


def load_directory(root: Union[str, Path]) -> List[FileEntry]:
    """
    Read a local project directory into ordered file entries.

    Hidden files/directories and dependency folders are skipped, as are
    symlinks that are broken or resolve outside ``root``. Paths use forward
    slashes.
    """
    root = Path(root).resolve()
    if not root.is_dir():
        raise PublishValidationError(f"Not a directory: {root}", path=str(root))

    entries: List[FileEntry] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS and not d.startswith("."))
        for fname in sorted(filenames):
            if fname.startswith("."):
                continue
            fpath = Path(dirpath) / fname
            if fpath.is_symlink():
                resolved = fpath.resolve()
                if root not in resolved.parents:
                    LOGGER.warning("Skipping symlink that escapes project directory: %s -> %s", fpath, resolved)
                    continue
            rel = fpath.relative_to(root).as_posix()
            if not fpath.exists():
                LOGGER.warning("Skipping broken symlink: %s", fpath)
                continue
            try:
                data = fpath.read_bytes()
            except OSError as exc:
                raise PublishValidationError(f"Cannot read {rel}: {exc}", path=rel) from exc
            if detect_content_class(data) == TEXT:
                try:
                    entries.append(FileEntry.create(rel, data.decode("utf-8")))
                    continue
                except UnicodeDecodeError:
                    pass
            entries.append(FileEntry(path=rel, content=data, size=len(data), content_class=BINARY))
    return entries


# ---------------------------------------------------------------------------
# Publish orchestration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UploadReceipt:
    path: str
    size: int
    total_size: int
    etag: Optional[str] = None


@dataclass(frozen=True)
class UploadProgress:
    uploaded_files: Tuple[str, ...]
    success: bool = True

    @property
    def total_uploaded(self) -> int:
        return len(self.uploaded_files)


@dataclass(frozen=True)
class PublishResult:
    post_id: str
    capsule_id: str
    url: str
    success: bool = True


@dataclass(frozen=True)
class PublishPreview:
    """What a publish would send, computed without any network call."""

    title: str
    entry: Optional[str]
    runner: Optional[str]
    visibility: str
    file_count: int
    total_size: int
    files: Tuple[str, ...]


@dataclass
class _Session:
    """The bearer token one publish flow is currently using."""

    token: str


def _retry_after_seconds(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class Publisher:
    """
    Runs the create -> upload -> finalize sequence against the platform.

    Each of the three calls is retried once with a fresh token when the
    platform rejects the current one. Failures carry a ``PublishRecovery``
    so ``retry_upload`` / ``retry_publish`` can resume instead of restarting.
    """

    def __init__(
        self,
        client: VibecodrClient,
        credentials: Optional[CredentialManager] = None,
        *,
        api_base: str = DEFAULT_API_BASE,
        player_base: str = DEFAULT_PLAYER_BASE,
    ):
        self.client = client
        self.credentials = credentials
        self.api_base = client.require_trusted_origin(api_base, "api")
        self.player_base = client.require_trusted_origin(player_base, "player")

    # -- Single platform calls ----------------------------------------------

    async def create_capsule(
        self,
        token: str,
        title: str,
        entry: Optional[str] = None,
        runner: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """POST /capsules/empty, returning the new capsule id."""
        if not token or not title:
            raise PublishValidationError("create_capsule requires a token and a title", has_title=bool(title))

        url = f"{self.api_base}/capsules/empty"
        body: Dict[str, Any] = {"title": title}
        if entry:
            body["entry"] = entry
        if runner:
            body["runner"] = runner

        try:
            res = await self.client.request_json("POST", url, json=body, bearer_token=token, cancel_event=cancel_event)
        except VibecodrError as exc:
            raise self._translate(exc, CapsuleCreateError, f"Failed to create capsule: {exc.message}", url=url) from exc

        if not isinstance(res, dict) or res.get("success") is not True or not isinstance(res.get("capsuleId"), str):
            raise CapsuleCreateError(
                "Unexpected /capsules/empty response shape",
                has_success=isinstance(res, dict) and res.get("success") is True,
                has_capsule_id=isinstance(res, dict) and isinstance(res.get("capsuleId"), str),
                response_keys=sorted(res) if isinstance(res, dict) else [],
            )
        return res["capsuleId"]

    async def upload_file(
        self,
        token: str,
        capsule_id: str,
        file: FileLike,
        etag: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> UploadReceipt:
        """PUT /capsules/{id}/files/{path} with the raw bytes and an inferred Content-Type."""
        entry = coerce_file_entry(file)
        if not token or not capsule_id:
            raise PublishValidationError("upload_file requires a token and a capsule id", path=entry.path)

        check = is_path_safe(entry.path)
        if not check.safe:
            raise PublishValidationError(f"Invalid file path: {check.reason}", path=entry.path)
        ok, reason = validate_file_name(entry.path)
        if not ok:
            raise ForbiddenFileName(reason, path=entry.path)

        url = (
            f"{self.api_base}/capsules/{urllib.parse.quote(capsule_id, safe='')}"
            f"/files/{urllib.parse.quote(entry.path, safe='')}"
        )
        body = entry.as_bytes()
        headers = {"Content-Type": get_mime_type(entry.path)}
        if etag:
            headers["If-Match"] = f'"{etag}"'

        try:
            res = await self.client.request_json(
                "PUT", url, content=body, headers=headers, bearer_token=token, cancel_event=cancel_event,
            )
        except VibecodrError as exc:
            raise self._translate(
                exc,
                FileUploadError,
                f"Failed to upload file '{entry.path}': {exc.message}",
                url=url,
                path=entry.path,
                capsule_id=capsule_id,
            ) from exc

        if not isinstance(res, dict) or res.get("ok") is not True:
            raise FileUploadError(
                "Unexpected file upload response: expected ok=true",
                path=entry.path,
                capsule_id=capsule_id,
                response_keys=sorted(res) if isinstance(res, dict) else [],
            )

        size = res["size"] if isinstance(res.get("size"), int) else len(body)
        return UploadReceipt(
            path=res.get("path") or entry.path,
            size=size,
            total_size=res["totalSize"] if isinstance(res.get("totalSize"), int) else size,
            etag=res.get("etag") or None,
        )

    async def publish_capsule(
        self,
        token: str,
        capsule_id: str,
        visibility: str = "public",
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """POST /capsules/{id}/publish, returning the post id."""
        if not token or not capsule_id:
            raise PublishValidationError("publish_capsule requires a token and a capsule id")
        _check_visibility(visibility)

        url = f"{self.api_base}/capsules/{urllib.parse.quote(capsule_id, safe='')}/publish"
        # public is the platform default and is sent without a body
        body = None if visibility == "public" else {"visibility": visibility}

        try:
            res = await self.client.request_json("POST", url, json=body, bearer_token=token, cancel_event=cancel_event)
        except VibecodrError as exc:
            raise self._translate(
                exc, CapsulePublishError, f"Failed to publish capsule: {exc.message}", url=url, capsule_id=capsule_id,
            ) from exc

        post_id = res.get("postId") if isinstance(res, dict) else None
        if not isinstance(post_id, str) or not post_id:
            raise CapsulePublishError(
                "Unexpected /capsules/:id/publish response shape (missing postId)",
                capsule_id=capsule_id,
                response_keys=sorted(res) if isinstance(res, dict) else [],
            )
        return post_id

    @staticmethod
    def _translate(exc: VibecodrError, fallback: type, message: str, **context: Any) -> VibecodrError:
        """Map platform error shapes (security block, rate limit) onto publish errors."""
        if isinstance(exc, (UntrustedOriginError, PublishValidationError)):
            return exc
        if isinstance(exc, FetchJsonHttpError):
            body = exc.body or {}
            if exc.status == 403 and "SECURITY" in str(body.get("code", "")).upper():
                reasons = [str(r) for r in body.get("reasons") or []]
                return SecurityBlockError(
                    f"Security block: {', '.join(reasons) or 'Unsafe code detected'}",
                    reasons=reasons,
                    tags=[str(t) for t in body.get("tags") or []],
                    **context,
                )
            if exc.status == 429:
                seconds = _retry_after_seconds(exc.retry_after) or _retry_after_seconds(body.get("retryAfter"))
                return RateLimitError(
                    f"Rate limited. Retry after {seconds if seconds is not None else 'a few'} seconds.",
                    retry_after_seconds=seconds,
                    **context,
                )
        if isinstance(exc, FetchRetryExhausted) and exc.last_status == 429:
            seconds = _retry_after_seconds(exc.retry_after)
            return RateLimitError(
                f"Rate limited. Retry after {seconds if seconds is not None else 'a few'} seconds.",
                retry_after_seconds=seconds,
                **context,
            )
        return fallback(message, **context)

    # -- Auth retry ---------------------------------------------------------

    async def _open_session(self, token: Optional[str], cancel_event: Optional[asyncio.Event]) -> _Session:
        if token:
            return _Session(token)
        if self.credentials is None:
            raise PublishValidationError("A token or a credential manager is required to publish")
        auth = await self.credentials.get_valid_token(cancel_event=cancel_event)
        return _Session(auth.token)

    async def _with_auth_retry(
        self,
        session: _Session,
        operation: Callable[[str], Awaitable[T]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> T:
        try:
            return await operation(session.token)
        except VibecodrError as exc:
            if self.credentials is None or not is_auth_error(exc):
                raise
            LOGGER.debug("Token rejected; fetching a fresh token and retrying once")
            fresh = await self.credentials.refresh(cancel_event)
            session.token = fresh.token
            return await operation(session.token)

    # -- Steps ------------------------------------------------------------------

    async def _upload_all(
        self,
        session: _Session,
        capsule_id: str,
        files: Sequence[FileEntry],
        already_uploaded: Sequence[str] = (),
        total_files: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[str]:
        # Strictly sequential: the platform tracks cumulative size per upload.
        uploaded: List[str] = list(already_uploaded)
        total = len(files) if total_files is None else total_files
        LOGGER.debug("Uploading %d file(s)...", len(files))
        for index, entry in enumerate(files, start=1):
            LOGGER.debug("  [%d/%d] %s", index, len(files), entry.path)
            try:
                await self._with_auth_retry(
                    session,
                    lambda token, entry=entry: self.upload_file(token, capsule_id, entry, cancel_event=cancel_event),
                    cancel_event,
                )
            except VibecodrError as exc:
                LOGGER.debug("Upload failed for %s. CapsuleId: %s", entry.path, capsule_id)
                raise FileUploadError(
                    f"Upload failed after {len(uploaded)}/{total} files: {exc.message}",
                    recovery=PublishRecovery(
                        capsule_id=capsule_id,
                        uploaded_files=tuple(uploaded),
                        failed_file=entry.path,
                        total_files=total,
                        can_retry_upload=True,
                    ),
                    capsule_id=capsule_id,
                    path=entry.path,
                ) from exc
            uploaded.append(entry.path)
        LOGGER.debug("All files uploaded")
        return uploaded

    async def _finalize(
        self,
        session: _Session,
        capsule_id: str,
        visibility: str,
        uploaded: Sequence[str],
        total_files: int,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PublishResult:
        LOGGER.debug("Publishing with visibility: %s...", visibility)
        try:
            post_id = await self._with_auth_retry(
                session,
                lambda token: self.publish_capsule(token, capsule_id, visibility, cancel_event=cancel_event),
                cancel_event,
            )
        except VibecodrError as exc:
            LOGGER.debug("Publish failed after successful upload. CapsuleId: %s", capsule_id)
            raise CapsulePublishError(
                f"Publish failed after successful upload: {exc.message}",
                recovery=PublishRecovery(
                    capsule_id=capsule_id,
                    uploaded_files=tuple(uploaded),
                    total_files=total_files,
                    can_retry_publish=True,
                    all_files_uploaded=True,
                    visibility=visibility,
                ),
                capsule_id=capsule_id,
            ) from exc
        LOGGER.debug("Published: postId=%s", post_id)
        return PublishResult(post_id=post_id, capsule_id=capsule_id, url=self.player_url(post_id))

    def player_url(self, post_id: str) -> str:
        return f"{self.player_base}/player/{urllib.parse.quote(post_id, safe='')}"

    # -- Full flow & recovery -------------------------------------------------

    def preview(
        self,
        title: str,
        files: Sequence[FileLike],
        *,
        entry: Optional[str] = None,
        runner: Optional[str] = None,
        visibility: str = "public",
    ) -> PublishPreview:
        """Validate a publish request and describe it, without touching the network."""
        entries = _validate_publish_params(title, files, visibility)
        summary = validate_bundle(entries)
        return PublishPreview(
            title=title,
            entry=entry,
            runner=runner,
            visibility=visibility,
            file_count=summary.file_count,
            total_size=summary.total_size,
            files=tuple(e.path for e in entries),
        )

    async def publish(
        self,
        title: str,
        files: Sequence[FileLike],
        *,
        entry: Optional[str] = None,
        runner: Optional[str] = None,
        visibility: str = "public",
        token: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PublishResult:
        """
        Create a capsule, upload ``files`` in order, then publish it.

        Input problems raise PublishValidationError before any network call.
        Any later failure raises PublishFailed whose ``recovery`` says
        whether ``retry_upload`` (partial upload) or ``retry_publish`` (all
        files uploaded, finalize failed) can resume the attempt.
        """
        entries = _validate_publish_params(title, files, visibility)
        validate_bundle(entries)

        capsule_id: Optional[str] = None
        try:
            session = await self._open_session(token, cancel_event)

            LOGGER.debug('Creating capsule: "%s"...', title)
            capsule_id = await self._with_auth_retry(
                session,
                lambda t: self.create_capsule(t, title, entry, runner, cancel_event=cancel_event),
                cancel_event,
            )
            LOGGER.debug("Created capsule: %s", capsule_id)

            uploaded = await self._upload_all(session, capsule_id, entries, cancel_event=cancel_event)
            return await self._finalize(session, capsule_id, visibility, uploaded, len(entries), cancel_event)
        except VibecodrError as exc:
            recovery = getattr(exc, "recovery", None) or PublishRecovery(
                capsule_id=capsule_id, total_files=len(entries),
            )
            raise PublishFailed(
                f"Publish failed: {exc.message}",
                recovery=recovery,
                title=title,
                capsule_id=recovery.capsule_id,
            ) from exc

    async def retry_upload(
        self,
        capsule_id: str,
        files: Sequence[FileLike],
        skip_paths: Iterable[str] = (),
        *,
        token: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> UploadProgress:
        """Upload the files of ``files`` not named in ``skip_paths``, in order, to an existing capsule."""
        if not capsule_id:
            raise PublishValidationError("retry_upload requires a capsule id")
        entries = [coerce_file_entry(f) for f in files]
        skip = list(dict.fromkeys(skip_paths))
        skip_set = set(skip)
        pending = [e for e in entries if e.path not in skip_set]
        LOGGER.debug("Retrying upload: %d files remaining (%d already uploaded)", len(pending), len(skip))

        session = await self._open_session(token, cancel_event)
        uploaded = await self._upload_all(
            session, capsule_id, pending, already_uploaded=skip, total_files=len(entries), cancel_event=cancel_event,
        )
        LOGGER.debug("Retry upload complete: %d files", len(uploaded))
        return UploadProgress(uploaded_files=tuple(uploaded))

    async def retry_publish(
        self,
        capsule_id: str,
        visibility: str = "public",
        *,
        token: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PublishResult:
        """Finalize a capsule whose files are all uploaded."""
        if not capsule_id:
            raise PublishValidationError("retry_publish requires a capsule id")
        _check_visibility(visibility)
        LOGGER.debug("Retrying publish for capsule: %s", capsule_id)
        session = await self._open_session(token, cancel_event)
        post_id = await self._with_auth_retry(
            session,
            lambda t: self.publish_capsule(t, capsule_id, visibility, cancel_event=cancel_event),
            cancel_event,
        )
        LOGGER.debug("Retry successful: postId=%s", post_id)
        return PublishResult(post_id=post_id, capsule_id=capsule_id, url=self.player_url(post_id))


def _check_visibility(visibility: str) -> None:
    if visibility not in VISIBILITIES:
        raise PublishValidationError(
            f"Invalid visibility '{visibility}'. Must be 'public', 'unlisted', or 'private'.",
            visibility=visibility,
        )


def _validate_publish_params(title: str, files: Sequence[FileLike], visibility: str) -> List[FileEntry]:
    if not title or not isinstance(title, str):
        raise PublishValidationError("publish requires a title")
    if isinstance(files, (str, bytes)) or not isinstance(files, Sequence) or len(files) == 0:
        raise PublishValidationError("files must be a non-empty list", file_count=0)
    _check_visibility(visibility)
    return [coerce_file_entry(f) for f in files]


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Settings:
    api_base: str
    player_base: str
    config_path: Path


def resolve_settings(
    api_base: Optional[str] = None,
    player_base: Optional[str] = None,
    config_path: Optional[Union[str, Path]] = None,
) -> Settings:
    """Explicit values win, then environment variables, then built-in defaults."""
    return Settings(
        api_base=normalize_origin(api_base or os.environ.get(ENV_API_BASE) or DEFAULT_API_BASE),
        player_base=normalize_origin(player_base or os.environ.get(ENV_PLAYER_BASE) or DEFAULT_PLAYER_BASE),
        config_path=Path(config_path) if config_path else default_config_path(),
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _format_expiry(expires_at: Optional[int]) -> str:
    if expires_at is None:
        return dim("unknown")
    remaining = expires_at - int(time.time())
    if remaining <= 0:
        return red("expired")
    return f"in ~{remaining // 60} min"


def cmd_status(args: argparse.Namespace, settings: Settings) -> None:
    """Show stored credential status (never the token)."""
    status = get_stored_credential_status(settings.config_path)
    if not status.has_credentials:
        print(red("Not authenticated."))
        print(f"  Config file: {status.config_path}")
        print("\n  Run the Vibecodr browser login to get started.")
        sys.exit(1)

    print(f"\n  {bold('Vibecodr credentials')}")
    print(f"  Config file: {status.config_path}")
    print(f"  API base:    {settings.api_base}")
    print(f"  Expires:     {_format_expiry(status.expires_at)}")
    if status.is_expired:
        print(f"\n  {yellow('Token expired.')} It will be refreshed on the next publish.")
    print()


def _build_publisher(client: VibecodrClient, settings: Settings) -> Publisher:
    store = CredentialStore(settings.config_path)
    manager = CredentialManager(store, client, api_base=settings.api_base)
    return Publisher(client, manager, api_base=settings.api_base, player_base=settings.player_base)


def _print_result(result: PublishResult) -> None:
    print(green("\n  Published successfully."))
    print(f"  Post:    {result.post_id}")
    print(f"  Capsule: {result.capsule_id}")
    print(f"  URL:     {bold(result.url)}\n")


async def cmd_publish(args: argparse.Namespace, settings: Settings) -> None:
    """Publish a local directory as a new vibe."""
    files = load_directory(args.path)
    async with VibecodrClient() as client:
        publisher = _build_publisher(client, settings)
        if args.dry_run:
            preview = publisher.preview(
                args.title, files, entry=args.entry, runner=args.runner, visibility=args.visibility,
            )
            print(f"\n  {bold('Dry run')}: nothing was uploaded.")
            print(f"  Title:      {preview.title}")
            print(f"  Visibility: {preview.visibility}")
            print(f"  Files:      {preview.file_count} ({preview.total_size} bytes)")
            for path in preview.files:
                print(f"    {dim(path)}")
            print()
            return
        result = await publisher.publish(
            args.title, files, entry=args.entry, runner=args.runner, visibility=args.visibility,
        )
    _print_result(result)


async def cmd_retry_upload(args: argparse.Namespace, settings: Settings) -> None:
    """Upload the remaining files of a partially uploaded capsule, then publish it."""
    files = load_directory(args.path)
    async with VibecodrClient() as client:
        publisher = _build_publisher(client, settings)
        progress = await publisher.retry_upload(args.capsule_id, files, args.skip or ())
        print(f"  Uploaded {progress.total_uploaded}/{len(files)} files.")
        result = await publisher.retry_publish(args.capsule_id, args.visibility)
    _print_result(result)


async def cmd_retry_publish(args: argparse.Namespace, settings: Settings) -> None:
    """Publish a capsule whose files were all uploaded by an earlier attempt."""
    async with VibecodrClient() as client:
        publisher = _build_publisher(client, settings)
        result = await publisher.retry_publish(args.capsule_id, args.visibility)
    _print_result(result)


def _print_failure(exc: VibecodrError) -> None:
    print(f"{red('Error:')} {exc.message}", file=sys.stderr)
    recovery: Optional[PublishRecovery] = getattr(exc, "recovery", None)
    if recovery is None or not recovery.resumable:
        return
    if recovery.can_retry_publish:
        print(
            f"\n  All files were uploaded to capsule {bold(recovery.capsule_id)}. Finish with:\n"
            f"    vibecodr retry-publish {recovery.capsule_id}"
            + (f" --visibility {recovery.visibility}" if recovery.visibility else ""),
            file=sys.stderr,
        )
    elif recovery.can_retry_upload:
        skips = " ".join(f"--skip {p}" for p in recovery.uploaded_files)
        print(
            f"\n  Uploaded {recovery.files_uploaded}/{recovery.total_files} files to capsule "
            f"{bold(recovery.capsule_id)}. Resume with:\n"
            f"    vibecodr retry-upload {recovery.capsule_id} <dir> {skips}".rstrip(),
            file=sys.stderr,
        )


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="vibecodr",
        description="Vibecodr: publish generated vibes to the Vibecodr platform.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              vibecodr status
              vibecodr publish ./my-vibe --title "Demo"
              vibecodr publish ./my-vibe --title "Demo" --visibility unlisted --dry-run
              vibecodr retry-upload cap_123 ./my-vibe --skip App.tsx
              vibecodr retry-publish cap_123
        """),
    )
    parser.add_argument("--api-base", default=None, help=f"API base URL (default: {DEFAULT_API_BASE})")
    parser.add_argument("--player-base", default=None, help=f"Player base URL (default: {DEFAULT_PLAYER_BASE})")
    parser.add_argument("--config", default=None, help="Credential file path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # -- status -------------------------------------------------------------
    subparsers.add_parser("status", help="Show stored credential status")

    # -- publish ------------------------------------------------------------
    p_publish = subparsers.add_parser("publish", help="Publish a directory as a new vibe")
    p_publish.add_argument("path", help="Project directory")
    p_publish.add_argument("--title", required=True, help="Vibe title")
    p_publish.add_argument("--entry", help="Entry file (e.g. App.tsx)")
    p_publish.add_argument("--runner", help="Runner type (e.g. client-static, webcontainer)")
    p_publish.add_argument("--visibility", default="public", choices=VISIBILITIES)
    p_publish.add_argument("--dry-run", action="store_true", help="Validate only; no network calls")

    # -- retry-upload -------------------------------------------------------
    p_retry_upload = subparsers.add_parser("retry-upload", help="Resume a partially uploaded capsule")
    p_retry_upload.add_argument("capsule_id", help="Capsule id from the failed publish")
    p_retry_upload.add_argument("path", help="Project directory")
    p_retry_upload.add_argument("--skip", action="append", help="Path already uploaded (repeatable)")
    p_retry_upload.add_argument("--visibility", default="public", choices=VISIBILITIES)

    # -- retry-publish ------------------------------------------------------
    p_retry_publish = subparsers.add_parser("retry-publish", help="Publish a fully uploaded capsule")
    p_retry_publish.add_argument("capsule_id", help="Capsule id from the failed publish")
    p_retry_publish.add_argument("--visibility", default="public", choices=VISIBILITIES)

    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    settings = resolve_settings(args.api_base, args.player_base, args.config)

    try:
        if args.command == "status":
            cmd_status(args, settings)
        elif args.command == "publish":
            asyncio.run(cmd_publish(args, settings))
        elif args.command == "retry-upload":
            asyncio.run(cmd_retry_upload(args, settings))
        elif args.command == "retry-publish":
            asyncio.run(cmd_retry_publish(args, settings))
        else:
            parser.print_help()
            sys.exit(1)
    except VibecodrError as exc:
        _print_failure(exc)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n  Cancelled.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
