"""Remote content retrieval with classified failures.

One GET per call, redirects followed, no retries: the importer decides what
a failure means for the import as a whole.
"""

from __future__ import annotations

import contextlib
import html
import logging
import re
import socket
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

from commcal.config import settings
from commcal.errors import (
    AuthRequiredError,
    FetchError,
    HostNotFoundError,
    InvalidUrlError,
    MalformedContentError,
    RemoteError,
    UnreachableError,
)

logger = logging.getLogger(__name__)

ATOM_CONTENT_TYPES = {"application/atom+xml"}

_DNS_FAILURE_RE = re.compile(
    r"name or service not known|nodename nor servname|getaddrinfo failed|"
    r"temporary failure in name resolution|no address associated",
    re.IGNORECASE,
)


@dataclass
class FetchedContent:
    url: str
    text: str
    content_type: str | None = None


def validate_url(url: str | None) -> str:
    """Return the stripped URL if it is an absolute http(s) URL."""
    candidate = (url or "").strip()
    try:
        parts = urlsplit(candidate)
    except ValueError as e:
        raise InvalidUrlError(f"Malformed URL: {e}", url=candidate) from e
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise InvalidUrlError(f"Unsupported URL: {candidate!r}", url=candidate)
    return candidate


@contextlib.asynccontextmanager
async def _make_client(timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None):
    """Create an httpx.AsyncClient with standard defaults."""
    kwargs: dict[str, Any] = {
        "follow_redirects": True,
        "timeout": timeout if timeout is not None else settings.fetch_timeout,
        "headers": {"User-Agent": settings.user_agent},
    }
    if transport is not None:
        kwargs["transport"] = transport
    async with httpx.AsyncClient(**kwargs) as client:
        yield client


def _is_dns_failure(exc: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return True
        if _DNS_FAILURE_RE.search(str(current)):
            return True
        current = current.__cause__ or current.__context__
    return False


def _classify_transport_error(exc: httpx.HTTPError | httpx.InvalidURL, url: str) -> FetchError:
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return InvalidUrlError(str(exc), url=url)
    if isinstance(exc, httpx.ConnectError) and _is_dns_failure(exc):
        return HostNotFoundError(str(exc), url=url)
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return UnreachableError(str(exc), url=url)
    return RemoteError(str(exc), url=url)


def _check_status(resp: httpx.Response, url: str) -> None:
    if resp.status_code in (401, 407):
        raise AuthRequiredError(f"HTTP {resp.status_code} from {url}", url=url)
    if resp.is_error:
        raise RemoteError(
            f"HTTP {resp.status_code} from {url}", url=url, status_code=resp.status_code
        )


async def _get(
    url: str,
    *,
    params: dict[str, Any] | None = None,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.Response:
    url = validate_url(url)
    try:
        async with _make_client(timeout, transport) as client:
            resp = await client.get(url, params=params)
    # InvalidURL is raised while building the request and is not an HTTPError
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        error = _classify_transport_error(e, url)
        logger.warning("Fetch failed for %s (%s): %s", url, error.code, e)
        raise error from e
    _check_status(resp, url)
    return resp


async def fetch(
    url: str,
    *,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FetchedContent:
    """GET *url* and return its body with the declared content type."""
    resp = await _get(url, timeout=timeout, transport=transport)
    raw_type = resp.headers.get("content-type", "")
    content_type = raw_type.split(";", 1)[0].strip().lower() or None
    logger.info("Fetched %s (%d chars, %s)", url, len(resp.text), content_type or "unknown type")
    return FetchedContent(url=str(resp.url), text=resp.text, content_type=content_type)


async def fetch_json(
    url: str,
    *,
    params: dict[str, Any] | None = None,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Any:
    """GET *url* from a structured API and return the decoded JSON."""
    resp = await _get(url, params=params, timeout=timeout, transport=transport)
    try:
        return resp.json()
    except ValueError as e:
        raise MalformedContentError(f"Invalid JSON from {url}: {e}", url=url) from e


def content_for(fetched: FetchedContent) -> str:
    """Return the text parsers should see; Atom feeds arrive entity-escaped."""
    if fetched.content_type in ATOM_CONTENT_TYPES:
        return html.unescape(fetched.text)
    return fetched.text
