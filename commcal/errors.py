"""Import failure taxonomy.

Fetch and parse errors abort a whole import and carry the message shown to
the person who asked for it.  ``RecordInvalid`` is raised per record while
persisting and never aborts a batch.
"""

from __future__ import annotations


class ImportFailure(Exception):
    """Base class for errors that abort an import."""

    code = "import_failed"
    user_message = "Couldn't import events from this source."

    def __init__(self, detail: str = "", url: str | None = None):
        super().__init__(detail or self.user_message)
        self.detail = detail
        self.url = url


# --- Fetch ---
class FetchError(ImportFailure):
    code = "fetch_failed"
    user_message = "Couldn't download events."


class UnreachableError(FetchError):
    code = "unreachable"
    user_message = "Couldn't connect to remote site."


class HostNotFoundError(FetchError):
    code = "not_found"
    user_message = "Couldn't find IP address for remote site. Is the URL correct?"


class AuthRequiredError(FetchError):
    code = "auth_required"
    user_message = "Couldn't import events, remote site requires authentication."


class RemoteError(FetchError):
    code = "remote_error"
    user_message = (
        "Couldn't download events, remote site may be experiencing connectivity problems."
    )

    def __init__(self, detail: str = "", url: str | None = None, status_code: int | None = None):
        super().__init__(detail, url)
        self.status_code = status_code


class InvalidUrlError(FetchError):
    code = "invalid_url"
    user_message = "Invalid URL. Please provide an http or https address."


# --- Parse ---
class ParseError(ImportFailure):
    code = "parse_failed"
    user_message = "Couldn't read events from this source."


class NoParserMatchedError(ParseError):
    code = "no_parser"
    user_message = "Unable to find any upcoming events to import from this source."


class MalformedContentError(ParseError):
    code = "malformed"
    user_message = "The content at this source could not be understood."


# --- Persistence ---
class RecordInvalid(Exception):
    """A record failed validation; ``errors`` maps field name to message."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__(
            "; ".join(f"{field} {message}" for field, message in errors.items())
        )
