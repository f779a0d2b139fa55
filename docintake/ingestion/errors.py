"""Exception hierarchy for the intake pipeline.

Validation and admission failures are reported as data
(``ValidationOutcome`` / ``RateLimitResult``); only extraction failures and
programmer errors are exceptions.
"""

from __future__ import annotations

import re

_AUTH_MESSAGE_RE = re.compile(r"\b401\b|unauthorized", re.IGNORECASE)


class IngestError(Exception):
    """Base class for intake pipeline errors."""


class ConfigurationError(IngestError, ValueError):
    """Invalid pipeline configuration (raised before any item is processed)."""


class ExtractionError(IngestError):
    """The extraction backend failed for one item. Retried by the scheduler."""


class AuthenticationError(ExtractionError):
    """The extraction backend rejected our credentials. Never retried."""


class ExtractionTimeoutError(ExtractionError):
    """A single extraction attempt exceeded its time budget."""


def is_authentication_error(exc: BaseException) -> bool:
    """True for errors that signal an HTTP 401 / "Unauthorized" response.

    Our own extraction errors say so by type; their messages carry item
    labels and model replies and are never inspected. Collaborators are free
    to raise their own exception types, so for those this checks
    ``status_code`` / ``status`` attributes and the message text.
    """
    if isinstance(exc, AuthenticationError):
        return True
    if isinstance(exc, IngestError):
        return False
    for attr in ("status_code", "status"):
        if getattr(exc, attr, None) == 401:
            return True
    return _AUTH_MESSAGE_RE.search(str(exc)) is not None
