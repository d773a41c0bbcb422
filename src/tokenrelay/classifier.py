"""Response classification -- decides whether a failed request needs a refresh.

:func:`classify_response` maps a completed transport outcome to one of three
verdicts:

* ``OK`` -- 2xx, carrying the parsed body.
* ``NEEDS_REFRESH`` -- 401, or any other error whose message mentions the
  expiration marker (``"expire"`` by default, matched case-insensitively).
* ``HARD_FAILURE`` -- anything else, carrying the server's message or the
  generic ``"Request failed"``.

A malformed body on an error response never raises.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional

from tokenrelay.transport import TransportResponse

DEFAULT_EXPIRATION_MARKER = "expire"
GENERIC_FAILURE_MESSAGE = "Request failed"


class Verdict(str, enum.Enum):
    OK = "ok"
    NEEDS_REFRESH = "needs_refresh"
    HARD_FAILURE = "hard_failure"


@dataclass(frozen=True)
class Classification:
    """Result of classifying one response."""

    verdict: Verdict
    status: int
    data: Any = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.verdict is Verdict.OK

    @property
    def needs_refresh(self) -> bool:
        return self.verdict is Verdict.NEEDS_REFRESH


def extract_error_message(body: Any) -> Optional[str]:
    """Pull a human-readable message out of an error body.

    Looks at ``message``, then ``error``, then ``detail``.  Returns ``None``
    when the body is not a JSON object or none of the fields is a non-empty
    string.
    """
    if not isinstance(body, dict):
        return None
    for key in ("message", "error", "detail"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def classify_response(
    response: TransportResponse,
    expiration_marker: str = DEFAULT_EXPIRATION_MARKER,
) -> Classification:
    """Classify *response* as ok, needs-refresh, or hard failure."""
    status = response.status
    if status == 401:
        return Classification(Verdict.NEEDS_REFRESH, status)
    if response.ok:
        return Classification(Verdict.OK, status, data=response.body)

    message = extract_error_message(response.body)
    if message is None:
        return Classification(Verdict.HARD_FAILURE, status, reason=GENERIC_FAILURE_MESSAGE)
    if expiration_marker and expiration_marker.lower() in message.lower():
        return Classification(Verdict.NEEDS_REFRESH, status, reason=message)
    return Classification(Verdict.HARD_FAILURE, status, reason=message)


class ResponseClassifier:
    """Stateful wrapper around :func:`classify_response` with a fixed marker."""

    def __init__(self, expiration_marker: str = DEFAULT_EXPIRATION_MARKER) -> None:
        self.expiration_marker = expiration_marker

    def classify(self, response: TransportResponse) -> Classification:
        return classify_response(response, self.expiration_marker)
