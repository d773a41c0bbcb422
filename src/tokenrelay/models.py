"""Canonical Pydantic models shared across all tokenrelay modules.

This is the single source of truth for data shapes in the project. The models
fall into three groups:

**Configuration models** -- describe how tokens are named, sent and refreshed,
and what is persisted in the user's config directory:
    :class:`TokenConfig`, :class:`RefreshOptions`, :class:`CookieAttributes`,
    :class:`RequestConfig`, :class:`RelayConfig`.

**Request/response models** -- request options, immutable request snapshots
and the uniform result shape of every public operation:
    :class:`RequestOptions`, :class:`RequestDescriptor`,
    :class:`OperationResult`.

**Refresh models** -- the outcome of a refresh call and the bookkeeping the
coordinator keeps per refresh scope:
    :class:`CredentialPair`, :class:`RefreshFailureReason`,
    :class:`RefreshOutcome`, :class:`RefreshAttemptState`.

All models use Pydantic v2.
"""

from __future__ import annotations

import enum
from typing import Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_ACCESS_TOKEN_NAME = "accessToken"
DEFAULT_REFRESH_TOKEN_NAME = "refreshToken"

ACCESS_TOKEN_MAX_AGE = 60 * 60  # 1 hour
REFRESH_TOKEN_MAX_AGE = 60 * 60 * 24 * 7  # 1 week


# --- Token config ---


AuthHeaderFormat = Union[str, Callable[[str], str]]


class TokenConfig(BaseModel):
    """Names under which tokens are stored and how they are sent.

    ``auth_header_format`` is either a literal scheme prefix (``"Bearer"``,
    ``"Token"``) or a callable that receives the raw access token and returns
    the full ``Authorization`` header value.

    Example::

        TokenConfig(access_token_name="jwt", auth_header_format="Token")
        TokenConfig(auth_header_format=lambda tok: f"JWT {tok}")
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    access_token_name: str = Field(default=DEFAULT_ACCESS_TOKEN_NAME)
    refresh_token_name: str = Field(default=DEFAULT_REFRESH_TOKEN_NAME)
    auth_header_format: AuthHeaderFormat = Field(
        default="Bearer",
        description="Scheme prefix (Bearer, Token) or a formatting function",
    )

    def format_auth_header(self, token: str) -> str:
        """Return the ``Authorization`` header value for *token*."""
        if callable(self.auth_header_format):
            return self.auth_header_format(token)
        return f"{self.auth_header_format} {token}"


class RefreshOptions(BaseModel):
    """Options for the refresh request.

    ``body`` stays ``None`` unless the caller explicitly supplies one; in that
    case the refresh executor builds ``{refresh_token_name: <token>}`` itself.
    ``key`` overrides the refresh scope used for single-flight deduplication.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    response_type: Literal["json", "cookies"] = "json"
    token_names: Optional[TokenConfig] = None
    key: Optional[str] = None


class CookieAttributes(BaseModel):
    """Storage attributes attached to a persisted credential.

    Mirrors cookie semantics: ``http_only`` hides the value from scripts,
    ``secure`` restricts it to encrypted transport, ``same_site="lax"``
    restricts cross-site sending, ``max_age`` is in seconds and ``path``
    scopes applicability.
    """

    http_only: bool = True
    secure: bool = False
    same_site: Literal["lax", "strict", "none"] = "lax"
    max_age: Optional[int] = None
    path: str = "/"


# --- Requests and results ---


class RequestDescriptor(BaseModel):
    """Immutable snapshot of a caller's original request.

    Preserved across a refresh so that the retry replays exactly what the
    caller asked for, with only the ``Authorization`` header swapped.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class RequestOptions(BaseModel):
    """Options for a protected request (``retry`` / ``fetch_with_refresh_retry``)."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    token_names: Optional[TokenConfig] = None

    def to_descriptor(self, url: str) -> RequestDescriptor:
        return RequestDescriptor(
            url=url, method=self.method.upper(), headers=dict(self.headers), body=self.body
        )


class OperationResult(BaseModel):
    """Uniform return shape of every public operation.

    ``success=True`` implies ``error is None``; ``success=False`` implies
    ``error`` is set.  Both are checked on construction.  ``data`` is the
    parsed response body, so a successful request whose response has no
    body (e.g. 204) carries ``data=None``.  ``needs_refresh`` marks a 401 on
    a retried request and ``needs_login`` marks that re-authentication (not
    another refresh) is required.
    """

    success: bool
    status: Optional[int] = None
    data: Any = None
    error: Optional[str] = None
    needs_refresh: bool = False
    needs_login: bool = False

    @model_validator(mode="after")
    def _check_error(self) -> OperationResult:
        if self.success and self.error is not None:
            raise ValueError("a successful result cannot carry an error")
        if not self.success and not self.error:
            raise ValueError("a failed result needs an error message")
        return self

    @classmethod
    def ok(cls, data: Any = None, status: Optional[int] = None) -> OperationResult:
        return cls(success=True, status=status, data=data)

    @classmethod
    def fail(
        cls,
        error: str,
        status: Optional[int] = None,
        needs_refresh: bool = False,
        needs_login: bool = False,
    ) -> OperationResult:
        return cls(
            success=False,
            status=status,
            error=error,
            needs_refresh=needs_refresh,
            needs_login=needs_login,
        )


# --- Refresh ---


class CredentialPair(BaseModel):
    """An access token and, when the issuer rotated it, a new refresh token."""

    access_token: str
    refresh_token: Optional[str] = None


class RefreshFailureReason(str, enum.Enum):
    """Why a refresh attempt did not produce a new credential."""

    NO_REFRESH_TOKEN = "NoRefreshToken"
    REFRESH_ENDPOINT_REJECTED = "RefreshEndpointRejected"
    MALFORMED_REFRESH_RESPONSE = "MalformedRefreshResponse"
    NETWORK_ERROR = "NetworkError"


_REAUTH_REASONS = frozenset(
    {
        RefreshFailureReason.NO_REFRESH_TOKEN,
        RefreshFailureReason.REFRESH_ENDPOINT_REJECTED,
    }
)


class RefreshOutcome(BaseModel):
    """Discriminated result of one refresh attempt.

    On success the credential store has already been updated; ``credentials``
    carries the extracted pair so that request-scoped stores belonging to other
    waiters can be updated too.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    reason: Optional[RefreshFailureReason] = None
    status: Optional[int] = None
    message: Optional[str] = None
    credentials: Optional[CredentialPair] = None

    @classmethod
    def succeeded(
        cls, credentials: CredentialPair, status: Optional[int] = None
    ) -> RefreshOutcome:
        return cls(success=True, status=status, credentials=credentials)

    @classmethod
    def failed(
        cls,
        reason: RefreshFailureReason,
        message: str,
        status: Optional[int] = None,
    ) -> RefreshOutcome:
        return cls(success=False, reason=reason, status=status, message=message)

    @property
    def requires_reauthentication(self) -> bool:
        """True when the failure can only be fixed by logging in again."""
        return not self.success and self.reason in _REAUTH_REASONS


class RefreshAttemptState(str, enum.Enum):
    """Lifecycle of a single refresh attempt in the coordinator."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# --- Persisted configuration ---


class RequestConfig(BaseModel):
    """Default HTTP settings applied to every transport call."""

    timeout: float = Field(default=30, description="Request timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    max_retries: int = Field(
        default=0,
        description="Retries on 5xx and connection errors (0 keeps refresh calls single-shot)",
    )


class RelayConfig(BaseModel):
    """User configuration persisted at ``~/.config/tokenrelay/config.json``.

    Loaded by :func:`~tokenrelay.config.load_config` and merged with the
    project file, environment variables and CLI flags by
    :func:`~tokenrelay.config.resolve_config`.
    """

    model_config = ConfigDict(extra="allow")

    base_url: Optional[str] = Field(
        default=None, description="Prefix for relative request URLs"
    )
    refresh_url: Optional[str] = Field(
        default=None, description="Endpoint that exchanges a refresh token"
    )
    refresh_method: str = "POST"
    response_type: Literal["json", "cookies"] = "json"
    token_names: TokenConfig = Field(default_factory=TokenConfig)
    expiration_marker: str = Field(
        default="expire",
        description="Case-insensitive marker in error messages that means 'refresh'",
    )
    login_path: str = "/login"
    protected_paths: list[str] = Field(
        default_factory=list, description="Path prefixes; empty protects all paths"
    )
    environment: str = Field(
        default="development", description="development or production"
    )
    secure_cookies: Optional[bool] = Field(
        default=None, description="Override for the secure attribute (None: production only)"
    )
    store_profile: str = Field(
        default="default", description="Name of the on-disk credential file"
    )
    request: RequestConfig = Field(default_factory=RequestConfig)
