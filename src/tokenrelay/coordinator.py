"""Single-flight coordination of refresh attempts.

When several in-flight requests discover an expired access token at the same
time, each of them would otherwise call the refresh endpoint.  Refresh
endpoints are often rate limited and frequently rotate the refresh token on
first use, so a second concurrent call would present an already-invalidated
token and could log a legitimate user out.

:class:`RefreshCoordinator` guarantees that, per refresh scope (*key*), at
most one refresh runs at a time and every concurrent caller receives the same
:class:`~tokenrelay.models.RefreshOutcome`:

1. The first caller for a key registers a :class:`RefreshAttempt` and
   schedules the refresh as a task.
2. Callers arriving while it is pending attach to the same attempt.
3. When the refresh settles, the attempt is removed from the registry
   *before* its future is resolved, so the next caller starts a fresh
   attempt straight away.
4. Exceptions and cancellation inside the refresh still settle the attempt
   with a failure outcome; no waiter is ever left pending.

Registry insertion and removal never straddle an ``await``, which makes them
atomic under asyncio's cooperative scheduling.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from tokenrelay.models import (
    RefreshAttemptState,
    RefreshFailureReason,
    RefreshOutcome,
    TokenConfig,
)

logger = logging.getLogger(__name__)

RefreshFn = Callable[[], Awaitable[RefreshOutcome]]


def key_for(refresh_url: str, token_config: Optional[TokenConfig] = None) -> str:
    """Build the default refresh-scope key from the URL and token names."""
    token_config = token_config or TokenConfig()
    return (
        f"{refresh_url}|{token_config.access_token_name}"
        f"|{token_config.refresh_token_name}"
    )


def key_for_token(refresh_url: str, refresh_token: str) -> str:
    """Build a per-credential key without keeping the token itself in memory."""
    digest = hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()
    return f"{refresh_url}|{digest}"


@dataclass
class RefreshAttempt:
    """One in-flight or settled refresh for a key.

    Attributes:
        key: Refresh-scope identifier.
        state: ``PENDING`` until the refresh settles.
        outcome: The shared outcome once settled.
        waiters: Number of callers awaiting this attempt (initiator included).
        future: Broadcast primitive every waiter awaits.
    """

    key: str
    future: asyncio.Future
    state: RefreshAttemptState = RefreshAttemptState.PENDING
    outcome: Optional[RefreshOutcome] = None
    waiters: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class RefreshCoordinator:
    """Deduplicates concurrent refresh attempts per key.

    Construct one per process or session and pass it by reference to every
    client that should share refreshes.  Instances are fully isolated from
    each other.

    Example::

        coordinator = RefreshCoordinator()
        outcome = await coordinator.request_refresh(
            key_for("https://api.example.com/auth/refresh"),
            lambda: executor.execute_refresh("https://api.example.com/auth/refresh"),
        )
    """

    def __init__(self) -> None:
        self._pending: dict[str, RefreshAttempt] = {}

    async def request_refresh(self, key: str, refresh_fn: RefreshFn) -> RefreshOutcome:
        """Run *refresh_fn* for *key*, or join the attempt already running.

        Args:
            key: Refresh-scope identifier (see :func:`key_for`).
            refresh_fn: Zero-argument coroutine function performing the
                refresh.  Only called when this caller starts a new attempt.

        Returns:
            The outcome shared by every caller of this attempt.
        """
        attempt = self._pending.get(key)
        if attempt is None:
            attempt = self._start(key, refresh_fn)
        else:
            logger.debug("Joining pending refresh for %s", key)
        attempt.waiters += 1
        # Shielded so that a cancelled waiter does not cancel the shared attempt.
        return await asyncio.shield(attempt.future)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def waiters(self, key: str) -> int:
        """Return how many callers are attached to the pending attempt for *key*."""
        attempt = self._pending.get(key)
        return attempt.waiters if attempt is not None else 0

    def pending_keys(self) -> list[str]:
        return list(self._pending)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _start(self, key: str, refresh_fn: RefreshFn) -> RefreshAttempt:
        loop = asyncio.get_running_loop()
        attempt = RefreshAttempt(key=key, future=loop.create_future())
        self._pending[key] = attempt
        logger.debug("Starting refresh for %s", key)
        attempt.task = loop.create_task(self._run(attempt, refresh_fn))
        attempt.task.add_done_callback(lambda task: self._on_task_done(attempt, task))
        return attempt

    async def _run(self, attempt: RefreshAttempt, refresh_fn: RefreshFn) -> None:
        try:
            outcome = await refresh_fn()
        except Exception as exc:
            logger.warning("Refresh for %s raised: %s", attempt.key, exc)
            outcome = RefreshOutcome.failed(
                RefreshFailureReason.NETWORK_ERROR, f"Refresh failed: {exc}"
            )
        self._settle(attempt, outcome)

    def _settle(self, attempt: RefreshAttempt, outcome: RefreshOutcome) -> None:
        if self._pending.get(attempt.key) is attempt:
            del self._pending[attempt.key]
        attempt.outcome = outcome
        attempt.state = (
            RefreshAttemptState.SUCCEEDED if outcome.success else RefreshAttemptState.FAILED
        )
        logger.debug(
            "Refresh for %s settled (%s) for %d waiter(s)",
            attempt.key, attempt.state.value, attempt.waiters,
        )
        if not attempt.future.done():
            attempt.future.set_result(outcome)

    def _on_task_done(self, attempt: RefreshAttempt, task: asyncio.Task) -> None:
        # Covers cancellation, including a task cancelled before it started.
        if not attempt.future.done():
            self._settle(
                attempt,
                RefreshOutcome.failed(
                    RefreshFailureReason.NETWORK_ERROR, "Refresh cancelled"
                ),
            )
