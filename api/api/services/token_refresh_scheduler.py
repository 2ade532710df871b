"""Background scheduler for proactive OAuth token refresh.

Runs as an ``asyncio`` background task.  Every interval it asks each
registered refresher to renew credentials that will expire within that
provider's lookahead window, so invoice webhooks rarely pay for a refresh
round-trip inside their own time budget.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.exc import InterfaceError, OperationalError

from api.services.token_refresher import CredentialRefresher, RefreshSweepResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefreshJob:
    """A refresher paired with how far ahead it should look."""

    refresher: CredentialRefresher
    lookahead_seconds: int


class TokenRefreshScheduler:
    """AsyncIO background task for scheduled token refresh.

    Parameters
    ----------
    jobs:
        Refreshers to run on every tick, each with its lookahead window.
    interval_seconds:
        Delay between sweeps.
    initial_delay_seconds:
        Delay before the first sweep after start-up.
    """

    def __init__(
        self,
        jobs: list[RefreshJob],
        *,
        interval_seconds: float = 300.0,
        initial_delay_seconds: float = 5.0,
    ) -> None:
        self._jobs = jobs
        self._interval = interval_seconds
        self._initial_delay = initial_delay_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("TokenRefreshScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "TokenRefreshScheduler started: providers=%s interval=%ss",
            ",".join(job.refresher.provider for job in self._jobs),
            self._interval,
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("TokenRefreshScheduler stopped")

    async def run_once(self) -> list[RefreshSweepResult]:
        """Run one sweep over every job; a failing job does not stop the others."""
        results: list[RefreshSweepResult] = []
        for job in self._jobs:
            provider = job.refresher.provider
            try:
                results.append(await job.refresher.refresh_expiring(job.lookahead_seconds))
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error(
                    "TokenRefreshScheduler database error (provider=%s): %s",
                    provider,
                    exc,
                    exc_info=True,
                )
            except Exception as exc:
                logger.error(
                    "TokenRefreshScheduler unexpected error (provider=%s): %s",
                    provider,
                    exc,
                    exc_info=True,
                )
        return results

    async def _run_loop(self) -> None:
        """Main loop: first sweep after the initial delay, then every interval."""
        await asyncio.sleep(self._initial_delay)
        while self._running:
            await self.run_once()
            await asyncio.sleep(self._interval)
