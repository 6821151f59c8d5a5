"""
Poll scheduler for the qBittorrent poller.

This module drives the periodic item-list fetch: one recurring timer, one
scheduled tick at a time, exponential backoff on failure and a reset to the
base interval on recovery.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

import structlog

from ..channel import ErrorMessage, OutboundChannel, UpdateMessage
from ..config import PollingConfig
from ..exceptions import HttpStatusError, RequestTimeoutError, TransportError
from ..session import SessionManager
from ..state import EngineState, EngineStateMachine
from ..transport import Transport
from .backoff import compute_backoff_interval
from .outcomes import FailureKind, PollOutcome

logger = structlog.get_logger(__name__)

ITEMS_ENDPOINT = "/api/v2/torrents/info"


class PollScheduler:
    """
    Schedules item-list polls against the remote service.

    Only one timer task is ever live. The timer never runs a poll itself; it
    spawns the tick and skips a beat while the previous tick is still
    pending, so the service sees at most one scheduled request at a time.
    """

    def __init__(
        self,
        polling: PollingConfig,
        session: SessionManager,
        transport: Transport,
        state: EngineStateMachine,
        channel: OutboundChannel,
    ):
        """
        Initialize the poll scheduler.

        Args:
            polling: Polling section of the normalized configuration
            session: Session manager providing the auth cookie
            transport: Transport used for the fetch
            state: Engine state machine
            channel: Outbound channel for updates and errors
        """
        self.polling = polling
        self.session = session
        self.transport = transport
        self.state = state
        self.channel = channel

        self.consecutive_failures = 0
        self.current_interval_ms = polling.update_interval
        self.last_success_at: datetime | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[PollOutcome | None] | None = None

    @property
    def base_interval_ms(self) -> int:
        return self.polling.update_interval

    def is_running(self) -> bool:
        """Check if the timer is armed."""
        return self._timer_task is not None and not self._timer_task.done()

    def configure(self, polling: PollingConfig) -> None:
        """Apply a new polling configuration. Takes effect on the next start."""
        self.polling = polling
        self.current_interval_ms = polling.update_interval

    async def start(self) -> None:
        """Arm the timer at the base interval and run the first tick now."""
        if self.state.is_stopped:
            logger.warning("Cannot start polling, engine is stopped")
            return

        logger.info("Starting polling", interval_ms=self.base_interval_ms)

        # Let a tick left over from a previous configuration settle first
        if self._tick_task is not None and not self._tick_task.done():
            await asyncio.wait([self._tick_task])

        self.consecutive_failures = 0
        self.state.transition(EngineState.POLLING)
        self._arm(self.base_interval_ms)

        tick = self._fire()
        if tick is not None:
            await tick

    async def stop(self) -> None:
        """Cancel the timer. An in-flight tick is left to finish."""
        timer = self._timer_task
        self._timer_task = None
        if timer is not None and not timer.done():
            logger.info("Stopping polling")
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass

    def pause(self) -> bool:
        """
        Move the engine to PAUSED.

        PAUSED is only reachable from POLLING, so an engine sitting in ERROR
        or IDLE passes through POLLING first.
        """
        if self.state.state in (EngineState.ERROR, EngineState.IDLE):
            self.state.transition(EngineState.POLLING)
        return self.state.transition(EngineState.PAUSED)

    async def poll_now(self) -> PollOutcome | None:
        """Run one unscheduled poll unless the engine is paused or stopped."""
        if not self.state.accepts_ticks:
            logger.debug("Skipping unscheduled poll", state=self.state.state.value)
            return None
        return await self.poll_once()

    async def poll_once(self) -> PollOutcome:
        """
        Fetch the item list once and apply the outcome.

        Returns:
            The classified outcome
        """
        logger.debug("Polling torrents")
        outcome = await self._fetch_outcome()

        if self.state.is_stopped:
            logger.debug("Discarding poll result, engine stopped")
            return outcome

        if outcome.is_ok:
            await self._handle_success(outcome)
        else:
            await self._handle_failure(outcome)

        return outcome

    def snapshot(self) -> dict[str, Any]:
        """Get scheduler status for monitoring."""
        return {
            "state": self.state.state.value,
            "consecutive_failures": self.consecutive_failures,
            "current_interval_ms": self.current_interval_ms,
            "base_interval_ms": self.base_interval_ms,
            "timer_armed": self.is_running(),
            "last_success": (
                self.last_success_at.isoformat() if self.last_success_at else None
            ),
        }

    def _arm(self, interval_ms: int) -> None:
        """Cancel the current timer and arm a new one."""
        if self._timer_task is not None:
            self._timer_task.cancel()
        self.current_interval_ms = interval_ms
        self._timer_task = asyncio.create_task(self._timer_loop(interval_ms))

    def _rearm(self, interval_ms: int) -> None:
        if self._timer_task is None or self.state.is_stopped:
            self.current_interval_ms = interval_ms
            return
        self._arm(interval_ms)

    async def _timer_loop(self, interval_ms: int) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            self._fire()

    def _fire(self) -> "asyncio.Task[PollOutcome | None] | None":
        """Spawn a scheduled tick if the engine accepts one."""
        if not self.state.accepts_ticks:
            return None

        if self._tick_task is not None and not self._tick_task.done():
            logger.debug("Previous poll still pending, skipping tick")
            return None

        self._tick_task = asyncio.create_task(self._guarded_tick())
        return self._tick_task

    async def _guarded_tick(self) -> PollOutcome | None:
        try:
            return await self.poll_once()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error in polling cycle", error=str(e), exc_info=True)
            return None

    async def _fetch_outcome(self) -> PollOutcome:
        if not await self.session.ensure_authenticated():
            return PollOutcome.failed(
                FailureKind.AUTH_FAILURE, "Authentication failed"
            )

        try:
            items = await self._fetch_items()
        except RequestTimeoutError as e:
            logger.warning("Fetch timed out", timeout_ms=self.polling.poll_timeout)
            return PollOutcome.failed(FailureKind.TIMEOUT, str(e))
        except HttpStatusError as e:
            logger.warning("Fetch failed", status=e.status_code)
            if e.is_auth_expiry:
                self.session.invalidate_on_auth_failure()
                return PollOutcome.failed(
                    FailureKind.AUTH_FAILURE, str(e), e.status_code
                )
            return PollOutcome.failed(FailureKind.HTTP_ERROR, str(e), e.status_code)
        except TransportError as e:
            logger.warning("Fetch error", error=str(e))
            return PollOutcome.failed(FailureKind.TRANSPORT_ERROR, str(e))

        logger.debug("Fetched torrents", count=len(items))
        return PollOutcome.ok(items)

    async def _fetch_items(self) -> list[Any]:
        url = f"{self.session.connection.host}{ITEMS_ENDPOINT}"
        response = await self.transport.request(
            url,
            method="GET",
            headers=self.session.auth_headers(),
            timeout=self.polling.poll_timeout / 1000,
        )

        if not response.ok:
            raise HttpStatusError(
                f"Fetch failed with status {response.status}", response.status
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError("Unparseable item list", {"error": str(e)}) from e

        if not isinstance(data, list):
            raise TransportError(
                "Item list is not a JSON array", {"type": type(data).__name__}
            )

        return data

    async def _handle_failure(self, outcome: PollOutcome) -> None:
        self.consecutive_failures += 1
        failures = self.consecutive_failures
        max_failures = self.polling.max_consecutive_failures

        logger.warning(
            "Poll failed",
            consecutive_failures=failures,
            reason=outcome.failure.value if outcome.failure else None,
            detail=outcome.detail,
        )

        new_interval = compute_backoff_interval(
            self.base_interval_ms, failures, self.polling.max_backoff_interval
        )
        if new_interval != self.current_interval_ms:
            logger.info("Applying exponential backoff", next_poll_ms=new_interval)
            self._rearm(new_interval)

        # Pausing happens on the same tick that reaches the threshold
        if failures >= max_failures and self.polling.pause_on_repeated_failures:
            self.pause()
            logger.warning(
                "Pausing polling due to repeated failures", failures=failures
            )
        elif self.state.state is not EngineState.PAUSED:
            self.state.transition(EngineState.ERROR)

        await self.channel.publish(
            ErrorMessage(
                message=outcome.describe(),
                failures=failures,
                will_retry=failures < max_failures,
            )
        )

    async def _handle_success(self, outcome: PollOutcome) -> None:
        if self.consecutive_failures > 0:
            logger.info(
                "Polling recovered after failures",
                failures=self.consecutive_failures,
            )
            if self.current_interval_ms != self.base_interval_ms:
                self._rearm(self.base_interval_ms)

        self.consecutive_failures = 0
        self.last_success_at = datetime.now(UTC)
        # A tick that was in flight when the engine got suspended must not resume it
        if self.state.state is not EngineState.PAUSED:
            self.state.transition(EngineState.POLLING)

        await self.channel.publish(UpdateMessage(items=outcome.items or []))
