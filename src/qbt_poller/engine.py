"""
Polling engine for a single qBittorrent endpoint.

The engine owns one state machine, TLS cache, transport, session manager,
poll scheduler and command dispatcher, and maps inbound messages from the
consumer onto them.
"""

import asyncio
from pathlib import Path
from typing import Any

import httpx
import structlog

from .channel import (
    CommandMessage,
    ErrorMessage,
    InboundMessage,
    InitMessage,
    OutboundChannel,
    ResumeMessage,
    StopMessage,
    SuspendMessage,
)
from .commands import CommandDispatcher
from .config import NormalizedConfig, normalize_config, validate_config
from .exceptions import ConfigurationError
from .polling import PollScheduler
from .session import SessionManager
from .state import EngineState, EngineStateMachine
from .tls import TlsMaterialCache
from .transport import Transport

logger = structlog.get_logger(__name__)


class PollingEngine:
    """
    Session-managed polling engine.

    One instance talks to exactly one remote endpoint. All mutable state
    (session token, engine state, failure counter) lives on the instance.
    """

    def __init__(
        self,
        channel: OutboundChannel,
        base_dir: Path | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the polling engine.

        Args:
            channel: Outbound channel for updates and errors
            base_dir: Directory relative TLS paths are resolved against
            http_transport: Optional httpx transport, used by tests
        """
        self.channel = channel
        self.base_dir = base_dir or Path.cwd()
        self.config: NormalizedConfig | None = None

        defaults = NormalizedConfig()
        self.state = EngineStateMachine()
        self.tls_cache = TlsMaterialCache(defaults.connection.tls, self.base_dir)
        self.transport = Transport(self.tls_cache, http_transport)
        self.session = SessionManager(defaults.connection, self.transport, self.state)
        self.scheduler = PollScheduler(
            defaults.polling, self.session, self.transport, self.state, channel
        )
        self.dispatcher = CommandDispatcher(
            self.session, self.transport, refresh=self.scheduler.poll_now
        )
        self._tasks: set[asyncio.Task[Any]] = set()

    async def init(self, raw_config: dict[str, Any]) -> bool:
        """
        Apply a configuration and start polling.

        A repeated call replaces the configuration, drops the TLS material
        and the session, and restarts the scheduler.

        Args:
            raw_config: Module configuration as sent by the consumer

        Returns:
            True if polling was started
        """
        if self.state.is_stopped:
            logger.warning("Ignoring init, engine is stopped")
            return False

        try:
            config = normalize_config(raw_config)
        except ConfigurationError as e:
            errors = e.context.get("errors") or [str(e)]
            logger.error("Config validation errors", errors=errors)
            await self.scheduler.stop()
            await self._reject_config(errors)
            return False

        logger.info(
            "Received init with config",
            host=config.connection.host,
            update_interval_ms=config.polling.update_interval,
        )

        await self.scheduler.stop()
        self.config = config
        self.tls_cache.configure(config.connection.tls)
        self.session.reset(config.connection)
        self.scheduler.configure(config.polling)

        errors = validate_config(config, self.base_dir)
        if not errors and config.connection.is_https:
            try:
                self.tls_cache.load()
            except ConfigurationError as e:
                logger.error("Failed to load TLS material", error=str(e))
                errors.append(str(e))

        if errors:
            await self._reject_config(errors)
            return False

        await self.scheduler.start()
        return True

    async def command(self, item_id: str, action: str) -> bool:
        """Forward a start/pause command for one item."""
        if self.config is None:
            logger.warning("Ignoring command, engine not configured", action=action)
            return False
        return await self.dispatcher.dispatch(item_id, action)

    def suspend(self) -> bool:
        """Stop scheduled polling until resume() is called."""
        logger.info("Suspending polling")
        return self.scheduler.pause()

    async def resume(self) -> bool:
        """Resume polling and refresh immediately."""
        logger.info("Resuming polling")
        if not self.state.transition(EngineState.POLLING):
            return False
        await self.scheduler.poll_now()
        return True

    async def stop(self) -> None:
        """Cancel the timer and enter the terminal STOPPED state."""
        logger.info("Stopping engine")
        await self.scheduler.stop()
        self.state.transition(EngineState.STOPPED)

    async def handle(self, message: InboundMessage) -> None:
        """
        Handle one inbound message.

        Commands and resumes run as background tasks so a slow request does
        not hold up the next message.
        """
        if isinstance(message, InitMessage):
            await self.init(message.config)
        elif isinstance(message, CommandMessage):
            self._spawn(self.command(message.item_id, message.action))
        elif isinstance(message, SuspendMessage):
            self.suspend()
        elif isinstance(message, ResumeMessage):
            self._spawn(self.resume())
        elif isinstance(message, StopMessage):
            await self.stop()
        else:
            logger.warning("Unknown inbound message", message=repr(message))

    async def run(self, inbound: "asyncio.Queue[InboundMessage]") -> None:
        """Consume inbound messages until the engine stops."""
        while not self.state.is_stopped:
            message = await inbound.get()
            await self.handle(message)

    def status(self) -> dict[str, Any]:
        """Get engine status for health checks."""
        return {
            **self.scheduler.snapshot(),
            "configured": self.config is not None,
            "authenticated": self.session.is_authenticated,
            "host": self.config.connection.host if self.config else None,
        }

    async def _reject_config(self, errors: list[str]) -> None:
        await self.channel.publish(
            ErrorMessage(
                message="Invalid configuration",
                failures=0,
                will_retry=False,
                errors=errors,
            )
        )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
