#!/usr/bin/env python3
"""
Standalone application entry point for the qBittorrent poller.

This module runs one polling engine configured from environment variables,
logs every update and failure, and serves a health endpoint.
"""

import asyncio
import logging
import signal
import sys
from typing import Any

import structlog
from aiohttp import web

from .channel import ErrorMessage, QueueChannel, UpdateMessage
from .config import Settings
from .engine import PollingEngine

logger = structlog.get_logger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level), format="%(message)s"
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class StandaloneApp:
    """Main application class for standalone mode."""

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize the standalone application."""
        self.settings = settings
        self.channel: QueueChannel | None = None
        self.engine: PollingEngine | None = None
        self._shutdown_event = asyncio.Event()
        self._consumer_task: asyncio.Task[None] | None = None
        self._web_runner: web.AppRunner | None = None

    async def initialize(self) -> None:
        """Initialize all application components."""
        if self.settings is None:
            self.settings = Settings()

        self.channel = QueueChannel()
        self.engine = PollingEngine(self.channel, base_dir=self.settings.base_dir)
        logger.info("Engine initialized", host=self.settings.qbt_host)

    async def start(self) -> None:
        """Start polling and wait for shutdown."""
        if not self.settings or not self.engine or not self.channel:
            raise RuntimeError("Application not initialized")

        await self._start_web_server()
        self._consumer_task = asyncio.create_task(self._consume_outbound())

        started = await self.engine.init(self.settings.module_config())
        if not started:
            raise RuntimeError("Invalid configuration, polling not started")

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the standalone application."""
        logger.info("Stopping qBittorrent poller...")

        if self.engine:
            await self.engine.stop()

        if self._consumer_task and not self._consumer_task.done():
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass

        await self._stop_web_server()
        self._shutdown_event.set()
        logger.info("qBittorrent poller stopped")

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._shutdown_event.set)

    async def health_check(self) -> dict[str, Any]:
        """
        Report engine health.

        Returns:
            Health check results
        """
        if not self.engine:
            return {"status": "unhealthy", "engine": "not_initialized"}

        engine_status = self.engine.status()
        healthy = engine_status["state"] in ("polling", "authenticating", "idle")
        return {
            "status": "healthy" if healthy else "unhealthy",
            "mode": "standalone",
            "engine": engine_status,
        }

    async def _consume_outbound(self) -> None:
        """Log every message the engine publishes."""
        if self.channel is None:
            raise RuntimeError("Application not initialized")
        while True:
            message = await self.channel.get()
            if isinstance(message, UpdateMessage):
                logger.info("Torrents updated", count=len(message.items))
            elif isinstance(message, ErrorMessage):
                logger.warning("Poller error", **message.to_payload())

    async def _create_web_app(self) -> web.Application:
        """Create the web application for health checks."""
        app = web.Application()

        async def health_handler(request: web.Request) -> web.Response:
            """Health check endpoint."""
            health_data = await self.health_check()
            status_code = 200 if health_data["status"] == "healthy" else 503
            return web.json_response(health_data, status=status_code)

        app.router.add_get("/health", health_handler)
        return app

    async def _start_web_server(self) -> None:
        """Start the web server for health checks."""
        if not self.settings:
            raise RuntimeError("Settings not initialized")

        self._web_runner = web.AppRunner(await self._create_web_app())
        await self._web_runner.setup()

        site = web.TCPSite(self._web_runner, "0.0.0.0", self.settings.health_port)
        await site.start()
        logger.info("Health check server started", port=self.settings.health_port)

    async def _stop_web_server(self) -> None:
        """Stop the web server."""
        if self._web_runner:
            await self._web_runner.cleanup()
            self._web_runner = None
            logger.info("Health check server stopped")


async def main() -> None:
    """Main entry point for standalone mode."""
    settings = Settings()
    setup_logging(settings)

    app = StandaloneApp(settings)
    exit_code = 0

    try:
        app.setup_signal_handlers()
        await app.initialize()
        await app.start()
    except Exception as e:
        logger.error("Application failed", error=str(e))
        exit_code = 1
    finally:
        await app.stop()
        logger.info("Application shutdown complete")

    if exit_code:
        sys.exit(exit_code)


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
