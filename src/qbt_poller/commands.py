"""
Command dispatcher for user-issued torrent actions.

Commands reuse the session and transport of the polling engine. A failed
command is logged and dropped; it never changes the engine state.
"""

from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

import structlog

from .exceptions import QBPollerError
from .session import SessionManager
from .transport import Transport

logger = structlog.get_logger(__name__)

ACTION_ENDPOINTS = {
    "start": "/api/v2/torrents/resume",
    "resume": "/api/v2/torrents/resume",
    "pause": "/api/v2/torrents/pause",
}
COMMAND_TIMEOUT_SECONDS = 5.0


class CommandDispatcher:
    """Forwards start/pause commands for single items to the service."""

    def __init__(
        self,
        session: SessionManager,
        transport: Transport,
        refresh: Callable[[], Awaitable[Any]],
    ):
        """
        Initialize the dispatcher.

        Args:
            session: Session manager shared with the scheduler
            transport: Transport shared with the scheduler
            refresh: Coroutine run after a successful command to re-poll
        """
        self.session = session
        self.transport = transport
        self.refresh = refresh

    async def dispatch(self, item_id: str, action: str) -> bool:
        """
        Send one command to the service.

        Args:
            item_id: Torrent hash
            action: "start", "resume" or "pause"

        Returns:
            True if the service accepted the command
        """
        logger.info("Handling action", action=action, item_id=item_id)

        endpoint = ACTION_ENDPOINTS.get(action)
        if endpoint is None:
            logger.warning("Unknown action", action=action, item_id=item_id)
            return False

        if not await self.session.ensure_authenticated(track_state=False):
            logger.warning("Action skipped, no session", action=action)
            return False

        try:
            response = await self.transport.request(
                f"{self.session.connection.host}{endpoint}",
                method="POST",
                headers={
                    **self.session.auth_headers(),
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                body=urlencode({"hashes": item_id}),
                timeout=COMMAND_TIMEOUT_SECONDS,
            )
        except QBPollerError as e:
            logger.error("Action error", action=action, error=str(e), code=e.code)
            return False

        if not response.ok:
            logger.warning(
                "Action failed", action=action, status=response.status
            )
            return False

        logger.info("Action successful", action=action, item_id=item_id)
        await self.refresh()
        return True
