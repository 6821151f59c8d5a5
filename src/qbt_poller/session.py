"""
Session management for the qBittorrent Web API.

The session manager owns the session cookie and guarantees that at most one
login request is in flight: concurrent callers await the pending login
instead of issuing their own.
"""

import asyncio
from urllib.parse import urlencode

import structlog

from .config import ConnectionConfig
from .exceptions import AuthenticationError, QBPollerError
from .state import EngineState, EngineStateMachine
from .transport import Transport

logger = structlog.get_logger(__name__)

LOGIN_ENDPOINT = "/api/v2/auth/login"
LOGIN_SUCCESS_BODY = "Ok."
LOGIN_TIMEOUT_SECONDS = 5.0
AUTH_WAIT_TIMEOUT_SECONDS = 5.0


class SessionManager:
    """
    Owns the authentication state for one remote endpoint.

    The token is either absent or the cookie issued by a login that returned
    the success marker together with a session cookie.
    """

    def __init__(
        self,
        connection: ConnectionConfig,
        transport: Transport,
        state: EngineStateMachine,
        auth_wait_timeout: float = AUTH_WAIT_TIMEOUT_SECONDS,
    ):
        """
        Initialize the session manager.

        Args:
            connection: Connection section of the normalized configuration
            transport: Transport used for the login request
            state: Engine state machine
            auth_wait_timeout: How long a second caller waits on a pending login
        """
        self.connection = connection
        self.transport = transport
        self.state = state
        self.auth_wait_timeout = auth_wait_timeout
        self._token: str | None = None
        self._login_future: asyncio.Future[bool] | None = None
        self._generation = 0

    @property
    def token(self) -> str | None:
        """Get a snapshot of the session token."""
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None

    @property
    def login_in_progress(self) -> bool:
        return self._login_future is not None and not self._login_future.done()

    def auth_headers(self) -> dict[str, str]:
        """Get the headers that carry the current session."""
        token = self._token
        return {"Cookie": token} if token else {}

    async def ensure_authenticated(self, track_state: bool = True) -> bool:
        """
        Make sure a session token is available.

        Args:
            track_state: Drive the engine through AUTHENTICATING for a new
                login. Command dispatch passes False so it never moves the
                engine state.

        Returns:
            True if a token is available after the call
        """
        if self._token is not None:
            return True

        if self._login_future is not None and not self._login_future.done():
            logger.debug("Waiting for in-flight login")
            try:
                return await asyncio.wait_for(
                    asyncio.shield(self._login_future), self.auth_wait_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Authentication timeout while waiting",
                    waited_seconds=self.auth_wait_timeout,
                )
                return False

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._login_future = future
        generation = self._generation

        # Only a login that took the engine into AUTHENTICATING may move it on
        entered = track_state and self.state.transition(
            EngineState.AUTHENTICATING
        )

        token: str | None = None
        try:
            token = await self._login()
        except QBPollerError as e:
            logger.error("Authentication failed", error=str(e), code=e.code)
        finally:
            if generation == self._generation:
                self._token = token
            if self._login_future is future:
                self._login_future = None
            ok = self._token is not None
            future.set_result(ok)
            # Runs on every exit so the engine never stays in AUTHENTICATING
            if entered:
                self.state.transition(
                    EngineState.POLLING if ok else EngineState.ERROR
                )

        return ok

    async def _login(self) -> str:
        """
        Log in with the configured credentials.

        Returns:
            Cookie header value for the new session

        Raises:
            AuthenticationError: If the service rejects the login
            RequestTimeoutError: If the login request times out
            TransportError: On network failures
        """
        host = self.connection.host
        logger.info("Authenticating", host=host, username=self.connection.username)

        response = await self.transport.request(
            f"{host}{LOGIN_ENDPOINT}",
            method="POST",
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Referer": host,
            },
            body=urlencode(
                {
                    "username": self.connection.username,
                    "password": self.connection.password,
                }
            ),
            timeout=LOGIN_TIMEOUT_SECONDS,
        )

        response_text = response.text()
        logger.debug(
            "Auth response", status=response.status, body=response_text[:200]
        )

        if not response.ok:
            raise AuthenticationError(
                f"Login failed with HTTP status {response.status}",
                {"status": response.status},
            )

        if response_text != LOGIN_SUCCESS_BODY:
            raise AuthenticationError(
                f'Login rejected: service returned "{response_text}". '
                "Verify username and password are correct",
                {"status": response.status},
            )

        if not response.cookie_pairs:
            raise AuthenticationError(
                "No session cookie received",
                {"headers": sorted(response.headers)},
            )

        logger.info("Authenticated successfully")
        return "; ".join(response.cookie_pairs)

    def invalidate_on_auth_failure(self) -> None:
        """Clear the token after a 401/403 so the next use logs in again."""
        if self._token is not None:
            logger.info("Auth may have expired, clearing session cookie")
        self._token = None

    def reset(self, connection: ConnectionConfig) -> None:
        """
        Switch to a new connection configuration.

        Drops the token; a login still in flight for the old configuration
        will not store its result.
        """
        self.connection = connection
        self._token = None
        self._login_future = None
        self._generation += 1
