"""
Pytest configuration and fixtures for qBittorrent poller tests.
"""

import asyncio
from typing import Any

import httpx
import pytest

from qbt_poller.channel import QueueChannel
from qbt_poller.config import normalize_config
from qbt_poller.engine import PollingEngine

HOST = "http://qbt.test:8080"


class FakeQBittorrent:
    """In-process stand-in for the qBittorrent Web API."""

    def __init__(self) -> None:
        self.login_calls = 0
        self.login_bodies: list[str] = []
        self.login_status = 200
        self.login_body = "Ok."
        self.login_cookies = ["SID=abc123; HttpOnly; path=/"]
        self.login_delay = 0.0

        self.info_calls = 0
        self.info_cookies: list[str | None] = []
        self.items: list[dict[str, Any]] = [
            {"hash": "a", "name": "ubuntu.iso", "progress": 1.0}
        ]
        # Each entry is an httpx.Response or one of "timeout", "connect_error"
        self.info_results: list[Any] = []
        self.info_gate: asyncio.Event | None = None

        self.actions: list[tuple[str, str, str | None]] = []
        self.action_status = 200

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if path == "/api/v2/auth/login":
            self.login_calls += 1
            self.login_bodies.append(request.content.decode())
            if self.login_delay:
                await asyncio.sleep(self.login_delay)
            headers = [("set-cookie", cookie) for cookie in self.login_cookies]
            return httpx.Response(
                self.login_status, text=self.login_body, headers=headers
            )

        if path == "/api/v2/torrents/info":
            self.info_calls += 1
            self.info_cookies.append(request.headers.get("cookie"))
            if self.info_gate is not None:
                await self.info_gate.wait()
            if self.info_results:
                result = self.info_results.pop(0)
                if result == "timeout":
                    raise httpx.ReadTimeout("timed out", request=request)
                if result == "connect_error":
                    raise httpx.ConnectError("connection refused", request=request)
                return result
            return httpx.Response(200, json=self.items)

        if path in ("/api/v2/torrents/resume", "/api/v2/torrents/pause"):
            self.actions.append(
                (path, request.content.decode(), request.headers.get("cookie"))
            )
            return httpx.Response(self.action_status, text="")

        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


async def wait_for_info_calls(service: FakeQBittorrent, count: int) -> None:
    """Wait until the fake service has seen count item-list requests."""
    while service.info_calls < count:
        await asyncio.sleep(0.005)


def raw_config(**polling: Any) -> dict[str, Any]:
    """Build a raw module configuration pointing at the fake service."""
    return {
        "connection": {"host": HOST, "username": "admin", "password": "s3cret"},
        "polling": {"updateInterval": 60000, **polling},
    }


def configure(engine: PollingEngine, **polling: Any) -> PollingEngine:
    """Apply a configuration to an engine without starting the scheduler."""
    config = normalize_config(raw_config(**polling))
    engine.config = config
    engine.tls_cache.configure(config.connection.tls)
    engine.session.reset(config.connection)
    engine.scheduler.configure(config.polling)
    return engine


@pytest.fixture
def service() -> FakeQBittorrent:
    """Fake qBittorrent service."""
    return FakeQBittorrent()


@pytest.fixture
def channel() -> QueueChannel:
    """Outbound channel collecting engine messages."""
    return QueueChannel()


@pytest.fixture
def engine(service: FakeQBittorrent, channel: QueueChannel) -> PollingEngine:
    """Configured but not started engine talking to the fake service."""
    return configure(PollingEngine(channel, http_transport=service.transport))


@pytest.fixture
def sample_torrents() -> list[dict[str, Any]]:
    """Sample /api/v2/torrents/info payload."""
    return [
        {
            "hash": "8c212779b4abde7c6bc608063a0d008b7e40ce32",
            "name": "debian-12.5.0-amd64-netinst.iso",
            "progress": 0.42,
            "state": "downloading",
            "size": 658505728,
            "dlspeed": 1048576,
            "upspeed": 0,
            "eta": 360,
            "ratio": 0.0,
            "num_seeds": 12,
            "num_leechs": 3,
            "added_on": 1718000000,
        },
        {
            "hash": "b4a2c1f0e9d8c7b6a5f4e3d2c1b0a9f8e7d6c5b4",
            "name": "archlinux-2024.06.01-x86_64.iso",
            "progress": 1.0,
            "state": "uploading",
            "size": 1159417856,
            "dlspeed": 0,
            "upspeed": 524288,
            "eta": 8640000,
            "ratio": 1.7,
            "num_seeds": 40,
            "num_leechs": 5,
            "added_on": 1717000000,
        },
    ]
