"""
End-to-end tests for the polling engine.
"""

import asyncio

import pytest

from conftest import raw_config, wait_for_info_calls
from qbt_poller.channel import (
    CommandMessage,
    ErrorMessage,
    InitMessage,
    QueueChannel,
    ResumeMessage,
    StopMessage,
    SuspendMessage,
    UpdateMessage,
)
from qbt_poller.engine import PollingEngine
from qbt_poller.state import EngineState


@pytest.fixture
def fresh_engine(service, channel):
    """Unconfigured engine talking to the fake service."""
    return PollingEngine(channel, http_transport=service.transport)


class TestPollingEngine:
    """Test engine lifecycle and message handling."""

    @pytest.mark.asyncio
    async def test_init_emits_single_update(self, fresh_engine, service, channel):
        """Test one successful poll produces exactly one update."""
        service.items = [{"id": "a", "progress": 1.0}]

        assert await fresh_engine.init(raw_config()) is True
        try:
            messages = channel.drain()
            assert len(messages) == 1
            assert isinstance(messages[0], UpdateMessage)
            assert messages[0].to_payload() == [{"id": "a", "progress": 1.0}]
            assert fresh_engine.state.state is EngineState.POLLING
        finally:
            await fresh_engine.stop()

    @pytest.mark.asyncio
    async def test_repeated_timeouts_pause_engine(
        self, fresh_engine, service, channel
    ):
        """Test three timeouts with pausing enabled end in PAUSED."""
        service.info_results = ["timeout"] * 3

        await fresh_engine.init(
            raw_config(
                updateInterval=1000,
                maxConsecutiveFailures=3,
                pauseOnRepeatedFailures=True,
            )
        )
        try:
            await fresh_engine.scheduler.poll_once()
            await fresh_engine.scheduler.poll_once()

            payloads = [m.to_payload() for m in channel.drain()]
            assert [p["willRetry"] for p in payloads] == [True, True, False]
            assert [p["failures"] for p in payloads] == [1, 2, 3]
            assert all(
                p["message"] == "Failed to connect to qBittorrent: request timed out"
                for p in payloads
            )
            assert fresh_engine.state.state is EngineState.PAUSED
            assert fresh_engine.scheduler._fire() is None
        finally:
            await fresh_engine.stop()

    @pytest.mark.asyncio
    async def test_paused_engine_ignores_timer_until_resume(
        self, fresh_engine, service, channel
    ):
        """Test the running timer polls nothing while paused."""
        service.info_results = ["timeout"] * 3

        await fresh_engine.init(
            raw_config(
                updateInterval=1000,
                maxBackoffInterval=1000,
                maxConsecutiveFailures=3,
                pauseOnRepeatedFailures=True,
            )
        )
        try:
            await fresh_engine.scheduler.poll_once()
            await fresh_engine.scheduler.poll_once()
            assert fresh_engine.state.state is EngineState.PAUSED
            assert fresh_engine.scheduler.is_running() is True
            calls_when_paused = service.info_calls

            await asyncio.sleep(1.3)

            assert service.info_calls == calls_when_paused
            assert fresh_engine.state.state is EngineState.PAUSED

            channel.drain()
            assert await fresh_engine.resume() is True
            assert service.info_calls == calls_when_paused + 1
            assert fresh_engine.state.state is EngineState.POLLING
            assert fresh_engine.scheduler.consecutive_failures == 0
            assert isinstance(channel.drain()[0], UpdateMessage)

            await asyncio.wait_for(
                wait_for_info_calls(service, calls_when_paused + 2), 2
            )
        finally:
            await fresh_engine.stop()

    @pytest.mark.asyncio
    async def test_malformed_config_is_reported(self, fresh_engine, service, channel):
        """Test a value of the wrong type is reported instead of raised."""
        config = raw_config(updateInterval="fast")

        assert await fresh_engine.init(config) is False

        [message] = channel.drain()
        assert isinstance(message, ErrorMessage)
        assert message.message == "Invalid configuration"
        assert message.failures == 0
        assert message.will_retry is False
        assert message.errors[0].startswith(
            "PollingConfig.update_interval: Input should be a valid integer"
        )
        assert fresh_engine.scheduler.is_running() is False
        assert service.login_calls == 0

    @pytest.mark.asyncio
    async def test_malformed_section_is_reported(self, fresh_engine, channel):
        """Test a section that is not an object is reported."""
        assert await fresh_engine.init({"connection": "http://qbt.test"}) is False

        [message] = channel.drain()
        assert message.errors == ["connection must be an object"]

    @pytest.mark.asyncio
    async def test_run_survives_malformed_init(self, fresh_engine, service, channel):
        """Test the inbound loop keeps going after a rejected init."""
        inbound = asyncio.Queue()
        await inbound.put(InitMessage(config=raw_config(pollTimeout=[1])))
        await inbound.put(InitMessage(config=raw_config()))
        await inbound.put(StopMessage())

        await asyncio.wait_for(fresh_engine.run(inbound), 2)

        messages = channel.drain()
        assert isinstance(messages[0], ErrorMessage)
        assert isinstance(messages[1], UpdateMessage)
        assert service.info_calls == 1
        assert fresh_engine.state.state is EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_unusable_host_counts_as_failed_poll(self, fresh_engine, channel):
        """Test a host httpx cannot parse ends in ERROR with a failure report."""
        config = raw_config()
        config["connection"]["host"] = "http://[::1"

        assert await fresh_engine.init(config) is True
        try:
            [message] = channel.drain()
            assert isinstance(message, ErrorMessage)
            assert message.failures == 1
            assert message.will_retry is True
            assert message.message == (
                "Failed to connect to qBittorrent: authentication failed"
            )
            assert fresh_engine.state.state is EngineState.ERROR
            assert fresh_engine.scheduler.consecutive_failures == 1
        finally:
            await fresh_engine.stop()

    @pytest.mark.asyncio
    async def test_invalid_config_is_reported(self, fresh_engine, service, channel):
        """Test validation errors are published and polling never starts."""
        result = await fresh_engine.init({"connection": {"host": "qbt.local"}})

        assert result is False
        [message] = channel.drain()
        assert isinstance(message, ErrorMessage)
        assert message.to_payload() == {
            "message": "Invalid configuration",
            "failures": 0,
            "willRetry": False,
            "errors": ["Host must start with http:// or https://"],
        }
        assert fresh_engine.scheduler.is_running() is False
        assert service.login_calls == 0

    @pytest.mark.asyncio
    async def test_unloadable_tls_material_is_reported(
        self, service, channel, tmp_path
    ):
        """Test TLS files that exist but cannot be parsed fail init."""
        (tmp_path / "ca.pem").write_text("not a certificate")
        engine = PollingEngine(
            channel, base_dir=tmp_path, http_transport=service.transport
        )
        config = raw_config()
        config["connection"]["host"] = "https://qbt.test:8080"
        config["connection"]["tls"] = {"ca": "ca.pem"}

        assert await engine.init(config) is False

        [message] = channel.drain()
        assert message.errors == ["Failed to load TLS material"]
        assert service.login_calls == 0

    @pytest.mark.asyncio
    async def test_suspend_and_resume(self, fresh_engine, service, channel):
        """Test suspend stops ticks and resume polls right away."""
        await fresh_engine.init(raw_config())
        try:
            assert fresh_engine.suspend() is True
            assert fresh_engine.state.state is EngineState.PAUSED
            assert fresh_engine.scheduler._fire() is None

            assert await fresh_engine.resume() is True
            assert fresh_engine.state.state is EngineState.POLLING
            assert service.info_calls == 2
            assert len(channel.drain()) == 2
        finally:
            await fresh_engine.stop()

    @pytest.mark.asyncio
    async def test_stop_is_terminal(self, fresh_engine, service):
        """Test nothing restarts a stopped engine."""
        await fresh_engine.init(raw_config())
        await fresh_engine.stop()

        assert fresh_engine.state.state is EngineState.STOPPED
        assert fresh_engine.scheduler.is_running() is False
        assert await fresh_engine.init(raw_config()) is False
        assert await fresh_engine.resume() is False
        assert fresh_engine.suspend() is False
        assert service.info_calls == 1

    @pytest.mark.asyncio
    async def test_reconfigure_resets_session(self, fresh_engine, service):
        """Test a second init logs in again against the new host."""
        await fresh_engine.init(raw_config())
        config = raw_config()
        config["connection"]["host"] = "http://other.test:8080/"
        try:
            assert await fresh_engine.init(config) is True

            assert service.login_calls == 2
            assert fresh_engine.session.connection.host == "http://other.test:8080"
            assert fresh_engine.scheduler.is_running() is True
        finally:
            await fresh_engine.stop()

    @pytest.mark.asyncio
    async def test_legacy_flat_config(self, fresh_engine, service):
        """Test the legacy flat configuration keys are still accepted."""
        try:
            assert (
                await fresh_engine.init(
                    {"host": "http://qbt.test:8080", "username": "admin"}
                )
                is True
            )
            assert service.login_bodies == ["username=admin&password="]
        finally:
            await fresh_engine.stop()

    @pytest.mark.asyncio
    async def test_handle_messages(self, fresh_engine, service):
        """Test inbound messages are routed to the engine."""
        await fresh_engine.handle(InitMessage(config=raw_config()))
        await fresh_engine.handle(CommandMessage(hash="abc", action="pause"))
        await asyncio.gather(*fresh_engine._tasks)

        assert service.actions[0][:2] == ("/api/v2/torrents/pause", "hashes=abc")

        await fresh_engine.handle(SuspendMessage())
        assert fresh_engine.state.state is EngineState.PAUSED

        await fresh_engine.handle(ResumeMessage())
        await asyncio.gather(*fresh_engine._tasks)
        assert fresh_engine.state.state is EngineState.POLLING

        await fresh_engine.handle(StopMessage())
        assert fresh_engine.state.state is EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_run_consumes_until_stop(self, fresh_engine):
        """Test the inbound loop exits once the engine stops."""
        inbound = asyncio.Queue()
        await inbound.put(InitMessage(config=raw_config()))
        await inbound.put(StopMessage())

        await asyncio.wait_for(fresh_engine.run(inbound), 2)

        assert fresh_engine.state.state is EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_status(self, fresh_engine):
        """Test engine status reporting."""
        assert fresh_engine.status()["configured"] is False

        await fresh_engine.init(raw_config())
        try:
            status = fresh_engine.status()
            assert status["configured"] is True
            assert status["authenticated"] is True
            assert status["host"] == "http://qbt.test:8080"
            assert status["state"] == "polling"
        finally:
            await fresh_engine.stop()


class TestMessages:
    """Test channel message models."""

    def test_command_message_accepts_hash_alias(self):
        """Test commands parse the wire field name."""
        message = CommandMessage.model_validate(
            {"kind": "command", "hash": "abc", "action": "start"}
        )

        assert message.item_id == "abc"

    def test_error_payload_omits_empty_errors(self):
        """Test the error payload shape for poll failures."""
        message = ErrorMessage(message="boom", failures=2, will_retry=True)

        assert message.to_payload() == {
            "message": "boom",
            "failures": 2,
            "willRetry": True,
        }

    @pytest.mark.asyncio
    async def test_queue_channel_drain(self):
        """Test the queue channel returns messages in order."""
        channel = QueueChannel()
        await channel.publish(UpdateMessage(items=[1]))
        await channel.publish(UpdateMessage(items=[2]))

        assert [m.items for m in channel.drain()] == [[1], [2]]
        assert channel.drain() == []
