"""
Message channel between the polling engine and its consumer.

Inbound messages carry configuration and user commands to the engine;
outbound messages carry item updates and failure reports back.
"""

import asyncio
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field


class UpdateMessage(BaseModel):
    """Item list from a successful poll."""

    kind: Literal["update"] = "update"
    items: list[Any] = Field(default_factory=list)

    def to_payload(self) -> list[Any]:
        return self.items


class ErrorMessage(BaseModel):
    """Failure report for a failed poll or an invalid configuration."""

    kind: Literal["error"] = "error"
    message: str
    failures: int = 0
    will_retry: bool = False
    errors: list[str] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message": self.message,
            "failures": self.failures,
            "willRetry": self.will_retry,
        }
        if self.errors:
            payload["errors"] = self.errors
        return payload


OutboundMessage = UpdateMessage | ErrorMessage


class InitMessage(BaseModel):
    kind: Literal["init"] = "init"
    config: dict[str, Any] = Field(default_factory=dict)


class CommandMessage(BaseModel):
    """Start or pause request for a single item."""

    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["command"] = "command"
    item_id: str = Field(alias="hash")
    action: str


class SuspendMessage(BaseModel):
    kind: Literal["suspend"] = "suspend"


class ResumeMessage(BaseModel):
    kind: Literal["resume"] = "resume"


class StopMessage(BaseModel):
    kind: Literal["stop"] = "stop"


InboundMessage = (
    InitMessage | CommandMessage | SuspendMessage | ResumeMessage | StopMessage
)


class OutboundChannel(Protocol):
    """Anything the engine can publish updates and errors to."""

    async def publish(self, message: OutboundMessage) -> None: ...


class QueueChannel:
    """Outbound channel backed by an asyncio queue."""

    def __init__(self, maxsize: int = 0) -> None:
        self.queue: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize)

    async def publish(self, message: OutboundMessage) -> None:
        await self.queue.put(message)

    async def get(self) -> OutboundMessage:
        return await self.queue.get()

    def drain(self) -> list[OutboundMessage]:
        """Return every queued message without waiting."""
        messages: list[OutboundMessage] = []
        while not self.queue.empty():
            messages.append(self.queue.get_nowait())
        return messages
