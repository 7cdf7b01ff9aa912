"""
Session client contract.

A session client keeps one linked WhatsApp session alive and reports what happens
to it as typed events on the queue it was built with. The session manager is the
only consumer of that queue.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Union


@dataclass(frozen=True)
class ClientInfo:
    display_name: str
    wid: Optional[str] = None


@dataclass(frozen=True)
class IncomingMessage:
    from_: str
    body: str
    from_me: bool = False
    is_status: bool = False
    id: Optional[str] = None


@dataclass(frozen=True)
class QrReceived:
    payload: str


@dataclass(frozen=True)
class Ready:
    info: ClientInfo


@dataclass(frozen=True)
class AuthFailure:
    reason: str


@dataclass(frozen=True)
class Disconnected:
    reason: str


@dataclass(frozen=True)
class MessageReceived:
    message: IncomingMessage


@dataclass(frozen=True)
class ClientFault:
    error: str


SessionEvent = Union[QrReceived, Ready, AuthFailure, Disconnected, MessageReceived, ClientFault]


class SessionClient(ABC):
    """
    Base class for session clients.

    Subclasses push events with `emit` once `initialize` has been awaited. `destroy`
    must release everything the client holds and may raise; callers treat that as
    non-fatal.
    """

    def __init__(self, events: "asyncio.Queue[SessionEvent]"):
        self.events = events
        self.info: Optional[ClientInfo] = None

    async def emit(self, event: SessionEvent) -> None:
        await self.events.put(event)

    @abstractmethod
    async def initialize(self) -> None:
        """Begin connecting. Returns once the connection attempt is under way."""

    @abstractmethod
    async def send_message(self, to: str, text: str) -> None:
        """Best-effort send of a text message."""

    @abstractmethod
    async def destroy(self) -> None:
        """Release all resources held by this client."""


ClientFactory = Callable[["asyncio.Queue[SessionEvent]"], SessionClient]
