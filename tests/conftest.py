import asyncio
from typing import Any, Callable, List, Optional

import pytest

from gmail_relay.core import RelayService
from gmail_relay.prometheus import RelayMetrics


class DummyTransport:
    def __init__(self, factory, profile, user, password):
        self.factory = factory
        self.profile = profile
        self.user = user
        self.password = password
        self.calls: List[str] = []
        self.messages: List[Any] = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True

    async def verify(self):
        self.calls.append("verify")
        if self.factory.on_verify:
            self.factory.on_verify()
        if self.factory.verify_error:
            raise self.factory.verify_error

    async def send(self, message):
        self.calls.append("send")
        self.messages.append(message)
        self.factory.send_started.set()
        if self.factory.release_send is not None:
            await self.factory.release_send.wait()
        if self.factory.on_send:
            self.factory.on_send()
        if self.factory.send_error:
            raise self.factory.send_error
        return self.factory.delivery_id


class DummyTransportFactory:
    """Callable standing in for ``GmailTransport`` that records every session."""

    def __init__(self):
        self.created: List[DummyTransport] = []
        self.delivery_id = "abc123"
        self.verify_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.on_create: Optional[Callable[[], Any]] = None
        self.on_verify: Optional[Callable[[], Any]] = None
        self.on_send: Optional[Callable[[], Any]] = None
        self.release_send: Optional[asyncio.Event] = None
        self.send_started = asyncio.Event()

    def __call__(self, profile, user, password):
        if self.create_error:
            raise self.create_error
        transport = DummyTransport(self, profile, user, password)
        self.created.append(transport)
        if self.on_create:
            self.on_create()
        return transport

    def block_send(self) -> asyncio.Event:
        """Make ``send`` wait until the returned event is set."""
        self.send_started = asyncio.Event()
        self.release_send = asyncio.Event()
        return self.release_send


@pytest.fixture
def transport_factory():
    return DummyTransportFactory()


@pytest.fixture
def service(transport_factory):
    return RelayService(port=3001, transport_factory=transport_factory, metrics=RelayMetrics())


@pytest.fixture
def send_payload():
    return {
        "user": "sender@gmail.com",
        "password": "app-password",
        "to": "dest@example.com",
        "subject": "Hello",
        "text": "Line one\nLine two",
    }
