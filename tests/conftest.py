"""Shared fixtures: in-memory IMAP clients and transports.

Sessions under test get a :class:`FakeTransport` through their ``transport``
field, so nothing here touches the network.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest
from imapclient.response_types import Address, Envelope

from mailharvest.imap.providers import ProviderProfile
from mailharvest.imap.transport import ImapConfig


Mailbox = Dict[str, Dict[int, Dict[bytes, Any]]]


def make_message(
    uid: int,
    *,
    subject: str = "Weekly deals",
    sender: str = "deals@shop.example",
    body: str = "Use code SAVE20 at checkout.",
    date: Optional[datetime] = None,
    content_type: str = "text/plain",
) -> Dict[bytes, Any]:
    """Build the ``fetch`` response entry IMAPClient returns for one message."""
    mailbox, host = sender.split("@")
    sent = date or datetime(2024, 3, uid % 28 + 1, 9, 30, tzinfo=timezone.utc)
    envelope = Envelope(
        date=sent,
        subject=subject.encode("utf-8"),
        from_=(Address(b"Shop", None, mailbox.encode(), host.encode()),),
        sender=None,
        reply_to=None,
        to=None,
        cc=None,
        bcc=None,
        in_reply_to=None,
        message_id=f"<{uid}@shop.example>".encode(),
    )
    source = (
        f"From: Shop <{sender}>\r\n"
        f"To: me@example.com\r\n"
        f"Subject: {subject}\r\n"
        f"Content-Type: {content_type}; charset=utf-8\r\n"
        f"\r\n"
        f"{body}\r\n"
    )
    return {b"ENVELOPE": envelope, b"BODY[]": source.encode("utf-8")}


class FakeClient:
    """IMAPClient-compatible handle backed by a dict of folders."""

    def __init__(self, mailbox: Optional[Mailbox] = None) -> None:
        self.mailbox: Mailbox = mailbox if mailbox is not None else {"INBOX": {}}
        self.noop_calls = 0
        self.noop_error: Optional[BaseException] = None
        self.fail_noop_after: Optional[int] = None
        self.fetch_errors: List[BaseException] = []
        self.logged_out = False
        self.selected: List[tuple] = []
        self.searches: List[tuple] = []
        self.fetches: List[List[int]] = []
        self.search_handler: Optional[Callable[[List[Any]], List[int]]] = None
        self._folder: Optional[str] = None

    def noop(self) -> tuple:
        self.noop_calls += 1
        if self.noop_error is not None:
            raise self.noop_error
        if self.fail_noop_after is not None and self.noop_calls > self.fail_noop_after:
            raise ConnectionResetError("socket connection reset by peer")
        return (b"NOOP completed", [])

    def logout(self) -> bytes:
        self.logged_out = True
        return b"Logging out"

    def list_folders(self, directory: str = "", pattern: str = "*") -> List[tuple]:
        return [((b"\\HasNoChildren",), b"/", name) for name in self.mailbox]

    def select_folder(self, folder: str, readonly: bool = False) -> Dict[bytes, Any]:
        if folder not in self.mailbox:
            raise RuntimeError(f"select failed: folder {folder} not found")
        self._folder = folder
        self.selected.append((folder, readonly))
        return {b"EXISTS": len(self.mailbox[folder])}

    def unselect_folder(self) -> bytes:
        self._folder = None
        return b"Unselect completed"

    def search(self, criteria: Any = "ALL", charset: Optional[str] = None) -> List[int]:
        self.searches.append((list(criteria), charset))
        if self.search_handler is not None:
            return self.search_handler(list(criteria))
        return sorted(self.mailbox[self._folder or "INBOX"])

    def fetch(self, messages: Any, data: Any, modifiers: Any = None) -> Dict[int, Any]:
        self.fetches.append(list(messages))
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        folder = self.mailbox[self._folder or "INBOX"]
        return {uid: folder[uid] for uid in messages if uid in folder}


class BusyClient(FakeClient):
    """FakeClient that records how many commands ever ran at the same time."""

    def __init__(self, mailbox: Optional[Mailbox] = None) -> None:
        super().__init__(mailbox)
        self.in_flight = 0
        self.max_in_flight = 0
        self._count_lock = threading.Lock()

    def _enter(self) -> None:
        with self._count_lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def _leave(self) -> None:
        with self._count_lock:
            self.in_flight -= 1

    def slow(self, seconds: float) -> str:
        self._enter()
        try:
            time.sleep(seconds)
            return "done"
        finally:
            self._leave()

    def noop(self) -> tuple:
        self._enter()
        try:
            time.sleep(0.01)
            return super().noop()
        finally:
            self._leave()

    def logout(self) -> bytes:
        self._enter()
        try:
            return super().logout()
        finally:
            self._leave()


@dataclass
class Hang:
    """Transport outcome: block for ``seconds`` and then return ``client``."""

    seconds: float
    client: FakeClient


class FakeTransport:
    """Hands out scripted outcomes, one per ``open`` call.

    Outcomes are exceptions (raised), :class:`FakeClient` instances
    (returned) or :class:`Hang` markers. Once the script runs out every call
    returns a fresh client sharing ``mailbox``.
    """

    def __init__(self, *outcomes: Any, mailbox: Optional[Mailbox] = None) -> None:
        self.outcomes = list(outcomes)
        self.mailbox = mailbox
        self.opens: List[float] = []
        self.clients: List[FakeClient] = []
        self._lock = threading.Lock()

    def open(self, config: ImapConfig, timeout: float) -> FakeClient:
        with self._lock:
            self.opens.append(timeout)
            outcome = self.outcomes.pop(0) if self.outcomes else FakeClient(self.mailbox)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, Hang):
            time.sleep(outcome.seconds)
            outcome = outcome.client
        with self._lock:
            self.clients.append(outcome)
        return outcome


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class SleepGate:
    """Stand-in for ``asyncio.sleep`` that blocks until released."""

    def __init__(self) -> None:
        self.delays: List[float] = []
        self._queue: "asyncio.Queue[None]" = asyncio.Queue()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await self._queue.get()

    def release(self, count: int = 1) -> None:
        for _ in range(count):
            self._queue.put_nowait(None)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig.for_provider("shopper@yahoo.com", "app-password", "yahoo")


@pytest.fixture
def flaky_profile() -> ProviderProfile:
    return ProviderProfile(
        name="network-flaky",
        max_retries=5,
        retry_delay_base=2.0,
        retry_delay_max=30.0,
        connection_timeout=5.0,
        operation_timeout=2.0,
        idle_timeout=60.0,
    )


@pytest.fixture
def fast_profile() -> ProviderProfile:
    return ProviderProfile(
        name="fast",
        max_retries=3,
        retry_delay_base=0.0,
        retry_delay_max=1.0,
        connection_timeout=1.0,
        operation_timeout=1.0,
        idle_timeout=60.0,
    )


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def sleep_gate() -> SleepGate:
    return SleepGate()


@pytest.fixture
def fakes():
    """Access to the fake classes and helpers from test modules."""

    class _Fakes:
        Client = FakeClient
        Busy = BusyClient
        Transport = FakeTransport
        Hang = Hang
        message = staticmethod(make_message)
        wait_until = staticmethod(wait_until)

    return _Fakes
