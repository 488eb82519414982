"""Registry of open IMAP sessions keyed by opaque session ids.

The registry is an explicit object owned by whatever front end serves
requests. It is constructed at startup, swept on a timer while running and
torn down at shutdown. Several independent registries can coexist, which keeps
tests isolated.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

from .providers import EmailProvider
from .session import ConnectionResult, ImapSession
from .transport import ImapConfig


logger = logging.getLogger(__name__)

SessionFactory = Callable[[Union[EmailProvider, str]], ImapSession]


@dataclass
class RegisteredSession:
    """A session plus registry bookkeeping."""

    session_id: str
    session: ImapSession
    created_at: float
    last_used: float


@dataclass
class SweepReport:
    """What a single sweep did."""

    evicted: List[str] = field(default_factory=list)
    unhealthy: List[str] = field(default_factory=list)
    checked: int = 0


def _default_factory(provider: Union[EmailProvider, str]) -> ImapSession:
    return ImapSession(provider=provider)


class SessionRegistry:
    """Maps session ids to :class:`ImapSession` objects.

    Sessions idle for longer than ``idle_timeout`` seconds are disconnected
    and dropped by :meth:`sweep`; the remaining sessions are health-checked.
    """

    def __init__(
        self,
        *,
        health_check_interval: float = 120.0,
        idle_timeout: float = 600.0,
        session_factory: SessionFactory = _default_factory,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if health_check_interval <= 0:
            raise ValueError("health_check_interval must be positive")
        if idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")
        self.health_check_interval = health_check_interval
        self.idle_timeout = idle_timeout
        self.session_factory = session_factory
        self.clock = clock
        self._sessions: Dict[str, RegisteredSession] = {}
        self._stop_event = asyncio.Event()
        self._sweep_task: Optional[asyncio.Task[None]] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def session_ids(self) -> List[str]:
        return list(self._sessions)

    # -- registration -----------------------------------------------------

    async def open_session(
        self,
        config: ImapConfig,
        provider: Union[EmailProvider, str] = EmailProvider.YAHOO,
    ) -> Tuple[Optional[str], ConnectionResult]:
        """Create a session, connect it and register it on success.

        Returns the new session id (``None`` when connecting failed) together
        with the connection result.
        """
        session = self.session_factory(provider)
        result = await session.connect(config)
        if not result.success:
            await session.disconnect()
            return None, result
        return self.register(session), result

    def register(self, session: ImapSession) -> str:
        session_id = uuid.uuid4().hex
        now = self.clock()
        self._sessions[session_id] = RegisteredSession(
            session_id=session_id,
            session=session,
            created_at=now,
            last_used=now,
        )
        logger.info("Registered IMAP session %s", session_id)
        return session_id

    def get(self, session_id: str) -> Optional[ImapSession]:
        entry = self._sessions.get(session_id)
        return entry.session if entry is not None else None

    async def acquire(self, session_id: str) -> Optional[ImapSession]:
        """Return a usable session, reconnecting on demand.

        A session whose reconnect fails is disconnected and evicted, and
        ``None`` is returned so the caller can ask for credentials again.
        """
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        entry.last_used = self.clock()
        if await entry.session.ensure_connected():
            return entry.session
        logger.warning("Session %s could not be reconnected; evicting", session_id)
        await self.close(session_id)
        return None

    async def close(self, session_id: str) -> bool:
        entry = self._sessions.pop(session_id, None)
        if entry is None:
            return False
        await entry.session.disconnect()
        logger.info("Closed IMAP session %s", session_id)
        return True

    # -- maintenance ------------------------------------------------------

    async def sweep(self) -> SweepReport:
        """Evict idle sessions and health-check the rest."""
        report = SweepReport()
        now = self.clock()
        for session_id, entry in list(self._sessions.items()):
            if now - entry.last_used > self.idle_timeout:
                await self.close(session_id)
                report.evicted.append(session_id)
                continue
            report.checked += 1
            try:
                healthy = await entry.session.check_health()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Health sweep failed for %s: %s", session_id, exc)
                healthy = False
            if not healthy:
                report.unhealthy.append(session_id)
        if report.evicted or report.unhealthy:
            logger.info(
                "Session sweep: %d evicted, %d unhealthy, %d checked",
                len(report.evicted),
                len(report.unhealthy),
                report.checked,
            )
        return report

    async def start(self) -> None:
        """Start the periodic sweeper."""
        if self._sweep_task and not self._sweep_task.done():
            raise RuntimeError("Session sweeper already running")

        self._stop_event.clear()
        loop = asyncio.get_running_loop()
        self._sweep_task = loop.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the periodic sweeper."""
        self._stop_event.set()
        task, self._sweep_task = self._sweep_task, None
        if task:
            await task

    async def shutdown(self) -> None:
        """Stop sweeping and close every session."""
        await self.stop()
        for session_id in list(self._sessions):
            await self.close(session_id)

    async def _sweep_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.health_check_interval
                )
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.sweep()
            except Exception as exc:  # noqa: BLE001
                logger.error("Session sweep error: %s", exc, exc_info=exc)


__all__ = ["RegisteredSession", "SessionRegistry", "SweepReport"]
