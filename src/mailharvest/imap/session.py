"""IMAP connection lifecycle management.

An :class:`ImapSession` owns at most one live IMAP client at a time and keeps
it usable across long-running work: it connects with a bounded retry loop,
checks liveness with ``NOOP``, sends periodic keep-alive NOOPs, and
transparently reconnects with the stored credentials when a caller asks for
:meth:`ImapSession.ensure_connected`.

Blocking ``imapclient`` calls run in worker threads while all session state is
mutated on the event loop. ``IMAPClient`` is not thread-safe, so every command
on a client holds that client's lock until its worker thread returns, even
when the caller stopped waiting. A client whose command timed out is retired
and logged out once its worker finishes. A connect in flight, first or
reconnect, makes other callers of ``ensure_connected`` wait for it instead of
starting another.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> UNHEALTHY -> RECONNECTING
                                      ^                          |
                                      +--------------------------+--> DISCONNECTED
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, TypeVar, Union

from mailharvest.errors import ImapConnectionError, NotConnectedError

from .error_classifier import ErrorClassifier, ErrorType, RecoveryStrategy
from .providers import EmailProvider, ProviderProfile, get_provider_profile
from .timeouts import with_timeout
from .transport import ImapClientTransport, ImapConfig, ImapHandle, ImapTransport


logger = logging.getLogger(__name__)

T = TypeVar("T")

# How long a caller waits for somebody else's connect before reporting state.
RECONNECT_WAIT_SECONDS = 1.0


# ---------------------------------------------------------------------------
# Connection state and metrics
# ---------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Lifecycle states for an IMAP session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNHEALTHY = "unhealthy"
    RECONNECTING = "reconnecting"


@dataclass
class ConnectionMetrics:
    """Aggregated counters for connection health reporting."""

    total_connections: int = 0
    successful_connections: int = 0
    failed_connections: int = 0
    total_retries: int = 0
    reconnects: int = 0
    keep_alive_checks: int = 0
    keep_alive_failures: int = 0
    average_connection_time: float = 0.0

    def record_attempt(self, success: bool, elapsed: float) -> None:
        self.total_connections += 1
        if success:
            self.successful_connections += 1
            # incremental average to avoid large arrays
            self.average_connection_time += (
                elapsed - self.average_connection_time
            ) / max(1, self.successful_connections)
        else:
            self.failed_connections += 1

    def record_retry(self) -> None:
        self.total_retries += 1

    def record_reconnect(self) -> None:
        self.reconnects += 1

    def record_keep_alive(self, success: bool) -> None:
        self.keep_alive_checks += 1
        if not success:
            self.keep_alive_failures += 1


@dataclass
class ConnectionResult:
    """Outcome of :meth:`ImapSession.connect`.

    ``error_type`` and ``recovery`` are set on failure so callers can decide
    whether to prompt for new credentials or schedule another attempt.
    """

    success: bool
    attempts: int = 0
    client: Optional[ImapHandle] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    recovery: Optional[RecoveryStrategy] = None


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class ImapSession:
    """A single IMAP connection with retry, health checks and keep-alive."""

    provider: Union[EmailProvider, str] = EmailProvider.YAHOO
    # Resolved from ``provider`` when not given.
    profile: ProviderProfile = None  # type: ignore[assignment]
    transport: ImapTransport = field(default_factory=ImapClientTransport)
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)
    metrics: ConnectionMetrics = field(default_factory=ConnectionMetrics)
    keep_alive: bool = True
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    client: Optional[ImapHandle] = field(default=None, init=False, repr=False)
    config: Optional[ImapConfig] = field(default=None, init=False, repr=False)
    state: ConnectionState = field(default=ConnectionState.DISCONNECTED, init=False)
    last_activity: Optional[datetime] = field(default=None, init=False)
    reconnecting: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        if self.profile is None:
            self.profile = get_provider_profile(self.provider)
        self._last_activity_monotonic = 0.0
        # Bumped by disconnect() so an in-flight connect() can tell it was abandoned.
        self._generation = 0
        self._keep_alive_task: Optional[asyncio.Task[None]] = None
        # Serializes commands on the current client; replaced with the client.
        self._client_lock = asyncio.Lock()
        self._connects_in_flight = 0
        self._connect_done = asyncio.Event()
        self._connect_done.set()

    # -- connection -------------------------------------------------------

    async def connect(self, config: ImapConfig) -> ConnectionResult:
        """Connect with up to ``profile.max_retries`` attempts.

        Attempts are separated by the profile's fixed ``retry_delay_base``.
        Authentication failures end the loop immediately. Never raises for
        connection failures; the outcome is reported in the result.
        """
        self._connects_in_flight += 1
        self._connect_done.clear()
        try:
            return await self._connect(config)
        finally:
            self._connects_in_flight -= 1
            if not self._connects_in_flight:
                self._connect_done.set()

    @property
    def connect_pending(self) -> bool:
        return self.reconnecting or self._connects_in_flight > 0

    async def _connect(self, config: ImapConfig) -> ConnectionResult:
        profile = self.profile
        self.config = config
        generation = self._generation
        if not self.reconnecting:
            self.state = ConnectionState.CONNECTING

        last_error: Optional[BaseException] = None
        for attempt in range(1, profile.max_retries + 1):
            await self._discard_client()
            start = time.perf_counter()
            try:
                client = await self._open_client(config, profile.connection_timeout)
            except Exception as exc:  # noqa: BLE001 - classified below
                self.metrics.record_attempt(False, time.perf_counter() - start)
                last_error = exc
                error_type = self.classifier.classify(exc)
                if error_type is ErrorType.AUTHENTICATION:
                    strategy = self.classifier.get_recovery_strategy(error_type, attempt)
                    logger.warning(
                        "Authentication failed for %s on attempt %d; not retrying",
                        config.host,
                        attempt,
                    )
                    self.stop_keep_alive()
                    self.state = ConnectionState.DISCONNECTED
                    return ConnectionResult(
                        success=False,
                        attempts=attempt,
                        error=f"Authentication failed: {exc}. {strategy.user_message}",
                        error_type=error_type,
                        recovery=strategy,
                    )
                if attempt < profile.max_retries:
                    self.metrics.record_retry()
                    logger.info(
                        "Connection attempt %d/%d to %s failed (%s): %s; retrying in %gs",
                        attempt,
                        profile.max_retries,
                        config.host,
                        error_type.value,
                        exc,
                        profile.retry_delay_base,
                    )
                    await self.sleep(profile.retry_delay_base)
                    if generation != self._generation:
                        return _abandoned_result(attempt)
                continue

            if generation != self._generation:
                await asyncio.to_thread(_quiet_logout, client)
                return _abandoned_result(attempt)

            self.metrics.record_attempt(True, time.perf_counter() - start)
            self.client = client
            self._client_lock = asyncio.Lock()
            self.state = ConnectionState.CONNECTED
            self.touch()
            logger.info("Connected to %s on attempt %d", config.host, attempt)
            if self.keep_alive:
                self.start_keep_alive()
            return ConnectionResult(success=True, attempts=attempt, client=client)

        self.stop_keep_alive()
        self.state = ConnectionState.DISCONNECTED
        error_type = self.classifier.classify(last_error)
        logger.warning(
            "Giving up on %s after %d attempts: %s", config.host, profile.max_retries, last_error
        )
        return ConnectionResult(
            success=False,
            attempts=profile.max_retries,
            error=f"Connection failed after {profile.max_retries} attempts: {last_error}",
            error_type=error_type,
            recovery=self.classifier.get_recovery_strategy(error_type, profile.max_retries),
        )

    async def _open_client(self, config: ImapConfig, timeout: float) -> ImapHandle:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self.transport.open, config, timeout)
        try:
            return await with_timeout(
                asyncio.shield(future),
                timeout,
                message=f"Connection timeout after {timeout:g}s",
            )
        except BaseException:
            # The worker thread keeps running; log out whatever it produces.
            future.add_done_callback(_logout_abandoned)
            raise

    async def _discard_client(self) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        try:
            await self._logout(client)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring error while discarding stale client", exc_info=exc)

    async def _logout(self, client: ImapHandle) -> None:
        # The caller has already detached ``client`` from the session.
        timeout = self.profile.operation_timeout
        await self._command(
            client,
            _send_logout,
            timeout,
            message=f"LOGOUT timeout after {timeout:g}s",
            lock=self._client_lock,
            current_only=False,
        )

    async def _command(
        self,
        client: ImapHandle,
        operation: Callable[[ImapHandle], T],
        timeout: float,
        *,
        message: str,
        lock: Optional[asyncio.Lock] = None,
        current_only: bool = True,
    ) -> T:
        """Run one blocking command on ``client`` while holding its lock.

        The lock is released when the worker thread returns, not when the
        caller stops waiting. If the worker outlives the caller (timeout or
        cancellation) a still-current client is retired and logged out once
        the worker is done.
        """
        if lock is None:
            lock = self._client_lock
        await lock.acquire()
        try:
            if current_only and client is not self.client:
                raise ImapConnectionError("Connection was replaced while waiting for it.")
            future = asyncio.get_running_loop().run_in_executor(None, operation, client)
        except BaseException:
            lock.release()
            raise
        future.add_done_callback(lambda _: lock.release())
        try:
            return await with_timeout(asyncio.shield(future), timeout, message=message)
        except BaseException:
            if not future.done() and self._retire(client):
                future.add_done_callback(lambda done: _logout_after(done, client))
            raise

    def _retire(self, client: ImapHandle) -> bool:
        if self.client is not client:
            return False
        logger.warning("Retiring IMAP client with a command still running")
        self.client = None
        self.state = ConnectionState.UNHEALTHY
        return True

    # -- health -----------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self.client is not None and self.state is ConnectionState.CONNECTED

    def is_connected(self) -> bool:
        return self.connected

    async def check_health(self) -> bool:
        """Send ``NOOP`` to the server. Never raises."""
        client = self.client
        if client is None or not self.connected:
            return False
        timeout = self.profile.operation_timeout
        try:
            await self._command(
                client, _send_noop, timeout, message=f"NOOP timeout after {timeout:g}s"
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Health check failed: %s", exc)
            if self.client is client:
                self.state = ConnectionState.UNHEALTHY
            return False
        self.touch()
        return True

    async def ensure_connected(self) -> bool:
        """Return True once the session is usable, reconnecting if needed.

        A caller that finds a connect or reconnect already in flight waits
        briefly for it instead of starting a second one.
        """
        if self.connect_pending:
            return await self._wait_for_connect()

        if await self.check_health():
            return True

        # Another caller may have started connecting while we checked.
        if self.connect_pending:
            return await self._wait_for_connect()

        if self.config is None:
            return False

        self.reconnecting = True
        self.state = ConnectionState.RECONNECTING
        self.metrics.record_reconnect()
        logger.info("Connection unhealthy, attempting to reconnect to %s", self.config.host)
        try:
            result = await self.connect(self.config)
            return result.success
        finally:
            self.reconnecting = False

    async def _wait_for_connect(self) -> bool:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._connect_done.wait(), RECONNECT_WAIT_SECONDS)
        return self.connected

    # -- keep-alive -------------------------------------------------------

    @property
    def keep_alive_active(self) -> bool:
        return self._keep_alive_task is not None and not self._keep_alive_task.done()

    def start_keep_alive(self) -> None:
        """(Re)start the periodic keep-alive NOOP.

        Must be called from a running event loop. Any existing keep-alive task
        is cancelled first so repeated calls never leave two running.
        """
        self.stop_keep_alive()
        loop = asyncio.get_running_loop()
        self._keep_alive_task = loop.create_task(self._keep_alive_loop())

    def stop_keep_alive(self) -> None:
        task, self._keep_alive_task = self._keep_alive_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _keep_alive_loop(self) -> None:
        while True:
            await self.sleep(self.profile.idle_timeout)
            if not self.connected:
                continue
            healthy = await self.check_health()
            self.metrics.record_keep_alive(healthy)
            if healthy:
                logger.debug("Keep-alive NOOP sent")
            else:
                logger.warning("Keep-alive NOOP failed; reconnecting on next use")

    # -- teardown ---------------------------------------------------------

    async def disconnect(self) -> None:
        """Close the session. Idempotent and never raises."""
        self.stop_keep_alive()
        self._generation += 1
        client, self.client = self.client, None
        self.config = None
        self.state = ConnectionState.DISCONNECTED
        if client is None:
            return
        try:
            await self._logout(client)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring error during logout", exc_info=exc)

    # -- operations -------------------------------------------------------

    async def execute(
        self,
        operation: Callable[[ImapHandle], T],
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """Run a blocking client operation after making sure we are connected.

        Commands on one client never overlap; a caller waits for the one in
        flight. A timed-out operation retires the client, so the next call
        reconnects.

        Raises:
            NotConnectedError: the session was never connected
            ImapConnectionError: the connection was lost and could not be restored
            OperationTimeoutError: the operation exceeded its time budget
        """
        if self.client is None and self.config is None:
            raise NotConnectedError()
        if not await self.ensure_connected():
            raise ImapConnectionError("Connection lost and reconnection failed.")
        client = self.client
        if client is None:
            raise ImapConnectionError("Connection lost and reconnection failed.")
        budget = timeout if timeout is not None else self.profile.operation_timeout
        result = await self._command(
            client, operation, budget, message=f"Operation timeout after {budget:g}s"
        )
        self.touch()
        return result

    async def list_folders(self) -> List[str]:
        """Return the names of all folders in the mailbox."""
        entries = await self.execute(lambda client: client.list_folders())
        return [_folder_name(entry) for entry in entries]

    # -- activity ---------------------------------------------------------

    def touch(self) -> None:
        self.last_activity = datetime.now(timezone.utc)
        self._last_activity_monotonic = time.monotonic()

    def idle_seconds(self) -> float:
        if self.last_activity is None:
            return 0.0
        return time.monotonic() - self._last_activity_monotonic


def _send_noop(client: ImapHandle) -> Any:
    return client.noop()


def _send_logout(client: ImapHandle) -> Any:
    return client.logout()


def _folder_name(entry: Any) -> str:
    # IMAPClient.list_folders yields (flags, delimiter, name)
    name = entry[2] if isinstance(entry, (tuple, list)) else entry
    if isinstance(name, bytes):
        return name.decode("utf-8", errors="replace")
    return str(name)


def _abandoned_result(attempt: int) -> ConnectionResult:
    return ConnectionResult(
        success=False,
        attempts=attempt,
        error="Session was disconnected while connecting",
    )


def _logout_abandoned(future: "asyncio.Future[ImapHandle]") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.get_loop().run_in_executor(None, _quiet_logout, future.result())


def _logout_after(future: "asyncio.Future[Any]", client: ImapHandle) -> None:
    future.get_loop().run_in_executor(None, _quiet_logout, client)


def _quiet_logout(client: ImapHandle) -> None:
    try:
        client.logout()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Error logging out abandoned connection", exc_info=exc)


__all__ = [
    "ConnectionMetrics",
    "ConnectionResult",
    "ConnectionState",
    "ImapSession",
    "RECONNECT_WAIT_SECONDS",
]
