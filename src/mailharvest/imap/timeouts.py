"""Bounding IMAP operations in time.

Blocking IMAP calls run in worker threads, which cannot be interrupted. A
timed-out call is therefore abandoned rather than cancelled: the awaiting
coroutine gets :class:`OperationTimeoutError` while the worker finishes on its
own.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from mailharvest.errors import OperationTimeoutError


T = TypeVar("T")


async def with_timeout(
    operation: Awaitable[T],
    timeout: float,
    *,
    message: Optional[str] = None,
) -> T:
    """Await ``operation`` for at most ``timeout`` seconds.

    Raises:
        OperationTimeoutError: if the deadline passes first. Socket-level
            ``TimeoutError`` raised by the operation itself is reported the
            same way.
    """
    try:
        return await asyncio.wait_for(operation, timeout)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(
            message or f"Operation timeout after {timeout:g}s",
            timeout=timeout,
        ) from exc


__all__ = ["with_timeout"]
