"""Bounded-retry TCP dialing shared by the control channel and the console."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Tuple, TypeVar

from qemuclaw.constants import CONNECT_TIMEOUT
from qemuclaw.exceptions import ConnectExhaustedError, ManagerError
from qemuclaw.utils import log

T = TypeVar("T")

_TRANSIENT = (OSError, asyncio.TimeoutError, ManagerError)


async def open_stream(
    host: str, port: int, timeout: float = CONNECT_TIMEOUT
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.wait_for(asyncio.open_connection(host, port), timeout)


async def connect_with_retry(
    attempt: Callable[[], Awaitable[T]],
    retries: int,
    retry_delay: float,
    label: str,
) -> T:
    """Run ``attempt`` until it succeeds or ``retries`` attempts have failed.

    Each failed attempt is followed by a fixed ``retry_delay`` sleep. After
    the last failure ConnectExhaustedError is raised from the final error.
    """
    if retries < 1:
        raise ValueError("retries must be >= 1")
    for number in range(1, retries + 1):
        try:
            return await attempt()
        except _TRANSIENT as exc:
            if number == retries:
                raise ConnectExhaustedError(
                    f"{label}: Failed to connect after {retries} attempts: {exc or type(exc).__name__}"
                ) from exc
            log("INFO", f"{label}: Connection attempt {number}/{retries} failed, retrying in {retry_delay:g}s...")
            await asyncio.sleep(retry_delay)
    raise AssertionError("unreachable")  # pragma: no cover
