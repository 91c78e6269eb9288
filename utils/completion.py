"""
udi-Tahoma-pg3 NodeServer/Plugin for EISY/Polisy

(C) 2025 Stephen Jenkins

Completion tracking for gateway executions.

The gateway does not push completion events, so an accepted execution is
polled on a fixed cadence until the gateway stops reporting it.  There is no
timeout and no backoff: an execution stuck on the gateway is polled forever.
"""

# std libraries
import asyncio
from typing import Any, Awaitable, Callable, Optional

# external libraries
from udi_interface import LOGGER

# Check every 2.5 seconds, until the execution is no longer pending.
POLLING_DELAY = 2.5

StatusProbe = Callable[[str], Awaitable[Optional[Any]]]
Sleep = Callable[[float], Awaitable[Any]]


async def validate_status(
    exec_id: str,
    status_probe: StatusProbe,
    delay: float = POLLING_DELAY,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """Wait one polling interval, then ask the gateway; True once nothing is pending."""
    await sleep(delay)
    status = await status_probe(exec_id)
    return status is None


async def continue_when_completed(
    exec_id: str,
    status_probe: StatusProbe,
    delay: float = POLLING_DELAY,
    sleep: Sleep = asyncio.sleep,
) -> None:
    """
    Return once the gateway reports no pending execution for exec_id.

    Args:
        exec_id (str): execution id returned when the command was accepted.
        status_probe: coroutine function taking exec_id, returning None when finished.
        delay (float): seconds to wait before every probe.
        sleep: awaitable sleep, replaced in tests with a controllable clock.

    Errors raised by the probe are not handled here and end the loop.
    """
    attempt = 0
    while True:
        attempt += 1
        if await validate_status(exec_id, status_probe, delay, sleep):
            LOGGER.debug(f"execution {exec_id} finished after {attempt} poll(s)")
            return
        LOGGER.debug(f"execution {exec_id} still pending, poll {attempt}")
