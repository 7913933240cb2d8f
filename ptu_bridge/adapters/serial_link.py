"""Serial link helpers built on pyserial."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import serial

LOGGER = logging.getLogger(__name__)


class DeviceLinkError(RuntimeError):
    """Raised when the serial link to the unit is unusable."""


# Exceptions that mean the physical link is gone or wedged.
LINK_ERRORS: tuple[type[BaseException], ...] = (
    serial.SerialException,
    OSError,
    DeviceLinkError,
)


@dataclass(slots=True, frozen=True)
class LinkTimeouts:
    read: float = 0.2
    write: float = 0.2
    connect: float = 0.2


LinkOpener = Callable[[str, int, LinkTimeouts], Awaitable[Any]]


async def open_serial_link(port: str, baud: int, timeouts: LinkTimeouts) -> serial.Serial:
    """Open ``port`` (a device path or pyserial URL such as ``loop://``).

    The open runs in a worker thread. If it outlives the connect timeout the
    thread is left to finish and any link it produces is closed on arrival.

    Raises:
        serial.SerialException: If the port cannot be opened.
        DeviceLinkError: If opening does not finish within the connect timeout.
    """
    opening = asyncio.ensure_future(
        asyncio.to_thread(
            serial.serial_for_url,
            port,
            baudrate=baud,
            timeout=timeouts.read,
            write_timeout=timeouts.write,
        )
    )
    try:
        link = await asyncio.wait_for(asyncio.shield(opening), timeout=timeouts.connect)
    except asyncio.TimeoutError as exc:
        opening.add_done_callback(_close_abandoned_link)
        raise DeviceLinkError(
            f"Timed out opening {port} after {timeouts.connect:.3f}s"
        ) from exc
    except asyncio.CancelledError:
        opening.add_done_callback(_close_abandoned_link)
        raise

    LOGGER.debug("Opened serial link %s at %d baud", port, baud)
    return link


def _close_abandoned_link(opening: "asyncio.Future[Any]") -> None:
    if opening.cancelled():
        return
    exc = opening.exception()
    if exc is not None:
        LOGGER.debug("Abandoned serial open failed: %s", exc)
        return
    LOGGER.warning("Serial link opened after connect timeout; closing it")
    close_link(opening.result())


def close_link(link: Any) -> None:
    """Close a link object, logging instead of raising on failure."""
    close = getattr(link, "close", None)
    if close is None:
        return
    try:
        close()
    except LINK_ERRORS as exc:
        LOGGER.warning("Error closing serial link: %s", exc)
