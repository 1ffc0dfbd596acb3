"""Bidirectional byte relay between an admitted client and the upstream."""

import asyncio
import logging
import ssl
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from config import RAGENT_BUFFER_SIZE, RAGENT_REPORT_INTERVAL
from utils.network import format_bytes

logger = logging.getLogger(__name__)

# Errors that end one direction of a relay. A closed peer is how teardown
# propagates, so none of these are reported as failures.
TRANSPORT_ERRORS = (ConnectionError, OSError, ssl.SSLError, asyncio.IncompleteReadError)

# Upper bound on waiting for a TLS close_notify exchange
CLOSE_TIMEOUT = 2.0


@dataclass
class RelayStats:
    """Bytes moved in each direction of one session."""
    down_to_up: int = 0
    up_to_down: int = 0

    @property
    def total(self) -> int:
        return self.down_to_up + self.up_to_down


async def copy_simplex(
    desc: str,
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    buffer_size: int = RAGENT_BUFFER_SIZE,
    report_interval: Optional[float] = RAGENT_REPORT_INTERVAL,
) -> int:
    """Copy from *reader* to *writer* until EOF or a transport error.

    Returns the number of bytes written.
    """
    total = 0
    last = time.monotonic()
    while True:
        try:
            data = await reader.read(buffer_size)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        except TRANSPORT_ERRORS as e:
            logger.debug(f"{desc}: stopped on {type(e).__name__}: {e}")
            break

        total += len(data)
        if report_interval is not None:
            now = time.monotonic()
            if now - last >= report_interval:
                logger.info(f"{desc}: {format_bytes(total)} ({total} bytes)")
                last = now
    return total


def _abort(writer: asyncio.StreamWriter) -> None:
    transport = getattr(writer, "transport", None)
    if transport is not None:
        transport.abort()


async def close_writer(writer: asyncio.StreamWriter, timeout: float = CLOSE_TIMEOUT) -> None:
    """Close a stream writer, ignoring errors from an already dead peer."""
    writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("Timed out waiting for connection close, aborting")
        _abort(writer)
    except TRANSPORT_ERRORS:
        pass


async def relay(
    downstream: Tuple[asyncio.StreamReader, asyncio.StreamWriter],
    upstream: Tuple[asyncio.StreamReader, asyncio.StreamWriter],
    desc: str = "relay",
    buffer_size: int = RAGENT_BUFFER_SIZE,
    report_interval: Optional[float] = RAGENT_REPORT_INTERVAL,
) -> RelayStats:
    """Relay both directions until either side ends, then close both.

    Closing both connections when the first direction finishes makes the
    other direction's pending read return, so this only returns once both
    directions have terminated.
    """
    down_reader, down_writer = downstream
    up_reader, up_writer = upstream

    to_upstream = asyncio.ensure_future(copy_simplex(
        f"{desc} remote->local", down_reader, up_writer, buffer_size, report_interval,
    ))
    to_downstream = asyncio.ensure_future(copy_simplex(
        f"{desc} local->remote", up_reader, down_writer, buffer_size, report_interval,
    ))

    try:
        await asyncio.wait(
            {to_upstream, to_downstream},
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        down_writer.close()
        up_writer.close()
        # Remaining direction sees EOF or an error from the closed transport
        _, pending = await asyncio.wait({to_upstream, to_downstream}, timeout=CLOSE_TIMEOUT)
        if pending:
            _abort(down_writer)
            _abort(up_writer)
        await asyncio.gather(to_upstream, to_downstream, return_exceptions=True)
        await close_writer(down_writer)
        await close_writer(up_writer)

    stats = RelayStats()
    if not to_upstream.cancelled() and to_upstream.exception() is None:
        stats.down_to_up = to_upstream.result()
    if not to_downstream.cancelled() and to_downstream.exception() is None:
        stats.up_to_down = to_downstream.result()
    return stats
