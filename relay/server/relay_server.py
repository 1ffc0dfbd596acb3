"""TLS listener that admits clients and relays them to a local service."""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

from config import (
    RAGENT_BUFFER_SIZE,
    RAGENT_CAPABILITY,
    RAGENT_CERT_KEY_SIZE,
    RAGENT_CERT_VALIDITY_DAYS,
    RAGENT_HANDSHAKE_TIMEOUT,
    RAGENT_LISTEN_HOST,
    RAGENT_LISTEN_PORT,
    RAGENT_REPORT_INTERVAL,
    RAGENT_UPSTREAM_CONNECT_TIMEOUT,
    RAGENT_UPSTREAM_HOST,
    RAGENT_UPSTREAM_PORT,
)
from utils.logger import log_exception
from utils.network import format_bytes, format_peer
from ..certs import provision
from ..grants import GrantDirectory
from ..identity import Identity
from .handshake import AdmissionHandshake
from .pipe import TRANSPORT_ERRORS, close_writer, relay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayConfig:
    """Relay settings, fixed for the life of the process."""
    identity: Identity
    listen_host: str = RAGENT_LISTEN_HOST
    listen_port: int = RAGENT_LISTEN_PORT
    upstream_host: str = RAGENT_UPSTREAM_HOST
    upstream_port: int = RAGENT_UPSTREAM_PORT
    capability: str = RAGENT_CAPABILITY
    handshake_timeout: Optional[float] = RAGENT_HANDSHAKE_TIMEOUT
    upstream_connect_timeout: float = RAGENT_UPSTREAM_CONNECT_TIMEOUT
    buffer_size: int = RAGENT_BUFFER_SIZE
    report_interval: Optional[float] = RAGENT_REPORT_INTERVAL
    cert_validity_days: int = RAGENT_CERT_VALIDITY_DAYS
    cert_key_size: int = RAGENT_CERT_KEY_SIZE


class RelayServer:
    """Authenticating TLS relay.

    Every accepted connection gets the server proof first, then runs the
    admission handshake; admitted clients are relayed byte for byte to the
    configured upstream. Sessions are independent tasks: a failure in one
    closes that connection only.
    """

    def __init__(self, config: RelayConfig, directory: GrantDirectory):
        self.config = config
        self.directory = directory

        # Raises CertificateError; nothing can be served without it
        self.certificate, self.proof = provision(
            config.identity,
            validity_days=config.cert_validity_days,
            key_size=config.cert_key_size,
        )
        self._ssl_context = self.certificate.ssl_context()

        # Server state
        self._server: Optional[asyncio.AbstractServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._ready = threading.Event()
        self._startup_error: Optional[BaseException] = None
        self._address: Optional[Tuple[str, int]] = None

        # Session bookkeeping, only touched from the event loop thread
        self._sessions: Set[asyncio.Task] = set()
        self._stats: Dict[str, int] = {
            "accepted": 0,
            "admitted": 0,
            "rejected": 0,
            "errors": 0,
            "bytes_relayed": 0,
        }

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), available once listening."""
        return self._address

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats["active"] = self.active_sessions
        return stats

    def _loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        """Log accept and TLS errors without stopping the listener."""
        exc = context.get("exception")
        message = context.get("message", "event loop error")
        if exc is not None:
            logger.warning(f"{message}: {type(exc).__name__}: {exc}")
        else:
            logger.warning(message)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single client connection."""
        peer = format_peer(writer.get_extra_info("peername"))
        task = asyncio.current_task()
        self._sessions.add(task)
        self._stats["accepted"] += 1
        logger.info(f"Accepted connection from {peer}")

        try:
            await self._run_session(reader, writer, peer)
        except Exception:
            self._stats["errors"] += 1
            log_exception(logger, f"Session error for {peer}")
        finally:
            await close_writer(writer)
            self._sessions.discard(task)

    async def _run_session(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: str,
    ) -> None:
        config = self.config
        handshake = AdmissionHandshake(
            identity=config.identity,
            directory=self.directory,
            capability=config.capability,
            timeout=config.handshake_timeout,
            peer=peer,
        )

        try:
            # Proof of certificate ownership precedes everything else
            writer.write(self.proof)
            await writer.drain()
            result = await handshake.run(reader, writer)
        except TRANSPORT_ERRORS as e:
            self._stats["rejected"] += 1
            logger.info(f"Connection from {peer} lost during handshake: {e}")
            return

        if not result.admitted:
            self._stats["rejected"] += 1
            return
        self._stats["admitted"] += 1

        upstream_addr = f"{config.upstream_host}:{config.upstream_port}"
        try:
            upstream = await asyncio.wait_for(
                asyncio.open_connection(config.upstream_host, config.upstream_port),
                timeout=config.upstream_connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.error(f"Cannot connect to upstream {upstream_addr} for {peer}: {e}")
            return

        logger.info(f"Beginning relay: {peer} <-> {upstream_addr} ({result.client_key_text})")
        stats = await relay(
            (reader, writer),
            upstream,
            desc=peer,
            buffer_size=config.buffer_size,
            report_interval=config.report_interval,
        )
        self._stats["bytes_relayed"] += stats.total
        logger.info(
            f"Relay terminated: {peer} "
            f"(sent {format_bytes(stats.down_to_up)}, received {format_bytes(stats.up_to_down)})"
        )

    async def _run_server(self) -> None:
        """Run the TLS listener until stopped."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._loop_exception)
        self._stop_event = asyncio.Event()

        try:
            server = await asyncio.start_server(
                self._handle_connection,
                self.config.listen_host,
                self.config.listen_port,
                ssl=self._ssl_context,
            )
        except OSError as e:
            self._startup_error = e
            self._ready.set()
            raise

        self._server = server
        self._address = server.sockets[0].getsockname()[:2]
        logger.info(
            f"ragent {self.config.identity.key_text} listening on "
            f"{format_peer(self._address)}, relaying to "
            f"{self.config.upstream_host}:{self.config.upstream_port}"
        )
        self._ready.set()

        try:
            await self._stop_event.wait()
        finally:
            server.close()
            for task in list(self._sessions):
                task.cancel()
            if self._sessions:
                await asyncio.gather(*self._sessions, return_exceptions=True)
            await server.wait_closed()
            self._server = None
            logger.info("ragent stopped")

    def serve_forever(self) -> None:
        """Run the relay in the calling thread (blocking)."""
        asyncio.run(self._run_server())

    def start(self, timeout: float = 10.0) -> None:
        """Start the relay in a background thread and wait until listening."""
        if self._thread and self._thread.is_alive():
            return

        self._ready.clear()
        self._startup_error = None

        def run():
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            try:
                self._loop.run_until_complete(self._run_server())
            except OSError:
                pass  # reported through _startup_error
            finally:
                self._loop.close()

        self._thread = threading.Thread(target=run, name="ragent", daemon=True)
        self._thread.start()

        if not self._ready.wait(timeout):
            raise RuntimeError("Relay server did not start in time")
        if self._startup_error is not None:
            self._thread.join(timeout=1)
            self._thread = None
            raise self._startup_error

    def stop(self) -> None:
        """Stop the relay server and close all sessions."""
        if self._loop and self._stop_event and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._stop_event.set)

        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
