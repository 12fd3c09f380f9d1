#!/usr/bin/env python3
"""Accept loop and per-connection relay of the TCP port forwarder."""
import asyncio
import enum
import errno
import logging
import os
import socket
from dataclasses import dataclass
from functools import partial
from typing import Optional, Set, Tuple

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    wait_exponential,
)

log = logging.getLogger("port_forward")

# Constants
DEFAULT_LISTEN_PORT = 8888
DEFAULT_DESTINATION_HOST = "127.0.0.1"
DEFAULT_DESTINATION_PORT = 110
DEFAULT_BUFFER_SIZE = 4096
DEFAULT_BACKLOG = 128
DEFAULT_LIVENESS_INTERVAL = 1.0
LISTEN_HOST = "0.0.0.0"

# accept() failures worth waiting out; anything else means the socket is unusable
TRANSIENT_ACCEPT_ERRNOS = frozenset(
    code
    for code in (
        getattr(errno, name, None)
        for name in (
            "EMFILE",
            "ENFILE",
            "ENOBUFS",
            "ENOMEM",
            "ECONNABORTED",
            "EAGAIN",
            "EWOULDBLOCK",
            "EINTR",
            "EPROTO",
            "EPERM",
        )
    )
    if code is not None
)


# Configuration
@dataclass(frozen=True)
class Configuration:
    listen_port: int = DEFAULT_LISTEN_PORT
    destination_host: str = DEFAULT_DESTINATION_HOST
    destination_port: int = DEFAULT_DESTINATION_PORT
    buffer_size: int = DEFAULT_BUFFER_SIZE
    connect_timeout: Optional[float] = None
    listen_host: str = LISTEN_HOST
    backlog: int = DEFAULT_BACKLOG
    liveness_interval: float = DEFAULT_LIVENESS_INTERVAL

    def __post_init__(self):
        # 0 lets the OS pick the listening port
        if not 0 <= self.listen_port <= 65535:
            raise ValueError(f"listen_port out of range: {self.listen_port}")
        if not 1 <= self.destination_port <= 65535:
            raise ValueError(f"destination_port out of range: {self.destination_port}")
        if not self.destination_host:
            raise ValueError("destination_host must not be empty")
        if self.buffer_size <= 0:
            raise ValueError(f"buffer_size must be positive: {self.buffer_size}")
        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ValueError(f"connect_timeout must be positive: {self.connect_timeout}")
        if self.backlog <= 0:
            raise ValueError(f"backlog must be positive: {self.backlog}")
        if self.liveness_interval <= 0:
            raise ValueError(f"liveness_interval must be positive: {self.liveness_interval}")

    @property
    def destination(self) -> Tuple[str, int]:
        return self.destination_host, self.destination_port


# Errors
class ForwardError(Exception):
    pass


class BindError(ForwardError):
    pass


class AcceptError(ForwardError):
    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class ConnectError(ForwardError):
    pass


class RelayError(ForwardError):
    pass


def is_transient_accept_error(exc: BaseException) -> bool:
    return isinstance(exc, AcceptError) and exc.transient


def describe_peer(sock: socket.socket) -> str:
    try:
        peer = sock.getpeername()
    except OSError:
        return "unknown"
    if isinstance(peer, tuple):
        return f"{peer[0]}:{peer[1]}"
    return str(peer) or "unknown"


def limit_write_buffer(writer: asyncio.StreamWriter, buffer_size: int) -> None:
    # drain() blocks once one chunk is queued, so a slow peer pauses the reader
    writer.transport.set_write_buffer_limits(high=buffer_size)


async def wait_writer_closed(writer: asyncio.StreamWriter) -> None:
    try:
        await writer.wait_closed()
    except OSError as e:
        # already reported by the relay that hit it
        log.debug(f"Connection closed with error: {e}")


async def watch_connection(writer: asyncio.StreamWriter, interval: float) -> None:
    """Raise RelayError once the connection behind writer is lost.

    A transport that has paused reading for backpressure never sees a reset
    from its peer, so the socket's pending error is polled as well.
    """
    sock = writer.get_extra_info("socket")
    while not writer.transport.is_closing():
        try:
            error = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        except OSError as e:
            raise RelayError(f"connection lost: {e}") from e
        if error:
            raise RelayError(f"connection lost: {os.strerror(error)}")
        await asyncio.sleep(interval)
    try:
        await writer.wait_closed()
    except OSError as e:
        raise RelayError(f"connection lost: {e}") from e
    raise RelayError("connection closed")


# Byte pipe
class Pipe:
    @staticmethod
    async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, buffer_size: int) -> int:
        """Copy reader into writer until end-of-stream, then half-close writer.

        Returns the number of bytes copied. Any I/O failure surfaces as
        RelayError.
        """
        total = 0
        try:
            while True:
                chunk = await reader.read(buffer_size)
                if not chunk:
                    break
                writer.write(chunk)
                await writer.drain()
                total += len(chunk)
            if writer.can_write_eof():
                writer.write_eof()
        except OSError as e:
            raise RelayError(str(e) or e.__class__.__name__) from e
        return total


class SessionState(enum.Enum):
    ACCEPTED = "accepted"
    CONNECTING = "connecting"
    RELAYING = "relaying"
    CLOSED = "closed"


# Forwarding session
class Session:
    def __init__(self, config: Configuration, inbound: socket.socket):
        self.config = config
        self.inbound = inbound
        self.peer = describe_peer(inbound)
        self.state = SessionState.ACCEPTED
        self.inbound_reader: Optional[asyncio.StreamReader] = None
        self.inbound_writer: Optional[asyncio.StreamWriter] = None
        self.outbound_reader: Optional[asyncio.StreamReader] = None
        self.outbound_writer: Optional[asyncio.StreamWriter] = None

    async def run(self) -> None:
        log.info(f"Connection received from {self.peer}")
        try:
            self.inbound_reader, self.inbound_writer = await asyncio.open_connection(
                sock=self.inbound, limit=self.config.buffer_size
            )
            limit_write_buffer(self.inbound_writer, self.config.buffer_size)
            try:
                await self.connect()
            except ConnectError as e:
                host, port = self.config.destination
                log.error(f"Failed to connect to {host}:{port} for {self.peer}: {e}")
                return
            await self.relay()
        except asyncio.CancelledError:
            self.abort()
            raise
        finally:
            await self.close()
            log.info(f"Connection terminated for {self.peer}")

    async def connect(self) -> None:
        self.state = SessionState.CONNECTING
        host, port = self.config.destination
        timeout = self.config.connect_timeout
        try:
            opening = asyncio.open_connection(host, port, limit=self.config.buffer_size)
            if timeout is not None:
                opening = asyncio.wait_for(opening, timeout)
            self.outbound_reader, self.outbound_writer = await opening
        except asyncio.TimeoutError as e:
            raise ConnectError(f"timed out after {timeout}s") from e
        except OSError as e:
            raise ConnectError(str(e) or e.__class__.__name__) from e
        limit_write_buffer(self.outbound_writer, self.config.buffer_size)

    async def relay(self) -> None:
        """Run both copy directions until both reach end-of-stream or anything fails.

        Either connection being lost also ends the relay, even while the copy
        task reading from it is blocked writing to the other side.
        """
        self.state = SessionState.RELAYING
        size = self.config.buffer_size
        interval = self.config.liveness_interval
        pipes = {
            asyncio.create_task(Pipe.pipe(self.inbound_reader, self.outbound_writer, size)): "client -> target",
            asyncio.create_task(Pipe.pipe(self.outbound_reader, self.inbound_writer, size)): "target -> client",
        }
        watchers = {
            asyncio.create_task(watch_connection(self.inbound_writer, interval)): "client",
            asyncio.create_task(watch_connection(self.outbound_writer, interval)): "target",
        }
        pending = set(pipes) | set(watchers)
        try:
            while pending.intersection(pipes):
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if any(task.exception() is not None for task in done):
                    # pending writes can no longer be delivered
                    self.abort()
                    break
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for task, direction in pipes.items():
            if task.cancelled():
                continue
            exc = task.exception()
            if isinstance(exc, RelayError):
                log.error(f"Relay {direction} failed for {self.peer}: {exc}")
            elif exc is not None:
                raise exc
            else:
                log.debug(f"Relayed {task.result()} bytes {direction} for {self.peer}")
        for task, side in watchers.items():
            if not task.cancelled():
                log.error(f"Relay stopped for {self.peer}: {side} {task.exception()}")

    def abort(self) -> None:
        """Drop both connections without flushing queued writes."""
        for writer in (self.inbound_writer, self.outbound_writer):
            if writer is not None:
                writer.transport.abort()

    async def close(self) -> None:
        """Fully close both connections; safe to call more than once."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        if self.inbound_writer is None:
            self.inbound.close()
        writers = [w for w in (self.inbound_writer, self.outbound_writer) if w is not None]
        # StreamWriter.close() is a no-op on an already closed transport
        for writer in writers:
            writer.close()
        for writer in writers:
            await wait_writer_closed(writer)


# Accept loop
class Listener:
    def __init__(self, sock: socket.socket, config: Configuration):
        self._sock = sock
        self.config = config
        self._sessions: Set[asyncio.Task] = set()
        self._closed = False

    @classmethod
    def bind(cls, config: Configuration) -> "Listener":
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((config.listen_host, config.listen_port))
            sock.listen(config.backlog)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise BindError(f"Failed to bind {config.listen_host}:{config.listen_port}: {e}") from e
        return cls(sock, config)

    @property
    def port(self) -> int:
        return self._sock.getsockname()[1]

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def accept(self) -> socket.socket:
        loop = asyncio.get_running_loop()
        try:
            conn, _ = await loop.sock_accept(self._sock)
        except OSError as e:
            raise AcceptError(
                f"Failed to accept connection: {e}",
                transient=e.errno in TRANSIENT_ACCEPT_ERRNOS,
            ) from e
        return conn

    @retry(
        retry=retry_if_exception(is_transient_accept_error),
        wait=wait_exponential(multiplier=0.05, max=1.0),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )
    async def accept_next(self) -> socket.socket:
        return await self.accept()

    def spawn(self, conn: socket.socket) -> asyncio.Task:
        session = Session(self.config, conn)
        task = asyncio.create_task(session.run())
        self._sessions.add(task)
        task.add_done_callback(partial(self._session_done, session))
        return task

    def _session_done(self, session: Session, task: asyncio.Task) -> None:
        self._sessions.discard(task)
        if task.cancelled() and session.inbound_writer is None:
            # cancelled before run() took ownership of the socket
            session.inbound.close()
        if not task.cancelled() and task.exception() is not None:
            log.error("Session ended unexpectedly", exc_info=task.exception())

    async def serve_forever(self) -> None:
        while True:
            conn = await self.accept_next()
            self.spawn(conn)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in list(self._sessions):
            task.cancel()
        self._sock.close()

    async def wait_closed(self) -> None:
        sessions = list(self._sessions)
        if sessions:
            await asyncio.gather(*sessions, return_exceptions=True)

    async def __aenter__(self) -> "Listener":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()
        await self.wait_closed()
