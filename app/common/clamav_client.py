from __future__ import annotations

import asyncio
import inspect
import logging
import socket
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, BinaryIO, Optional, Protocol, TypeVar, Union

from common.clamd_protocol import (
    CMD_INSTREAM,
    CMD_PING,
    CMD_RELOAD,
    CMD_SHUTDOWN,
    CMD_STATS,
    CMD_VERSION,
    CMD_VERSIONCOMMANDS,
    INSTREAM_TERMINATOR,
    RESP_RELOAD,
    RESPONSE_TERMINATOR,
    command_name,
    encode_chunk_length,
)
from common.errors import (
    ClamdConnectionError,
    ClamdStreamError,
    ClamdTimeoutError,
    ClamdUnexpectedResponse,
    classify_response,
)
from common.logging_config import log_with_context
from common.telemetry import clamd_span

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ADDRESS = "127.0.0.1:3310"
DEFAULT_NETWORK = "tcp"
DEFAULT_READ_SIZE = 4096
DEFAULT_STREAM_CHUNK_SIZE = 2048
# Large enough for STATS with a long QUEUE section
DEFAULT_MAX_RESPONSE_BYTES = 256 * 1024


class AsyncReader(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


# Blocking file objects or async readers such as starlette's UploadFile
Readable = Union[BinaryIO, AsyncReader]


def split_host_port(address: str) -> tuple[str, int]:
    host, sep, port = (address or "").strip().rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid clamd address {address!r} (expected host:port)")
    host = host.strip("[]") or "127.0.0.1"
    return host, int(port)


class ClamdClient:
    """
    clamd client speaking the NUL-terminated command protocol.

    Every call opens its own connection, performs one exchange and closes it;
    nothing is pooled or shared between calls, so one instance can serve any
    number of concurrent requests.

    Args:
        address: ``host:port`` for TCP, or the socket path for ``network="unix"``.
        network: ``"tcp"`` or ``"unix"``.
        timeout: Seconds allowed for establishing the connection.
        keepalive: TCP keep-alive probe interval in seconds; 0 disables probes.
        command_timeout: Default deadline for a whole operation; None waits forever.
        stream_chunk_size: Read size used when copying an INSTREAM payload.
        max_response_bytes: Longest reply accepted before the exchange is aborted.
    """

    def __init__(
        self,
        address: str = DEFAULT_ADDRESS,
        network: str = DEFAULT_NETWORK,
        *,
        timeout: float = 30.0,
        keepalive: float = 30.0,
        command_timeout: Optional[float] = None,
        stream_chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE,
        max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    ) -> None:
        if network not in ("tcp", "unix"):
            raise ValueError(f"unsupported clamd network {network!r}")
        if network == "tcp":
            split_host_port(address)
        if stream_chunk_size <= 0:
            raise ValueError("stream_chunk_size must be positive")
        if max_response_bytes <= 0:
            raise ValueError("max_response_bytes must be positive")
        self.address = address
        self.network = network
        self.timeout = timeout
        self.keepalive = keepalive
        self.command_timeout = command_timeout
        self.stream_chunk_size = stream_chunk_size
        self.max_response_bytes = max_response_bytes

    def __repr__(self) -> str:
        return f"ClamdClient(network={self.network!r}, address={self.address!r})"

    @property
    def _target(self) -> str:
        return f"{self.network}/{self.address}"

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def ping(self, *, timeout: Optional[float] = None) -> bytes:
        return await self._command(CMD_PING, timeout)

    async def version(self, *, timeout: Optional[float] = None) -> bytes:
        return await self._command(CMD_VERSION, timeout)

    async def reload(self, *, timeout: Optional[float] = None) -> None:
        resp = await self._command(CMD_RELOAD, timeout)
        if resp != RESP_RELOAD:
            raise ClamdUnexpectedResponse(
                resp,
                "unexpected response from clamav. Expected %s but got %s"
                % (RESP_RELOAD.decode("ascii"), resp.decode("utf-8", "replace")),
            )

    async def stats(self, *, timeout: Optional[float] = None) -> bytes:
        return await self._command(CMD_STATS, timeout)

    async def version_commands(self, *, timeout: Optional[float] = None) -> bytes:
        return await self._command(CMD_VERSIONCOMMANDS, timeout)

    async def shutdown(self, *, timeout: Optional[float] = None) -> None:
        # clamd exits without replying, so nothing is read back.
        async def _shutdown() -> None:
            async with self._connection() as sock:
                await self._write(sock, CMD_SHUTDOWN, "command")

        await self._with_deadline(_shutdown(), timeout, "SHUTDOWN")

    async def instream(
        self, stream: Readable, size: int, *, timeout: Optional[float] = None
    ) -> bytes:
        """
        Scan ``size`` bytes read from ``stream`` with the INSTREAM command.

        ``stream`` is a binary file object or any object with an async
        ``read(size)`` (e.g. an uploaded file), so large uploads spooled to
        disk are not read on the event loop.

        The payload is framed as a single chunk: one 4-byte big-endian length
        covering the whole payload, the payload itself, then a zero-length
        chunk marking the end of the stream.

        Returns the reply (``b"stream: OK"`` for clean content).

        Raises:
            ClamdVirusFound: content matched a signature; ``exc.response``
                holds the raw reply.
            ClamdSizeLimitExceeded: payload larger than clamd's StreamMaxLength.
            ClamdStreamError: the payload could not be fully delivered.
            ClamdConnectionError: any other transport failure.
            ValueError: ``size`` does not fit the 32-bit length prefix.
        """
        header = encode_chunk_length(size)
        resp = await self._with_deadline(
            self._instream(stream, size, header), timeout, "INSTREAM"
        )
        self._raise_for_response(CMD_INSTREAM, resp)
        return resp

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _command(self, command: bytes, timeout: Optional[float]) -> bytes:
        name = command_name(command)
        resp = await self._with_deadline(self._send_command(command), timeout, name)
        self._raise_for_response(command, resp)
        return resp

    def _raise_for_response(self, command: bytes, resp: bytes) -> None:
        err = classify_response(resp)
        if err is not None:
            log_with_context(
                logger,
                logging.DEBUG,
                "clamd reported an error",
                command=command_name(command),
                error_kind=err.kind.value,
                clamd=self._target,
            )
            raise err

    async def _with_deadline(
        self, op: Awaitable[T], timeout: Optional[float], what: str
    ) -> T:
        deadline = self.command_timeout if timeout is None else timeout
        with clamd_span(what, self._target):
            if not deadline:
                return await op
            try:
                return await asyncio.wait_for(op, deadline)
            except asyncio.TimeoutError as e:
                raise ClamdTimeoutError(
                    f"{what} to {self._target} did not complete within {deadline}s"
                ) from e

    async def _open(self, loop: asyncio.AbstractEventLoop) -> socket.socket:
        if self.network == "unix":
            targets = [(socket.AF_UNIX, socket.SOCK_STREAM, 0, self.address)]
        else:
            host, port = split_host_port(self.address)
            infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
            targets = [(family, kind, proto, addr) for family, kind, proto, _, addr in infos]

        last_err: Optional[OSError] = None
        for family, kind, proto, addr in targets:
            sock = socket.socket(family, kind, proto)
            sock.setblocking(False)
            try:
                await loop.sock_connect(sock, addr)
            except OSError as e:
                sock.close()
                last_err = e
                continue
            except BaseException:
                sock.close()
                raise
            return sock
        raise last_err or OSError(f"no usable address for {self.address}")

    async def _dial(self) -> socket.socket:
        loop = asyncio.get_running_loop()
        try:
            sock = await asyncio.wait_for(self._open(loop), self.timeout or None)
        except asyncio.TimeoutError as e:
            raise ClamdTimeoutError(
                f"timed out dialing {self._target} after {self.timeout}s"
            ) from e
        except OSError as e:
            raise ClamdConnectionError(f"error while dialing {self._target}: {e}") from e
        if self.network == "tcp" and self.keepalive > 0:
            self._enable_keepalive(sock)
        return sock

    def _enable_keepalive(self, sock: socket.socket) -> None:
        interval = max(1, int(self.keepalive))
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, interval)
        if hasattr(socket, "TCP_KEEPINTVL"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, interval)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[socket.socket]:
        # Plain socket: after a failed send, bytes clamd queued before closing stay readable.
        sock = await self._dial()
        try:
            yield sock
        finally:
            sock.close()

    async def _write(self, sock: socket.socket, data: bytes, what: str) -> None:
        try:
            await asyncio.get_running_loop().sock_sendall(sock, data)
        except OSError as e:
            raise ClamdConnectionError(
                f"error while writing {what} to {self._target}: {e}"
            ) from e

    async def _read_response(self, sock: socket.socket) -> bytes:
        """Read until the NUL terminator; EOF after some data ends the reply early."""
        loop = asyncio.get_running_loop()
        buf = bytearray()
        while True:
            try:
                chunk = await loop.sock_recv(sock, DEFAULT_READ_SIZE)
            except OSError as e:
                raise ClamdConnectionError(
                    f"error while reading response from {self._target}: {e}"
                ) from e
            if not chunk:
                if not buf:
                    raise ClamdConnectionError(
                        f"connection closed by {self._target} before a reply was received"
                    )
                return bytes(buf)
            idx = chunk.find(RESPONSE_TERMINATOR)
            buf.extend(chunk if idx == -1 else chunk[:idx])
            if len(buf) > self.max_response_bytes:
                raise ClamdConnectionError(
                    f"reply from {self._target} exceeds {self.max_response_bytes} bytes"
                )
            if idx != -1:
                return bytes(buf)

    async def _send_command(self, command: bytes) -> bytes:
        async with self._connection() as sock:
            logger.debug("sending %s to %s", command_name(command), self._target)
            await self._write(sock, command, "command")
            return await self._read_response(sock)

    async def _stream_payload(self, sock: socket.socket, stream: Readable, size: int) -> None:
        remaining = size
        while remaining > 0:
            chunk = stream.read(min(self.stream_chunk_size, remaining))
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                raise ClamdStreamError(
                    f"payload ended after {size - remaining} of {size} declared bytes"
                )
            remaining -= len(chunk)
            await self._write(sock, chunk, "content")

    async def _instream(self, stream: Readable, size: int, header: bytes) -> bytes:
        async with self._connection() as sock:
            logger.debug("streaming %d bytes to %s", size, self._target)
            await self._write(sock, CMD_INSTREAM, "command")
            await self._write(sock, header, "data length")
            try:
                await self._stream_payload(sock, stream, size)
            except ClamdStreamError:
                raise
            except ClamdConnectionError as exc:
                # clamd may already have answered (e.g. size limit) before closing.
                try:
                    partial = await self._read_response(sock)
                except ClamdConnectionError:
                    partial = b""
                daemon_err = classify_response(partial)
                if daemon_err is not None:
                    raise daemon_err from exc
                raise ClamdStreamError(
                    f"error while streaming content to {self._target}: {exc}",
                    response=partial or None,
                ) from exc
            await self._write(sock, INSTREAM_TERMINATOR, "end of transfer signal")
            return await self._read_response(sock)
