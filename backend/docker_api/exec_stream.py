"""Raw exec-stream protocol for interactive Docker exec sessions.

Docker's ``/exec/{id}/start`` endpoint hijacks the HTTP connection when the
client asks for an upgrade. The request is written by hand onto a fresh Unix
socket connection, the response head is parsed out of the raw byte stream,
and from then on the socket is a plain bidirectional pipe to the exec's
pseudo-terminal (TTY mode, so there is no frame multiplexing).

Usage:
    >>> stream = await open_exec_stream("/var/run/docker.sock", "v1.45", exec_id)
    >>> await stream.send(b"ls\\n")
    >>> await pump(stream, on_chunk, read_timeout=300)
    >>> await stream.close()
"""

import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from docker_api.errors import DockerProtocolError, DockerTransportError

logger = structlog.get_logger(__name__)

HEADER_TERMINATOR = b"\r\n\r\n"
SUCCESS_STATUSES = frozenset({101, 200})
READ_CHUNK_SIZE = 64 * 1024
MAX_HEADER_BYTES = 64 * 1024

EXEC_START_BODY = json.dumps({"Detach": False, "Tty": True}, separators=(",", ":")).encode()

ChunkCallback = Callable[[bytes], Awaitable[None]]


@dataclass
class UpgradeResponse:
    """Parsed head of the exec upgrade response.

    Attributes:
        status: HTTP status code from the status line.
        headers: Response headers with lower-cased names.
        initial_data: Bytes that followed the header terminator in the same
            read; this is the first chunk of program output.
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    initial_data: bytes = b""


def build_upgrade_request(api_version: str, exec_id: str) -> bytes:
    """Build the hand-written HTTP/1.1 upgrade request for an exec start."""
    version = api_version.strip("/")
    head = (
        f"POST /{version}/exec/{exec_id}/start HTTP/1.1\r\n"
        "Host: localhost\r\n"
        "Content-Type: application/json\r\n"
        "Connection: Upgrade\r\n"
        "Upgrade: tcp\r\n"
        f"Content-Length: {len(EXEC_START_BODY)}\r\n"
        "\r\n"
    )
    return head.encode("ascii") + EXEC_START_BODY


def parse_response_head(head: bytes, rest: bytes = b"") -> UpgradeResponse:
    """Parse a status line plus headers (without the blank-line terminator).

    Raises:
        DockerProtocolError: If the status line is not ``HTTP/x.y <code> ...``.
    """
    lines = head.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/") or not parts[1].isdigit():
        raise DockerProtocolError(f"Malformed status line: {lines[0][:80]!r}")

    headers: dict[str, str] = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()

    return UpgradeResponse(status=int(parts[1]), headers=headers, initial_data=rest)


class UpgradeResponseParser:
    """Incremental parser for the upgrade response head.

    Response headers may arrive split across several socket reads. Feed every
    read into the parser; it returns ``None`` until the header terminator has
    been seen, then the parsed response with the trailing bytes.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> UpgradeResponse | None:
        self._buffer.extend(data)
        head, sep, rest = bytes(self._buffer).partition(HEADER_TERMINATOR)
        if not sep:
            if len(self._buffer) > MAX_HEADER_BYTES:
                raise DockerProtocolError("Upgrade response head too large")
            return None
        return parse_response_head(head, rest)


class ExecStream:
    """An upgraded exec connection.

    The stream is owned by exactly one session for its whole lifetime. Bytes
    written go to the exec's stdin; reads return raw PTY output. The first
    read returns the bytes that arrived together with the response head.
    """

    def __init__(
        self,
        exec_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        initial_data: bytes = b"",
    ) -> None:
        self.exec_id = exec_id
        self._reader = reader
        self._writer = writer
        self._pending = initial_data
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> None:
        """Write ``data`` to the exec's stdin immediately."""
        if self._closed:
            raise DockerTransportError("Exec stream is closed")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            raise DockerTransportError(f"Exec stream write failed: {e!r}") from e

    async def read(self, timeout: float) -> bytes:
        """Read the next chunk of output; ``b""`` means the peer closed.

        Raises:
            DockerTransportError: On a socket error or when no data arrives
                within ``timeout`` seconds.
        """
        if self._pending:
            data, self._pending = self._pending, b""
            return data
        if self._closed:
            return b""
        try:
            return await asyncio.wait_for(self._reader.read(READ_CHUNK_SIZE), timeout)
        except TimeoutError as e:
            raise DockerTransportError(f"No exec output for {timeout}s") from e
        except OSError as e:
            raise DockerTransportError(f"Exec stream read failed: {e!r}") from e

    async def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with contextlib.suppress(OSError, RuntimeError):
            await asyncio.wait_for(self._writer.wait_closed(), timeout=5)


async def _handshake(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    api_version: str,
    exec_id: str,
    timeout: float,
) -> UpgradeResponse:
    writer.write(build_upgrade_request(api_version, exec_id))
    await asyncio.wait_for(writer.drain(), timeout)

    parser = UpgradeResponseParser()
    while True:
        data = await asyncio.wait_for(reader.read(READ_CHUNK_SIZE), timeout)
        if not data:
            raise DockerProtocolError("Connection closed during exec upgrade")
        response = parser.feed(data)
        if response is not None:
            return response


async def open_exec_stream(
    socket_path: str,
    api_version: str,
    exec_id: str,
    *,
    timeout: float = 10.0,
) -> ExecStream:
    """Connect to the daemon and upgrade ``/exec/{exec_id}/start`` to a raw stream.

    Args:
        socket_path: Path of the Docker Unix socket.
        api_version: API version path prefix (e.g. "v1.45").
        exec_id: The exec instance to start. It must have been created with
            ``Tty: true``.
        timeout: Bound for the connect and for each handshake read.

    Returns:
        The upgraded stream. Output that arrived with the response head is
        returned by its first ``read``.

    Raises:
        DockerTransportError: If the socket cannot be opened or read in time.
        DockerProtocolError: If the daemon answers with any status other
            than 101 or 200, or with a malformed response. The socket is
            closed before raising.
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(socket_path), timeout
        )
    except (OSError, TimeoutError) as e:
        raise DockerTransportError(f"Cannot connect to {socket_path}: {e!r}") from e

    try:
        response = await _handshake(reader, writer, api_version, exec_id, timeout)
        if response.status not in SUCCESS_STATUSES:
            raise DockerProtocolError(
                f"Unexpected exec upgrade status {response.status}",
                status=response.status,
            )
    except (OSError, TimeoutError) as e:
        writer.close()
        raise DockerTransportError(f"Exec upgrade failed: {e!r}") from e
    except BaseException:
        writer.close()
        raise

    logger.debug(
        "exec_stream_opened",
        exec_id=exec_id[:12],
        status=response.status,
        initial_bytes=len(response.initial_data),
    )
    return ExecStream(exec_id, reader, writer, response.initial_data)


async def pump(stream: ExecStream, on_chunk: ChunkCallback, read_timeout: float) -> None:
    """Deliver every output chunk to ``on_chunk`` in order until the peer closes.

    The stream is left open; the owner decides when to close it.

    Raises:
        DockerTransportError: On a read error or timeout.
    """
    while True:
        chunk = await stream.read(read_timeout)
        if not chunk:
            return
        await on_chunk(chunk)
