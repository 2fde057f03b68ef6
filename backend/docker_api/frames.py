"""Demultiplexer for Docker's non-TTY attach/exec stream framing.

Each frame is an 8-byte header ``[stream type:1][0:3][size:be32]`` followed by
``size`` bytes of payload. Stdout and stderr are not distinguished by callers,
so payloads are simply concatenated in order.
"""

import struct
from collections.abc import Iterator

FRAME_HEADER = struct.Struct(">B3sI")
_PADDING = b"\x00\x00\x00"

STREAM_STDIN = 0
STREAM_STDOUT = 1
STREAM_STDERR = 2


def iter_frames(data: bytes) -> Iterator[tuple[int, bytes]]:
    """Yield ``(stream_type, payload)`` for every complete frame in ``data``.

    Stops at the first truncated header or payload, or at a header whose
    padding is not zero; whatever remains is dropped without raising.
    """
    offset = 0
    total = len(data)
    while offset + FRAME_HEADER.size <= total:
        stream_type, padding, size = FRAME_HEADER.unpack_from(data, offset)
        if padding != _PADDING:
            return
        start = offset + FRAME_HEADER.size
        end = start + size
        if end > total:
            return
        yield stream_type, data[start:end]
        offset = end


def demux_docker_stream(data: bytes | None) -> bytes:
    """Concatenate the payloads of all complete frames in ``data``.

    Examples:
        >>> demux_docker_stream(b"\\x01\\x00\\x00\\x00\\x00\\x00\\x00\\x02hi")
        b'hi'
        >>> demux_docker_stream(b"\\x01\\x00\\x00\\x00\\x00\\x00\\x00\\x05hi")
        b''
    """
    if not data:
        return b""
    return b"".join(payload for _, payload in iter_frames(data))
