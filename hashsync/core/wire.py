"""
wire.py — Peer Wire Protocol Codec
=====================================
Binary framing shared by the peer server and the peer client.

One TCP connection carries exactly one request:

    List     (1)  ->  u32 length + newline-joined inventory
    GetFile  (2)  ->  u32 path length + path
                  <-  status; Error: u32 length + message
                              Success: u64 size + raw bytes
    PutFile  (3)  ->  u32 path length + path + u64 size
                  <-  status (ready), then raw bytes ->
                  <-  final status + u32 length + message

All integers are unsigned big-endian.
"""

import asyncio
import inspect
import struct
from typing import Awaitable, Callable, Optional

CMD_LIST = 1
CMD_GET_FILE = 2
CMD_PUT_FILE = 3
STATUS_ERROR = 4
STATUS_SUCCESS = 5

BUFFER_SIZE = 32 * 1024  # 32 KB per transfer chunk

U32 = struct.Struct(">I")
U64 = struct.Struct(">Q")


def pack_u32(value: int) -> bytes:
    return U32.pack(value)


def pack_u64(value: int) -> bytes:
    return U64.pack(value)


def pack_bytes(payload: bytes) -> bytes:
    """Prefix a payload with its u32 length."""
    return U32.pack(len(payload)) + payload


def pack_message(status: int, message: str) -> bytes:
    """Status byte followed by a length-prefixed UTF-8 message."""
    return bytes([status]) + pack_bytes(message.encode("utf-8"))


async def read_u8(reader: asyncio.StreamReader) -> int:
    return (await reader.readexactly(1))[0]


async def read_u32(reader: asyncio.StreamReader) -> int:
    (value,) = U32.unpack(await reader.readexactly(U32.size))
    return value


async def read_u64(reader: asyncio.StreamReader) -> int:
    (value,) = U64.unpack(await reader.readexactly(U64.size))
    return value


async def read_bytes(reader: asyncio.StreamReader) -> bytes:
    """Read one u32-length-prefixed payload."""
    length = await read_u32(reader)
    return await reader.readexactly(length)


async def read_text(reader: asyncio.StreamReader) -> str:
    return (await read_bytes(reader)).decode("utf-8", errors="replace")


async def copy_stream(
    reader: asyncio.StreamReader,
    size: int,
    sink: Callable[[bytes], Optional[Awaitable[None]]],
    buffer_size: int = BUFFER_SIZE,
    timeout: Optional[float] = None,
) -> int:
    """
    Receive up to ``size`` bytes from the stream in fixed-size chunks.

    Each chunk is handed to ``sink`` (sync or async). The loop stops
    early if the peer closes the connection; the short count is
    returned rather than raised. ``timeout`` bounds each chunk read,
    not the transfer as a whole.

    Returns:
        Number of bytes actually received.

    Raises:
        asyncio.TimeoutError: If a single chunk takes longer than ``timeout``.
    """
    received = 0
    while received < size:
        to_read = min(buffer_size, size - received)
        try:
            chunk = await asyncio.wait_for(reader.readexactly(to_read), timeout)
        except asyncio.IncompleteReadError as e:
            chunk = e.partial
            if chunk:
                result = sink(chunk)
                if inspect.isawaitable(result):
                    await result
                received += len(chunk)
            break
        result = sink(chunk)
        if inspect.isawaitable(result):
            await result
        received += len(chunk)
    return received
