"""
Newline-delimited framing over asyncio streams.
"""

import asyncio
from typing import AsyncIterator, Callable

FRAME_SEPARATOR = b"\n"


def frame_size(frame: str) -> int:
    """Size of an encoded frame on the wire, without its separator."""
    return len(frame.encode("utf-8"))


async def read_frames(reader: asyncio.StreamReader, on_oversized: Callable[[], None]) -> AsyncIterator[bytes]:
    """
    Yield non-blank frames from ``reader`` until EOF.

    A frame longer than the reader's limit is skipped through its separator
    and reported once through ``on_oversized``, however many chunks it spans.

    Args:
        reader: Stream to read from; its ``limit`` bounds the frame size
        on_oversized: Called once for every frame that was skipped
    """
    discarding = False
    while True:
        try:
            line = await reader.readuntil(FRAME_SEPARATOR)
        except asyncio.LimitOverrunError as e:
            # Drop the part of the frame already buffered, then keep scanning for its end
            await reader.readexactly(e.consumed)
            if not discarding:
                discarding = True
                on_oversized()
            continue
        except asyncio.IncompleteReadError as e:
            # EOF; an unterminated trailing frame is still a frame
            if e.partial.strip() and not discarding:
                yield e.partial
            return

        if discarding:
            # Tail of the oversized frame
            discarding = False
            continue
        if line.strip():
            yield line
