"""
Worker process entry point, the isolated side of the subprocess channel.

Reads newline-delimited request envelopes on stdin and writes one response
envelope per request on stdout. Every frame is handled in its own task, so
slow executions do not hold up the others. Logs go to stderr.

Run as ``python -m sandbox_bridge.dispatcher.worker``.
"""

import asyncio
import json
import os
import sys
from typing import Callable, Optional, Set

import structlog
from pydantic import ValidationError

from sandbox_bridge.dispatcher.dispatcher import ExecutionDispatcher
from sandbox_bridge.dispatcher.executors import build_default_executors
from sandbox_bridge.errors import ErrorKind
from sandbox_bridge.protocol.framing import read_frames
from sandbox_bridge.protocol.messages import (
    ErrorEnvelope,
    ErrorPayload,
    FaultEnvelope,
    RequestEnvelope,
    WireModel,
    decode_envelope,
    encode_envelope,
)
from sandbox_bridge.settings import get_settings
from sandbox_bridge.utils.loggers import configure_logging

logger = structlog.get_logger(__name__)


def _salvage_id(frame: bytes) -> Optional[str]:
    """Best-effort read of ``id`` from a frame that failed validation."""
    try:
        data = json.loads(frame)
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("id"), str):
        return data["id"]
    return None


class WorkerServer:
    """
    Serves one channel: frames in from ``reader``, frames out through
    ``write_frame``.
    """

    def __init__(
        self,
        dispatcher: ExecutionDispatcher,
        reader: asyncio.StreamReader,
        write_frame: Callable[[str], None],
        drain_timeout: float = 5.0,
    ):
        self._dispatcher = dispatcher
        self._drain_timeout = drain_timeout
        self._reader = reader
        self._write_frame = write_frame
        self._tasks: Set[asyncio.Task] = set()

    async def serve(self) -> None:
        """Handle frames until the controller closes the channel (EOF)."""
        logger.info("Worker ready", languages=self._dispatcher.languages)
        async for frame in read_frames(self._reader, self._reject_oversized):
            task = asyncio.create_task(self._handle(frame))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            logger.info("Channel closed, abandoning in-flight requests", count=len(self._tasks))
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        # Let cancelled interpreters be reaped before the loop goes away
        await self._dispatcher.drain(timeout=self._drain_timeout)

    def _reject_oversized(self) -> None:
        logger.warning("Oversized frame rejected")
        self._emit(
            FaultEnvelope(
                payload=ErrorPayload(kind=ErrorKind.CHANNEL_FAULT.value, message="Frame rejected: exceeds the frame size limit")
            )
        )

    async def _handle(self, frame: bytes) -> None:
        try:
            envelope = decode_envelope(frame)
        except ValidationError as e:
            request_id = _salvage_id(frame)
            if request_id is None:
                logger.warning("Undecodable frame", error=str(e))
                self._emit(
                    FaultEnvelope(payload=ErrorPayload(kind=ErrorKind.CHANNEL_FAULT.value, message="Undecodable frame"))
                )
            else:
                logger.warning("Invalid request", request_id=request_id, error=str(e))
                self._emit(
                    ErrorEnvelope(
                        id=request_id,
                        payload=ErrorPayload(kind=ErrorKind.EXECUTION_ERROR.value, message=f"Invalid request: {e.errors()[0]['msg']}"),
                    )
                )
            return

        if not isinstance(envelope, RequestEnvelope):
            logger.debug("Ignoring non-execute frame", type=envelope.type)
            return

        try:
            response = await self._dispatcher.dispatch(envelope)
        except Exception as e:
            logger.error("Dispatch failed", request_id=envelope.id, error=str(e), exc_info=True)
            response = ErrorEnvelope(
                id=envelope.id,
                payload=ErrorPayload(kind=ErrorKind.EXECUTION_ERROR.value, message=str(e) or type(e).__name__),
            )
        self._emit(response)

    def _emit(self, envelope: WireModel) -> None:
        self._write_frame(encode_envelope(envelope))


async def _serve_stdio(channel_out) -> None:
    settings = get_settings()
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=settings.max_frame_bytes)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    def write_frame(frame: str) -> None:
        try:
            channel_out.write(frame.encode("utf-8") + b"\n")
            channel_out.flush()
        except BrokenPipeError:
            logger.warning("Controller stopped reading, response dropped")

    dispatcher = ExecutionDispatcher(build_default_executors(settings))
    # Finish reaping before the controller gives up on a clean exit
    drain_timeout = settings.worker_shutdown_timeout / 2
    await WorkerServer(dispatcher, reader, write_frame, drain_timeout=drain_timeout).serve()


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format, stream=sys.stderr)

    # Keep the real stdout for frames only; stray writes to fd 1 go to stderr
    channel_out = os.fdopen(os.dup(sys.stdout.fileno()), "wb")
    sys.stdout.flush()
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())

    try:
        asyncio.run(_serve_stdio(channel_out))
    except KeyboardInterrupt:
        pass
    finally:
        channel_out.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
