"""
In-process channel.

Runs the dispatcher on the controller's own event loop. Envelopes still go
through their JSON wire form in both directions, so the controller sees
exactly what it would see from a worker process.

WARNING: There is no isolation boundary here. Code started by the executors
still runs in child interpreters, but the dispatcher shares the caller's
process and event loop.
"""

import asyncio
from typing import Mapping, Optional, Set

import structlog

from sandbox_bridge.dispatcher.dispatcher import ExecutionDispatcher
from sandbox_bridge.dispatcher.executors import build_default_executors
from sandbox_bridge.ports.channel_port import FaultHandler, IChannelPort, MessageHandler
from sandbox_bridge.ports.executor_port import IExecutorPort
from sandbox_bridge.protocol.messages import RequestEnvelope, decode_envelope, encode_envelope
from sandbox_bridge.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class LocalChannel(IChannelPort):
    """Channel to a dispatcher living on the current event loop."""

    def __init__(
        self,
        executors: Optional[Mapping[str, IExecutorPort]] = None,
        settings: Optional[Settings] = None,
    ):
        self._executors = executors
        self._settings = settings or get_settings()
        self._dispatcher: Optional[ExecutionDispatcher] = None
        self._on_message: Optional[MessageHandler] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    async def open(self, on_message: MessageHandler, on_fault: FaultHandler) -> None:
        if self._dispatcher is not None:
            return
        executors = self._executors if self._executors is not None else build_default_executors(self._settings)
        self._dispatcher = ExecutionDispatcher(executors)
        self._on_message = on_message
        logger.debug("Local dispatcher ready", languages=self._dispatcher.languages)

    async def send(self, envelope: RequestEnvelope) -> None:
        if self._closed or self._dispatcher is None:
            raise ConnectionError("Local channel is not open")
        frame = encode_envelope(envelope)
        task = asyncio.create_task(self._serve(frame))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve(self, frame: str) -> None:
        request = decode_envelope(frame)
        response = await self._dispatcher.dispatch(request)
        if not self._closed:
            self._on_message(decode_envelope(encode_envelope(response)))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._dispatcher is not None:
            await self._dispatcher.drain(timeout=self._settings.worker_shutdown_timeout)
