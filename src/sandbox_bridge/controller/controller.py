"""
Channel Controller

Caller-side half of the protocol. Exposes "submit one request, get one
result" on top of a multiplexed channel: it mints request ids, keeps the
table of pending requests, routes responses by id, enforces an outer timeout
per request, and fails everything still pending when the channel dies or is
terminated.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

import structlog

from sandbox_bridge.errors import ErrorKind, SandboxBridgeError
from sandbox_bridge.ports.channel_port import IChannelPort
from sandbox_bridge.protocol.framing import frame_size
from sandbox_bridge.protocol.identity import RequestIdGenerator
from sandbox_bridge.protocol.messages import (
    ErrorEnvelope,
    ExecutionRequest,
    ExecutionResult,
    RequestEnvelope,
    ResponseEnvelope,
    ResultEnvelope,
    encode_envelope,
)
from sandbox_bridge.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

ChannelFactory = Callable[[], IChannelPort]


class ControllerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    TERMINATED = "terminated"


@dataclass
class PendingRequest:
    """
    Bookkeeping for one submitted request awaiting its response.

    ``future`` is the single-resolution completion handle the submitter
    awaits; ``timer`` is the outer timeout armed for it.
    """

    request_id: str
    future: "asyncio.Future[ExecutionResult]"
    timer: Optional[asyncio.TimerHandle] = field(default=None)

    def resolve(self, result: ExecutionResult) -> None:
        self.cancel_timer()
        if not self.future.done():
            self.future.set_result(result)

    def reject(self, error: SandboxBridgeError) -> None:
        self.cancel_timer()
        if not self.future.done():
            self.future.set_exception(error)

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class ChannelController:
    """
    Owns one channel and every request in flight on it.

    State machine: ``UNINITIALIZED -> ACTIVE`` on the first submit (or an
    explicit ``start()``), ``-> TERMINATED`` on ``terminate()`` or an
    unrecoverable channel fault. ``TERMINATED`` is final: later submissions
    fail with ``ChannelTerminated`` and the channel is never recreated.

    All methods must be called from the event loop that runs the channel.

    Example:
        async with ChannelController(SubprocessChannel) as controller:
            result = await controller.submit(ExecutionRequest(language="python", code="print(5)"))
    """

    def __init__(
        self,
        channel_factory: ChannelFactory,
        settings: Optional[Settings] = None,
        id_generator: Optional[RequestIdGenerator] = None,
    ):
        """
        Args:
            channel_factory: Builds the channel on first use
            settings: Runtime settings, the cached global settings by default
            id_generator: Source of request ids, a fresh generator by default
        """
        self._channel_factory = channel_factory
        self._settings = settings or get_settings()
        self._ids = id_generator or RequestIdGenerator()
        self._channel: Optional[IChannelPort] = None
        self._state = ControllerState.UNINITIALIZED
        self._pending: Dict[str, PendingRequest] = {}
        self._start_lock = asyncio.Lock()
        self._fault_close: Optional[asyncio.Task] = None

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def __aenter__(self) -> "ChannelController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.terminate()

    async def start(self) -> None:
        """
        Establish the channel if it is not up yet. No-op when already active.

        Raises:
            SandboxBridgeError: ``ChannelTerminated`` after teardown,
                ``ChannelCreationFailed`` if the channel could not be opened
        """
        if self._state is ControllerState.ACTIVE:
            return
        async with self._start_lock:
            if self._state is ControllerState.ACTIVE:
                return
            self._raise_if_terminated()

            channel = self._channel_factory()
            try:
                await channel.open(self._handle_message, self._handle_fault)
            except Exception as e:
                logger.error("Channel creation failed", error=str(e))
                await channel.close()
                raise SandboxBridgeError(ErrorKind.CHANNEL_CREATION_FAILED, f"Failed to create channel: {e}") from e

            if self._state is ControllerState.TERMINATED:
                # terminate() ran while the channel was being opened
                await channel.close()
                self._raise_if_terminated()

            self._channel = channel
            self._state = ControllerState.ACTIVE
            logger.info("Channel established")

    async def submit(self, request: ExecutionRequest) -> ExecutionResult:
        """
        Run one request in the isolated context and wait for its result.

        Args:
            request: Code, language, stdin and timeout

        Returns:
            The ExecutionResult produced for this request

        Raises:
            SandboxBridgeError: With ``kind`` set to the failure kind, e.g.
                ``ExecutionTimeout``, ``RequestTimeout`` or ``ChannelTerminated``
        """
        self._raise_if_terminated()
        await self.start()
        self._raise_if_terminated()

        loop = asyncio.get_running_loop()
        request_id = self._ids.next_id()
        if request_id in self._pending:
            raise RuntimeError(f"Duplicate request id {request_id}")

        envelope = RequestEnvelope(id=request_id, payload=request)
        size = frame_size(encode_envelope(envelope))
        if size > self._settings.max_frame_bytes:
            # The worker rejects longer frames without knowing their id
            logger.warning("Request frame too large", request_id=request_id, size=size)
            raise SandboxBridgeError(
                ErrorKind.EXECUTION_ERROR,
                f"Request frame exceeds {self._settings.max_frame_bytes} bytes",
                detail=f"{size} bytes",
            )

        # Registered before sending so a fast response always finds its waiter
        pending = PendingRequest(request_id=request_id, future=loop.create_future())
        self._pending[request_id] = pending
        deadline_ms = request.timeout_ms + self._settings.timeout_margin_ms
        pending.timer = loop.call_later(deadline_ms / 1000, self._handle_request_timeout, request_id, request.timeout_ms)

        log = logger.bind(request_id=request_id, language=request.language)
        try:
            try:
                await self._channel.send(envelope)
            except Exception as e:
                log.error("Send failed", error=str(e))
                if self._pending.pop(request_id, None) is pending:
                    pending.reject(SandboxBridgeError(ErrorKind.CHANNEL_FAULT, f"Failed to send request: {e}"))
            else:
                log.debug("Request submitted", timeout_ms=request.timeout_ms)
            return await pending.future
        finally:
            # Covers caller cancellation; a no-op when a handler already settled it
            if self._pending.get(request_id) is pending:
                del self._pending[request_id]
            pending.cancel_timer()

    async def terminate(self) -> None:
        """
        Destroy the channel, then fail every pending request with
        ``ChannelTerminated``. Idempotent.
        """
        if self._state is ControllerState.TERMINATED and self._channel is None and self._fault_close is None:
            return
        self._state = ControllerState.TERMINATED
        channel, self._channel = self._channel, None
        fault_close, self._fault_close = self._fault_close, None

        if channel is not None:
            await channel.close()
        if fault_close is not None:
            await fault_close

        count = self._fail_all(ErrorKind.CHANNEL_TERMINATED, "Channel terminated")
        logger.info("Controller terminated", failed_pending=count)

    def _handle_message(self, envelope: ResponseEnvelope) -> None:
        pending = self._pending.pop(envelope.id, None)
        if pending is None:
            logger.debug("Discarding response without pending request", request_id=envelope.id, type=envelope.type)
            return

        if isinstance(envelope, ResultEnvelope):
            pending.resolve(envelope.payload)
        elif isinstance(envelope, ErrorEnvelope):
            pending.reject(SandboxBridgeError(envelope.payload.kind, envelope.payload.message))

    def _handle_request_timeout(self, request_id: str, timeout_ms: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning("Request timed out", request_id=request_id, timeout_ms=timeout_ms)
        pending.timer = None
        pending.reject(SandboxBridgeError(ErrorKind.REQUEST_TIMEOUT, f"Request timed out after {timeout_ms}ms"))

    def _handle_fault(self, message: str, fatal: bool) -> None:
        count = self._fail_all(ErrorKind.CHANNEL_FAULT, f"Channel fault: {message}")
        logger.error("Channel fault", message=message, fatal=fatal, failed_pending=count)

        if fatal and self._state is ControllerState.ACTIVE:
            self._state = ControllerState.TERMINATED
            channel, self._channel = self._channel, None
            if channel is not None:
                self._fault_close = asyncio.get_running_loop().create_task(channel.close())

    def _fail_all(self, kind: ErrorKind, message: str) -> int:
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            entry.reject(SandboxBridgeError(kind, message))
        return len(pending)

    def _raise_if_terminated(self) -> None:
        if self._state is ControllerState.TERMINATED:
            raise SandboxBridgeError(ErrorKind.CHANNEL_TERMINATED, "Channel terminated")
