"""
Test doubles for channels and executors.
"""

import asyncio
import sys
from typing import Callable, List, Optional

from sandbox_bridge.ports.channel_port import FaultHandler, IChannelPort, MessageHandler
from sandbox_bridge.ports.executor_port import IExecutorPort
from sandbox_bridge.protocol.messages import (
    ErrorEnvelope,
    ErrorPayload,
    ExecutionRequest,
    ExecutionResult,
    RequestEnvelope,
    ResultEnvelope,
)


def make_result(stdout: str = "", stderr: str = "", exit_code: int = 0, elapsed_ms: float = 1.0) -> ExecutionResult:
    return ExecutionResult(stdout=stdout, stderr=stderr, exit_code=exit_code, elapsed_ms=elapsed_ms)


def make_request(code: str = "print(1)", language: str = "python", timeout_ms: int = 1000, stdin: str = "") -> ExecutionRequest:
    return ExecutionRequest(language=language, code=code, stdin=stdin, timeout_ms=timeout_ms)


def make_envelope(request_id: str = "req_test_1", **kwargs) -> RequestEnvelope:
    return RequestEnvelope(id=request_id, payload=make_request(**kwargs))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


class ScriptedChannel(IChannelPort):
    """
    Channel whose responses are driven by the test.

    Records every envelope sent; ``reply_*`` and ``fault`` invoke the
    controller's handlers directly, as a real channel's reader would.
    """

    def __init__(
        self,
        fail_open: Optional[Exception] = None,
        fail_send: Optional[Exception] = None,
        open_gate: Optional[asyncio.Event] = None,
    ):
        self.sent: List[RequestEnvelope] = []
        self.open_calls = 0
        self.close_calls = 0
        self.fail_open = fail_open
        self.fail_send = fail_send
        self.open_gate = open_gate
        self._on_message: Optional[MessageHandler] = None
        self._on_fault: Optional[FaultHandler] = None

    async def open(self, on_message: MessageHandler, on_fault: FaultHandler) -> None:
        self.open_calls += 1
        await asyncio.sleep(0)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.fail_open is not None:
            raise self.fail_open
        self._on_message = on_message
        self._on_fault = on_fault

    async def send(self, envelope: RequestEnvelope) -> None:
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append(envelope)

    async def close(self) -> None:
        self.close_calls += 1

    def reply_result(self, request_id: str, stdout: str = "", exit_code: int = 0) -> None:
        self._on_message(ResultEnvelope(id=request_id, payload=make_result(stdout=stdout, exit_code=exit_code)))

    def reply_error(self, request_id: str, kind: str, message: str) -> None:
        self._on_message(ErrorEnvelope(id=request_id, payload=ErrorPayload(kind=kind, message=message)))

    def fault(self, message: str, fatal: bool = False) -> None:
        self._on_fault(message, fatal)


class StaticExecutor(IExecutorPort):
    """Returns a fixed result, optionally after a delay."""

    def __init__(self, result: ExecutionResult, delay: float = 0.0, language: str = "python"):
        self.language = language
        self.result = result
        self.delay = delay
        self.calls: List[tuple] = []

    async def execute(self, code: str, stdin: str) -> ExecutionResult:
        self.calls.append((code, stdin))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


class EchoExecutor(IExecutorPort):
    """Echoes code and stdin back as stdout after ``float(stdin or 0)`` seconds."""

    language = "python"

    async def execute(self, code: str, stdin: str) -> ExecutionResult:
        await asyncio.sleep(float(stdin or 0))
        return make_result(stdout=f"{code}\n")


class HangingExecutor(IExecutorPort):
    """Never completes on its own; on cancellation, cleans up for ``cleanup_delay`` seconds."""

    language = "python"

    def __init__(self, cleanup_delay: float = 0.0):
        self.started = asyncio.Event()
        self.cleanup_delay = cleanup_delay
        self.cancelled = False
        self.cleaned_up = False

    async def execute(self, code: str, stdin: str) -> ExecutionResult:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            await asyncio.sleep(self.cleanup_delay)
            self.cleaned_up = True
            raise
        raise AssertionError("unreachable")


class StubbornExecutor(IExecutorPort):
    """Ignores cancellation and completes late with a result anyway."""

    language = "python"

    def __init__(self, delay: float):
        self.delay = delay
        self.finished = asyncio.Event()

    async def execute(self, code: str, stdin: str) -> ExecutionResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.delay
        while loop.time() < deadline:
            try:
                await asyncio.sleep(0.01)
            except asyncio.CancelledError:
                continue
        self.finished.set()
        return make_result(stdout="late\n")


class FailingExecutor(IExecutorPort):
    language = "python"

    def __init__(self, error: Exception):
        self.error = error

    async def execute(self, code: str, stdin: str) -> ExecutionResult:
        raise self.error


PYTHON = sys.executable
