"""
Execution Dispatcher

Runs inside the isolated context. Turns every RequestEnvelope into exactly
one ResponseEnvelope carrying the same id, racing the language executor
against the request's timeout.
"""

import asyncio
from typing import Mapping, Optional, Set

import structlog

from sandbox_bridge.errors import ErrorKind
from sandbox_bridge.ports.executor_port import IExecutorPort
from sandbox_bridge.protocol.messages import (
    ErrorEnvelope,
    ErrorPayload,
    ExecutionRequest,
    ExecutionResult,
    RequestEnvelope,
    ResponseEnvelope,
    ResultEnvelope,
)

logger = structlog.get_logger(__name__)


class ExecutionTimedOut(Exception):
    """The executor lost the race against the request timer."""


def _discard_outcome(task: "asyncio.Task[ExecutionResult]") -> None:
    # Retrieve the abandoned run's outcome so it is never reported, not even as
    # an "exception was never retrieved" warning.
    if not task.cancelled():
        task.exception()


class ExecutionDispatcher:
    """
    Routes execution requests to language executors.

    Requests are handled independently: the dispatcher keeps no per-request
    state, so concurrent calls to ``dispatch`` interleave freely.
    """

    def __init__(self, executors: Mapping[str, IExecutorPort]):
        """
        Initialize the dispatcher.

        Args:
            executors: Mapping of language name to executor. Its keys are the
                complete set of supported languages.
        """
        self._executors = dict(executors)
        self._runs: Set[asyncio.Task] = set()

    @property
    def languages(self) -> list:
        return sorted(self._executors)

    async def dispatch(self, envelope: RequestEnvelope) -> ResponseEnvelope:
        """
        Execute one request and build its response.

        Never raises for executor failures; they come back as error envelopes.

        Args:
            envelope: Request envelope received over the channel

        Returns:
            ResultEnvelope or ErrorEnvelope with ``envelope.id``
        """
        request = envelope.payload
        log = logger.bind(request_id=envelope.id, language=request.language)

        executor = self._executors.get(request.language)
        if executor is None:
            log.warning("Unsupported language")
            return self._error(envelope.id, ErrorKind.UNSUPPORTED_LANGUAGE, f"Unsupported language: {request.language}")

        try:
            result = await self._run_with_timeout(executor, request)
            response = ResultEnvelope(id=envelope.id, payload=result)
        except ExecutionTimedOut:
            log.warning("Execution timed out", timeout_ms=request.timeout_ms)
            return self._error(
                envelope.id,
                ErrorKind.EXECUTION_TIMEOUT,
                f"Execution timed out after {request.timeout_ms}ms",
            )
        except Exception as e:
            log.error("Executor failed", error=str(e))
            return self._error(envelope.id, ErrorKind.EXECUTION_ERROR, str(e) or type(e).__name__)

        log.info("Execution completed", exit_code=response.payload.exit_code, elapsed_ms=round(response.payload.elapsed_ms, 2))
        return response

    async def _run_with_timeout(self, executor: IExecutorPort, request: ExecutionRequest) -> ExecutionResult:
        """
        Race the executor against a timer of ``request.timeout_ms``.

        The executor runs as its own task. If the timer wins, the task is
        cancelled and left to finish on its own; its eventual outcome is
        discarded and never awaited here.

        Raises:
            ExecutionTimedOut: If the timer fired first
            Exception: Whatever the executor raised
        """
        run = asyncio.ensure_future(executor.execute(request.code, request.stdin))
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)
        try:
            done, _ = await asyncio.wait({run}, timeout=request.timeout_ms / 1000)
        except asyncio.CancelledError:
            run.cancel()
            run.add_done_callback(_discard_outcome)
            raise

        if run in done:
            return run.result()

        run.cancel()
        run.add_done_callback(_discard_outcome)
        raise ExecutionTimedOut()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Wait for executor runs still winding down, abandoned ones included.

        Cancelled executors kill and reap their interpreters; this gives them
        the chance to finish before the event loop is closed.
        """
        if self._runs:
            await asyncio.wait(set(self._runs), timeout=timeout)

    @staticmethod
    def _error(request_id: str, kind: ErrorKind, message: str) -> ErrorEnvelope:
        return ErrorEnvelope(id=request_id, payload=ErrorPayload(kind=kind.value, message=message))
