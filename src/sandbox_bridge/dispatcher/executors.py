"""
Subprocess language executors.

Each run starts a fresh interpreter process with the source passed on its
command line and the request's stdin piped in full.

WARNING: The interpreter runs with the worker's privileges. This bounds run
time and separates memory from the controller, but it is NOT a security
sandbox for untrusted code.
"""

import asyncio
import contextlib
import os
import time
from typing import Dict, Optional, Sequence

import structlog

from sandbox_bridge.ports.executor_port import IExecutorPort
from sandbox_bridge.protocol.messages import ExecutionResult, Language
from sandbox_bridge.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class SubprocessExecutor(IExecutorPort):
    """
    Runs code as ``<command...> <code>`` in a child process.

    Args:
        language: Language name this executor serves
        command: Interpreter invocation preceding the code argument,
            e.g. ``["node", "-e"]``
        env: Extra environment variables for the interpreter
    """

    def __init__(self, language: str, command: Sequence[str], env: Optional[Dict[str, str]] = None):
        if not command:
            raise ValueError("command must not be empty")
        self.language = language
        self._command = list(command)
        self._env = env

    async def execute(self, code: str, stdin: str) -> ExecutionResult:
        start_time = time.perf_counter()
        env = None
        if self._env:
            env = {**os.environ, **self._env}

        process = await asyncio.create_subprocess_exec(
            *self._command,
            code,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        logger.debug("Interpreter started", language=self.language, pid=process.pid)

        try:
            stdout, stderr = await process.communicate(stdin.encode("utf-8"))
        except asyncio.CancelledError:
            # The dispatcher gave up on this run; do not leave the interpreter behind
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            logger.debug("Interpreter killed after cancellation", language=self.language, pid=process.pid)
            raise

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        return ExecutionResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode,
            elapsed_ms=elapsed_ms,
        )


def build_default_executors(settings: Optional[Settings] = None) -> Dict[str, IExecutorPort]:
    """Executors for every member of ``Language``, using the configured binaries."""
    settings = settings or get_settings()
    return {
        Language.PYTHON.value: SubprocessExecutor(
            Language.PYTHON.value,
            [settings.python_binary, "-c"],
            env={"PYTHONIOENCODING": "utf-8"},
        ),
        Language.JAVASCRIPT.value: SubprocessExecutor(Language.JAVASCRIPT.value, [settings.node_binary, "-e"]),
        Language.LUA.value: SubprocessExecutor(Language.LUA.value, [settings.lua_binary, "-e"]),
    }
