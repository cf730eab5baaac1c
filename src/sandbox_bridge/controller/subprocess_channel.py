"""
Subprocess channel.

Hosts the dispatcher in a separate worker process and talks to it over the
worker's stdin/stdout, one JSON envelope per line.
"""

import asyncio
import contextlib
import os
import sys
from typing import Dict, List, Optional

import psutil
import structlog
from pydantic import ValidationError

from sandbox_bridge.ports.channel_port import FaultHandler, IChannelPort, MessageHandler
from sandbox_bridge.protocol.framing import read_frames
from sandbox_bridge.protocol.messages import (
    FaultEnvelope,
    RequestEnvelope,
    decode_envelope,
    encode_envelope,
)
from sandbox_bridge.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

WORKER_MODULE = "sandbox_bridge.dispatcher.worker"


class SubprocessChannel(IChannelPort):
    """
    Channel to a ``python -m sandbox_bridge.dispatcher.worker`` process.

    The worker runs in its own session so that closing the channel can take
    down the worker together with any interpreter it spawned.
    """

    def __init__(self, settings: Optional[Settings] = None, env: Optional[Dict[str, str]] = None):
        """
        Args:
            settings: Runtime settings, the cached global settings by default
            env: Extra environment variables for the worker process
        """
        self._settings = settings or get_settings()
        self._env = env
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._on_message: Optional[MessageHandler] = None
        self._on_fault: Optional[FaultHandler] = None
        self._closing = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def _build_command(self) -> List[str]:
        return [self._settings.worker_python, "-m", WORKER_MODULE]

    async def open(self, on_message: MessageHandler, on_fault: FaultHandler) -> None:
        if self._process is not None:
            return
        self._on_message = on_message
        self._on_fault = on_fault

        env = {**os.environ, **(self._env or {})}
        # The worker must import this package even when it is not installed
        package_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
        env["PYTHONPATH"] = os.pathsep.join(p for p in (package_root, env.get("PYTHONPATH")) if p)

        cmd = self._build_command()
        logger.debug("Starting worker", command=" ".join(cmd))
        self._process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            limit=self._settings.max_frame_bytes,
            start_new_session=sys.platform != "win32",
        )
        logger.info("Worker started", pid=self._process.pid)

        self._reader_task = asyncio.create_task(self._read_frames())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def send(self, envelope: RequestEnvelope) -> None:
        if self._closing or self._process is None or self._process.returncode is not None:
            raise ConnectionError("Worker process is not running")
        stdin = self._process.stdin
        stdin.write(encode_envelope(envelope).encode("utf-8") + b"\n")
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ConnectionError(f"Worker process stopped reading: {e}") from e

    async def _read_frames(self) -> None:
        async for line in read_frames(self._process.stdout, self._reject_oversized):
            try:
                envelope = decode_envelope(line)
            except ValidationError as e:
                logger.warning("Dropping malformed frame from worker", error=str(e))
                continue

            if isinstance(envelope, FaultEnvelope):
                self._on_fault(envelope.payload.message, False)
            elif isinstance(envelope, RequestEnvelope):
                logger.warning("Dropping request frame sent by worker", request_id=envelope.id)
            else:
                self._on_message(envelope)

        if not self._closing:
            returncode = await self._process.wait()
            logger.error("Worker exited unexpectedly", pid=self._process.pid, returncode=returncode)
            self._on_fault(f"Worker process exited with code {returncode}", True)

    def _reject_oversized(self) -> None:
        limit = self._settings.max_frame_bytes
        logger.warning("Oversized frame from worker", limit=limit)
        self._on_fault(f"Oversized frame from worker: exceeds {limit} bytes", False)

    async def _drain_stderr(self) -> None:
        stderr = self._process.stderr
        pid = self._process.pid
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            logger.debug("worker", pid=pid, line=line.decode("utf-8", errors="replace").rstrip())

    async def close(self) -> None:
        if self._closing or self._process is None:
            return
        self._closing = True
        process = self._process

        # Stop delivery first: nothing reaches the controller after close() starts
        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task

        if process.returncode is None:
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._settings.worker_shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("Worker did not exit in time, killing", pid=process.pid)
                self._kill_tree(process.pid)
                await process.wait()
        # Interpreters orphaned by the worker share its session
        self._kill_session(process.pid)

        if self._stderr_task:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        logger.info("Worker stopped", pid=process.pid, returncode=process.returncode)

    @staticmethod
    def _kill_tree(pid: int) -> None:
        try:
            parent = psutil.Process(pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return
        for proc in children + [parent]:
            with contextlib.suppress(psutil.NoSuchProcess):
                proc.kill()

    @staticmethod
    def _kill_session(sid: int) -> None:
        if sys.platform == "win32":
            return
        for proc in psutil.process_iter(["pid"]):
            try:
                if os.getsid(proc.info["pid"]) == sid:
                    proc.kill()
            except (ProcessLookupError, PermissionError, psutil.NoSuchProcess):
                continue
