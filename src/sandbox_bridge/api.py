"""
Convenience entry points for callers.

There is no process-wide default controller: create one, pass it around, and
terminate it (or use it as an async context manager) when done.
"""

from functools import partial
from typing import Optional

from sandbox_bridge.controller.controller import ChannelController
from sandbox_bridge.controller.local_channel import LocalChannel
from sandbox_bridge.controller.subprocess_channel import SubprocessChannel
from sandbox_bridge.protocol.messages import ExecutionRequest, ExecutionResult
from sandbox_bridge.settings import Settings, get_settings


def create_controller(in_process: bool = False, settings: Optional[Settings] = None) -> ChannelController:
    """
    Create a controller whose channel is started lazily on first submit.

    Args:
        in_process: Host the dispatcher on the caller's event loop instead of
            a worker process
        settings: Runtime settings, the cached global settings by default
    """
    settings = settings or get_settings()
    channel_cls = LocalChannel if in_process else SubprocessChannel
    return ChannelController(partial(channel_cls, settings=settings), settings=settings)


async def run_code(
    controller: ChannelController,
    language: str,
    code: str,
    stdin: str = "",
    timeout_ms: Optional[int] = None,
) -> ExecutionResult:
    """Build an ExecutionRequest and submit it through ``controller``."""
    if timeout_ms is None:
        timeout_ms = controller.settings.default_timeout_ms
    request = ExecutionRequest(language=language, code=code, stdin=stdin, timeout_ms=timeout_ms)
    return await controller.submit(request)
