"""
Sandbox Bridge

Runs source code in an isolated worker process and relays stdout, stderr,
exit code and elapsed time back to the caller over a multiplexed,
id-correlated message channel.
"""

__version__ = "0.1.0"

from sandbox_bridge.api import create_controller, run_code
from sandbox_bridge.controller import ChannelController, ControllerState, LocalChannel, SubprocessChannel
from sandbox_bridge.errors import ErrorKind, SandboxBridgeError
from sandbox_bridge.protocol import ExecutionRequest, ExecutionResult, Language

__all__ = [
    "ChannelController",
    "ControllerState",
    "ErrorKind",
    "ExecutionRequest",
    "ExecutionResult",
    "Language",
    "LocalChannel",
    "SandboxBridgeError",
    "SubprocessChannel",
    "create_controller",
    "run_code",
]
