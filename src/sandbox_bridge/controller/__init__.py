from sandbox_bridge.controller.controller import ChannelController, ControllerState, PendingRequest
from sandbox_bridge.controller.local_channel import LocalChannel
from sandbox_bridge.controller.subprocess_channel import SubprocessChannel

__all__ = [
    "ChannelController",
    "ControllerState",
    "LocalChannel",
    "PendingRequest",
    "SubprocessChannel",
]
