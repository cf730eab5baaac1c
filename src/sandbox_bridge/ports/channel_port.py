"""
Channel Port Interface

Defines the contract for the message channel between the controller and an
isolated execution context. This is an output port - implemented by the
subprocess and in-process channels.
"""

from abc import ABC, abstractmethod
from typing import Callable

from sandbox_bridge.protocol.messages import RequestEnvelope, ResponseEnvelope

MessageHandler = Callable[[ResponseEnvelope], None]
FaultHandler = Callable[[str, bool], None]


class IChannelPort(ABC):
    """
    Port interface for one asynchronous, multiplexed request/response link.

    The channel is owned exclusively by a single controller; nothing else may
    send on it or close it.
    """

    @abstractmethod
    async def open(self, on_message: MessageHandler, on_fault: FaultHandler) -> None:
        """
        Establish the channel and start delivering inbound messages.

        Args:
            on_message: Called on the event loop for every result/error envelope
            on_fault: Called with (message, fatal) for channel-level faults.
                A fatal fault means the isolated context is gone.

        Raises:
            Exception: If the isolated context could not be created
        """
        pass

    @abstractmethod
    async def send(self, envelope: RequestEnvelope) -> None:
        """
        Send one request envelope.

        Raises:
            ConnectionError: If the channel can no longer carry messages
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Stop delivery and release the isolated context and every resource
        created to host it. Safe to call more than once.
        """
        pass
