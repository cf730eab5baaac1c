from sandbox_bridge.ports.channel_port import FaultHandler, IChannelPort, MessageHandler
from sandbox_bridge.ports.executor_port import IExecutorPort

__all__ = ["FaultHandler", "IChannelPort", "IExecutorPort", "MessageHandler"]
