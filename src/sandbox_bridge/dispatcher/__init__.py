from sandbox_bridge.dispatcher.dispatcher import ExecutionDispatcher
from sandbox_bridge.dispatcher.executors import SubprocessExecutor, build_default_executors

__all__ = ["ExecutionDispatcher", "SubprocessExecutor", "build_default_executors"]
