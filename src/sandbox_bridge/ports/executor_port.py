"""
Executor Port Interface

Defines the contract for language-specific executors.
This is an output port - called by the dispatcher inside the isolated context.
"""

from abc import ABC, abstractmethod

from sandbox_bridge.protocol.messages import ExecutionResult


class IExecutorPort(ABC):
    """
    Port interface for running source code of one language.

    Implementations never impose their own timeout (timing belongs to the
    dispatcher) and signal failure by raising, not through result fields.
    """

    language: str

    @abstractmethod
    async def execute(self, code: str, stdin: str) -> ExecutionResult:
        """
        Run code with the given standard input.

        Args:
            code: Source text
            stdin: Full standard input, possibly empty

        Returns:
            ExecutionResult with stdout, stderr, exit code and elapsed time

        Raises:
            asyncio.CancelledError: If the dispatcher abandoned the run
            Exception: If the executor itself failed
        """
        pass
