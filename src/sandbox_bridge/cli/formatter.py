"""
Result formatting utilities for CLI output
"""

import json
import sys
from typing import Any, Dict

import yaml

from sandbox_bridge.errors import SandboxBridgeError
from sandbox_bridge.protocol.messages import ExecutionResult

_COLORS = {
    "reset": "\033[0m",
    "red": "\033[91m",
    "green": "\033[92m",
    "yellow": "\033[93m",
    "blue": "\033[94m",
    "dim": "\033[2m",
}


class ResultFormatter:
    """
    Format execution results and failures for different output types
    """

    def __init__(self, format: str = "pretty", use_colors: bool = True):
        self.format = format
        self.use_colors = use_colors and hasattr(sys.stdout, "isatty") and sys.stdout.isatty()

    def _colorize(self, text: str, color: str) -> str:
        if not self.use_colors:
            return text
        return f"{_COLORS[color]}{text}{_COLORS['reset']}"

    def format_result(self, result: ExecutionResult) -> str:
        data = result.model_dump(by_alias=True)
        if self.format == "json":
            return json.dumps(data, indent=2, ensure_ascii=False)
        if self.format == "yaml":
            return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        return self._format_pretty(result)

    def format_error(self, error: SandboxBridgeError) -> str:
        data: Dict[str, Any] = error.to_dict()
        if self.format == "json":
            return json.dumps({"error": data}, indent=2, ensure_ascii=False)
        if self.format == "yaml":
            return yaml.safe_dump({"error": data}, sort_keys=False, allow_unicode=True)
        return self._colorize(f"Failed [{error.kind}]: {error.message}", "red")

    def _format_pretty(self, result: ExecutionResult) -> str:
        output = []
        if result.ok:
            output.append(self._colorize("Execution succeeded", "green"))
        else:
            output.append(self._colorize(f"Execution failed (exit code: {result.exit_code})", "red"))
        output.append("")

        for label, stream, color in (("STDOUT:", result.stdout, "blue"), ("STDERR:", result.stderr, "yellow")):
            if not stream:
                continue
            output.append(self._colorize(label, color))
            output.append(self._colorize("-" * 40, "dim"))
            output.append(stream.rstrip())
            output.append("")

        output.append(f"Elapsed: {result.elapsed_ms:.2f} ms")
        return "\n".join(output)
