"""
Error taxonomy shared by the controller and the dispatcher.

Callers see a single exception type and distinguish failures by ``kind``.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional, Union


class ErrorKind(str, Enum):
    """Failure kinds carried in error envelopes and raised to callers."""

    UNSUPPORTED_LANGUAGE = "UnsupportedLanguage"
    EXECUTION_TIMEOUT = "ExecutionTimeout"
    EXECUTION_ERROR = "ExecutionError"
    REQUEST_TIMEOUT = "RequestTimeout"
    CHANNEL_FAULT = "ChannelFault"
    CHANNEL_TERMINATED = "ChannelTerminated"
    CHANNEL_CREATION_FAILED = "ChannelCreationFailed"


class SandboxBridgeError(Exception):
    """Failed submission, with the taxonomy kind, a message and optional detail."""

    def __init__(
        self,
        kind: Union[ErrorKind, str],
        message: str,
        detail: Optional[str] = None,
    ):
        # Kinds received from the wire that are not in ErrorKind pass through verbatim
        self.kind = kind.value if isinstance(kind, ErrorKind) else str(kind)
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary format."""
        error_dict = {
            "kind": self.kind,
            "message": self.message,
            "detail": self.detail,
        }
        return {k: v for k, v in error_dict.items() if v is not None}

    def to_json(self) -> str:
        """Convert error to JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.kind}: {self.message} ({self.detail})"
        return f"{self.kind}: {self.message}"

    def __repr__(self) -> str:
        return f"SandboxBridgeError(kind='{self.kind}', message='{self.message}', detail='{self.detail}')"
