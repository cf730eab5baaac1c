from sandbox_bridge.protocol.framing import frame_size, read_frames
from sandbox_bridge.protocol.identity import RequestIdGenerator
from sandbox_bridge.protocol.messages import (
    DEFAULT_TIMEOUT_MS,
    Envelope,
    ErrorEnvelope,
    ErrorPayload,
    ExecutionRequest,
    ExecutionResult,
    FaultEnvelope,
    Language,
    RequestEnvelope,
    ResponseEnvelope,
    ResultEnvelope,
    decode_envelope,
    encode_envelope,
)

__all__ = [
    "DEFAULT_TIMEOUT_MS",
    "Envelope",
    "ErrorEnvelope",
    "ErrorPayload",
    "ExecutionRequest",
    "ExecutionResult",
    "FaultEnvelope",
    "Language",
    "RequestEnvelope",
    "RequestIdGenerator",
    "ResponseEnvelope",
    "ResultEnvelope",
    "decode_envelope",
    "encode_envelope",
    "frame_size",
    "read_frames",
]
