"""
Wire messages exchanged between the controller and the worker.

Every frame is one JSON object on one line. Field names are camelCase on the
wire (``timeoutMs``, ``exitCode``, ``elapsedMs``) and snake_case in Python.
The ``id`` of a response always equals the ``id`` of its request; it is the
only field used for correlation.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

DEFAULT_TIMEOUT_MS = 5000


class Language(str, Enum):
    """Languages the default worker can execute."""

    JAVASCRIPT = "javascript"
    PYTHON = "python"
    LUA = "lua"


class WireModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class ExecutionRequest(WireModel):
    """
    Code to run in the isolated context.

    ``language`` is left as a plain string: the dispatcher decides whether
    it is supported, so an unknown value travels to it and comes back as an
    ``UnsupportedLanguage`` failure.
    """

    language: str
    code: str
    stdin: str = ""
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)


class ExecutionResult(WireModel):
    """Captured output of one run, forwarded unmodified by dispatcher and controller."""

    stdout: str
    stderr: str
    exit_code: int
    elapsed_ms: float = Field(ge=0)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ErrorPayload(WireModel):
    kind: str
    message: str


class RequestEnvelope(WireModel):
    type: Literal["execute"] = "execute"
    id: str
    payload: ExecutionRequest


class ResultEnvelope(WireModel):
    type: Literal["result"] = "result"
    id: str
    payload: ExecutionResult


class ErrorEnvelope(WireModel):
    type: Literal["error"] = "error"
    id: str
    payload: ErrorPayload


class FaultEnvelope(WireModel):
    """Channel-level fault raised by the worker, not tied to a pending request."""

    type: Literal["fault"] = "fault"
    id: Optional[str] = None
    payload: ErrorPayload


ResponseEnvelope = Union[ResultEnvelope, ErrorEnvelope]

Envelope = Annotated[
    Union[RequestEnvelope, ResultEnvelope, ErrorEnvelope, FaultEnvelope],
    Field(discriminator="type"),
]

_envelope_adapter = TypeAdapter(Envelope)


def encode_envelope(envelope: WireModel) -> str:
    """Serialize an envelope to a single JSON line (without the trailing newline)."""
    return envelope.model_dump_json(by_alias=True)


def decode_envelope(frame: Union[str, bytes]) -> Union[RequestEnvelope, ResultEnvelope, ErrorEnvelope, FaultEnvelope]:
    """
    Parse one frame into its envelope type.

    Raises:
        pydantic.ValidationError: If the frame is not valid JSON or not a known envelope
    """
    return _envelope_adapter.validate_json(frame)
