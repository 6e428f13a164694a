"""Canonical conversation model shared by the provider, turn and scheduler.

These shapes are backend-agnostic: the provider adapter translates them to
and from the wire format, everything else only ever sees these.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

USER = "user"
MODEL = "model"
ROLES = (USER, MODEL)


@dataclass(frozen=True)
class InlineData:
    mime_type: str
    data: bytes


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: dict = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True)
class FunctionResponse:
    name: str
    response: dict = field(default_factory=dict)
    id: str | None = None


_PAYLOADS = ("text", "inline_data", "function_call", "function_response")


@dataclass(frozen=True)
class Part:
    """One element of a Content. Exactly one payload field is set.

    ``thought`` marks a text part as reasoning output rather than answer text.
    """

    text: str | None = None
    inline_data: InlineData | None = None
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None
    thought: bool = False

    def __post_init__(self):
        present = [name for name in _PAYLOADS if getattr(self, name) is not None]
        if len(present) != 1:
            raise ValueError(
                f"a Part needs exactly one payload, got {present or 'none'}"
            )
        if self.thought and self.text is None:
            raise ValueError("only text parts can be marked as thought")

    @property
    def kind(self) -> str:
        for name in _PAYLOADS:
            if getattr(self, name) is not None:
                return name
        raise AssertionError("unreachable")

    @classmethod
    def from_text(cls, text: str, *, thought: bool = False) -> "Part":
        return cls(text=text, thought=thought)

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "Part":
        return cls(inline_data=InlineData(mime_type=mime_type, data=data))

    @classmethod
    def from_function_call(
        cls, name: str, args: dict | None = None, id: str | None = None
    ) -> "Part":
        return cls(function_call=FunctionCall(name=name, args=args or {}, id=id))

    @classmethod
    def from_function_response(
        cls, name: str, response: dict, id: str | None = None
    ) -> "Part":
        return cls(
            function_response=FunctionResponse(name=name, response=response, id=id)
        )


@dataclass(frozen=True)
class Content:
    """One turn of history: a role and an ordered, immutable tuple of parts."""

    role: str
    parts: tuple[Part, ...] = ()

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown role {self.role!r}, expected one of {ROLES}")
        object.__setattr__(self, "parts", tuple(self.parts))


# -- Requests ----------------------------------------------------------------


@dataclass(frozen=True)
class FunctionDeclaration:
    name: str
    description: str = ""
    parameters: dict | None = None


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float | None = None
    max_output_tokens: int | None = None
    top_p: float | None = None
    tool_choice: str | dict | None = None
    response_format: dict | None = None
    reasoning_effort: str | None = None


@dataclass(frozen=True)
class GenerationRequest:
    model: str
    contents: tuple[Content, ...]
    system_instruction: str | None = None
    tools: tuple[FunctionDeclaration, ...] = ()
    config: GenerationConfig = field(default_factory=GenerationConfig)

    def __post_init__(self):
        object.__setattr__(self, "contents", tuple(self.contents))
        object.__setattr__(self, "tools", tuple(self.tools))


# -- Responses ---------------------------------------------------------------


class FinishReason(str, Enum):
    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    OTHER = "OTHER"


_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.MAX_TOKENS,
    "content_filter": FinishReason.SAFETY,
}


def map_finish_reason(reason: Any) -> FinishReason:
    """Map a backend finish reason to the canonical enum. Never raises."""
    if not isinstance(reason, str):
        return FinishReason.OTHER
    return _FINISH_REASONS.get(reason, FinishReason.OTHER)


@dataclass(frozen=True)
class Candidate:
    content: Content
    finish_reason: FinishReason = FinishReason.OTHER
    index: int = 0


@dataclass(frozen=True)
class UsageMetadata:
    prompt_token_count: int = 0
    candidates_token_count: int = 0
    total_token_count: int = 0


def _first_parts(response: "GenerationResponse") -> tuple[Part, ...]:
    if not response.candidates:
        return ()
    return response.candidates[0].content.parts


def response_text(response: "GenerationResponse") -> str:
    """Concatenated answer text of the first candidate (thoughts excluded)."""
    return "".join(
        p.text for p in _first_parts(response) if p.text is not None and not p.thought
    )


def response_function_calls(response: "GenerationResponse") -> list[FunctionCall]:
    return [p.function_call for p in _first_parts(response) if p.function_call]


def response_inline_data(response: "GenerationResponse") -> list[InlineData]:
    return [p.inline_data for p in _first_parts(response) if p.inline_data]


@dataclass(frozen=True)
class GenerationResponse:
    candidates: tuple[Candidate, ...] = ()
    usage_metadata: UsageMetadata = field(default_factory=UsageMetadata)

    def __post_init__(self):
        object.__setattr__(self, "candidates", tuple(self.candidates))

    # Computed on access so they can never drift from the stored parts.
    @property
    def text(self) -> str:
        return response_text(self)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return response_function_calls(self)

    @property
    def data(self) -> list[InlineData]:
        return response_inline_data(self)


# -- Part list helpers -------------------------------------------------------


def _flatten_into(item: Any, out: list[Part]) -> None:
    if isinstance(item, Part):
        out.append(item)
    elif isinstance(item, str):
        out.append(Part.from_text(item))
    elif isinstance(item, (list, tuple)):
        for sub in item:
            _flatten_into(sub, out)
    else:
        raise TypeError(f"cannot convert {type(item).__name__} to a Part")


def merge_part_lists(items) -> list[Part]:
    """Flatten part-list unions (Part, str, or nested sequences) in order."""
    out: list[Part] = []
    _flatten_into(items, out)
    return out


# -- Tool call records -------------------------------------------------------


@dataclass(frozen=True)
class ToolCallRequestInfo:
    call_id: str
    name: str
    args: dict
    is_client_initiated: bool = False
    prompt_id: str = ""


@dataclass(frozen=True)
class ToolCallResponseInfo:
    call_id: str
    response_parts: tuple[Part, ...]
    result_display: Any = None
    error: BaseException | None = None

    def __post_init__(self):
        object.__setattr__(self, "response_parts", tuple(self.response_parts))


@dataclass(frozen=True)
class StructuredError:
    message: str
    status: int | None = None
