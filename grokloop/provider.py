"""Provider adapter: canonical model <-> xAI chat-completions wire format.

Calls go through LiteLLM (``xai/<model>``). Everything above this module
only deals in canonical Content / GenerationRequest / GenerationResponse.
"""

import base64
import json
import logging
import math
import re
import uuid
from dataclasses import dataclass
from typing import Iterator

from .content import (
    MODEL,
    Candidate,
    Content,
    FinishReason,
    FunctionDeclaration,
    GenerationRequest,
    GenerationResponse,
    InlineData,
    Part,
    UsageMetadata,
    map_finish_reason,
)
from .models import DEFAULT_GROK_MODEL
from .report import (
    ContextOverflowError,
    ProviderError,
    QuotaExceededError,
    ToolCallDecodeError,
    UnauthorizedError,
    UnsupportedOperation,
    error_status,
)

logger = logging.getLogger(__name__)

PROVIDER_PREFIX = "xai/"
XAI_API_BASE = "https://api.x.ai/v1"

# There is no token counting endpoint, so count_tokens() estimates:
# ~4.7 chars per English word and ~0.75 words per token gives ~3.5 chars
# per token. Images are charged a flat amount each.
CHARS_PER_TOKEN = 3.5
IMAGE_TOKEN_ESTIMATE = 750

# Some backends report context overflow as a plain 400.
_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)

# Legacy numeric schema type codes (STRING=1 ... OBJECT=6).
LEGACY_TYPE_CODES = {
    1: "string",
    2: "number",
    3: "integer",
    4: "boolean",
    5: "array",
    6: "object",
}


def _get(obj, key, default=None):
    """Read key from a dict or attribute from an object (LiteLLM returns both)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


# ---------------------------------------------------------------------------
# Outbound: canonical -> wire
# ---------------------------------------------------------------------------


def to_wire_role(role: str) -> str:
    return "assistant" if role == MODEL else role


def from_wire_role(role: str) -> str:
    return MODEL if role == "assistant" else role


def _image_item(inline: InlineData) -> dict:
    encoded = base64.b64encode(inline.data).decode("ascii")
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{inline.mime_type};base64,{encoded}"},
    }


def to_wire_messages(contents, system_instruction: str | None = None) -> list[dict]:
    """Flatten canonical history into chat-completion messages.

    A function response becomes its own ``tool`` message, emitted as soon as
    it is seen; the remaining parts of that Content are folded into one
    message appended afterwards.
    """
    messages: list[dict] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})

    for content in contents:
        pieces: list = []
        tool_calls: list[dict] = []
        for part in content.parts:
            if part.thought:
                continue
            if part.text is not None:
                pieces.append(part.text)
            elif part.inline_data is not None:
                pieces.append(_image_item(part.inline_data))
            elif part.function_call is not None:
                fc = part.function_call
                tool_calls.append(
                    {
                        "id": fc.id or _new_call_id(),
                        "type": "function",
                        "function": {
                            "name": fc.name,
                            "arguments": json.dumps(fc.args or {}),
                        },
                    }
                )
            else:
                fr = part.function_response
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": fr.id or fr.name,
                        "content": json.dumps(fr.response, default=str),
                    }
                )

        if not pieces and not tool_calls:
            continue

        message: dict = {"role": to_wire_role(content.role)}
        if len(pieces) == 1 and isinstance(pieces[0], str):
            message["content"] = pieces[0]
        elif pieces:
            message["content"] = [
                p if isinstance(p, dict) else {"type": "text", "text": p}
                for p in pieces
            ]
        else:
            # Tool-call-only assistant turn; keeps the following tool
            # messages attached to their calls.
            message["content"] = None
        if tool_calls:
            message["tool_calls"] = tool_calls
        messages.append(message)

    return messages


def _convert_type(value) -> str:
    if isinstance(value, bool):
        return "string"
    if isinstance(value, int):
        return LEGACY_TYPE_CODES.get(value, "string")
    if isinstance(value, str):
        return value.lower()
    return "string"


def convert_schema(schema) -> dict:
    """Convert a JSON-schema-like parameter spec to what the backend accepts.

    Lossy and one-way: bounds (minLength, maximum, ...), defaults and any
    unknown key are dropped. Never raises on unexpected input.
    """
    if not isinstance(schema, dict):
        return {}
    result: dict = {}
    for key, value in schema.items():
        if key == "type":
            result["type"] = _convert_type(value)
        elif key == "properties" and isinstance(value, dict):
            result["properties"] = {
                name: convert_schema(sub) for name, sub in value.items()
            }
        elif key == "items" and isinstance(value, dict):
            result["items"] = convert_schema(value)
        elif key in ("required", "description"):
            result[key] = value
    return result


def convert_tools(declarations) -> list[dict]:
    tools = []
    for decl in declarations or ():
        if isinstance(decl, FunctionDeclaration):
            name, description, parameters = decl.name, decl.description, decl.parameters
        else:
            name = decl.get("name", "")
            description = decl.get("description", "")
            parameters = decl.get("parameters")
        tools.append(
            {
                "type": "function",
                "function": {
                    "name": name or "",
                    "description": description or "",
                    "parameters": convert_schema(parameters)
                    if parameters
                    else {"type": "object", "properties": {}},
                },
            }
        )
    return tools


# ---------------------------------------------------------------------------
# Inbound: wire -> canonical
# ---------------------------------------------------------------------------


def _parse_arguments(raw, name: str) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ToolCallDecodeError(
            f"malformed JSON arguments for tool {name!r}: {e}"
        ) from e
    if not isinstance(parsed, dict):
        raise ToolCallDecodeError(
            f"arguments for tool {name!r} must be a JSON object, "
            f"got {type(parsed).__name__}"
        )
    return parsed


def _usage(usage) -> UsageMetadata:
    return UsageMetadata(
        prompt_token_count=_get(usage, "prompt_tokens") or 0,
        candidates_token_count=_get(usage, "completion_tokens") or 0,
        total_token_count=_get(usage, "total_tokens") or 0,
    )


def _single_candidate(parts, finish_reason: FinishReason, usage) -> GenerationResponse:
    return GenerationResponse(
        candidates=(
            Candidate(content=Content(MODEL, parts), finish_reason=finish_reason),
        ),
        usage_metadata=_usage(usage),
    )


def from_wire_response(response, *, surface_reasoning: bool = False) -> GenerationResponse:
    """Convert a non-streaming completion. Only the first choice is used."""
    choices = _get(response, "choices") or []
    if not choices:
        return GenerationResponse(usage_metadata=_usage(_get(response, "usage")))
    choice = choices[0]
    message = _get(choice, "message")

    parts: list[Part] = []
    if surface_reasoning:
        reasoning = _get(message, "reasoning_content")
        if reasoning:
            parts.append(Part.from_text(reasoning, thought=True))
    text = _get(message, "content")
    if text:
        parts.append(Part.from_text(text))
    for tc in _get(message, "tool_calls") or []:
        fn = _get(tc, "function")
        if fn is None:
            continue
        name = _get(fn, "name") or ""
        parts.append(
            Part.from_function_call(
                name,
                _parse_arguments(_get(fn, "arguments"), name),
                id=_get(tc, "id"),
            )
        )

    return _single_candidate(
        parts, map_finish_reason(_get(choice, "finish_reason")), _get(response, "usage")
    )


@dataclass
class _PendingCall:
    id: str | None = None
    name: str = ""
    arguments: str = ""


class StreamAssembler:
    """Reassembles streamed chunks into canonical responses, chunk by chunk.

    A response is produced only for chunks carrying a text delta or a
    completed tool call. Usage is remembered whenever a chunk carries it
    (normally only the last one). A tool call is completed by the first
    delta whose accumulated ``arguments`` parse as JSON; argument fragments
    that do not parse yet are buffered per call index and joined with the
    following deltas. Calls still open at finish_reason (or end of stream)
    are flushed: no arguments means ``{}``, unparsable ones raise
    ToolCallDecodeError.
    """

    def __init__(self, *, surface_reasoning: bool = False):
        self.usage = None
        self._surface_reasoning = surface_reasoning
        self._calls: dict = {}
        self._anonymous = 0

    def feed(self, chunk) -> list[GenerationResponse]:
        usage = _get(chunk, "usage")
        if usage:
            self.usage = usage

        choices = _get(chunk, "choices") or []
        choice = choices[0] if choices else None
        delta = _get(choice, "delta")
        finish_reason = _get(choice, "finish_reason")

        responses: list[GenerationResponse] = []
        parts: list[Part] = []
        if delta is not None:
            # Reasoning gets a response of its own: consumers classify a
            # response by its first part.
            if self._surface_reasoning:
                reasoning = _get(delta, "reasoning_content")
                if reasoning:
                    responses.append(
                        self._response([Part.from_text(reasoning, thought=True)], None)
                    )
            text = _get(delta, "content")
            if text:
                parts.append(Part.from_text(text))
            for tc in _get(delta, "tool_calls") or []:
                part = self._absorb(tc)
                if part is not None:
                    parts.append(part)

        if finish_reason:
            parts.extend(self._flush())

        if parts:
            responses.append(self._response(parts, finish_reason))
        return responses

    def finish(self) -> GenerationResponse | None:
        """Flush calls left open by a stream that ended without finish_reason."""
        parts = self._flush()
        return self._response(parts, None) if parts else None

    def _response(self, parts, finish_reason) -> GenerationResponse:
        reason = map_finish_reason(finish_reason) if finish_reason else FinishReason.OTHER
        return _single_candidate(parts, reason, self.usage)

    def _absorb(self, tc) -> Part | None:
        index = _get(tc, "index")
        if index is None:
            self._anonymous += 1
            index = ("anonymous", self._anonymous)
        pending = self._calls.setdefault(index, _PendingCall())
        call_id = _get(tc, "id")
        if call_id:
            pending.id = call_id

        fn = _get(tc, "function")
        if fn is None:
            return None
        name = _get(fn, "name")
        if name:
            pending.name = name
        fragment = _get(fn, "arguments")
        if fragment:
            pending.arguments += fragment
        if not pending.arguments:
            return None

        try:
            args = json.loads(pending.arguments)
        except json.JSONDecodeError:
            return None
        if not isinstance(args, dict):
            raise ToolCallDecodeError(
                f"arguments for tool {pending.name!r} must be a JSON object"
            )
        del self._calls[index]
        return Part.from_function_call(pending.name, args, id=pending.id or _new_call_id())

    def _flush(self) -> list[Part]:
        parts = []
        for pending in self._calls.values():
            if not pending.name and not pending.arguments:
                continue
            args = _parse_arguments(pending.arguments, pending.name)
            parts.append(
                Part.from_function_call(pending.name, args, id=pending.id or _new_call_id())
            )
        self._calls.clear()
        return parts


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def _translate_error(e: Exception) -> Exception:
    """Map LiteLLM / transport exceptions onto the agent's error taxonomy."""
    if isinstance(e, ProviderError):
        return e

    import litellm

    status = error_status(e)
    message = str(e) or type(e).__name__
    if isinstance(e, litellm.AuthenticationError) or status == 401:
        return UnauthorizedError(message, status=status or 401)
    if isinstance(e, litellm.RateLimitError) or status == 429:
        return QuotaExceededError(message, status=status or 429)
    if isinstance(e, litellm.ContextWindowExceededError):
        return ContextOverflowError(message, status=status)
    if isinstance(e, litellm.BadRequestError) and _CONTEXT_OVERFLOW_RE.search(message):
        return ContextOverflowError(message, status=status)
    return ProviderError(f"LLM call failed: {message}", status=status)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class GrokProvider:
    """Content generator backed by the xAI API through LiteLLM."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_GROK_MODEL,
        *,
        api_base: str | None = None,
        surface_reasoning: bool = False,
    ):
        self.api_key = api_key
        self.model = model
        self.api_base = api_base
        self.surface_reasoning = surface_reasoning

    def _model_string(self, model: str | None) -> str:
        model = model or self.model
        if model.startswith(PROVIDER_PREFIX):
            return model
        return PROVIDER_PREFIX + model

    def _completion_kwargs(self, request: GenerationRequest, *, stream: bool) -> dict:
        kwargs: dict = dict(
            model=self._model_string(request.model),
            messages=to_wire_messages(request.contents, request.system_instruction),
            api_key=self.api_key,
            stream=stream,
        )
        if self.api_base:
            kwargs["api_base"] = self.api_base
        tools = convert_tools(request.tools)
        if tools:
            kwargs["tools"] = tools
        cfg = request.config
        for key, val in [
            ("temperature", cfg.temperature),
            ("max_tokens", cfg.max_output_tokens),
            ("top_p", cfg.top_p),
            ("tool_choice", cfg.tool_choice),
            ("response_format", cfg.response_format),
            ("reasoning_effort", cfg.reasoning_effort),
        ]:
            if val is not None:
                kwargs[key] = val
        if stream:
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    def _complete(self, kwargs: dict):
        import litellm

        litellm.suppress_debug_info = True
        logger.debug(
            "calling %s with %d messages (stream=%s)",
            kwargs["model"],
            len(kwargs["messages"]),
            kwargs["stream"],
        )
        try:
            return litellm.completion(**kwargs)
        except Exception as e:
            error = _translate_error(e)
            if error is e:
                raise
            raise error from e

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        response = self._complete(self._completion_kwargs(request, stream=False))
        return from_wire_response(response, surface_reasoning=self.surface_reasoning)

    def generate_stream(self, request: GenerationRequest) -> Iterator[GenerationResponse]:
        """Lazily stream canonical responses. Not restartable."""
        stream = self._complete(self._completion_kwargs(request, stream=True))
        assembler = StreamAssembler(surface_reasoning=self.surface_reasoning)
        chunks = iter(stream)
        while True:
            try:
                chunk = next(chunks)
            except StopIteration:
                break
            except Exception as e:
                error = _translate_error(e)
                if error is e:
                    raise
                raise error from e
            yield from assembler.feed(chunk)
        tail = assembler.finish()
        if tail is not None:
            yield tail

    def count_tokens(self, request: GenerationRequest) -> int:
        """Estimate prompt tokens. An approximation, not the backend's count."""
        chars = 0
        images = 0
        for content in request.contents:
            for part in content.parts:
                if part.text:
                    chars += len(part.text)
                elif part.inline_data is not None:
                    images += 1
        return math.ceil(chars / CHARS_PER_TOKEN) + images * IMAGE_TOKEN_ESTIMATE

    def embed(self, request):
        raise UnsupportedOperation(
            "Embeddings are not supported by the Grok API. "
            "Use a dedicated embedding service for embedding generation."
        )
