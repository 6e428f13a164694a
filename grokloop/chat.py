"""Conversation history and the request/stream round trip for one chat."""

import json
import logging
import math
from dataclasses import dataclass, replace
from typing import Callable, Iterator

from .content import (
    MODEL,
    USER,
    Content,
    FunctionDeclaration,
    GenerationConfig,
    GenerationRequest,
    GenerationResponse,
    Part,
    merge_part_lists,
)
from .models import DEFAULT_GROK_FLASH_MODEL, token_limit
from .provider import CHARS_PER_TOKEN, IMAGE_TOKEN_ESTIMATE
from .report import QuotaExceededError

logger = logging.getLogger(__name__)

# Compress once the history reaches this fraction of the context window.
COMPRESSION_THRESHOLD = 0.7
COMPACT_MIN_CHARS = 1000
KEEP_RECENT_CONTENTS = 2


@dataclass(frozen=True)
class ChatCompressionInfo:
    original_token_count: int
    new_token_count: int


def estimate_tokens(contents) -> int:
    """Rough size of a history: text plus serialized tool traffic, 3.5 chars/token."""
    chars = 0
    images = 0
    for content in contents:
        for part in content.parts:
            if part.text is not None:
                chars += len(part.text)
            elif part.inline_data is not None:
                images += 1
            elif part.function_call is not None:
                chars += len(part.function_call.name)
                chars += len(json.dumps(part.function_call.args, default=str))
            else:
                chars += len(json.dumps(part.function_response.response, default=str))
    return math.ceil(chars / CHARS_PER_TOKEN) + images * IMAGE_TOKEN_ESTIMATE


def _consolidate(parts: list[Part]) -> list[Part]:
    """Merge adjacent answer text and drop thoughts, for storage in history."""
    out: list[Part] = []
    for part in parts:
        if part.thought:
            continue
        if part.text is not None and out and out[-1].text is not None:
            out[-1] = Part.from_text(out[-1].text + part.text)
        else:
            out.append(part)
    return out


def _compact_part(part: Part) -> Part:
    if part.function_response is not None:
        fr = part.function_response
        size = len(json.dumps(fr.response, default=str))
        if size > COMPACT_MIN_CHARS:
            return Part(
                function_response=replace(
                    fr, response={"output": f"[compacted, originally {size} chars]"}
                )
            )
    elif part.text is not None and len(part.text) > COMPACT_MIN_CHARS:
        return Part.from_text(
            f"{part.text[:200]}\n[compacted, originally {len(part.text)} chars]"
        )
    return part


class GrokChat:
    """Owns the append-only history and streams requests built from it.

    The history only grows after a stream is fully consumed: the user
    Content and the consolidated model Content are appended together, so
    an abandoned or failed stream leaves no half turn behind.
    """

    def __init__(
        self,
        provider,
        model: str,
        *,
        system_instruction: str | None = None,
        tools: tuple[FunctionDeclaration, ...] = (),
        config: GenerationConfig | None = None,
        history: list[Content] | None = None,
        flash_model: str = DEFAULT_GROK_FLASH_MODEL,
        on_fallback: Callable[[str, str], None] | None = None,
    ):
        self.provider = provider
        self.model = model
        self.system_instruction = system_instruction
        self.tools = tuple(tools)
        self.config = config or GenerationConfig()
        self.flash_model = flash_model
        self.on_fallback = on_fallback
        self.model_switched_from_quota_error = False
        self._fallback_done = False
        self._history: list[Content] = list(history or [])

    # -- History --------------------------------------------------------------

    def get_history(self, curated: bool = False) -> list[Content]:
        if not curated:
            return list(self._history)
        return [c for c in self._history if c.role != MODEL or c.parts]

    def add_history(self, content: Content) -> None:
        self._history.append(content)

    def set_history(self, history: list[Content]) -> None:
        self._history = list(history)

    def clear(self) -> None:
        self._history = []

    # -- Requests -------------------------------------------------------------

    def build_request(self, message) -> tuple[GenerationRequest, Content]:
        user_content = Content(USER, merge_part_lists(message))
        request = GenerationRequest(
            model=self.model,
            contents=[*self._history, user_content],
            system_instruction=self.system_instruction,
            tools=self.tools,
            config=self.config,
        )
        return request, user_content

    def send_message_stream(
        self, message, prompt_id: str = ""
    ) -> Iterator[GenerationResponse]:
        """Stream the model's answer to message, seeded with the full history."""
        request, user_content = self.build_request(message)
        logger.debug(
            "prompt %s: sending %d contents to %s",
            prompt_id,
            len(request.contents),
            request.model,
        )
        received: list[Part] = []
        try:
            for response in self.provider.generate_stream(request):
                if response.candidates:
                    received.extend(response.candidates[0].content.parts)
                yield response
        except QuotaExceededError:
            self._fall_back()
            raise

        self._history.append(user_content)
        self._history.append(Content(MODEL, _consolidate(received)))

    def _fall_back(self) -> None:
        if self._fallback_done or self.model == self.flash_model:
            return
        old, self.model = self.model, self.flash_model
        self._fallback_done = True
        self.model_switched_from_quota_error = True
        logger.warning("quota exceeded on %s, switching to %s", old, self.model)
        if self.on_fallback is not None:
            self.on_fallback(old, self.model)

    # -- Compression ----------------------------------------------------------

    def try_compress(self, force: bool = False) -> ChatCompressionInfo | None:
        """Compact old tool output and long texts once the history gets large.

        The most recent contents are left alone. Returns None when below the
        threshold (unless forced) or when there was nothing to compact.
        """
        original = estimate_tokens(self._history)
        threshold = int(token_limit(self.model) * COMPRESSION_THRESHOLD)
        if not force and original < threshold:
            return None

        cutoff = max(0, len(self._history) - KEEP_RECENT_CONTENTS)
        compacted = [
            Content(c.role, [_compact_part(p) for p in c.parts]) if i < cutoff else c
            for i, c in enumerate(self._history)
        ]
        new = estimate_tokens(compacted)
        if new >= original:
            return None
        self._history = compacted
        logger.debug("history compressed: %d -> %d tokens", original, new)
        return ChatCompressionInfo(original, new)
