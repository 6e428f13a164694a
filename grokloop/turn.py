"""The turn engine: one request/response exchange, classified into events.

Events form a closed union (``GrokEvent``). Code that dispatches on them
should end with ``typing.assert_never`` so a new event kind shows up at
every consumer.
"""

import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Union

from .cancellation import CancellationToken
from .content import (
    FinishReason,
    StructuredError,
    ToolCallRequestInfo,
    ToolCallResponseInfo,
)
from .report import (
    UnauthorizedError,
    error_status,
    get_error_message,
    report_error,
    to_friendly_error,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESPONSE = "tool_call_response"
    TOOL_CALL_CONFIRMATION = "tool_call_confirmation"
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"
    CHAT_COMPRESSED = "chat_compressed"
    MAX_SESSION_TURNS = "max_session_turns"


@dataclass(frozen=True)
class ThoughtSummary:
    subject: str
    description: str


@dataclass(frozen=True)
class ContentEvent:
    text: str
    type: EventType = field(default=EventType.CONTENT, init=False)


@dataclass(frozen=True)
class ThoughtEvent:
    thought: ThoughtSummary
    type: EventType = field(default=EventType.THOUGHT, init=False)


@dataclass(frozen=True)
class ToolCallRequestEvent:
    request: ToolCallRequestInfo
    type: EventType = field(default=EventType.TOOL_CALL_REQUEST, init=False)


@dataclass(frozen=True)
class ToolCallResponseEvent:
    response: ToolCallResponseInfo
    type: EventType = field(default=EventType.TOOL_CALL_RESPONSE, init=False)


@dataclass(frozen=True)
class ToolCallConfirmationEvent:
    request: ToolCallRequestInfo
    details: object
    type: EventType = field(default=EventType.TOOL_CALL_CONFIRMATION, init=False)


@dataclass(frozen=True)
class UserCancelledEvent:
    type: EventType = field(default=EventType.USER_CANCELLED, init=False)


@dataclass(frozen=True)
class ErrorEvent:
    error: StructuredError
    type: EventType = field(default=EventType.ERROR, init=False)


@dataclass(frozen=True)
class ChatCompressedEvent:
    original_token_count: int
    new_token_count: int
    type: EventType = field(default=EventType.CHAT_COMPRESSED, init=False)


@dataclass(frozen=True)
class MaxSessionTurnsEvent:
    limit: int
    type: EventType = field(default=EventType.MAX_SESSION_TURNS, init=False)


GrokEvent = Union[
    ContentEvent,
    ThoughtEvent,
    ToolCallRequestEvent,
    ToolCallResponseEvent,
    ToolCallConfirmationEvent,
    UserCancelledEvent,
    ErrorEvent,
    ChatCompressedEvent,
    MaxSessionTurnsEvent,
]


class TurnState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


_SUBJECT_RE = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


def parse_thought(text: str) -> ThoughtSummary:
    """Split reasoning text into its **bold** subject and the rest."""
    match = _SUBJECT_RE.search(text)
    subject = match.group(1).strip() if match else ""
    description = _SUBJECT_RE.sub("", text, count=1).strip()
    return ThoughtSummary(subject=subject, description=description)


def _generate_call_id(name: str) -> str:
    return f"{name}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


class Turn:
    """Drives one exchange: RUNNING -> COMPLETED | CANCELLED | ERRORED.

    Function calls seen during the stream are collected in
    ``pending_tool_calls`` for the caller to hand to the scheduler once the
    stream is done.
    """

    def __init__(
        self,
        chat,
        prompt_id: str,
        *,
        error_reporter: Callable = report_error,
    ):
        self.chat = chat
        self.prompt_id = prompt_id
        self.error_reporter = error_reporter
        self.pending_tool_calls: list[ToolCallRequestInfo] = []
        self.debug_responses: list = []
        self.state = TurnState.RUNNING
        self.finish_reason: FinishReason | None = None

    def run(self, message, signal: CancellationToken) -> Iterator[GrokEvent]:
        stream = None
        try:
            stream = self.chat.send_message_stream(message, self.prompt_id)
            for response in stream:
                if signal.cancelled:
                    # The chunk in hand is discarded.
                    self.state = TurnState.CANCELLED
                    yield UserCancelledEvent()
                    return
                self.debug_responses.append(response)
                yield from self._classify(response)
        except Exception as e:
            error = to_friendly_error(e)
            if isinstance(error, UnauthorizedError):
                self.state = TurnState.ERRORED
                if error is e:
                    raise
                raise error from e
            if signal.cancelled:
                self.state = TurnState.CANCELLED
                yield UserCancelledEvent()
                return

            self.state = TurnState.ERRORED
            context = [*self.chat.get_history(curated=True), message]
            self.error_reporter(
                error,
                "Error when talking to Grok API",
                context,
                "Turn.run-sendMessageStream",
            )
            yield ErrorEvent(
                StructuredError(get_error_message(error), error_status(error))
            )
            return
        finally:
            if stream is not None:
                stream.close()

        self.state = TurnState.COMPLETED

    def _classify(self, response) -> Iterator[GrokEvent]:
        if not response.candidates:
            return
        candidate = response.candidates[0]
        self.finish_reason = candidate.finish_reason

        parts = candidate.content.parts
        if parts and parts[0].thought:
            yield ThoughtEvent(parse_thought(parts[0].text or ""))
            return

        text = response.text
        if text:
            yield ContentEvent(text)

        for fc in response.function_calls:
            name = fc.name or "undefined_tool_name"
            request = ToolCallRequestInfo(
                call_id=fc.id or _generate_call_id(name),
                name=name,
                args=dict(fc.args or {}),
                is_client_initiated=False,
                prompt_id=self.prompt_id,
            )
            self.pending_tool_calls.append(request)
            yield ToolCallRequestEvent(request)
