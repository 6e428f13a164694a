"""Public library API for grokloop: Session class and Result dataclass."""

import hashlib
import logging
import os
import queue
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, assert_never

from .cancellation import CancellationToken
from .chat import GrokChat, estimate_tokens
from .checkpoint import Checkpointer, GitService
from .config import resolve_api_key
from .content import (
    USER,
    Content,
    GenerationConfig,
    Part,
    StructuredError,
    merge_part_lists,
)
from .models import DEFAULT_GROK_MODEL
from .provider import GrokProvider
from .report import AgentError, ReportCollector, UnauthorizedError, report_error
from .scheduler import ToolCallStatus, ToolScheduler, TrackedToolCall
from .tools import ToolConfirmationOutcome, ToolRegistry, default_registry
from .turn import (
    ChatCompressedEvent,
    ContentEvent,
    ErrorEvent,
    GrokEvent,
    MaxSessionTurnsEvent,
    ThoughtEvent,
    ToolCallConfirmationEvent,
    ToolCallRequestEvent,
    ToolCallResponseEvent,
    Turn,
    TurnState,
    UserCancelledEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are grokloop, a coding agent working in the user's project directory. "
    "Use the available tools to inspect and change files and to run commands. "
    "Prefer small, verifiable steps, and answer concisely once the task is done."
)

# Separates the session id from the per-session prompt counter in prompt ids.
PROMPT_ID_SEPARATOR = "########"


@dataclass
class Result:
    """Result of a run or ask call."""

    answer: str | None
    cancelled: bool
    error: StructuredError | None
    turns: int


@dataclass(frozen=True)
class HistoryItem:
    """A user-visible history entry ("user", "grok", "info" or "error")."""

    type: str
    text: str


class StreamingState(str, Enum):
    IDLE = "idle"
    RESPONDING = "responding"
    WAITING_FOR_CONFIRMATION = "waiting_for_confirmation"


@dataclass
class _Query:
    parts: list[Part]
    is_continuation: bool
    prompt_id: str


class Session:
    """Drives queries through turns, tool batches and continuations.

    submit_query() blocks until the query and all of its continuations are
    done. Only one query responds at a time; continuations re-enter through
    submit_query(is_continuation=True) and are queued behind the running
    turn. cancel() and handle_confirmation() may be called from other
    threads (or a signal handler) while a query is responding.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        model: str = DEFAULT_GROK_MODEL,
        api_key: str | None = None,
        api_base: str | None = None,
        provider=None,
        registry: ToolRegistry | None = None,
        system_instruction: str | None = DEFAULT_SYSTEM_PROMPT,
        generation_config: GenerationConfig | None = None,
        max_session_turns: int = -1,
        max_tool_workers: int = 4,
        yolo: bool = False,
        checkpointing: bool = False,
        memory_file: str | None = None,
        surface_reasoning: bool = False,
        on_event: Callable[[GrokEvent], None] | None = None,
        history_sink: Callable[[HistoryItem], None] | None = None,
        on_auth_error: Callable[[], None] | None = None,
        refresh_memory: Callable[[], None] | None = None,
        confirm_handler: Callable[[TrackedToolCall], object] | None = None,
        preferred_editor: Callable[[], str | None] | None = None,
        on_fallback: Callable[[str, str], None] | None = None,
        error_reporter: Callable = report_error,
        report: ReportCollector | None = None,
        session_id: str | None = None,
    ):
        if provider is None:
            provider = GrokProvider(
                resolve_api_key(api_key),
                model,
                api_base=api_base,
                surface_reasoning=surface_reasoning,
            )

        self.base_dir = base_dir
        self.session_id = session_id or uuid.uuid4().hex
        self.system_instruction = system_instruction
        self.max_session_turns = max_session_turns
        self.on_event = on_event
        self.history_sink = history_sink
        self.on_auth_error = on_auth_error
        self.refresh_memory = refresh_memory
        self.on_fallback = on_fallback
        self.error_reporter = error_reporter
        self.report = report

        self.registry = registry or default_registry(
            base_dir, yolo=yolo, memory_file=memory_file
        )
        if memory_file:
            self.memory_file = Path(memory_file)
        else:
            self.memory_file = Path(base_dir) / "GROKLOOP.md"
        self.chat = GrokChat(
            provider,
            model,
            system_instruction=self._compose_system_instruction(),
            tools=self.registry.declarations(),
            config=generation_config,
            on_fallback=self._on_fallback,
        )

        checkpointer = None
        if checkpointing:
            checkpointer = self._make_checkpointer()

        # Session-owned, so memory refreshes are de-duplicated across batches.
        self.processed_memory_calls: set[str] = set()
        self.scheduler = ToolScheduler(
            self.registry,
            on_all_complete=self._on_batch_complete,
            on_update=self._on_tool_update,
            confirm_handler=confirm_handler,
            checkpointer=checkpointer,
            max_workers=max_tool_workers,
            processed_memory_calls=self.processed_memory_calls,
            memory_refresh=self._refresh_memory,
            preferred_editor=preferred_editor or _default_editor,
        )

        self.ui_history: list[HistoryItem] = []
        self.prompt_count = 0
        self.session_turn_count = 0
        self.turns = 0
        self.last_answer = ""
        self.last_error: StructuredError | None = None
        self.cancelled = False

        self._lock = threading.Lock()
        self._state = StreamingState.IDLE
        self._queries: deque[_Query] = deque()
        self._token: CancellationToken | None = None
        self._prompt_id = ""
        self._owner: threading.Thread | None = None
        self._tool_events: queue.Queue = queue.Queue()
        self._seen_updates: set[tuple[str, ToolCallStatus]] = set()

    # -- Setup helpers --------------------------------------------------------

    def _make_checkpointer(self) -> Checkpointer:
        project = str(Path(self.base_dir).resolve())
        digest = hashlib.sha256(project.encode("utf-8")).hexdigest()[:16]
        root = Path.home() / ".grokloop" / "tmp" / digest
        return Checkpointer(
            str(root / "checkpoints"),
            GitService(self.base_dir, str(root / "history")),
            history_provider=lambda: self.chat.get_history(),
            ui_history_provider=lambda: list(self.ui_history),
        )

    def _compose_system_instruction(self) -> str | None:
        try:
            memory = self.memory_file.read_text(encoding="utf-8").strip()
        except OSError:
            memory = ""
        if not memory:
            return self.system_instruction
        if not self.system_instruction:
            return memory
        return f"{self.system_instruction}\n\n---\n\n{memory}"

    def _refresh_memory(self) -> None:
        self.chat.system_instruction = self._compose_system_instruction()
        logger.debug("memory refreshed from %s", self.memory_file)
        if self.refresh_memory is not None:
            self.refresh_memory()

    def _on_fallback(self, old: str, new: str) -> None:
        self._sink(HistoryItem("info", f"Switched from {old} to {new} (quota exceeded)"))
        if self.on_fallback is not None:
            self.on_fallback(old, new)

    def _sink(self, item: HistoryItem) -> None:
        self.ui_history.append(item)
        if self.history_sink is not None:
            self.history_sink(item)

    # -- Query loop -----------------------------------------------------------

    @property
    def streaming_state(self) -> StreamingState:
        with self._lock:
            if self._state is StreamingState.IDLE:
                return StreamingState.IDLE
        awaiting = any(
            c.status is ToolCallStatus.AWAITING_APPROVAL
            for c in list(self.scheduler.tool_calls)
        )
        if awaiting:
            return StreamingState.WAITING_FOR_CONFIRMATION
        return StreamingState.RESPONDING

    def submit_query(
        self, query, *, is_continuation: bool = False, prompt_id: str | None = None
    ) -> bool:
        """Run query (a string, Part, or list of them) to completion.

        Returns False when rejected because another query is responding.
        """
        with self._lock:
            busy = self._state is not StreamingState.IDLE
            if busy and not is_continuation:
                logger.debug("query rejected: already responding")
                return False
            if not is_continuation:
                self.prompt_count += 1
                self._prompt_id = (
                    prompt_id
                    or f"{self.session_id}{PROMPT_ID_SEPARATOR}{self.prompt_count}"
                )
                self._token = CancellationToken()
                self.chat.model_switched_from_quota_error = False
                self.turns = 0
                self.last_answer = ""
                self.last_error = None
                self.cancelled = False
            elif self._token is None:
                self._token = CancellationToken()
            self._queries.append(
                _Query(
                    merge_part_lists(query),
                    is_continuation,
                    prompt_id or self._prompt_id,
                )
            )
            if busy:
                return True
            self._state = StreamingState.RESPONDING

        if not is_continuation and isinstance(query, str):
            self._sink(HistoryItem("user", query))
        self._drive()
        return True

    def _drive(self) -> None:
        self._owner = threading.current_thread()
        try:
            while True:
                with self._lock:
                    if not self._queries or self._token.cancelled:
                        break
                    query = self._queries.popleft()
                self._run_query(query)
        finally:
            with self._lock:
                dropped = list(self._queries)
                self._queries.clear()
                self._state = StreamingState.IDLE

        for query in dropped:
            self._commit_unsent(query)

        if self._token.cancelled and not self.cancelled:
            # Cancelled while tools were running rather than mid-stream.
            self._dispatch(UserCancelledEvent())
        if self.last_answer:
            self._sink(HistoryItem("grok", self.last_answer))

    def _run_query(self, query: _Query) -> None:
        token = self._token
        self.session_turn_count += 1
        if 0 < self.max_session_turns < self.session_turn_count:
            self._dispatch(MaxSessionTurnsEvent(self.max_session_turns))
            self._commit_unsent(query)
            return

        info = self.chat.try_compress()
        if info is not None:
            self._dispatch(
                ChatCompressedEvent(info.original_token_count, info.new_token_count)
            )

        self.turns += 1
        turn = Turn(self.chat, query.prompt_id, error_reporter=self.error_reporter)
        token_est = estimate_tokens(self.chat.get_history())
        started = time.monotonic()
        try:
            for event in turn.run(query.parts, token):
                self._dispatch(event)
        except UnauthorizedError:
            self._record_llm_call(turn, started, token_est)
            self._commit_unsent(query)
            if self.on_auth_error is None:
                raise
            self.on_auth_error()
            return
        self._record_llm_call(turn, started, token_est)

        if turn.state is not TurnState.COMPLETED:
            self._commit_unsent(query)
        elif turn.pending_tool_calls:
            self._run_tool_batch(turn.pending_tool_calls, token, query.prompt_id)

    def _commit_unsent(self, query: _Query) -> None:
        # Tool results must follow their calls in history even when never sent.
        if query.is_continuation:
            self.chat.add_history(Content(USER, query.parts))

    def _record_llm_call(self, turn: Turn, started: float, token_est: int) -> None:
        if self.report is not None:
            self.report.record_llm_call(
                self.session_turn_count,
                time.monotonic() - started,
                token_est,
                turn.state.value,
            )

    def _dispatch(self, event: GrokEvent) -> None:
        if isinstance(event, ContentEvent):
            self.last_answer += event.text
        elif isinstance(event, UserCancelledEvent):
            self.cancelled = True
            if self.report is not None:
                self.report.record_cancellation(self.session_turn_count)
        elif isinstance(event, ErrorEvent):
            self.last_error = event.error
            self._sink(HistoryItem("error", event.error.message))
            if self.report is not None:
                self.report.record_error(
                    self.session_turn_count, event.error.message, event.error.status
                )
        elif isinstance(event, ChatCompressedEvent):
            if self.report is not None:
                self.report.record_compression(
                    self.session_turn_count,
                    event.original_token_count,
                    event.new_token_count,
                )
        elif isinstance(event, MaxSessionTurnsEvent):
            self._sink(
                HistoryItem("info", f"Maximum session turns ({event.limit}) reached")
            )
        elif isinstance(
            event,
            (
                ThoughtEvent,
                ToolCallRequestEvent,
                ToolCallResponseEvent,
                ToolCallConfirmationEvent,
            ),
        ):
            pass
        else:
            assert_never(event)

        if self.on_event is not None:
            self.on_event(event)

    # -- Tool batches ---------------------------------------------------------

    def _run_tool_batch(self, requests, token: CancellationToken, prompt_id: str) -> None:
        self.scheduler.schedule(requests, token)
        completed = self._wait_for_batch()
        for call in completed:
            self._handle_tool_update(call)

        parts = self.scheduler.prepare_continuation(
            completed,
            add_history=self.chat.add_history,
            model_switched=self.chat.model_switched_from_quota_error,
        )
        if parts:
            self.submit_query(parts, is_continuation=True, prompt_id=prompt_id)

    def _wait_for_batch(self) -> list[TrackedToolCall]:
        # Short timeouts keep the main thread responsive to SIGINT.
        while True:
            try:
                kind, payload = self._tool_events.get(timeout=0.1)
            except queue.Empty:
                continue
            if kind == "update":
                self._handle_tool_update(payload)
            else:
                return payload

    def _on_tool_update(self, call: TrackedToolCall) -> None:
        if threading.current_thread() is self._owner:
            self._handle_tool_update(call)
        else:
            self._tool_events.put(("update", call))

    def _on_batch_complete(self, completed: list[TrackedToolCall]) -> None:
        self._tool_events.put(("complete", completed))

    def _handle_tool_update(self, call: TrackedToolCall) -> None:
        status = call.status
        if status is not ToolCallStatus.AWAITING_APPROVAL and not call.is_terminal:
            return
        key = (call.call_id, status)
        if key in self._seen_updates:
            return
        self._seen_updates.add(key)

        if status is ToolCallStatus.AWAITING_APPROVAL:
            self._dispatch(
                ToolCallConfirmationEvent(call.request, call.confirmation_details)
            )
            return

        if self.report is not None:
            error = call.response.error if call.response else None
            self.report.record_tool_call(
                self.session_turn_count,
                call.name,
                call.request.args,
                status.value,
                call.duration or 0.0,
                error=str(error) if error is not None else None,
            )
        self._dispatch(ToolCallResponseEvent(call.response))

    # -- Controls -------------------------------------------------------------

    def cancel(self) -> None:
        token = self._token
        if token is not None:
            token.cancel()

    def handle_confirmation(
        self, call_id: str, outcome: ToolConfirmationOutcome
    ) -> None:
        self.scheduler.handle_confirmation(call_id, outcome, self._token)

    def ask(self, question: str) -> Result:
        """Ask a question, keeping the conversation from earlier calls."""
        if not self.submit_query(question):
            raise AgentError("a query is already responding")
        return Result(
            answer=self.last_answer or None,
            cancelled=self.cancelled,
            error=self.last_error,
            turns=self.turns,
        )

    def run(self, question: str) -> Result:
        """Single-shot: start from an empty conversation and answer question."""
        self.reset()
        return self.ask(question)

    def reset(self) -> None:
        self.chat.clear()
        self.ui_history.clear()

    def close(self) -> None:
        self.scheduler.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _default_editor() -> str | None:
    return os.environ.get("VISUAL") or os.environ.get("EDITOR")
