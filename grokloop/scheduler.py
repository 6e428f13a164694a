"""Tool-call scheduler: approval lifecycle, bounded execution, batch join.

Each requested call is tracked as a TrackedToolCall moving forward through

    validating -> [awaiting_approval ->] scheduled -> executing
        -> success | error | cancelled

with ``cancelled`` reachable from every non-terminal state. Scheduled
calls run on a bounded thread pool; ``on_all_complete`` fires exactly once
per batch, after the last call reaches a terminal state.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

from .cancellation import CancellationToken
from .content import (
    USER,
    Content,
    Part,
    ToolCallRequestInfo,
    ToolCallResponseInfo,
    merge_part_lists,
)
from .tools import (
    MEMORY_TOOL_NAME,
    ConfirmationDetails,
    Tool,
    ToolConfirmationOutcome,
    ToolRegistry,
)

logger = logging.getLogger(__name__)

# Tools whose effect on the filesystem gets a recovery record before approval.
RESTORABLE_TOOLS = frozenset({"replace", "write_file"})

DEFAULT_MAX_WORKERS = 4


class ToolCallStatus(str, Enum):
    VALIDATING = "validating"
    AWAITING_APPROVAL = "awaiting_approval"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.CANCELLED}
)

_TRANSITIONS = {
    ToolCallStatus.VALIDATING: {
        ToolCallStatus.AWAITING_APPROVAL,
        ToolCallStatus.SCHEDULED,
        ToolCallStatus.ERROR,
        ToolCallStatus.CANCELLED,
    },
    ToolCallStatus.AWAITING_APPROVAL: {
        ToolCallStatus.SCHEDULED,
        ToolCallStatus.ERROR,
        ToolCallStatus.CANCELLED,
    },
    ToolCallStatus.SCHEDULED: {ToolCallStatus.EXECUTING, ToolCallStatus.CANCELLED},
    ToolCallStatus.EXECUTING: {
        ToolCallStatus.SUCCESS,
        ToolCallStatus.ERROR,
        ToolCallStatus.CANCELLED,
    },
}


@dataclass
class TrackedToolCall:
    request: ToolCallRequestInfo
    status: ToolCallStatus = ToolCallStatus.VALIDATING
    tool: Tool | None = None
    response: ToolCallResponseInfo | None = None
    confirmation_details: ConfirmationDetails | None = None
    outcome: ToolConfirmationOutcome | None = None
    start_time: float = field(default_factory=time.monotonic)
    duration: float | None = None
    response_submitted: bool = False

    @property
    def call_id(self) -> str:
        return self.request.call_id

    @property
    def name(self) -> str:
        return self.request.name

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def convert_to_function_response(name: str, call_id: str, llm_content) -> list[Part]:
    """Wrap a tool's output as a functionResponse part.

    Text becomes ``{"output": text}``. Inline data (images etc.) cannot live
    inside a function response, so those parts follow it.
    """
    if isinstance(llm_content, str):
        return [Part.from_function_response(name, {"output": llm_content}, id=call_id)]

    parts = merge_part_lists(llm_content)
    if len(parts) == 1 and parts[0].function_response is not None:
        return [
            Part(function_response=replace(parts[0].function_response, id=call_id))
        ]
    texts = [p.text for p in parts if p.text is not None]
    extra = [p for p in parts if p.text is None]
    if texts:
        output = "\n".join(texts)
    elif extra:
        output = f"Tool returned {len(extra)} binary part(s), attached below."
    else:
        output = "Tool execution succeeded."
    response = Part.from_function_response(name, {"output": output}, id=call_id)
    return [response, *extra]


def error_response(name: str, call_id: str, message: str) -> list[Part]:
    return [Part.from_function_response(name, {"error": message}, id=call_id)]


def cancelled_response(name: str, call_id: str, reason: str) -> list[Part]:
    return error_response(name, call_id, f"[Operation Cancelled] Reason: {reason}")


class ToolScheduler:
    """Owns the lifecycle of every requested tool call in a batch.

    ``confirm_handler(call)`` is asked for approval when a call enters
    awaiting_approval; returning None leaves the call waiting for
    handle_confirmation(). ``on_update(call)`` is told about every status
    change and may be called from worker threads, as may
    ``on_all_complete``.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        on_all_complete: Callable[[list[TrackedToolCall]], None] | None = None,
        on_update: Callable[[TrackedToolCall], None] | None = None,
        confirm_handler: Callable[[TrackedToolCall], object] | None = None,
        checkpointer=None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        processed_memory_calls: set[str] | None = None,
        memory_refresh: Callable[[], None] | None = None,
        preferred_editor: Callable[[], str | None] | None = None,
    ):
        self.registry = registry
        self.on_all_complete = on_all_complete
        self.on_update = on_update
        self.confirm_handler = confirm_handler
        self.checkpointer = checkpointer
        self.memory_refresh = memory_refresh
        self.preferred_editor = preferred_editor
        if processed_memory_calls is None:
            processed_memory_calls = set()
        self.processed_memory_calls = processed_memory_calls
        self.tool_calls: list[TrackedToolCall] = []
        self.last_batch: list[TrackedToolCall] = []
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="grokloop-tool"
        )
        self._lock = threading.RLock()
        self._signal: CancellationToken | None = None
        self._completion_fired = False
        self._checkpointed: set[str] = set()

    # -- State transitions ----------------------------------------------------

    def _transition(self, call: TrackedToolCall, status: ToolCallStatus) -> None:
        with self._lock:
            if status not in _TRANSITIONS.get(call.status, ()):
                raise ValueError(
                    f"illegal tool call transition {call.status.value} -> "
                    f"{status.value} for {call.call_id}"
                )
            call.status = status
            if status in TERMINAL_STATUSES:
                call.duration = time.monotonic() - call.start_time
        self._notify(call)

    def _finish(
        self,
        call: TrackedToolCall,
        status: ToolCallStatus,
        parts: list[Part],
        display=None,
        error: BaseException | None = None,
    ) -> bool:
        """Move call to a terminal status with its response. False if already final."""
        with self._lock:
            if call.is_terminal:
                return False
            call.response = ToolCallResponseInfo(
                call_id=call.call_id,
                response_parts=parts,
                result_display=display,
                error=error,
            )
            self._transition(call, status)
        return True

    def _set_error(self, call, message: str, error: BaseException | None = None) -> None:
        self._finish(
            call,
            ToolCallStatus.ERROR,
            error_response(call.name, call.call_id, message),
            display=message,
            error=error or RuntimeError(message),
        )

    def _set_cancelled(self, call, reason: str) -> None:
        details = call.confirmation_details
        self._finish(
            call,
            ToolCallStatus.CANCELLED,
            cancelled_response(call.name, call.call_id, reason),
            display=details.message if details is not None else None,
        )

    def _notify(self, call: TrackedToolCall) -> None:
        if self.on_update is not None:
            self.on_update(call)

    # -- Scheduling -----------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._lock:
            return bool(self.tool_calls)

    def schedule(
        self, requests: list[ToolCallRequestInfo], signal: CancellationToken
    ) -> None:
        """Start a batch. Refuses while a previous batch is still running."""
        with self._lock:
            if self.tool_calls:
                raise RuntimeError(
                    "cannot schedule new tool calls while others are running"
                )
            calls = [TrackedToolCall(request) for request in requests]
            if not calls:
                return
            self.tool_calls = calls
            self._signal = signal
            self._completion_fired = False

        signal.add_callback(lambda: self._cancel_outstanding(calls))

        for call in calls:
            self._validate(call, signal)
        for call in calls:
            if call.status is ToolCallStatus.AWAITING_APPROVAL:
                self._ask_confirmation(call, signal)

        self._attempt_execution(signal)
        self._check_all_complete()

    def _validate(self, call: TrackedToolCall, signal: CancellationToken) -> None:
        if call.status is not ToolCallStatus.VALIDATING:
            return
        tool = self.registry.get_tool(call.name)
        if tool is None:
            self._set_error(call, f'Tool "{call.name}" not found in registry.')
            return
        call.tool = tool
        problem = tool.validate_params(call.request.args)
        if problem:
            self._set_error(call, f"Invalid parameters for {call.name}: {problem}")
            return
        if signal.cancelled:
            self._set_cancelled(call, "User cancelled tool execution.")
            return

        try:
            details = tool.should_confirm_execute(call.request.args, signal)
        except Exception as e:
            self._set_error(call, f"Error while preparing {call.name}: {e}", e)
            return

        with self._lock:
            if call.status is not ToolCallStatus.VALIDATING:
                return
            if details is None:
                self._transition(call, ToolCallStatus.SCHEDULED)
                return
            call.confirmation_details = details
            self._transition(call, ToolCallStatus.AWAITING_APPROVAL)
        self._record_recovery_point(call)

    def _record_recovery_point(self, call: TrackedToolCall) -> None:
        if self.checkpointer is None or call.name not in RESTORABLE_TOOLS:
            return
        with self._lock:
            if call.call_id in self._checkpointed:
                return
            self._checkpointed.add(call.call_id)
        try:
            self.checkpointer.record(call.request)
        except Exception:
            logger.exception("failed to record checkpoint for %s", call.call_id)

    def _ask_confirmation(self, call: TrackedToolCall, signal: CancellationToken) -> None:
        if self.confirm_handler is None:
            return
        outcome = self.confirm_handler(call)
        if outcome is not None:
            self.handle_confirmation(call.call_id, outcome, signal)

    def _find(self, call_id: str) -> TrackedToolCall | None:
        with self._lock:
            for call in self.tool_calls:
                if call.call_id == call_id:
                    return call
        return None

    def handle_confirmation(
        self,
        call_id: str,
        outcome: ToolConfirmationOutcome,
        signal: CancellationToken | None = None,
    ) -> None:
        signal = signal or self._signal
        call = self._find(call_id)
        if call is None or call.status is not ToolCallStatus.AWAITING_APPROVAL:
            logger.warning("no tool call awaiting approval with id %s", call_id)
            return

        call.outcome = outcome
        details = call.confirmation_details
        if details is not None and details.on_confirm is not None:
            details.on_confirm(outcome)

        if outcome is ToolConfirmationOutcome.CANCEL or signal.cancelled:
            self._set_cancelled(call, "User did not allow tool call")
        elif outcome is ToolConfirmationOutcome.MODIFY_WITH_EDITOR:
            self._modify_with_editor(call, signal)
            return
        else:
            with self._lock:
                if call.status is ToolCallStatus.AWAITING_APPROVAL:
                    self._transition(call, ToolCallStatus.SCHEDULED)

        self._attempt_execution(signal)
        self._check_all_complete()

    def _modify_with_editor(self, call: TrackedToolCall, signal) -> None:
        editor = self.preferred_editor() if self.preferred_editor else None
        modify = getattr(call.tool, "modify_with_editor", None)
        if not editor or modify is None:
            logger.warning("cannot modify %s: no editor available", call.name)
        else:
            try:
                args = modify(call.request.args, editor)
            except Exception as e:
                logger.warning("editing %s failed: %s", call.name, e)
            else:
                call.request = replace(call.request, args=args)
                call.confirmation_details = call.tool.should_confirm_execute(
                    args, signal
                ) or call.confirmation_details
                self._notify(call)
        # Approval is asked again for the modified call.
        self._ask_confirmation(call, signal)

    def _attempt_execution(self, signal: CancellationToken) -> None:
        with self._lock:
            ready = all(
                c.status is ToolCallStatus.SCHEDULED or c.is_terminal
                for c in self.tool_calls
            )
            if not ready:
                return
            to_run = []
            for call in self.tool_calls:
                if call.status is not ToolCallStatus.SCHEDULED:
                    continue
                if signal.cancelled:
                    self._set_cancelled(call, "User cancelled tool execution.")
                    continue
                self._transition(call, ToolCallStatus.EXECUTING)
                to_run.append(call)
        for call in to_run:
            self._executor.submit(self._execute, call, signal)

    def _execute(self, call: TrackedToolCall, signal: CancellationToken) -> None:
        try:
            if signal.cancelled:
                # Queued behind other calls and never started.
                self._set_cancelled(call, "User cancelled tool execution.")
                return
            try:
                result = call.tool.execute(call.request.args, signal)
            except Exception as e:
                logger.debug("tool %s raised", call.name, exc_info=True)
                if signal.cancelled:
                    self._set_cancelled(call, "User cancelled tool execution.")
                else:
                    self._set_error(call, f"Error executing tool {call.name}: {e}", e)
                return

            if signal.cancelled:
                self._set_cancelled(call, "User cancelled tool execution.")
            elif result.error:
                self._set_error(call, result.error)
            else:
                self._finish(
                    call,
                    ToolCallStatus.SUCCESS,
                    convert_to_function_response(
                        call.name, call.call_id, result.llm_content
                    ),
                    display=result.return_display,
                )
        finally:
            self._check_all_complete()

    def _cancel_outstanding(self, calls: list[TrackedToolCall]) -> None:
        """Cancel every call of a batch that is not executing or finished."""
        for call in calls:
            with self._lock:
                waiting = call.status in (
                    ToolCallStatus.VALIDATING,
                    ToolCallStatus.AWAITING_APPROVAL,
                    ToolCallStatus.SCHEDULED,
                )
                if waiting:
                    self._set_cancelled(call, "User cancelled tool execution.")
        self._check_all_complete()

    def _check_all_complete(self) -> None:
        with self._lock:
            if self._completion_fired or not self.tool_calls:
                return
            if not all(c.is_terminal for c in self.tool_calls):
                return
            self._completion_fired = True
            completed = self.tool_calls
            self.last_batch = completed
            self.tool_calls = []
        logger.debug("tool batch complete: %d call(s)", len(completed))
        if self.on_all_complete is not None:
            self.on_all_complete(list(completed))

    # -- Continuation ---------------------------------------------------------

    def mark_submitted(self, call_ids) -> None:
        ids = set(call_ids)
        with self._lock:
            for call in [*self.tool_calls, *self.last_batch]:
                if call.call_id in ids:
                    call.response_submitted = True

    def prepare_continuation(
        self,
        completed: list[TrackedToolCall],
        *,
        add_history: Callable[[Content], None],
        model_switched: bool = False,
    ) -> list[Part] | None:
        """Apply the continuation policy to a finished batch.

        Returns the merged response parts to send back to the model, or None
        when nothing should be sent.
        """
        client = [c for c in completed if c.request.is_client_initiated]
        if client:
            self.mark_submitted(c.call_id for c in client)

        self._refresh_memory(completed)

        model_calls = [c for c in completed if not c.request.is_client_initiated]
        if not model_calls:
            return None

        parts = merge_part_lists([c.response.response_parts for c in model_calls])
        ids = [c.call_id for c in model_calls]

        if all(c.status is ToolCallStatus.CANCELLED for c in model_calls):
            # Let the next turn see that these tools never ran.
            add_history(Content(USER, parts))
            self.mark_submitted(ids)
            return None

        if model_switched:
            logger.info("not continuing: model was switched after a quota error")
            add_history(Content(USER, parts))
            self.mark_submitted(ids)
            return None

        self.mark_submitted(ids)
        return parts

    def _refresh_memory(self, completed: list[TrackedToolCall]) -> None:
        new_saves = [
            c
            for c in completed
            if c.name == MEMORY_TOOL_NAME
            and c.status is ToolCallStatus.SUCCESS
            and c.call_id not in self.processed_memory_calls
        ]
        if not new_saves:
            return
        self.processed_memory_calls.update(c.call_id for c in new_saves)
        if self.memory_refresh is not None:
            self.memory_refresh()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
