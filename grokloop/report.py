"""Error taxonomy, best-effort error reports, and JSON run reports."""

import json
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class UnsupportedOperation(AgentError):
    """Raised when the backend has no equivalent for a canonical operation."""


class ProviderError(AgentError):
    """A transport or backend failure. ``status`` is the HTTP status when known."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class UnauthorizedError(ProviderError):
    """The backend rejected the credential. Fatal to the turn, never retried."""


class QuotaExceededError(ProviderError):
    """Rate limit or quota exhaustion; triggers the flash-model fallback."""


class ContextOverflowError(ProviderError):
    """Raised when the LLM call fails due to context window overflow."""


class ToolCallDecodeError(ProviderError):
    """The backend sent tool-call arguments that are not valid JSON."""


def get_error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def error_status(error: BaseException) -> int | None:
    """Numeric HTTP status carried by error, if any."""
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def to_friendly_error(error: BaseException) -> BaseException:
    """Promote untyped 401 failures to UnauthorizedError; pass others through."""
    if isinstance(error, ProviderError):
        return error
    if error_status(error) == 401:
        return UnauthorizedError(get_error_message(error), status=401)
    return error


def to_jsonable(value):
    if hasattr(value, "__dataclass_fields__"):
        return {k: to_jsonable(getattr(value, k)) for k in value.__dataclass_fields__}
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return repr(value)


def report_error(
    error: BaseException,
    base_message: str,
    context=None,
    operation: str = "general",
    *,
    report_dir: str | Path | None = None,
) -> Path | None:
    """Write a JSON diagnosis for error. Returns the file path, or None.

    Failures of the reporter itself are logged and swallowed.
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S_%fZ")
    directory = Path(report_dir) if report_dir else Path(tempfile.gettempdir())
    path = directory / f"grokloop-client-error-{operation}-{timestamp}.json"
    payload: dict = {
        "error": {"message": get_error_message(error), "type": type(error).__name__},
        "status": error_status(error),
    }
    if context is not None:
        payload["context"] = to_jsonable(context)

    try:
        text = json.dumps(payload, indent=2)
    except (TypeError, ValueError) as e:
        logger.error("%s: could not serialize error report: %s", base_message, e)
        try:
            text = json.dumps({"error": payload["error"]}, indent=2)
        except (TypeError, ValueError):
            return None

    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_text(text + "\n", encoding="utf-8")
    except OSError as e:
        logger.error("%s: failed to write error report: %s", base_message, e)
        return None
    logger.error("%s. Full report available at: %s", base_message, path)
    return path


class ReportCollector:
    """Accumulates events during a session for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.compressions = 0
        self.errors = 0
        self.cancellations = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_turn_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(self, turn: int, duration: float, token_est: int, outcome: str):
        self.llm_calls += 1
        self.total_llm_time += duration
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        self.events.append(
            {
                "turn": turn,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "outcome": outcome,
            }
        )

    def record_tool_call(
        self,
        turn: int,
        name: str,
        arguments: dict | None,
        status: str,
        duration: float,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(
            name, {"succeeded": 0, "failed": 0, "cancelled": 0}
        )
        if status == "success":
            stats["succeeded"] += 1
        elif status == "cancelled":
            stats["cancelled"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "turn": turn,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "status": status,
            "duration_s": round(duration, 3),
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_compression(self, turn: int, tokens_before: int, tokens_after: int):
        self.compressions += 1
        self.events.append(
            {
                "turn": turn,
                "type": "compression",
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_error(self, turn: int, message: str, status: int | None):
        self.errors += 1
        self.events.append(
            {"turn": turn, "type": "error", "message": message, "status": status}
        )

    def record_cancellation(self, turn: int):
        self.cancellations += 1
        self.events.append({"turn": turn, "type": "cancelled"})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
    ) -> dict:
        succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        failed = sum(s["failed"] for s in self.tool_stats.values())
        cancelled = sum(s["cancelled"] for s in self.tool_stats.values())

        result: dict = {"outcome": outcome, "answer": answer, "exit_code": exit_code}
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "tool_calls_total": succeeded + failed + cancelled,
                "tool_calls_succeeded": succeeded,
                "tool_calls_failed": failed,
                "tool_calls_cancelled": cancelled,
                "tool_calls_by_name": dict(self.tool_stats),
                "compressions": self.compressions,
                "errors": self.errors,
                "cancellations": self.cancellations,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
