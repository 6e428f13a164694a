"""Command-line entry point: single-shot questions and the interactive REPL."""

import argparse
import contextlib
import json
import os
import signal
import sys
from datetime import datetime
from importlib import metadata
from pathlib import Path
from typing import assert_never

from . import fmt
from .config import (
    CONFIG_KEYS,
    _UNSET,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    load_config,
)
from .content import ToolCallResponseInfo
from .report import AgentError, ConfigError, ReportCollector
from .session import Result, Session
from .tools import ToolConfirmationOutcome
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
    UserCancelledEvent,
)

MAX_HISTORY_SIZE = 500 * 1024  # 500 KB

_CANCELLED_MARKER = "[Operation Cancelled]"

_CONFIRM_ANSWERS = {
    "y": ToolConfirmationOutcome.PROCEED_ONCE,
    "yes": ToolConfirmationOutcome.PROCEED_ONCE,
    "a": ToolConfirmationOutcome.PROCEED_ALWAYS,
    "always": ToolConfirmationOutcome.PROCEED_ALWAYS,
    "e": ToolConfirmationOutcome.MODIFY_WITH_EDITOR,
    "edit": ToolConfirmationOutcome.MODIFY_WITH_EDITOR,
}


def _safe_history_path(base_dir: str) -> Path:
    """Build history path, verify it resolves inside base_dir."""
    base = Path(base_dir).resolve()
    history_path = (Path(base_dir) / ".grokloop" / "HISTORY.md").resolve()
    if not history_path.is_relative_to(base):
        raise ValueError(f"history path {history_path} escapes base directory {base}")
    return history_path


def append_history(base_dir: str, question: str, answer: str) -> None:
    """Append a timestamped Q&A entry to .grokloop/HISTORY.md."""
    if not answer or not answer.strip():
        return

    try:
        history_path = _safe_history_path(base_dir)
    except ValueError:
        fmt.warning("history path escapes base directory, skipping write")
        return

    try:
        history_path.parent.mkdir(parents=True, exist_ok=True)

        current_size = history_path.stat().st_size if history_path.exists() else 0
        if current_size >= MAX_HISTORY_SIZE:
            fmt.warning("history file at capacity, skipping write")
            return

        q_display = question[:200] + "..." if len(question) > 200 else question
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        entry = f"---\n\n**{timestamp}** *{q_display}*\n\n{answer}\n\n"

        with history_path.open("a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        fmt.warning("failed to write history entry")


def build_parser():
    """Build and return the argument parser.

    Options that config files may set default to ``_UNSET`` so that
    apply_config_to_args() can tell "not given" from an explicit value.
    """
    parser = argparse.ArgumentParser(
        prog="grokloop",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A terminal coding agent backed by Grok, with tool calling.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Grok model identifier (default: grok-4-0709).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="xAI API key (overrides GROK_API_KEY).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="API base URL (default: https://api.x.ai/v1).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response.",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=_UNSET,
        help="Top-p (nucleus) sampling.",
    )
    parser.add_argument(
        "--reasoning-effort",
        choices=["low", "medium", "high"],
        default=_UNSET,
        help="Reasoning effort for models that support it.",
    )
    parser.add_argument(
        "--max-session-turns",
        type=int,
        default=_UNSET,
        help="Maximum model turns per session, -1 for unlimited (default: -1).",
    )
    parser.add_argument(
        "--max-tool-workers",
        type=int,
        default=_UNSET,
        help="Tool calls executed in parallel (default: 4).",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System prompt to use instead of the built-in one.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Project directory the tools work in (default: current directory).",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Approve every tool call without asking.",
    )
    parser.add_argument(
        "--checkpointing",
        action="store_true",
        default=_UNSET,
        help="Snapshot the project before file edits are approved.",
    )
    parser.add_argument(
        "--show-thoughts",
        action="store_true",
        default=_UNSET,
        help="Print the model's reasoning as it arrives.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--no-history",
        action="store_true",
        help="Don't write responses to .grokloop/HISTORY.md",
    )

    return parser


# ---------------------------------------------------------------------------
# Terminal callbacks
# ---------------------------------------------------------------------------


def _response_status(response: ToolCallResponseInfo) -> str:
    if response.error is not None:
        return "error"
    for part in response.response_parts:
        fr = part.function_response
        if fr is None:
            continue
        error = fr.response.get("error") if isinstance(fr.response, dict) else None
        if isinstance(error, str) and error.startswith(_CANCELLED_MARKER):
            return "cancelled"
    return "success"


class EventPrinter:
    """Renders session events on stderr. The final answer goes to stdout."""

    def __init__(self, *, verbose: bool = True, show_thoughts: bool = False):
        self.verbose = verbose
        self.show_thoughts = show_thoughts
        self._names: dict[str, str] = {}

    def __call__(self, event: GrokEvent) -> None:
        if isinstance(event, ContentEvent):
            pass
        elif isinstance(event, ThoughtEvent):
            if self.verbose and self.show_thoughts:
                fmt.thought(event.thought.subject, event.thought.description)
        elif isinstance(event, ToolCallRequestEvent):
            self._names[event.request.call_id] = event.request.name
            if self.verbose:
                fmt.tool_call(
                    event.request.name, json.dumps(event.request.args, indent=2)
                )
        elif isinstance(event, ToolCallResponseEvent):
            self._tool_response(event.response)
        elif isinstance(event, ToolCallConfirmationEvent):
            # The confirm handler shows the details with its prompt.
            pass
        elif isinstance(event, UserCancelledEvent):
            fmt.cancelled()
        elif isinstance(event, ErrorEvent):
            fmt.error(event.error.message)
        elif isinstance(event, ChatCompressedEvent):
            if self.verbose:
                fmt.compressed(event.original_token_count, event.new_token_count)
        elif isinstance(event, MaxSessionTurnsEvent):
            fmt.max_session_turns(event.limit)
        else:
            assert_never(event)

    def _tool_response(self, response: ToolCallResponseInfo) -> None:
        name = self._names.get(response.call_id, response.call_id)
        status = _response_status(response)
        if status == "error":
            fmt.tool_error(name, str(response.result_display or response.error))
        elif not self.verbose:
            return
        elif status == "cancelled":
            fmt.tool_cancelled(name)
        else:
            display = str(response.result_display or "")
            preview = display.splitlines()[0][:120] if display else ""
            fmt.tool_result(name, preview)


def terminal_confirm(call) -> ToolConfirmationOutcome:
    """Ask on the terminal whether a tool call may run."""
    details = call.confirmation_details
    if details is not None:
        fmt.confirmation(details.title, details.message, details.command)
    sys.stderr.write(fmt.confirmation_prompt())
    sys.stderr.flush()
    answer = sys.stdin.readline()
    if not answer:
        return ToolConfirmationOutcome.CANCEL
    return _CONFIRM_ANSWERS.get(answer.strip().lower(), ToolConfirmationOutcome.CANCEL)


@contextlib.contextmanager
def _cancel_on_sigint(session: Session):
    """While a query runs, Ctrl-C cancels it instead of killing the process."""

    def _handler(signum, frame):
        session.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def _session_kwargs(args) -> dict:
    config = {
        key: getattr(args, key)
        for key in CONFIG_KEYS
        if getattr(args, key, None) is not None
    }
    kwargs = config_to_session_kwargs(config)
    kwargs["surface_reasoning"] = bool(args.show_thoughts)
    return kwargs


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("grokloop")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    try:
        apply_config_to_args(args, load_config(Path(args.base_dir)))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(2)

    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None
    printer = EventPrinter(verbose=args.verbose, show_thoughts=args.show_thoughts)

    try:
        session = Session(
            base_dir=args.base_dir,
            on_event=printer,
            confirm_handler=None if args.yolo else terminal_confirm,
            on_fallback=fmt.model_fallback,
            report=report,
            **_session_kwargs(args),
        )
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(2)

    with session:
        if args.repl:
            repl_loop(session, args)
            return
        sys.exit(_run_once(session, args, report))


def _run_once(session: Session, args, report: ReportCollector | None) -> int:
    try:
        with _cancel_on_sigint(session):
            result = session.run(args.question)
    except AgentError as e:
        fmt.error(str(e))
        _write_report(args, report, None, 1, error_message=str(e))
        return 1

    if not args.no_history and result.answer:
        append_history(args.base_dir, args.question, result.answer)
    if result.answer is not None:
        print(result.answer)

    exit_code = 0 if result.error is None and not result.cancelled else 1
    if args.verbose:
        fmt.completion(result.turns, "ok" if exit_code == 0 else "error")
    _write_report(
        args,
        report,
        result,
        exit_code,
        error_message=result.error.message if result.error else None,
    )
    return exit_code


def _write_report(
    args,
    report: ReportCollector | None,
    result: Result | None,
    exit_code: int,
    error_message: str | None = None,
) -> None:
    if report is None:
        return
    if result is None:
        outcome = "error"
    elif result.cancelled:
        outcome = "cancelled"
    elif result.error is not None:
        outcome = "error"
    else:
        outcome = "success"
    report.finalize(
        task=args.question or "",
        model=args.model,
        settings={
            "temperature": args.temperature,
            "top_p": args.top_p,
            "max_output_tokens": args.max_output_tokens,
            "reasoning_effort": args.reasoning_effort,
            "max_session_turns": args.max_session_turns,
            "yolo": args.yolo,
            "checkpointing": args.checkpointing,
        },
        outcome=outcome,
        answer=result.answer if result else None,
        exit_code=exit_code,
        turns=result.turns if result else 0,
        error_message=error_message,
    )
    try:
        report.write(args.report)
    except OSError as e:
        fmt.error(f"Failed to write report to {args.report}: {e}")
        return
    if args.verbose:
        fmt.info(f"Report written to {args.report}")


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset the conversation\n"
        "  /compress          Compact older tool output and long messages\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(session: Session) -> None:
    dropped = len(session.chat.get_history())
    session.reset()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_compress(session: Session) -> None:
    info = session.chat.try_compress(force=True)
    if info is None:
        fmt.info("nothing to compress")
        return
    fmt.compressed(info.original_token_count, info.new_token_count)


def _repl_ask(session: Session, args, line: str) -> None:
    try:
        with _cancel_on_sigint(session):
            result = session.ask(line)
    except AgentError as e:
        fmt.error(str(e))
        return
    if not args.no_history and result.answer:
        append_history(args.base_dir, line, result.answer)
    if result.answer is not None:
        print(result.answer)


def repl_loop(session: Session, args) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(args.base_dir, ".grokloop", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "grokloop> ")])

    if args.verbose:
        fmt.repl_banner()

    if args.question:
        _repl_ask(session, args, args.question)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # Only known commands are intercepted; unknown /foo goes to the model.
        cmd = line.split(None, 1)[0].lower()
        if cmd in ("/exit", "/quit"):
            break
        if cmd == "/help":
            _repl_help()
            continue
        if cmd == "/clear":
            _repl_clear(session)
            continue
        if cmd == "/compress":
            _repl_compress(session)
            continue

        _repl_ask(session, args, line)


if __name__ == "__main__":
    main()
