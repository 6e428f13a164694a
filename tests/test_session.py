"""End-to-end tests for Session: turns, tool batches and continuations."""

from unittest.mock import MagicMock

import pytest

from conftest import FakeProvider, make_response

from grokloop.content import MODEL, USER, FinishReason, Part
from grokloop.provider import to_wire_messages
from grokloop.report import (
    ProviderError,
    QuotaExceededError,
    ReportCollector,
    UnauthorizedError,
)
from grokloop.session import HistoryItem, Session, StreamingState
from grokloop.tools import ToolConfirmationOutcome
from grokloop.turn import (
    ContentEvent,
    ErrorEvent,
    MaxSessionTurnsEvent,
    ToolCallConfirmationEvent,
    ToolCallRequestEvent,
    ToolCallResponseEvent,
    UserCancelledEvent,
)


def _call(name, args, call_id):
    return make_response(
        Part.from_function_call(name, args, id=call_id), finish=FinishReason.OTHER
    )


def _session(tmp_path, *scripts, **kwargs):
    provider = FakeProvider(scripts)
    events = []
    kwargs.setdefault("error_reporter", MagicMock())
    session = Session(
        base_dir=str(tmp_path),
        provider=provider,
        on_event=events.append,
        **kwargs,
    )
    return session, provider, events


class TestToolRoundTrip:
    def test_list_directory_scenario(self, tmp_path):
        (tmp_path / "a.txt").write_text("x")
        session, provider, events = _session(
            tmp_path,
            [_call("list_directory", {"path": "."}, "c1")],
            [make_response("There is a.txt", finish=FinishReason.STOP)],
        )
        with session:
            result = session.run("what files are here?")

        assert result.answer == "There is a.txt"
        assert result.error is None
        assert not result.cancelled
        assert result.turns == 2

        continuation = provider.requests[1].contents
        assert [c.role for c in continuation] == [USER, MODEL, USER]
        (fr_part,) = continuation[2].parts
        assert fr_part.function_response.id == "c1"
        assert fr_part.function_response.name == "list_directory"
        assert fr_part.function_response.response == {"output": "a.txt"}

        history = session.chat.get_history()
        assert [c.role for c in history] == [USER, MODEL, USER, MODEL]
        kinds = [type(e) for e in events]
        assert kinds == [ToolCallRequestEvent, ToolCallResponseEvent, ContentEvent]
        assert session.streaming_state is StreamingState.IDLE

    def test_parallel_calls_keep_request_order(self, tmp_path):
        (tmp_path / "a.txt").write_text("alpha")
        (tmp_path / "b.txt").write_text("beta")
        session, provider, _ = _session(
            tmp_path,
            [
                make_response(
                    Part.from_function_call("read_file", {"file_path": "a.txt"}, id="r1"),
                    Part.from_function_call("read_file", {"file_path": "b.txt"}, id="r2"),
                )
            ],
            [make_response("done")],
        )
        with session:
            session.run("read both")
        parts = provider.requests[1].contents[-1].parts
        assert [p.function_response.id for p in parts] == ["r1", "r2"]
        assert parts[1].function_response.response == {"output": "1: beta"}

    def test_tool_error_is_sent_back(self, tmp_path):
        session, provider, _ = _session(
            tmp_path,
            [_call("read_file", {"file_path": "missing.txt"}, "c1")],
            [make_response("It does not exist.")],
        )
        with session:
            result = session.run("read missing.txt")
        assert result.answer == "It does not exist."
        response = provider.requests[1].contents[-1].parts[0].function_response.response
        assert response == {"error": "path does not exist: missing.txt"}


class TestApproval:
    def test_rejected_calls_are_recorded_not_continued(self, tmp_path):
        session, provider, events = _session(
            tmp_path,
            [_call("write_file", {"file_path": "a.txt", "content": "x"}, "w1")],
            confirm_handler=lambda call: ToolConfirmationOutcome.CANCEL,
        )
        with session:
            result = session.run("write a.txt")

        assert len(provider.requests) == 1
        assert not (tmp_path / "a.txt").exists()
        assert result.answer is None
        history = session.chat.get_history()
        assert history[-1].role == USER
        response = history[-1].parts[0].function_response
        assert response.id == "w1"
        assert response.response["error"].startswith("[Operation Cancelled]")
        assert any(isinstance(e, ToolCallConfirmationEvent) for e in events)

    def test_approved_edit_runs(self, tmp_path):
        session, provider, _ = _session(
            tmp_path,
            [_call("write_file", {"file_path": "a.txt", "content": "x"}, "w1")],
            [make_response("Written.")],
            confirm_handler=lambda call: ToolConfirmationOutcome.PROCEED_ONCE,
        )
        with session:
            result = session.run("write a.txt")
        assert (tmp_path / "a.txt").read_text() == "x"
        assert result.answer == "Written."

    def test_new_query_rejected_while_responding(self, tmp_path):
        attempts = []

        def confirm(call):
            attempts.append(session.submit_query("interrupting"))
            assert session.streaming_state is StreamingState.WAITING_FOR_CONFIRMATION
            return ToolConfirmationOutcome.PROCEED_ONCE

        session, provider, _ = _session(
            tmp_path,
            [_call("write_file", {"file_path": "a.txt", "content": "x"}, "w1")],
            [make_response("ok")],
            confirm_handler=confirm,
        )
        with session:
            session.run("write")
        assert attempts == [False]
        assert len(provider.requests) == 2


class TestCancellation:
    def test_cancel_while_tools_pending(self, tmp_path):
        session, provider, events = _session(
            tmp_path, [_call("list_directory", {"path": "."}, "c1")]
        )

        def on_event(event):
            events.append(event)
            if isinstance(event, ToolCallRequestEvent):
                session.cancel()

        session.on_event = on_event
        with session:
            result = session.run("list")

        assert result.cancelled
        assert len(provider.requests) == 1
        assert isinstance(events[-1], UserCancelledEvent)
        # The cancelled response still follows its call in history.
        last = session.chat.get_history()[-1]
        assert last.parts[0].function_response.id == "c1"

    def test_cancel_mid_stream(self, tmp_path):
        session, provider, events = _session(
            tmp_path, [make_response("a"), make_response("b"), make_response("c")]
        )

        def on_event(event):
            events.append(event)
            if isinstance(event, ContentEvent):
                session.cancel()

        session.on_event = on_event
        with session:
            result = session.run("talk")
        assert result.cancelled
        assert result.answer == "a"
        assert [type(e) for e in events] == [ContentEvent, UserCancelledEvent]
        assert session.chat.get_history() == []

    def test_cancel_during_continuation_keeps_tool_results(self, tmp_path):
        session, provider, events = _session(
            tmp_path,
            [_call("list_directory", {"path": "."}, "c1")],
            [make_response("a"), make_response("b")],
        )

        def on_event(event):
            events.append(event)
            if isinstance(event, ContentEvent):
                session.cancel()

        session.on_event = on_event
        with session:
            result = session.run("list")

        assert result.cancelled
        assert len(provider.requests) == 2
        history = session.chat.get_history()
        assert [c.role for c in history] == [USER, MODEL, USER]
        assert history[-1].parts[0].function_response.id == "c1"


class TestErrors:
    def test_error_event(self, tmp_path):
        reporter = MagicMock()
        session, _, events = _session(
            tmp_path, [ProviderError("service unavailable", 503)], error_reporter=reporter
        )
        with session:
            result = session.run("hi")
        assert result.error.message == "service unavailable"
        assert result.error.status == 503
        assert isinstance(events[-1], ErrorEvent)
        reporter.assert_called_once()

    def test_unauthorized_without_handler_raises(self, tmp_path):
        session, _, _ = _session(tmp_path, [UnauthorizedError("bad key", 401)])
        with session:
            with pytest.raises(UnauthorizedError):
                session.run("hi")
        assert session.streaming_state is StreamingState.IDLE

    def test_unauthorized_handler(self, tmp_path):
        handler = MagicMock()
        session, _, _ = _session(
            tmp_path, [UnauthorizedError("bad key", 401)], on_auth_error=handler
        )
        with session:
            session.run("hi")
        handler.assert_called_once_with()

    def test_quota_fallback_notifies(self, tmp_path):
        fallback = MagicMock()
        session, provider, _ = _session(
            tmp_path,
            [QuotaExceededError("quota", 429)],
            [make_response("from flash")],
            on_fallback=fallback,
        )
        with session:
            first = session.ask("hi")
            second = session.ask("again")
        assert first.error.status == 429
        fallback.assert_called_once_with("grok-4-0709", "grok-3-fast")
        assert second.answer == "from flash"
        assert provider.requests[1].model == "grok-3-fast"

    def test_failed_continuation_leaves_no_dangling_calls(self, tmp_path):
        session, provider, _ = _session(
            tmp_path,
            [_call("list_directory", {"path": "."}, "c1")],
            [ProviderError("boom", 500)],
            [make_response("ok", finish=FinishReason.STOP)],
        )
        with session:
            first = session.ask("list")
            second = session.ask("next question")

        assert first.error.status == 500
        assert second.answer == "ok"
        sent = provider.requests[2].contents
        assert [c.role for c in sent] == [USER, MODEL, USER, USER]
        messages = to_wire_messages(sent)
        call_ids = [
            call["id"] for m in messages for call in m.get("tool_calls", [])
        ]
        answered = [m["tool_call_id"] for m in messages if m["role"] == "tool"]
        assert call_ids == ["c1"]
        assert answered == ["c1"]


class TestSessionLimits:
    def test_max_session_turns(self, tmp_path):
        session, provider, events = _session(
            tmp_path,
            [_call("list_directory", {"path": "."}, "c1")],
            max_session_turns=1,
        )
        with session:
            session.run("list")
        assert len(provider.requests) == 1
        assert isinstance(events[-1], MaxSessionTurnsEvent)
        assert events[-1].limit == 1
        # The unsent tool results still follow their call.
        history = session.chat.get_history()
        assert [c.role for c in history] == [USER, MODEL, USER]
        assert history[-1].parts[0].function_response.id == "c1"


class TestMemory:
    def test_saved_memory_reaches_next_request(self, tmp_path):
        refresh = MagicMock()
        session, provider, _ = _session(
            tmp_path,
            [_call("save_memory", {"fact": "prefers tabs"}, "m1")],
            [make_response("Noted.")],
            refresh_memory=refresh,
        )
        with session:
            session.run("remember I prefer tabs")
        assert "- prefers tabs" in provider.requests[1].system_instruction
        assert provider.requests[0].system_instruction == session.system_instruction
        refresh.assert_called_once_with()
        assert session.processed_memory_calls == {"m1"}


class TestConversation:
    def test_ask_keeps_history_run_resets(self, tmp_path):
        session, provider, _ = _session(
            tmp_path, [make_response("one")], [make_response("two")], [make_response("three")]
        )
        with session:
            session.ask("first")
            session.ask("second")
            assert len(provider.requests[1].contents) == 3
            session.run("third")
            assert len(provider.requests[2].contents) == 1

    def test_history_sink_and_prompt_ids(self, tmp_path):
        items = []
        session, provider, _ = _session(
            tmp_path,
            [_call("list_directory", {"path": "."}, "c1")],
            [make_response("empty")],
            history_sink=items.append,
            session_id="s1",
        )
        with session:
            session.run("list")
        assert items == [HistoryItem("user", "list"), HistoryItem("grok", "empty")]
        assert session.prompt_count == 1

    def test_report_records_run(self, tmp_path):
        report = ReportCollector()
        session, _, _ = _session(
            tmp_path,
            [_call("list_directory", {"path": "."}, "c1")],
            [make_response("ok")],
            report=report,
        )
        with session:
            session.run("list")
        assert report.llm_calls == 2
        assert report.tool_stats["list_directory"]["succeeded"] == 1
