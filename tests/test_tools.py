"""Tests for the built-in tools and the registry."""

import shutil
import sys
import threading
import time

import pytest

from grokloop.cancellation import CancellationToken
from grokloop.tools import (
    MEMORY_SECTION_HEADER,
    ListDirectoryTool,
    MemoryTool,
    ReadFileTool,
    ReplaceTool,
    ShellTool,
    ToolConfirmationOutcome,
    WriteFileTool,
    default_registry,
    safe_resolve,
)


@pytest.fixture
def base(tmp_path):
    return str(tmp_path)


def _run(tool, **args):
    return tool.execute(args, CancellationToken())


class TestSafeResolve:
    def test_inside(self, tmp_path):
        assert safe_resolve("a/b.txt", str(tmp_path)) == tmp_path.resolve() / "a" / "b.txt"

    def test_escape_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="outside base directory"):
            safe_resolve("../secret", str(tmp_path))


class TestValidateParams:
    def test_missing_and_wrong_type(self, base):
        tool = ReadFileTool(base)
        assert tool.validate_params({}) == "missing required parameter: file_path"
        assert "must be of type integer" in tool.validate_params(
            {"file_path": "a", "offset": "3"}
        )
        assert "must be of type integer" in tool.validate_params(
            {"file_path": "a", "offset": True}
        )
        assert tool.validate_params({"file_path": "a", "offset": 3}) is None


class TestReadFile:
    def test_numbered_lines(self, tmp_path, base):
        (tmp_path / "a.txt").write_text("one\ntwo\nthree\n")
        result = _run(ReadFileTool(base), file_path="a.txt")
        assert result.error is None
        assert result.llm_content == "1: one\n2: two\n3: three"

    def test_pagination(self, tmp_path, base):
        (tmp_path / "a.txt").write_text("\n".join(str(i) for i in range(10)))
        result = _run(ReadFileTool(base), file_path="a.txt", offset=3, limit=2)
        assert result.llm_content.startswith("3: 2\n4: 3")
        assert "use offset=5 to continue" in result.llm_content

    def test_missing_file(self, base):
        result = _run(ReadFileTool(base), file_path="nope.txt")
        assert result.error == "path does not exist: nope.txt"
        assert result.llm_content.startswith("error:")

    def test_binary_rejected(self, tmp_path, base):
        (tmp_path / "b.bin").write_bytes(b"\x00\x01")
        assert "binary file" in _run(ReadFileTool(base), file_path="b.bin").error


class TestListDirectory:
    def test_lists_with_dir_suffix(self, tmp_path, base):
        (tmp_path / "src").mkdir()
        (tmp_path / "README.md").write_text("x")
        result = _run(ListDirectoryTool(base), path=".")
        assert result.llm_content == "README.md\nsrc/"

    def test_empty(self, base):
        assert _run(ListDirectoryTool(base), path=".").llm_content == "(empty directory)"

    def test_not_a_directory(self, tmp_path, base):
        (tmp_path / "f").write_text("x")
        assert "not a directory" in _run(ListDirectoryTool(base), path="f").error


class TestWriteFile:
    def test_confirmation_shows_diff(self, tmp_path, base):
        (tmp_path / "a.txt").write_text("old\n")
        tool = WriteFileTool(base)
        details = tool.should_confirm_execute(
            {"file_path": "a.txt", "content": "new\n"}, CancellationToken()
        )
        assert details.kind == "edit"
        assert "-old" in details.message
        assert "+new" in details.message

    def test_proceed_always_skips_future_confirmations(self, base):
        tool = WriteFileTool(base)
        args = {"file_path": "a.txt", "content": "x"}
        details = tool.should_confirm_execute(args, CancellationToken())
        details.on_confirm(ToolConfirmationOutcome.PROCEED_ALWAYS)
        assert tool.should_confirm_execute(args, CancellationToken()) is None

    def test_yolo_never_asks(self, base):
        tool = WriteFileTool(base, yolo=True)
        args = {"file_path": "a.txt", "content": "x"}
        assert tool.should_confirm_execute(args, CancellationToken()) is None

    def test_writes_and_creates_parents(self, tmp_path, base):
        result = _run(WriteFileTool(base), file_path="d/e.txt", content="hello")
        assert result.error is None
        assert (tmp_path / "d" / "e.txt").read_text() == "hello"

    def test_modify_with_editor(self, tmp_path, base):
        if sys.platform == "win32":
            pytest.skip("uses a POSIX shell as editor")
        editor = tmp_path / "fake-editor.sh"
        editor.write_text('#!/bin/sh\nprintf "edited" > "$1"\n')
        editor.chmod(0o755)
        tool = WriteFileTool(base)
        args = tool.modify_with_editor({"file_path": "a.txt", "content": "x"}, str(editor))
        assert args == {"file_path": "a.txt", "content": "edited"}


class TestReplace:
    def test_single_replacement(self, tmp_path, base):
        (tmp_path / "a.py").write_text("x = 1\ny = 2\n")
        result = _run(ReplaceTool(base), file_path="a.py", old_string="x = 1", new_string="x = 3")
        assert result.error is None
        assert (tmp_path / "a.py").read_text() == "x = 3\ny = 2\n"

    def test_count_mismatch(self, tmp_path, base):
        (tmp_path / "a.py").write_text("a a a")
        result = _run(ReplaceTool(base), file_path="a.py", old_string="a", new_string="b")
        assert "expected 1 occurrence(s) of old_string but found 3" in result.error
        assert (tmp_path / "a.py").read_text() == "a a a"

    def test_expected_replacements(self, tmp_path, base):
        (tmp_path / "a.py").write_text("a a a")
        _run(
            ReplaceTool(base),
            file_path="a.py",
            old_string="a",
            new_string="b",
            expected_replacements=3,
        )
        assert (tmp_path / "a.py").read_text() == "b b b"

    def test_empty_old_string_creates_file(self, tmp_path, base):
        result = _run(ReplaceTool(base), file_path="new.txt", old_string="", new_string="hi")
        assert result.error is None
        assert (tmp_path / "new.txt").read_text() == "hi"

    def test_not_found(self, tmp_path, base):
        (tmp_path / "a.py").write_text("abc")
        result = _run(ReplaceTool(base), file_path="a.py", old_string="zzz", new_string="y")
        assert result.error == "old_string not found in file"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")
class TestShell:
    def test_output_and_exit_code(self, base):
        result = _run(ShellTool(base), command="echo hi; exit 3")
        assert "Exit code: 3" in result.llm_content
        assert "hi" in result.llm_content

    def test_allowlist_after_proceed_always(self, base):
        tool = ShellTool(base)
        details = tool.should_confirm_execute({"command": "ls -la"}, CancellationToken())
        assert details.kind == "exec"
        assert details.command == "ls -la"
        details.on_confirm(ToolConfirmationOutcome.PROCEED_ALWAYS)
        assert tool.should_confirm_execute({"command": "ls src"}, CancellationToken()) is None
        assert tool.should_confirm_execute({"command": "rm x"}, CancellationToken())

    def test_cancel_kills_process(self, base):
        if shutil.which("sleep") is None:
            pytest.skip("sleep not available")
        token = CancellationToken()
        threading.Timer(0.3, token.cancel).start()
        started = time.monotonic()
        result = ShellTool(base).execute({"command": "sleep 30"}, token)
        assert time.monotonic() - started < 10
        assert "cancelled by user" in result.llm_content

    def test_timeout(self, base):
        result = _run(ShellTool(base, timeout=1), command="sleep 5")
        assert "timed out after 1s" in result.llm_content


class TestMemory:
    def test_creates_section(self, tmp_path, base):
        tool = MemoryTool(base)
        result = _run(tool, fact="- likes tabs")
        assert result.error is None
        text = (tmp_path / "GROKLOOP.md").read_text()
        assert text == f"{MEMORY_SECTION_HEADER}\n- likes tabs\n"

    def test_appends_inside_existing_section(self, tmp_path, base):
        path = tmp_path / "GROKLOOP.md"
        path.write_text(f"# Notes\n\n{MEMORY_SECTION_HEADER}\n- one\n\n## Other\nkeep\n")
        _run(MemoryTool(base), fact="two")
        text = path.read_text()
        assert "- one\n- two\n" in text
        assert text.endswith("## Other\nkeep\n")

    def test_empty_fact(self, base):
        assert _run(MemoryTool(base), fact="  ").error


def test_default_registry(base):
    registry = default_registry(base)
    assert registry.names() == [
        "read_file",
        "list_directory",
        "write_file",
        "replace",
        "run_shell_command",
        "save_memory",
    ]
    assert registry.get_tool("missing") is None
    names = [d.name for d in registry.declarations()]
    assert names == registry.names()
