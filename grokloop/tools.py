"""Built-in tools and the registry the scheduler resolves them from."""

import difflib
import os
import shlex
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from .cancellation import CancellationToken
from .content import FunctionDeclaration

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 500
DEFAULT_SHELL_TIMEOUT = 120

MEMORY_TOOL_NAME = "save_memory"
DEFAULT_MEMORY_FILE = "GROKLOOP.md"
MEMORY_SECTION_HEADER = "## Grok Added Memories"


class ToolConfirmationOutcome(str, Enum):
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    MODIFY_WITH_EDITOR = "modify_with_editor"
    CANCEL = "cancel"


@dataclass
class ConfirmationDetails:
    """What the user is asked to approve.

    ``kind`` is "edit" for file changes (``message`` holds a diff), "exec"
    for shell commands, "info" otherwise. ``on_confirm`` lets the tool
    remember a "proceed always" answer.
    """

    kind: str
    title: str
    message: str = ""
    file_path: str | None = None
    command: str | None = None
    on_confirm: Callable[[ToolConfirmationOutcome], None] | None = None


@dataclass
class ToolResult:
    llm_content: object
    return_display: str = ""
    error: str | None = None


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path, ensuring it stays within base_dir.

    Raises:
        ValueError: If the resolved path escapes base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if resolved.is_relative_to(base):
        return resolved
    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


_JSON_TYPES = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


class Tool:
    """Base class for tools. Subclasses set the declaration attributes."""

    name = ""
    description = ""
    parameters: dict = {"type": "object", "properties": {}}

    def __init__(self, base_dir: str, *, yolo: bool = False):
        self.base_dir = base_dir
        self.yolo = yolo

    def declaration(self) -> FunctionDeclaration:
        return FunctionDeclaration(self.name, self.description, self.parameters)

    def validate_params(self, args: dict) -> str | None:
        """Return a description of what is wrong with args, or None."""
        if not isinstance(args, dict):
            return "parameters must be an object"
        props = self.parameters.get("properties", {})
        for key in self.parameters.get("required", []):
            if args.get(key) is None:
                return f"missing required parameter: {key}"
        for key, value in args.items():
            expected = _JSON_TYPES.get(props.get(key, {}).get("type"))
            if expected is None or value is None:
                continue
            if isinstance(value, bool) and expected is not bool:
                return f"parameter {key} must be of type {props[key]['type']}"
            if not isinstance(value, expected):
                return f"parameter {key} must be of type {props[key]['type']}"
        return None

    def should_confirm_execute(
        self, args: dict, signal: CancellationToken
    ) -> ConfirmationDetails | None:
        return None

    def execute(self, args: dict, signal: CancellationToken) -> ToolResult:
        raise NotImplementedError


class ReadFileTool(Tool):
    name = "read_file"
    description = (
        "Read a text file. Returns lines prefixed with line numbers. "
        "Use offset/limit to paginate."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file."},
            "offset": {
                "type": "integer",
                "description": "1-based line number to start reading from.",
                "default": 1,
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to return.",
                "default": 2000,
            },
        },
        "required": ["file_path"],
    }

    def execute(self, args, signal):
        file_path = args["file_path"]
        try:
            resolved = safe_resolve(file_path, self.base_dir)
        except ValueError as exc:
            return _error(str(exc))
        if not resolved.exists():
            return _error(f"path does not exist: {file_path}")
        if resolved.is_dir():
            return _error(f"{file_path} is a directory, use list_directory")

        try:
            with open(resolved, "rb") as f:
                head = f.read(BINARY_CHECK_BYTES)
            if b"\x00" in head:
                return _error(f"binary file detected: {file_path}")
            text = resolved.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            return _error(f"failed to decode {file_path} as UTF-8: {exc}")
        except OSError as exc:
            return _error(str(exc))

        lines = text.splitlines()
        start = max(int(args.get("offset") or 1) - 1, 0)
        selected = lines[start : start + int(args.get("limit") or 2000)]

        output: list[str] = []
        total = 0
        for i, line in enumerate(selected, start=start + 1):
            numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
            total += len(numbered.encode("utf-8")) + 1
            if total > MAX_OUTPUT_BYTES:
                break
            output.append(numbered)

        result = "\n".join(output)
        remaining = len(lines) - (start + len(output))
        if remaining > 0:
            next_offset = start + len(output) + 1
            result += f"\n[{remaining} more lines, use offset={next_offset} to continue]"
        return ToolResult(result, f"Read {len(output)} lines from {file_path}")


class ListDirectoryTool(Tool):
    name = "list_directory"
    description = "List a directory. Subdirectories have a / suffix."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory to list."},
        },
        "required": ["path"],
    }

    def execute(self, args, signal):
        path = args["path"]
        try:
            resolved = safe_resolve(path, self.base_dir)
        except ValueError as exc:
            return _error(str(exc))
        if not resolved.is_dir():
            return _error(f"not a directory: {path}")
        try:
            children = sorted(resolved.iterdir())
        except OSError as exc:
            return _error(str(exc))

        names = [c.name + ("/" if c.is_dir() else "") for c in children]
        shown = names[:MAX_LIST_RESULTS]
        result = "\n".join(shown) if shown else "(empty directory)"
        if len(names) > len(shown):
            result += f"\n[{len(names) - len(shown)} more entries not shown]"
        return ToolResult(result, f"Listed {len(names)} entries")


def _diff(path: str, old: str, new: str) -> str:
    return "".join(
        difflib.unified_diff(
            old.splitlines(keepends=True),
            new.splitlines(keepends=True),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
        )
    )


class _FileEditTool(Tool):
    """Shared confirmation and write logic for tools that mutate one file."""

    def __init__(self, base_dir: str, *, yolo: bool = False):
        super().__init__(base_dir, yolo=yolo)
        self.always_allow = False

    def proposed_content(self, resolved: Path, args: dict) -> str:
        raise NotImplementedError

    def _current(self, resolved: Path) -> str:
        return resolved.read_text(encoding="utf-8") if resolved.exists() else ""

    def should_confirm_execute(self, args, signal):
        if self.yolo or self.always_allow:
            return None
        file_path = args["file_path"]
        try:
            resolved = safe_resolve(file_path, self.base_dir)
            old = self._current(resolved)
            new = self.proposed_content(resolved, args)
        except (ValueError, OSError):
            # execute() reports the problem
            return None

        def on_confirm(outcome: ToolConfirmationOutcome) -> None:
            if outcome is ToolConfirmationOutcome.PROCEED_ALWAYS:
                self.always_allow = True

        return ConfirmationDetails(
            kind="edit",
            title=f"Confirm {self.name}: {file_path}",
            message=_diff(file_path, old, new),
            file_path=file_path,
            on_confirm=on_confirm,
        )

    def modify_with_editor(self, args: dict, editor: str) -> dict:
        """Let the user edit the proposed content; returns write_file-style args."""
        resolved = safe_resolve(args["file_path"], self.base_dir)
        proposed = self.proposed_content(resolved, args)
        fd, tmp = tempfile.mkstemp(suffix=resolved.suffix, prefix="grokloop-edit-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(proposed)
            subprocess.run([*shlex.split(editor), tmp], check=True)
            edited = Path(tmp).read_text(encoding="utf-8")
        finally:
            Path(tmp).unlink(missing_ok=True)
        return self.args_for_content(args, resolved, edited)

    def args_for_content(self, args: dict, resolved: Path, content: str) -> dict:
        raise NotImplementedError

    def _write(self, resolved: Path, file_path: str, content: str) -> ToolResult:
        old = self._current(resolved)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8")
        resolved.write_bytes(data)
        return ToolResult(
            f"Wrote {len(data)} bytes to {file_path}",
            _diff(file_path, old, content),
        )


class WriteFileTool(_FileEditTool):
    name = "write_file"
    description = "Create or overwrite a file with the given content."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file."},
            "content": {"type": "string", "description": "Full file content."},
        },
        "required": ["file_path", "content"],
    }

    def proposed_content(self, resolved, args):
        return args["content"]

    def args_for_content(self, args, resolved, content):
        return {**args, "content": content}

    def execute(self, args, signal):
        file_path = args["file_path"]
        try:
            resolved = safe_resolve(file_path, self.base_dir)
        except ValueError as exc:
            return _error(str(exc))
        if resolved.is_dir():
            return _error(f"{file_path} is a directory")
        return self._write(resolved, file_path, args["content"])


class ReplaceTool(_FileEditTool):
    name = "replace"
    description = (
        "Replace exact text in a file. old_string must match exactly "
        "expected_replacements times (default 1). An empty old_string "
        "creates a new file."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file."},
            "old_string": {"type": "string", "description": "Exact text to find."},
            "new_string": {"type": "string", "description": "Replacement text."},
            "expected_replacements": {
                "type": "integer",
                "description": "Number of occurrences to replace.",
                "minimum": 1,
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    def _apply(self, resolved: Path, args: dict) -> str:
        old_string = args["old_string"]
        new_string = args["new_string"]
        if old_string == "":
            if resolved.exists():
                raise ValueError("old_string is empty but the file already exists")
            return new_string
        if not resolved.exists():
            raise ValueError(f"file not found: {args['file_path']}")
        current = resolved.read_text(encoding="utf-8")
        expected = int(args.get("expected_replacements") or 1)
        found = current.count(old_string)
        if found == 0:
            raise ValueError("old_string not found in file")
        if found != expected:
            raise ValueError(
                f"expected {expected} occurrence(s) of old_string but found {found}"
            )
        return current.replace(old_string, new_string)

    def proposed_content(self, resolved, args):
        return self._apply(resolved, args)

    def args_for_content(self, args, resolved, content):
        # The edited text replaces the whole file.
        return {
            "file_path": args["file_path"],
            "old_string": self._current(resolved),
            "new_string": content,
            "expected_replacements": 1,
        }

    def execute(self, args, signal):
        file_path = args["file_path"]
        try:
            resolved = safe_resolve(file_path, self.base_dir)
            new_content = self._apply(resolved, args)
        except ValueError as exc:
            return _error(str(exc))
        except (OSError, UnicodeDecodeError) as exc:
            return _error(f"failed to read {file_path}: {exc}")
        return self._write(resolved, file_path, new_content)


_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


class ShellTool(Tool):
    name = "run_shell_command"
    description = (
        "Run a shell command in the project directory and return its "
        "combined stdout/stderr and exit code."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The command line."},
            "description": {
                "type": "string",
                "description": "Short explanation of what the command does.",
            },
        },
        "required": ["command"],
    }

    def __init__(
        self, base_dir: str, *, yolo: bool = False, timeout: int = DEFAULT_SHELL_TIMEOUT
    ):
        super().__init__(base_dir, yolo=yolo)
        self.timeout = timeout
        self.allowlist: set[str] = set()

    @staticmethod
    def root_command(command: str) -> str:
        try:
            words = shlex.split(command)
        except ValueError:
            words = command.split()
        return words[0] if words else ""

    def should_confirm_execute(self, args, signal):
        root = self.root_command(args["command"])
        if self.yolo or root in self.allowlist:
            return None

        def on_confirm(outcome: ToolConfirmationOutcome) -> None:
            if outcome is ToolConfirmationOutcome.PROCEED_ALWAYS:
                self.allowlist.add(root)

        return ConfirmationDetails(
            kind="exec",
            title="Confirm shell command",
            message=args.get("description") or "",
            command=args["command"],
            on_confirm=on_confirm,
        )

    def execute(self, args, signal):
        command = args["command"]
        if sys.platform == "win32":
            shell_cmd = ["cmd.exe", "/c", command]
        else:
            shell_cmd = ["/bin/sh", "-c", command]
        popen_kwargs: dict = dict(
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=self.base_dir,
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True
        try:
            proc = subprocess.Popen(shell_cmd, **popen_kwargs)
        except OSError as e:
            return _error(f"failed to start shell command: {e}")
        return self._capture(proc, signal)

    def _capture(self, proc: subprocess.Popen, signal: CancellationToken) -> ToolResult:
        chunks: list[bytes] = []
        total = 0
        truncated = False

        def _reader():
            nonlocal total, truncated
            try:
                while True:
                    chunk = proc.stdout.read(4096)
                    if not chunk:
                        break
                    if truncated:
                        continue  # keep draining to prevent pipe backpressure
                    chunks.append(chunk[: MAX_OUTPUT_BYTES - total])
                    total += len(chunks[-1])
                    if total >= MAX_OUTPUT_BYTES:
                        truncated = True
            except (OSError, ValueError):
                pass  # pipe closed after kill

        reader = threading.Thread(target=_reader, daemon=True)
        reader.start()

        # Poll so a cancellation can kill the process.
        killed_by = None
        waited = 0.0
        while proc.poll() is None:
            if signal.wait(0.1):
                killed_by = "cancelled"
                _kill_process_tree(proc)
                break
            waited += 0.1
            if waited >= self.timeout:
                killed_by = "timeout"
                _kill_process_tree(proc)
                break

        reader.join(timeout=2)
        proc.stdout.close()

        output = b"".join(chunks).decode("utf-8", errors="replace")
        lines: list[str] = []
        if killed_by == "cancelled":
            lines.append("Command was cancelled by user before it could complete.")
        elif killed_by == "timeout":
            lines.append(f"error: command timed out after {self.timeout}s")
        elif proc.returncode != 0:
            lines.append(f"Exit code: {proc.returncode}")
        if output:
            lines.append(output)
        if truncated:
            lines.append("[output truncated at 50KB]")
        result = "\n".join(lines) if lines else "(no output)"
        return ToolResult(result, output)


class MemoryTool(Tool):
    name = MEMORY_TOOL_NAME
    description = (
        "Save a specific fact about the user or project to long-term memory, "
        "so it is remembered in future sessions."
    )
    parameters = {
        "type": "object",
        "properties": {
            "fact": {"type": "string", "description": "The fact to remember."},
        },
        "required": ["fact"],
    }

    def __init__(
        self, base_dir: str, *, yolo: bool = False, memory_file: str | None = None
    ):
        super().__init__(base_dir, yolo=yolo)
        if memory_file:
            self.memory_file = Path(memory_file)
        else:
            self.memory_file = Path(base_dir) / DEFAULT_MEMORY_FILE

    def execute(self, args, signal):
        fact = args["fact"].strip().lstrip("-").strip()
        if not fact:
            return _error("fact must be a non-empty string")
        try:
            text = self.memory_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            text = ""
        except OSError as exc:
            return _error(str(exc))

        entry = f"- {fact}\n"
        if MEMORY_SECTION_HEADER in text:
            head, _, tail = text.partition(MEMORY_SECTION_HEADER)
            body, sep, rest = tail.partition("\n## ")
            body = body.rstrip("\n") + "\n" + entry
            text = head + MEMORY_SECTION_HEADER + body + ("\n## " + rest if sep else "")
        else:
            if text and not text.endswith("\n"):
                text += "\n"
            text += ("\n" if text else "") + MEMORY_SECTION_HEADER + "\n" + entry
        try:
            self.memory_file.parent.mkdir(parents=True, exist_ok=True)
            self.memory_file.write_text(text, encoding="utf-8")
        except OSError as exc:
            return _error(str(exc))
        return ToolResult(f'Okay, I\'ve remembered that: "{fact}"', f"Saved memory: {fact}")


def _error(message: str) -> ToolResult:
    return ToolResult(f"error: {message}", message, error=message)


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def declarations(self) -> list[FunctionDeclaration]:
        return [t.declaration() for t in self._tools.values()]


def default_registry(
    base_dir: str, *, yolo: bool = False, memory_file: str | None = None
) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in (
        ReadFileTool(base_dir, yolo=yolo),
        ListDirectoryTool(base_dir, yolo=yolo),
        WriteFileTool(base_dir, yolo=yolo),
        ReplaceTool(base_dir, yolo=yolo),
        ShellTool(base_dir, yolo=yolo),
        MemoryTool(base_dir, yolo=yolo, memory_file=memory_file),
    ):
        registry.register(tool)
    return registry
