"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Run summary -------------------------------------------------------------


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, exit={exit_code}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, preview: str) -> None:
    _console.print(Text(f"  ✓ {name}", style="green"))
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_cancelled(name: str) -> None:
    _console.print(Text(f"  ⊘ {name} cancelled", style="yellow"))


def confirmation(title: str, body: str = "", command: str | None = None) -> None:
    _console.print(Text(f"  ? {title}", style="bold yellow"))
    if command:
        _console.print(Text(f"    $ {command}", style="bold"))
    for line in body.splitlines():
        if line.startswith("+") and not line.startswith("+++"):
            style = "green"
        elif line.startswith("-") and not line.startswith("---"):
            style = "red"
        else:
            style = "dim"
        _console.print(Text(f"    {line}", style=style))


def confirmation_prompt() -> str:
    return "  Allow? [y]es / [a]lways / [e]dit / [n]o: "


# -- Model output ------------------------------------------------------------


def thought(subject: str, description: str) -> None:
    line = Text()
    line.append("  [thinking] ", style="yellow")
    if subject:
        line.append(subject, style="bold yellow")
        line.append(" ")
    line.append(description, style="dim italic")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def compressed(before: int, after: int) -> None:
    _console.print(
        Text(f"  Context compressed: ~{before} -> ~{after} tokens", style="dim")
    )


def model_fallback(old: str, new: str) -> None:
    warning(
        f"Quota exceeded for {old}. Switched to {new} for the rest of this session."
    )


def max_session_turns(limit: int) -> None:
    warning(f"Maximum session turns ({limit}) reached. Start a new session to continue.")


def cancelled() -> None:
    _console.print(Text("  Request cancelled.", style="yellow"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
