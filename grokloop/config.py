"""Configuration file loading, merging and authentication checks.

Reads TOML config from ~/.config/grokloop/config.toml (global) and
<base_dir>/grokloop.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

from .content import GenerationConfig
from .models import DEFAULT_GROK_MODEL
from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

API_KEY_ENV = "GROK_API_KEY"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "top_p": (int, float),
    "reasoning_effort": str,
    "max_session_turns": int,
    "max_tool_workers": int,
    "system_prompt": str,
    "no_system_prompt": bool,
    "yolo": bool,
    "checkpointing": bool,
    "show_thoughts": bool,
    "color": bool,
    "quiet": bool,
}

_REASONING_EFFORTS = ("low", "medium", "high")

# Used for argparse dests that neither the CLI nor a config file set.
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": DEFAULT_GROK_MODEL,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": None,
    "temperature": None,
    "top_p": None,
    "reasoning_effort": None,
    "max_session_turns": -1,
    "max_tool_workers": 4,
    "system_prompt": None,
    "no_system_prompt": False,
    "yolo": False,
    "checkpointing": False,
    "show_thoughts": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Authentication ---


class AuthType(str, Enum):
    USE_GROK = "grok-api-key"
    # Accepted in old settings files, no longer usable.
    LOGIN_WITH_GOOGLE = "oauth-personal"
    USE_GEMINI = "gemini-api-key"
    USE_VERTEX_AI = "vertex-ai"
    CLOUD_SHELL = "cloud-shell"


def validate_auth_method(auth_method: str | None) -> str | None:
    """Return a user-facing error for auth_method, or None when usable."""
    if auth_method == AuthType.USE_GROK.value:
        if not os.environ.get(API_KEY_ENV):
            return (
                f"{API_KEY_ENV} environment variable not found. Add that to your "
                ".env and try again, no reload needed!"
            )
        return None
    return "Invalid auth method selected."


def resolve_api_key(cli_key: str | None = None) -> str:
    """The API key from the CLI/config, else from GROK_API_KEY.

    Raises ConfigError when neither is set.
    """
    key = cli_key or os.environ.get(API_KEY_ENV)
    if not key:
        raise ConfigError(
            f"{API_KEY_ENV} environment variable not found. "
            "Set it (or pass --api-key) and try again."
        )
    return key


# --- Config files ---


def global_config_dir() -> Path:
    """``$XDG_CONFIG_HOME/grokloop``, falling back to ``~/.config/grokloop``."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "grokloop"
    return Path.home() / ".config" / "grokloop"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Check value types and cross-key constraints of one parsed file.

    Unknown keys are reported on stderr and skipped; every other problem
    raises ConfigError naming the file.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, "
                f"got {type(value).__name__}"
            )

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )
    effort = config.get("reasoning_effort")
    if effort is not None and effort not in _REASONING_EFFORTS:
        raise ConfigError(
            f"{source}: 'reasoning_effort' must be one of {', '.join(_REASONING_EFFORTS)}"
        )
    workers = config.get("max_tool_workers")
    if workers is not None and workers < 1:
        raise ConfigError(f"{source}: 'max_tool_workers' must be at least 1")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Print a warning when a project file inside a git checkout holds api_key."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using {API_KEY_ENV}.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Parse and check one TOML file. A missing file is an empty config."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Merge the global file with the project file under base_dir (project wins).

    Only keys present in one of the files appear in the result.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "grokloop.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    merged = {**global_config, **project_config}
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, then from defaults."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key != "color" and _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Map resolved config keys onto Session keyword arguments.

    UI-only keys (color, quiet, show_thoughts) are dropped; base_url maps
    to api_base; the generation keys are gathered into generation_config.
    """
    kwargs: dict = {}
    generation: dict = {}
    for key, value in config.items():
        if key in ("color", "quiet", "show_thoughts"):
            continue
        if key == "base_url":
            kwargs["api_base"] = value
        elif key in ("temperature", "top_p", "max_output_tokens", "reasoning_effort"):
            generation[key] = value
        elif key == "system_prompt":
            kwargs["system_instruction"] = value
        elif key == "no_system_prompt":
            if value:
                kwargs["system_instruction"] = None
        else:
            kwargs[key] = value
    if generation:
        kwargs["generation_config"] = GenerationConfig(**generation)
    return kwargs


def generate_config(project: bool = False) -> str:
    """Commented template printed by ``grokloop --init-config``."""
    where = "<project>/grokloop.toml" if project else "~/.config/grokloop/config.toml"
    lines = [
        "# grokloop configuration file",
        f"# {'Project' if project else 'Global'} config: {where}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        f'# model = "{DEFAULT_GROK_MODEL}"',
        f'# api_key = "xai-..."             # prefer {API_KEY_ENV}; this is a fallback',
        '# base_url = "https://api.x.ai/v1"',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 8192",
        "# temperature = 0.7",
        "# top_p = 1.0",
        '# reasoning_effort = "low"         # "low" | "medium" | "high"',
        "",
        "# --- Agent behaviour ---",
        "# max_session_turns = -1          # -1 = unlimited",
        "# max_tool_workers = 4",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "# yolo = false                    # approve every tool call",
        "# checkpointing = false           # snapshot files before edits",
        "",
        "# --- UI ---",
        "# show_thoughts = false",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
