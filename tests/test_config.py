"""Tests for grokloop.config: TOML loading, merging, auth and CLI integration."""

import argparse
import tomllib
from pathlib import Path

import pytest

from grokloop.config import (
    _UNSET,
    API_KEY_ENV,
    AuthType,
    ConfigError,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_key,
    validate_auth_method,
)
from grokloop.content import GenerationConfig


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "max_output_tokens": _UNSET,
        "temperature": _UNSET,
        "top_p": _UNSET,
        "reasoning_effort": _UNSET,
        "max_session_turns": _UNSET,
        "max_tool_workers": _UNSET,
        "system_prompt": _UNSET,
        "no_system_prompt": _UNSET,
        "yolo": _UNSET,
        "checkpointing": _UNSET,
        "show_thoughts": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture(autouse=True)
def _isolated_global_config(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global_cfg"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "grokloop" / "config.toml", 'model = "grok-3"\n')
        result = load_config(tmp_path / "project")
        assert result["model"] == "grok-3"

    def test_project_only(self, tmp_path):
        _write_toml(tmp_path / "grokloop.toml", "max_session_turns = 42\n")
        assert load_config(tmp_path)["max_session_turns"] == 42

    def test_project_overrides_global(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "grokloop" / "config.toml", "max_session_turns = 10\n")
        _write_toml(tmp_path / "grokloop.toml", "max_session_turns = 50\n")
        assert load_config(tmp_path)["max_session_turns"] == 50

    def test_unknown_keys_warn(self, tmp_path, capsys):
        _write_toml(tmp_path / "grokloop.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_invalid_toml_raises(self, tmp_path):
        _write_toml(tmp_path / "grokloop.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_generate_config_is_valid_toml(self):
        lines = []
        for line in generate_config().splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped)
        parsed = tomllib.loads("\n".join(lines))
        assert parsed["model"] == "grok-4-0709"

    def test_generate_config_project_flag(self):
        assert "Project config" in generate_config(project=True)
        assert "Global config" in generate_config(project=False)


# ===========================================================================
# Validation
# ===========================================================================


class TestValidation:
    def test_string_where_int_expected(self, tmp_path):
        _write_toml(tmp_path / "grokloop.toml", 'max_output_tokens = "big"\n')
        with pytest.raises(ConfigError, match="max_output_tokens.*expected int.*got str"):
            load_config(tmp_path)

    def test_toml_int_for_float_field(self, tmp_path):
        _write_toml(tmp_path / "grokloop.toml", "temperature = 1\n")
        assert load_config(tmp_path)["temperature"] == 1

    def test_bool_for_int_field_raises(self, tmp_path):
        """bool is a subclass of int; config must reject it explicitly."""
        _write_toml(tmp_path / "grokloop.toml", "max_tool_workers = true\n")
        with pytest.raises(ConfigError, match="max_tool_workers.*expected int.*got bool"):
            load_config(tmp_path)

    def test_reasoning_effort_values(self, tmp_path):
        _write_toml(tmp_path / "grokloop.toml", 'reasoning_effort = "extreme"\n')
        with pytest.raises(ConfigError, match="reasoning_effort"):
            load_config(tmp_path)

    def test_tool_workers_positive(self, tmp_path):
        _write_toml(tmp_path / "grokloop.toml", "max_tool_workers = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_system_prompt_conflict(self, tmp_path):
        _write_toml(
            tmp_path / "grokloop.toml",
            'system_prompt = "hello"\nno_system_prompt = true\n',
        )
        with pytest.raises(ConfigError, match="mutually exclusive"):
            load_config(tmp_path)

    def test_cross_file_conflict(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "grokloop" / "config.toml", 'system_prompt = "hello"\n')
        _write_toml(tmp_path / "grokloop.toml", "no_system_prompt = true\n")
        with pytest.raises(ConfigError, match="mutually exclusive"):
            load_config(tmp_path)


# ===========================================================================
# apply_config_to_args / config_to_session_kwargs
# ===========================================================================


class TestApplyConfigToArgs:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"max_session_turns": 42, "model": "grok-3"})
        assert args.max_session_turns == 42
        assert args.model == "grok-3"

    def test_cli_beats_config(self):
        args = _make_args(max_session_turns=200)
        apply_config_to_args(args, {"max_session_turns": 42})
        assert args.max_session_turns == 200

    def test_sentinel_resolves_to_default(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.model == "grok-4-0709"
        assert args.max_session_turns == -1
        assert args.max_tool_workers == 4
        assert args.yolo is False
        assert args.temperature is None

    def test_color_config_false(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_color_cli_overrides_config(self):
        args = _make_args(color=True)
        apply_config_to_args(args, {"color": False})
        assert args.color is True


class TestConfigToSessionKwargs:
    def test_identity_keys(self):
        kwargs = config_to_session_kwargs({"model": "grok-3", "yolo": True})
        assert kwargs == {"model": "grok-3", "yolo": True}

    def test_mapped_and_dropped_keys(self):
        kwargs = config_to_session_kwargs(
            {
                "base_url": "http://localhost:8000/v1",
                "system_prompt": "be brief",
                "color": True,
                "quiet": True,
                "show_thoughts": True,
            }
        )
        assert kwargs == {
            "api_base": "http://localhost:8000/v1",
            "system_instruction": "be brief",
        }

    def test_no_system_prompt(self):
        assert config_to_session_kwargs({"no_system_prompt": True}) == {
            "system_instruction": None
        }
        assert config_to_session_kwargs({"no_system_prompt": False}) == {}

    def test_generation_config(self):
        kwargs = config_to_session_kwargs(
            {"temperature": 0.3, "max_output_tokens": 512, "reasoning_effort": "low"}
        )
        assert kwargs == {
            "generation_config": GenerationConfig(
                temperature=0.3, max_output_tokens=512, reasoning_effort="low"
            )
        }


# ===========================================================================
# Authentication
# ===========================================================================


class TestAuth:
    def test_resolve_prefers_cli_key(self, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV, "from-env")
        assert resolve_api_key("from-cli") == "from-cli"
        assert resolve_api_key(None) == "from-env"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        with pytest.raises(ConfigError, match=API_KEY_ENV):
            resolve_api_key(None)

    def test_validate_auth_method(self, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV, "k")
        assert validate_auth_method(AuthType.USE_GROK.value) is None
        assert validate_auth_method(AuthType.USE_GEMINI.value) == "Invalid auth method selected."
        assert validate_auth_method(None) == "Invalid auth method selected."
        monkeypatch.delenv(API_KEY_ENV)
        assert API_KEY_ENV in validate_auth_method(AuthType.USE_GROK.value)


class TestApiKeyWarning:
    def test_api_key_in_git_repo_warns(self, tmp_path, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "grokloop.toml", 'api_key = "xai-secret"\n')
        load_config(tmp_path)
        assert "api_key" in capsys.readouterr().err


class TestGlobalConfigDir:
    def test_respects_xdg(self, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", "/custom/xdg")
        assert global_config_dir() == Path("/custom/xdg/grokloop")

    def test_default_home(self, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        assert global_config_dir() == Path.home() / ".config" / "grokloop"


# ===========================================================================
# Integration: CLI -> config -> resolution
# ===========================================================================


class TestCLIIntegration:
    def test_parse_load_apply(self, tmp_path):
        _write_toml(tmp_path / "grokloop.toml", "max_session_turns = 42\nyolo = true\n")

        from grokloop.agent import build_parser

        args = build_parser().parse_args(["--base-dir", str(tmp_path), "question"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_session_turns == 42
        assert args.yolo is True
        assert args.model == "grok-4-0709"

    def test_cli_flag_overrides_config(self, tmp_path):
        _write_toml(tmp_path / "grokloop.toml", 'model = "grok-3"\n')

        from grokloop.agent import build_parser

        args = build_parser().parse_args(["--model", "grok-3-mini", "question"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.model == "grok-3-mini"
