"""Tests for metaagent.config: TOML config file loading, merging, and CLI integration."""

import argparse
import tomllib
from pathlib import Path

import pytest

from metaagent.config import (
    _ARGPARSE_DEFAULTS,
    _UNSET,
    ConfigError,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_keys,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {dest: _UNSET for dest in _ARGPARSE_DEFAULTS}
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def no_global(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path, no_global):
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global_cfg"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "metaagent" / "config.toml", 'provider = "openrouter"\n')
        result = load_config(tmp_path / "project")
        assert result["provider"] == "openrouter"

    def test_project_only(self, tmp_path, no_global):
        _write_toml(tmp_path / "metaagent.toml", "max_iterations = 42\n")
        assert load_config(tmp_path)["max_iterations"] == 42

    def test_project_overrides_global(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "metaagent" / "config.toml", 'max_iterations = 10\nai_name = "Ada"\n')
        _write_toml(tmp_path / "metaagent.toml", "max_iterations = 50\n")
        result = load_config(tmp_path)
        assert result == {"max_iterations": 50, "ai_name": "Ada"}

    def test_unknown_keys_warn(self, tmp_path, no_global, capsys):
        _write_toml(tmp_path / "metaagent.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_invalid_toml_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "metaagent.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_generate_config_is_valid_toml(self):
        lines = []
        for line in generate_config().splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped)
        parsed = tomllib.loads("\n".join(lines))
        assert set(parsed) <= set(_ARGPARSE_DEFAULTS)

    def test_generate_config_project_flag(self):
        assert "Project config" in generate_config(project=True)
        assert "Global config" in generate_config(project=False)


# ===========================================================================
# Type validation
# ===========================================================================


class TestTypeValidation:
    def test_string_where_int_expected(self, tmp_path, no_global):
        _write_toml(tmp_path / "metaagent.toml", 'max_iterations = "many"\n')
        with pytest.raises(ConfigError, match="max_iterations.*expected int.*got str"):
            load_config(tmp_path)

    def test_toml_int_for_float_field(self, tmp_path, no_global):
        _write_toml(tmp_path / "metaagent.toml", "temperature = 1\nhuman_input_timeout = 30\n")
        result = load_config(tmp_path)
        assert result["temperature"] == 1
        assert result["human_input_timeout"] == 30

    def test_bool_for_int_field_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "metaagent.toml", "max_iterations = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_bool_for_string_field_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "metaagent.toml", "model = false\n")
        with pytest.raises(ConfigError, match="expected str"):
            load_config(tmp_path)

    @pytest.mark.parametrize(
        "line",
        ["max_iterations = 0", "memory_token_limit = -5", "human_input_timeout = 0.0"],
    )
    def test_non_positive_rejected(self, tmp_path, no_global, line):
        _write_toml(tmp_path / "metaagent.toml", line + "\n")
        with pytest.raises(ConfigError, match="must be positive"):
            load_config(tmp_path)

    def test_unknown_provider_rejected(self, tmp_path, no_global):
        _write_toml(tmp_path / "metaagent.toml", 'provider = "acme"\n')
        with pytest.raises(ConfigError, match="unknown provider"):
            load_config(tmp_path)


# ===========================================================================
# apply_config_to_args
# ===========================================================================


class TestApplyConfigToArgs:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "gpt-4", "max_iterations": 7})
        assert args.model == "gpt-4"
        assert args.max_iterations == 7

    def test_cli_beats_config(self):
        args = _make_args(model="cli-model")
        apply_config_to_args(args, {"model": "config-model"})
        assert args.model == "cli-model"

    def test_sentinel_resolves_to_default(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.provider == "openai"
        assert args.model == "gpt-3.5-turbo"
        assert args.ai_name == "Tom"
        assert args.ai_role == "Assistant"
        assert args.max_iterations == 100
        assert args.memory_token_limit == 2500
        assert args.human_in_the_loop is True
        assert args.replay is True
        assert args.send_token_limit is None

    def test_store_false_flag_beats_config(self):
        args = _make_args(human_in_the_loop=False)
        apply_config_to_args(args, {"human_in_the_loop": True})
        assert args.human_in_the_loop is False

    def test_color_config_true(self):
        args = _make_args()
        apply_config_to_args(args, {"color": True})
        assert args.color is True
        assert args.no_color is False

    def test_color_config_false(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_no_color_cli_overrides_config(self):
        args = _make_args(no_color=True)
        apply_config_to_args(args, {"color": True})
        assert args.no_color is True
        assert args.color is False


# ===========================================================================
# API keys
# ===========================================================================


class TestResolveApiKeys:
    def _resolved(self, **overrides):
        args = _make_args(**overrides)
        apply_config_to_args(args, {})
        return args

    def test_openai_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        args = self._resolved()
        resolve_api_keys(args)
        assert args.api_key == "sk-env"

    def test_openrouter_env(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "or-env")
        args = self._resolved(provider="openrouter")
        resolve_api_keys(args)
        assert args.api_key == "or-env"

    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        args = self._resolved(api_key="sk-cli")
        resolve_api_keys(args)
        assert args.api_key == "sk-cli"

    def test_lmstudio_needs_no_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        args = self._resolved(provider="lmstudio")
        resolve_api_keys(args)
        assert args.api_key is None

    def test_serper_env(self, monkeypatch):
        monkeypatch.setenv("SERPER_API_KEY", "serp")
        args = self._resolved()
        resolve_api_keys(args)
        assert args.serper_api_key == "serp"


class TestApiKeyWarning:
    def test_api_key_in_git_repo_warns(self, tmp_path, no_global, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "metaagent.toml", 'serper_api_key = "secret"\n')
        load_config(tmp_path)
        assert "serper_api_key" in capsys.readouterr().err

    def test_api_key_without_git_no_warning(self, tmp_path, no_global, capsys):
        _write_toml(tmp_path / "metaagent.toml", 'api_key = "sk-secret"\n')
        load_config(tmp_path)
        assert "api_key" not in capsys.readouterr().err


# ===========================================================================
# XDG_CONFIG_HOME
# ===========================================================================


class TestGlobalConfigDir:
    def test_respects_xdg(self, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", "/custom/xdg")
        assert global_config_dir() == Path("/custom/xdg/metaagent")

    def test_default_home(self, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        assert global_config_dir() == Path.home() / ".config" / "metaagent"


# ===========================================================================
# Integration: full CLI -> config -> resolution
# ===========================================================================


class TestCLIIntegration:
    def test_parse_load_apply(self, tmp_path, no_global):
        _write_toml(tmp_path / "metaagent.toml", 'max_iterations = 42\nai_name = "Ada"\n')

        from metaagent.agent import build_parser

        args = build_parser().parse_args(["--base-dir", str(tmp_path), "write a poem"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_iterations == 42
        assert args.ai_name == "Ada"
        assert args.provider == "openai"
        assert args.goal == "write a poem"

    def test_cli_flag_overrides_config(self, tmp_path, no_global):
        _write_toml(tmp_path / "metaagent.toml", "max_iterations = 42\nhuman_in_the_loop = true\n")

        from metaagent.agent import build_parser

        args = build_parser().parse_args(["--max-iterations", "5", "--no-human-input", "g"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_iterations == 5
        assert args.human_in_the_loop is False
