"""Configuration file loading and merging for metaagent.

Reads TOML config from ~/.config/metaagent/config.toml (global) and
<base_dir>/metaagent.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any


from .report import ConfigError  # noqa: F401 (re-exported)

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "temperature": (int, float),
    "max_output_tokens": int,
    "ai_name": str,
    "ai_role": str,
    "max_iterations": int,
    "send_token_limit": int,
    "memory_token_limit": int,
    "human_in_the_loop": bool,
    "human_input_timeout": (int, float),
    "replay": bool,
    "serper_api_key": str,
    "embedding_model": str,
    "no_fetch": bool,
    "color": bool,
    "quiet": bool,
}

_POSITIVE_KEYS = {
    "max_output_tokens",
    "max_iterations",
    "send_token_limit",
    "memory_token_limit",
    "human_input_timeout",
}

_SECRET_KEYS = ("api_key", "serper_api_key")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "openai",
    "model": "gpt-3.5-turbo",
    "api_key": None,
    "base_url": None,
    "temperature": 0.0,
    "max_output_tokens": None,
    "ai_name": "Tom",
    "ai_role": "Assistant",
    "max_iterations": 100,
    "send_token_limit": None,
    "memory_token_limit": 2500,
    "human_in_the_loop": True,
    "human_input_timeout": 120.0,
    "replay": True,
    "serper_api_key": None,
    "embedding_model": None,
    "no_fetch": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "metaagent"
    return Path.home() / ".config" / "metaagent"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and ranges in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range numbers.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")

    if config.get("provider") not in (None, "openai", "lmstudio", "openrouter"):
        raise ConfigError(
            f"{source}: unknown provider {config['provider']!r} "
            "(expected openai, lmstudio or openrouter)"
        )


def _check_secrets_in_git(config: dict, config_path: Path) -> None:
    """Warn if API keys are set in a project config inside a git repo."""
    present = [k for k in _SECRET_KEYS if k in config]
    if not present:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: {', '.join(repr(k) for k in present)} in a "
                f"git-tracked project config may be committed accidentally. "
                f"Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
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
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "metaagent.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_secrets_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, checks if the argparse value is still _UNSET. If
    so, applies the config value. After processing all config keys, sweeps
    remaining _UNSET sentinels and replaces them with hardcoded defaults
    from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive --color/--no-color pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def resolve_api_keys(args: argparse.Namespace) -> None:
    """Fill api_key and serper_api_key from the environment when unset."""
    if not args.api_key:
        env_var = {
            "openai": "OPENAI_API_KEY",
            "openrouter": "OPENROUTER_API_KEY",
        }.get(args.provider)
        if env_var:
            args.api_key = os.environ.get(env_var)
    if not args.serper_api_key:
        args.serper_api_key = os.environ.get("SERPER_API_KEY")


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# metaagent configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/metaagent.toml' if project else '~/.config/metaagent/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "openai"            # "openai" | "lmstudio" | "openrouter"',
        '# model = "gpt-3.5-turbo"',
        '# api_key = "sk-..."              # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "# temperature = 0",
        "# max_output_tokens = 1024",
        "",
        "# --- Persona ---",
        '# ai_name = "Tom"',
        '# ai_role = "Assistant"',
        "",
        "# --- Agent behaviour ---",
        "# max_iterations = 100",
        "# send_token_limit = 4196         # default: derived from the model's context size",
        "# memory_token_limit = 2500",
        "# human_in_the_loop = true",
        "# human_input_timeout = 120",
        "# replay = true",
        "",
        "# --- Tools and memory ---",
        '# serper_api_key = "..."          # enables url-finder; env SERPER_API_KEY also works',
        "# no_fetch = false",
        '# embedding_model = "text-embedding-ada-002"   # absent = word-overlap memory',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
