"""Configuration file loading and merging for ponder.

Reads TOML config from ~/.config/ponder/config.toml (global) and
<base_dir>/ponder.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"
MIN_REASONING_BUDGET = 1024


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "reasoning_budget_tokens": int,
    "no_thinking": bool,
    "collapse_reasoning": bool,
    "temperature": (int, float),
    "system_prompt": str,
    "no_bash": bool,
    "verbose": bool,
    "color": bool,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 16000,
    "reasoning_budget_tokens": 10000,
    "no_thinking": False,
    "collapse_reasoning": False,
    "temperature": None,
    "system_prompt": None,
    "no_bash": False,
    "verbose": False,
    "color": False,
    "no_color": False,
}


@dataclass
class AgentConfig:
    """Options consumed at agent construction. Fixed for the whole session."""

    model: str = DEFAULT_MODEL
    api_key: str | None = None
    base_url: str | None = None
    max_output_tokens: int = 16000
    reasoning_budget_tokens: int = 10000
    enable_reasoning: bool = True
    collapse_reasoning: bool = False
    verbose: bool = False
    temperature: float | None = None
    system_prompt: str | None = None
    base_dir: str = "."
    allow_bash: bool = True

    def validate(self) -> None:
        if self.max_output_tokens < 1:
            raise ConfigError("max_output_tokens must be at least 1")
        if not self.enable_reasoning:
            return
        if self.reasoning_budget_tokens < MIN_REASONING_BUDGET:
            raise ConfigError(
                f"reasoning_budget_tokens must be at least {MIN_REASONING_BUDGET}, "
                f"got {self.reasoning_budget_tokens}"
            )
        if self.reasoning_budget_tokens >= self.max_output_tokens:
            raise ConfigError(
                f"reasoning_budget_tokens ({self.reasoning_budget_tokens}) must be "
                f"less than max_output_tokens ({self.max_output_tokens})"
            )

    @property
    def llm_kwargs(self) -> dict:
        return {"api_key": self.api_key, "base_url": self.base_url}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "ponder"
    return Path.home() / ".config" / "ponder"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Raise ConfigError for type mismatches; warn about unknown keys."""
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
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )


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


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict of the keys actually set in config files; no
    defaults are injected.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "ponder.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, then from defaults."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_from_args(args: argparse.Namespace) -> AgentConfig:
    """Build a validated AgentConfig from fully resolved CLI args."""
    config = AgentConfig(
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        reasoning_budget_tokens=args.reasoning_budget_tokens,
        enable_reasoning=not args.no_thinking,
        collapse_reasoning=args.collapse_reasoning,
        verbose=args.verbose,
        temperature=args.temperature,
        system_prompt=args.system_prompt,
        base_dir=args.base_dir,
        allow_bash=not args.no_bash,
    )
    config.validate()
    return config


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# ponder configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/ponder.toml' if project else '~/.config/ponder/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        f'# model = "{DEFAULT_MODEL}"',
        '# api_key = "sk-..."              # prefer env vars (ANTHROPIC_API_KEY, ...)',
        '# base_url = "https://..."',
        "# max_output_tokens = 16000",
        "# temperature = 0.7               # ignored while reasoning is enabled",
        '# system_prompt = "You are a helpful assistant."',
        "",
        "# --- Reasoning ---",
        "# no_thinking = false",
        "# reasoning_budget_tokens = 10000",
        "# collapse_reasoning = false",
        "",
        "# --- Tools ---",
        "# no_bash = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# verbose = false",
        "",
    ]
    return "\n".join(lines)
