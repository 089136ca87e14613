"""TOML configuration for quill.

Two optional files feed the CLI: a global one under the XDG config
directory and ``quill.toml`` at the project root. Command-line flags win
over the project file, which wins over the global file, which wins over
built-in defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any, NamedTuple

from .errors import ConfigError

_UNSET = object()  # argparse default meaning "flag not given"

PROJECT_CONFIG_FILE = "quill.toml"


class _Option(NamedTuple):
    types: type | tuple[type, ...]
    default: Any
    example: str
    note: str = ""


_OPTIONS: dict[str, _Option] = {
    "provider": _Option(str, "lmstudio", '"lmstudio"', "lmstudio | openrouter | huggingface | generic"),
    "model": _Option(str, None, '"qwen/qwen3-coder-30b"'),
    "api_key": _Option(str, None, '"sk-or-..."', "environment variables are preferred"),
    "base_url": _Option(str, None, '"https://..."'),
    "max_output_tokens": _Option(int, None, "8192"),
    "temperature": _Option((int, float), None, "0.2"),
    "max_steps": _Option(int, 20, "20", "tool steps per turn"),
    "no_instructions": _Option(bool, False, "false", "skip AGENTS.md files"),
    "color": _Option(bool, False, "true", "unset means auto-detect"),
    "quiet": _Option(bool, False, "false"),
}

_DEFAULTS: dict[str, Any] = {key: opt.default for key, opt in _OPTIONS.items()}
_DEFAULTS["no_color"] = False

_TEMPLATE_GROUPS = [
    ("Provider", ["provider", "model", "api_key", "base_url"]),
    ("Sampling", ["max_output_tokens", "temperature"]),
    ("Agent", ["max_steps", "no_instructions"]),
    ("Output", ["color", "quiet"]),
]

API_KEY_ENV: dict[str, str] = {
    "openrouter": "OPENROUTER_API_KEY",
    "huggingface": "HF_TOKEN",
    "generic": "QUILL_API_KEY",
}


def global_config_dir() -> Path:
    """Directory holding the global config.toml (honours XDG_CONFIG_HOME)."""
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "quill"


def _describe(types: type | tuple[type, ...]) -> str:
    names = types if isinstance(types, tuple) else (types,)
    return " or ".join(t.__name__ for t in names)


def _check_value(key: str, value: Any, source: str) -> None:
    option = _OPTIONS[key]
    # TOML booleans are ints to isinstance
    wrong_bool = isinstance(value, bool) and option.types is not bool
    if wrong_bool or not isinstance(value, option.types):
        raise ConfigError(
            f"{source}: {key!r} expected {_describe(option.types)}, "
            f"got {type(value).__name__}"
        )
    if key == "max_steps" and value < 1:
        raise ConfigError(f"{source}: 'max_steps' must be at least 1")


def _inside_git_checkout(path: Path) -> bool:
    return any((d / ".git").exists() for d in path.parents)


def _read_file(path: Path) -> dict:
    """Parse one config file, keeping known keys. Missing files yield {}."""
    if not path.is_file():
        return {}
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e

    known = {}
    for key, value in raw.items():
        if key not in _OPTIONS:
            print(f"warning: {path}: unknown config key {key!r}", file=sys.stderr)
            continue
        _check_value(key, value, str(path))
        known[key] = value
    return known


def load_config(base_dir: str | Path) -> dict:
    """Merged settings from the global and project files, project last."""
    project_path = Path(base_dir).resolve() / PROJECT_CONFIG_FILE
    merged = _read_file(global_config_dir() / "config.toml")
    project = _read_file(project_path)

    if "api_key" in project and _inside_git_checkout(project_path):
        print(
            f"warning: {project_path}: 'api_key' in a git-tracked project config "
            "may be committed accidentally. Put it in an environment variable instead.",
            file=sys.stderr,
        )
    merged.update(project)
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill every flag still holding _UNSET from config, then from defaults.

    ``color`` is a single key in the file but two flags on the command
    line; it only applies when neither --color nor --no-color was given.
    """
    unset = {dest for dest, value in vars(args).items() if value is _UNSET}

    if "color" in config and {"color", "no_color"} <= unset:
        args.color = config["color"]
        args.no_color = not config["color"]
        unset -= {"color", "no_color"}

    for dest in unset:
        if dest in config and dest != "color":
            setattr(args, dest, config[dest])
        elif dest in _DEFAULTS:
            setattr(args, dest, _DEFAULTS[dest])


def resolve_api_key(provider: str, api_key: str | None) -> str | None:
    """Explicit key first, then the provider's environment variable."""
    if api_key:
        return api_key
    env_name = API_KEY_ENV.get(provider)
    return (os.environ.get(env_name) or None) if env_name else None


def generate_config(project: bool = False) -> str:
    """A fully commented-out config file listing every supported key."""
    where = "<project>/quill.toml" if project else "~/.config/quill/config.toml"
    out = [
        "# quill configuration file",
        f"# {'Project' if project else 'Global'} config: {where}",
        "# Command-line flags take precedence. Uncomment what you need.",
    ]
    for title, keys in _TEMPLATE_GROUPS:
        out += ["", f"# [{title}]"]
        for key in keys:
            option = _OPTIONS[key]
            line = f"# {key} = {option.example}"
            if option.note:
                line = f"{line:<42}# {option.note}"
            out.append(line)
    out.append("")
    return "\n".join(out)
