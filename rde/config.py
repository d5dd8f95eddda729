"""YAML-based configuration for per-role model settings and engine limits.

Loads an optional ``--config rde.yaml`` file and resolves per-role backend,
model, base_url, api_key, and system_prompt values using the merge priority::

    CLI flags  >  roles.{role}  >  defaults  >  hardcoded defaults

Two roles exist: ``root`` drives the Engine Loop, ``subcall`` serves flat
``llm_query`` sub-calls.  The ``settings`` mapping carries engine limits.

This module imports only stdlib + ``yaml``.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigError(ValueError):
    """Raised on configuration validation failures."""


# =====================================================================
# Dataclasses
# =====================================================================

_VALID_ROLE_NAMES = frozenset({"root", "subcall"})
_VALID_BACKENDS = frozenset(
    {"anthropic", "openai", "openrouter", "huggingface", "ollama", "claude"}
)

# Settings that map straight onto EngineConfig fields.
ENGINE_SETTINGS = (
    "max_iterations",
    "max_depth",
    "max_subcalls",
    "max_wall_time",
    "max_concurrent_subcalls",
    "subcall_timeout",
    "finalize_timeout",
    "fragment_tag",
    "output_limit",
    "max_tokens",
)

_INT_SETTINGS = frozenset(
    {
        "max_iterations",
        "max_depth",
        "max_subcalls",
        "max_concurrent_subcalls",
        "output_limit",
        "max_tokens",
        "threshold",
    }
)
_NUMBER_SETTINGS = frozenset({"max_wall_time", "subcall_timeout", "finalize_timeout"})
_BOOL_SETTINGS = frozenset({"verbose", "compact"})
_STR_SETTINGS = frozenset({"fragment_tag", "trajectory_log"})


@dataclass
class DefaultsConfig:
    """Shared fallback values for all roles.

    Only backend/model/base_url/api_key_env are allowed here;
    system_prompt fields are role-level only.
    """

    backend: str | None = None
    model: str | None = None
    base_url: str | None = None
    api_key_env: str | None = None


@dataclass
class RoleConfig:
    """Per-role configuration (root, subcall)."""

    backend: str | None = None
    model: str | None = None
    base_url: str | None = None
    api_key_env: str | None = None
    system_prompt: str | None = None
    system_prompt_file: str | None = None


@dataclass
class SettingsConfig:
    """Engine limits and CLI switches."""

    max_iterations: int | None = None
    max_depth: int | None = None
    max_subcalls: int | None = None
    max_wall_time: float | None = None
    max_concurrent_subcalls: int | None = None
    subcall_timeout: float | None = None
    finalize_timeout: float | None = None
    fragment_tag: str | None = None
    output_limit: int | None = None
    max_tokens: int | None = None
    verbose: bool | None = None
    compact: bool | None = None
    threshold: int | None = None
    trajectory_log: str | None = None

    def engine_overrides(self) -> dict[str, Any]:
        """Return the EngineConfig fields this file sets explicitly."""
        values = asdict(self)
        return {name: values[name] for name in ENGINE_SETTINGS if values[name] is not None}


@dataclass
class RDEConfig:
    """Top-level parsed config file."""

    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    roles: dict[str, RoleConfig] = field(default_factory=dict)
    settings: SettingsConfig = field(default_factory=SettingsConfig)
    config_dir: Path = field(default_factory=Path.cwd)


@dataclass
class ResolvedRoleConfig:
    """Fully resolved configuration for a single role (after merge)."""

    backend: str | None = None
    model: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    system_prompt: str | None = None


# =====================================================================
# Loading & Validation
# =====================================================================


def load_config(path: Path) -> RDEConfig:
    """Parse a YAML config file and return an ``RDEConfig``.

    Parameters
    ----------
    path : Path
        Path to the YAML configuration file.

    Returns
    -------
    RDEConfig
        Parsed configuration.

    Raises
    ------
    ConfigError
        If the file is not valid YAML or fails validation.
    FileNotFoundError
        If the config file does not exist.
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        # Empty YAML file: default config
        return RDEConfig(config_dir=path.parent.resolve())

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    config = _parse_raw(raw, config_dir=path.parent.resolve())
    _validate_config(config)
    return config


def _parse_raw(raw: dict[str, Any], config_dir: Path) -> RDEConfig:
    """Build an ``RDEConfig`` from raw YAML dict."""
    defaults = DefaultsConfig()
    if isinstance(raw.get("defaults"), dict):
        d = raw["defaults"]
        defaults = DefaultsConfig(
            backend=d.get("backend"),
            model=d.get("model"),
            base_url=d.get("base_url"),
            api_key_env=d.get("api_key_env"),
        )

    roles: dict[str, RoleConfig] = {}
    if isinstance(raw.get("roles"), dict):
        for role_name, role_dict in raw["roles"].items():
            if not isinstance(role_dict, dict):
                raise ConfigError(f"Role '{role_name}' must be a mapping")
            roles[role_name] = RoleConfig(
                backend=role_dict.get("backend"),
                model=role_dict.get("model"),
                base_url=role_dict.get("base_url"),
                api_key_env=role_dict.get("api_key_env"),
                system_prompt=role_dict.get("system_prompt"),
                system_prompt_file=role_dict.get("system_prompt_file"),
            )

    settings = SettingsConfig()
    if isinstance(raw.get("settings"), dict):
        s = raw["settings"]
        known = set(SettingsConfig.__dataclass_fields__)
        unknown = sorted(set(s) - known)
        if unknown:
            raise ConfigError(f"Unknown settings {unknown}. Valid settings: {sorted(known)}")
        settings = SettingsConfig(**s)

    return RDEConfig(defaults=defaults, roles=roles, settings=settings, config_dir=config_dir)


def _validate_settings(settings: SettingsConfig) -> None:
    for name, value in asdict(settings).items():
        if value is None:
            continue
        if name in _BOOL_SETTINGS:
            if not isinstance(value, bool):
                raise ConfigError(f"Setting '{name}' must be a boolean, got {value!r}")
        elif name in _STR_SETTINGS:
            if not isinstance(value, str) or not value:
                raise ConfigError(f"Setting '{name}' must be a non-empty string, got {value!r}")
        else:
            types = int if name in _INT_SETTINGS else (int, float)
            if isinstance(value, bool) or not isinstance(value, types):
                raise ConfigError(f"Setting '{name}' must be a number, got {value!r}")
            if value < 0:
                raise ConfigError(f"Setting '{name}' must not be negative, got {value!r}")


def _validate_config(config: RDEConfig) -> None:
    """Validate a parsed config, raising ``ConfigError`` on problems."""
    for role_name in config.roles:
        if role_name not in _VALID_ROLE_NAMES:
            raise ConfigError(
                f"Unknown role '{role_name}'. Valid roles: {sorted(_VALID_ROLE_NAMES)}"
            )

    for label, backend in _all_backends(config):
        if backend not in _VALID_BACKENDS:
            raise ConfigError(
                f"Unknown backend '{backend}' in {label}. Valid backends: {sorted(_VALID_BACKENDS)}"
            )

    for role_name, role in config.roles.items():
        if role.system_prompt and role.system_prompt_file:
            raise ConfigError(
                f"Role '{role_name}' specifies both system_prompt and system_prompt_file. "
                "Use only one."
            )
        if role.system_prompt_file:
            prompt_path = config.config_dir / role.system_prompt_file
            if not prompt_path.exists():
                raise ConfigError(f"Role '{role_name}' system_prompt_file not found: {prompt_path}")

    _validate_settings(config.settings)


def _all_backends(config: RDEConfig) -> list[tuple[str, str]]:
    """Collect all explicitly set backend values for validation."""
    result: list[tuple[str, str]] = []
    if config.defaults.backend:
        result.append(("defaults", config.defaults.backend))
    for role_name, role in config.roles.items():
        if role.backend:
            result.append((f"roles.{role_name}", role.backend))
    return result


# =====================================================================
# Resolution
# =====================================================================


def resolve_role(role_name: str, config: RDEConfig) -> ResolvedRoleConfig:
    """Merge role config with defaults and resolve dynamic values.

    Parameters
    ----------
    role_name : str
        ``"root"`` or ``"subcall"``.
    config : RDEConfig
        The parsed config.

    Returns
    -------
    ResolvedRoleConfig
        Fully resolved configuration for the role.
    """
    role = config.roles.get(role_name, RoleConfig())

    backend = role.backend or config.defaults.backend
    model = role.model or config.defaults.model
    base_url = role.base_url or config.defaults.base_url
    api_key_env = role.api_key_env or config.defaults.api_key_env

    api_key: str | None = None
    if api_key_env:
        api_key = os.environ.get(api_key_env)

    system_prompt: str | None = None
    if role.system_prompt:
        system_prompt = role.system_prompt
    elif role.system_prompt_file:
        system_prompt = (config.config_dir / role.system_prompt_file).read_text(encoding="utf-8")

    return ResolvedRoleConfig(
        backend=backend,
        model=model,
        base_url=base_url,
        api_key=api_key,
        system_prompt=system_prompt,
    )
