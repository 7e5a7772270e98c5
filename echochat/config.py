"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags < per-session overrides
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ProviderConfig:
    provider: str = "claude"
    model: str = "claude-sonnet-4-5-20250929"
    api_base: str = ""
    api_key_env: str = "ANTHROPIC_API_KEY"
    max_tokens: int = 0
    temperature: float = 1.0
    timeout_seconds: int = 120


@dataclass
class AgentConfig:
    enabled: bool = True
    max_iterations: int = 10
    auto_approve_safe_tools: bool = True
    event_buffer: int = 64
    disabled_tools: list[str] = field(default_factory=list)


@dataclass
class ChatConfig:
    system_prompt: str = ""
    stream: bool = True


@dataclass
class StoreConfig:
    history_db: str = "~/.echochat/history.db"


@dataclass
class LoggingConfig:
    level: str = "WARNING"
    file: str = ""


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class EchoConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'provider.model')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise AttributeError(f"Unknown config key: {dotpath}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict | None) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in (raw or {}).items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "ECHOCHAT_PROVIDER":              ("provider.provider", str),
    "ECHOCHAT_MODEL":                 ("provider.model", str),
    "ECHOCHAT_API_BASE":              ("provider.api_base", str),
    "ECHOCHAT_API_KEY_ENV":           ("provider.api_key_env", str),
    "ECHOCHAT_MAX_TOKENS":            ("provider.max_tokens", int),
    "ECHOCHAT_TEMPERATURE":           ("provider.temperature", float),
    "ECHOCHAT_TIMEOUT":               ("provider.timeout_seconds", int),
    "ECHOCHAT_AGENT_ENABLED":         ("agent.enabled", bool),
    "ECHOCHAT_AGENT_MAX_ITERATIONS":  ("agent.max_iterations", int),
    "ECHOCHAT_AGENT_AUTO_APPROVE":    ("agent.auto_approve_safe_tools", bool),
    "ECHOCHAT_AGENT_DISABLED_TOOLS":  ("agent.disabled_tools", list),
    "ECHOCHAT_SYSTEM_PROMPT":         ("chat.system_prompt", str),
    "ECHOCHAT_HISTORY_DB":            ("store.history_db", str),
    "ECHOCHAT_LOG_LEVEL":             ("logging.level", str),
    "ECHOCHAT_LOG_FILE":              ("logging.file", str),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> EchoConfig:
    """
    Build an EchoConfig by layering sources in precedence order:

        defaults  <  config file  <  profile  <  env vars  <  CLI flags

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if not isinstance(file_data, dict):
                raise ValueError(f"Config file {p} must contain a mapping")
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile:
        profile_data = (raw.get("profiles") or {}).get(profile)
        if profile_data is None:
            raise ValueError(f"Unknown profile: {profile}")
        raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = EchoConfig(
        provider=_build_section(ProviderConfig, raw.get("provider")),
        agent=_build_section(AgentConfig, raw.get("agent")),
        chat=_build_section(ChatConfig, raw.get("chat")),
        store=_build_section(StoreConfig, raw.get("store")),
        logging=_build_section(LoggingConfig, raw.get("logging")),
        profiles=raw.get("profiles") or {},
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            if value is not None:
                _apply_dotpath(cfg, dotpath, value)

    return cfg
