"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags

Sections are plain dataclasses.  ``ProviderConfig`` is frozen: an adapter
holds on to the instance it was built with, and a configuration change
means building a new adapter.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Protocol

import yaml

from chatrelay.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderConfig:
    base_url: str = ""
    api_key: str = ""
    api_key_env: str = ""
    headers: dict = field(default_factory=dict)
    timeout_seconds: float = 120.0
    max_retries: int = 2
    retry_backoff_seconds: float = 0.5

    def resolved_api_key(self) -> str:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env, "")
        return ""


@dataclass
class ModelSettings:
    model: str = "gpt-3.5-turbo"
    temperature: float = 1.0
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    n: int = 1
    max_tokens: int | None = None
    stop: list[str] | None = None
    logprobs: bool | None = None
    top_logprobs: int | None = None
    logit_bias: dict | None = None
    user: str | None = None
    streaming: bool = True
    model_kwargs: dict = field(default_factory=dict)


@dataclass
class StreamingConfig:
    chunk_delay_seconds: float = 0.05
    fallback_enabled: bool = True


@dataclass
class LoggingConfig:
    level: str = "WARNING"


class ProviderStore(Protocol):
    """Resolves provider connection settings by id."""

    def get(self, provider_id: str) -> ProviderConfig: ...


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class RelayConfig:
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    default_provider: str = ""
    model: ModelSettings = field(default_factory=ModelSettings)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    def get(self, provider_id: str | None = None) -> ProviderConfig:
        """
        Return the ``ProviderConfig`` for *provider_id* (or the default).

        Raises ``ConfigurationError`` if the provider is unknown or has no
        ``base_url``.
        """
        pid = provider_id or self.default_provider
        if not pid and len(self.providers) == 1:
            pid = next(iter(self.providers))
        if pid not in self.providers:
            raise ConfigurationError(
                f"Unknown provider {pid!r}. Configured: {list(self.providers)}"
            )
        provider = self.providers[pid]
        if not provider.base_url:
            raise ConfigurationError(f"Provider {pid!r} has no base_url")
        return provider

    def to_dict(self) -> dict:
        d = asdict(self)
        for p in d["providers"].values():
            if p.get("api_key"):
                p["api_key"] = p["api_key"][:6] + "..."
        return d


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _set_dotpath(raw: dict, dotpath: str, value: Any) -> None:
    """Walk the raw dict via dotpath, creating levels, and set the leaf."""
    parts = dotpath.split(".")
    node = raw
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value


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


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Section for {cls.__name__} must be a mapping")
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in raw.items() if k in valid_fields}
    try:
        return cls(**filtered)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid {cls.__name__}: {exc}") from exc


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "CHATRELAY_PROVIDER":             ("default_provider", str),
    "CHATRELAY_MODEL":                ("model.model", str),
    "CHATRELAY_TEMPERATURE":          ("model.temperature", float),
    "CHATRELAY_MAX_TOKENS":           ("model.max_tokens", int),
    "CHATRELAY_STREAMING":            ("model.streaming", bool),
    "CHATRELAY_STOP":                 ("model.stop", list),
    "CHATRELAY_CHUNK_DELAY":          ("streaming.chunk_delay_seconds", float),
    "CHATRELAY_FALLBACK_ENABLED":     ("streaming.fallback_enabled", bool),
    "CHATRELAY_LOG_LEVEL":            ("logging.level", str),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> RelayConfig:
    """
    Build a RelayConfig by layering sources in precedence order:

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
                try:
                    file_data = yaml.safe_load(f) or {}
                except yaml.YAMLError as exc:
                    raise ConfigurationError(f"Cannot parse {p}: {exc}") from exc
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile:
        profile_data = raw.get("profiles", {}).get(profile)
        if profile_data is None:
            raise ConfigurationError(f"Unknown profile {profile!r}")
        raw = _deep_merge(raw, profile_data)

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _set_dotpath(raw, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            if value is not None:
                _set_dotpath(raw, dotpath, value)

    providers_raw = raw.get("providers", {}) or {}
    return RelayConfig(
        providers={
            name: _build_section(ProviderConfig, section or {})
            for name, section in providers_raw.items()
        },
        default_provider=raw.get("default_provider", ""),
        model=_build_section(ModelSettings, raw.get("model", {})),
        streaming=_build_section(StreamingConfig, raw.get("streaming", {})),
        logging=_build_section(LoggingConfig, raw.get("logging", {})),
        profiles=raw.get("profiles", {}),
    )
