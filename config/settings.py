"""
Configuration loader for Routewise.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.2
    max_tokens: int = 1024
    api_key: str = ""


@dataclass
class RoutingConfig:
    completion_boost: float = 20.0      # points added per unit of completion progress


@dataclass
class PreparationConfig:
    max_iterations: int = 3


@dataclass
class ToolConfig:
    timeout_seconds: float = 30.0
    retry_count: int = 2                # retries after the first attempt
    retry_backoff_base: float = 1.0     # tenacity wait_exponential multiplier
    retry_backoff_max: float = 10.0


@dataclass
class Settings:
    app_name: str = "Routewise"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    preparation: PreparationConfig = field(default_factory=PreparationConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    routes_file: str = ""               # optional YAML route definitions


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ROUTEWISE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.routes_file = raw.get("routes_file", settings.routes_file)

        if "llm" in raw:
            llm = raw["llm"]
            settings.llm = LLMConfig(
                provider=llm.get("provider", settings.llm.provider),
                model=llm.get("model", settings.llm.model),
                temperature=float(llm.get("temperature", settings.llm.temperature)),
                max_tokens=int(llm.get("max_tokens", settings.llm.max_tokens)),
                api_key=llm.get("api_key", ""),
            )

        if "routing" in raw:
            rt = raw["routing"]
            settings.routing = RoutingConfig(
                completion_boost=float(rt.get("completion_boost", settings.routing.completion_boost)),
            )

        if "preparation" in raw:
            prep = raw["preparation"]
            settings.preparation = PreparationConfig(
                max_iterations=int(prep.get("max_iterations", settings.preparation.max_iterations)),
            )

        if "tools" in raw:
            tl = raw["tools"]
            settings.tools = ToolConfig(
                timeout_seconds=float(tl.get("timeout_seconds", settings.tools.timeout_seconds)),
                retry_count=int(tl.get("retry_count", settings.tools.retry_count)),
                retry_backoff_base=float(tl.get("retry_backoff_base", settings.tools.retry_backoff_base)),
                retry_backoff_max=float(tl.get("retry_backoff_max", settings.tools.retry_backoff_max)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() reloads."""
    global _settings
    _settings = None
