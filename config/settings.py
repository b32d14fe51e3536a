"""
Configuration loader for the flow engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


@dataclass
class EngineConfig:
    default_node_delay_ms: int = 700        # pacing before each node ("typing" delay)
    start_delay_ms: int = 500               # pacing before the start node
    voice_mode: bool = False                # voice bot: tts waits for playback, stt uses the mic
    max_steps_per_turn: int = 50            # safety limit on nodes executed without suspending
    end_of_flow_message: str = "End of flow: this node has no further connections."
    default_end_message: str = "End of the conversation."
    default_message_text: str = "Unconfigured message."
    default_input_question: str = "What would you like to ask?"
    default_stt_prompt: str = "Please send a voice message..."
    default_tts_text: str = "There is no text to synthesize."
    default_choice_message: str = "Please select an option:"
    default_ai_text: str = "Unconfigured AI response."
    ai_failure_message: str = "Sorry, I couldn't generate a response right now."
    business_success_message: str = "Your request was completed successfully."
    business_failure_message: str = "Sorry, we couldn't complete your request. Please try again later."
    contract_violation_message: str = "Sorry, there is a technical problem with this conversation."
    step_limit_message: str = "Sorry, there was a problem processing your request. Please try a different query."
    missing_start_message: str = "This flow has no start node."


@dataclass
class BackendConfig:
    base_url: str = ""
    auth_type: str = "bearer"               # bearer | api_key | none
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=lambda: {
        "ai": "/api/chatbot/ai",
        "actions": "/api/chatbot/actions",
    })
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.0


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    engine: EngineConfig = field(default_factory=EngineConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    flows: list[dict[str, Any]] = field(default_factory=list)


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


def _build_engine(raw: dict[str, Any]) -> EngineConfig:
    defaults = EngineConfig()
    known = {k: raw[k] for k in defaults.__dataclass_fields__ if k in raw}
    return EngineConfig(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    load_dotenv()

    if config_path is None:
        config_path = os.environ.get(
            "FLOW_ENGINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "engine" in raw:
            settings.engine = _build_engine(raw["engine"] or {})

        if "backend" in raw:
            be = raw["backend"] or {}
            settings.backend = BackendConfig(
                base_url=be.get("base_url", ""),
                auth_type=be.get("auth_type", "bearer"),
                auth_credentials=be.get("auth_credentials", {}),
                endpoints={**BackendConfig().endpoints, **be.get("endpoints", {})},
                timeout_seconds=be.get("timeout_seconds", 30.0),
                retry_attempts=be.get("retry_attempts", 3),
                retry_backoff_seconds=be.get("retry_backoff_seconds", 1.0),
            )

        settings.flows = raw.get("flows", [])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
