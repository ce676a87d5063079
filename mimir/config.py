"""Configuration management for the delegation engine."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class OpenAIConfig:
    """Public OpenAI service configuration."""

    api_key: str
    base_url: Optional[str] = None
    max_concurrent: int = 50


@dataclass(frozen=True)
class AzureOpenAIConfig:
    """Azure OpenAI service configuration."""

    api_key: str
    endpoint: str
    api_version: str = "2024-02-15-preview"
    max_concurrent: int = 50


@dataclass(frozen=True)
class AgentSettings:
    """Model choice for one built-in agent."""

    model: str
    temperature: float


# Environment prefix -> (catalog identity, default temperature)
_AGENT_ENV = {
    "MIMIR": ("orchestrator", 0.7),
    "RESEARCH_AGENT": ("research", 0.7),
    "CODING_AGENT": ("coding", 0.3),
    "DATA_ANALYSIS_AGENT": ("data_analysis", 0.3),
    "WRITING_AGENT": ("writing", 0.7),
    "REPORT_AGENT": ("report", 0.5),
}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    openai: Optional[OpenAIConfig] = None
    azure_openai: Optional[AzureOpenAIConfig] = None
    default_model: str = "gpt-4"
    fast_model: str = "gpt-3.5-turbo"
    agent_settings: Dict[str, AgentSettings] = field(default_factory=dict)
    simple_query_words: int = 10
    max_tool_turns: int = 5
    heartbeat_seconds: float = 15.0
    request_timeout_seconds: float = 60.0
    tracing_disabled: bool = False
    max_traces: int = 500
    rate_limit: int = 10
    rate_window_seconds: float = 60.0
    trusted_proxies: Tuple[str, ...] = ()
    log_level: str = "info"
    environment: str = "development"

    def settings_for(self, identity: str) -> AgentSettings:
        """Return model settings for a catalog identity, falling back to defaults."""
        settings = self.agent_settings.get(identity)
        if settings is None:
            return AgentSettings(model=self.default_model, temperature=0.7)
        return settings

    @property
    def models(self) -> tuple:
        """Every distinct model name the built-in agents may address."""
        names = {self.default_model, self.fast_model}
        names.update(s.model for s in self.agent_settings.values())
        return tuple(sorted(names))

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        openai_config = None
        openai_key = os.getenv("OPENAI_API_KEY")
        if openai_key:
            openai_config = OpenAIConfig(
                api_key=openai_key,
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                max_concurrent=_env_int("OPENAI_MAX_CONCURRENT", 50),
            )

        azure_config = None
        azure_key = os.getenv("AZURE_OPENAI_KEY")
        azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
        if azure_key and azure_endpoint:
            azure_config = AzureOpenAIConfig(
                api_key=azure_key,
                endpoint=azure_endpoint,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
                max_concurrent=_env_int("AZURE_OPENAI_MAX_CONCURRENT", 50),
            )

        default_model = os.getenv("OPENAI_DEFAULT_MODEL", "gpt-4")
        agent_settings = {
            identity: AgentSettings(
                model=os.getenv(f"{prefix}_MODEL", default_model),
                temperature=_env_float(f"{prefix}_TEMPERATURE", temperature),
            )
            for prefix, (identity, temperature) in _AGENT_ENV.items()
        }

        return cls(
            openai=openai_config,
            azure_openai=azure_config,
            default_model=default_model,
            fast_model=os.getenv("OPENAI_FAST_MODEL", "gpt-3.5-turbo"),
            agent_settings=agent_settings,
            simple_query_words=_env_int("MIMIR_SIMPLE_QUERY_WORDS", 10),
            max_tool_turns=_env_int("MIMIR_MAX_TOOL_TURNS", 5),
            heartbeat_seconds=_env_float("MIMIR_HEARTBEAT_SECONDS", 15.0),
            request_timeout_seconds=_env_float("MIMIR_REQUEST_TIMEOUT_SECONDS", 60.0),
            tracing_disabled=os.getenv("MIMIR_DISABLE_TRACING") == "1",
            max_traces=_env_int("MIMIR_MAX_TRACES", 500),
            rate_limit=_env_int("MIMIR_RATE_LIMIT", 10),
            rate_window_seconds=_env_float("MIMIR_RATE_WINDOW_SECONDS", 60.0),
            trusted_proxies=_env_list("MIMIR_TRUSTED_PROXIES"),
            log_level=os.getenv("LOG_LEVEL", "info"),
            environment=os.getenv("ENVIRONMENT", "development"),
        )


# Global config instance
config = Config.from_env()
