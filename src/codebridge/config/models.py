"""Pydantic v2 models for codebridge.yaml configuration."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from codebridge.constants import DEFAULT_MAX_TURNS

_MODEL_RE = re.compile(r"^[a-zA-Z0-9_.-]+/[a-zA-Z0-9_.-]+$")
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_env_name(value: str) -> str:
    if not _ENV_NAME_RE.match(value):
        msg = f"Invalid environment variable name '{value}'"
        raise ValueError(msg)
    return value


class AgentConfig(BaseModel):
    """How the coding-agent CLI is launched."""

    model_config = ConfigDict(extra="forbid")

    cwd: str = Field(
        default=".",
        description="Working directory for agent runs",
    )
    max_turns: int = Field(
        default=DEFAULT_MAX_TURNS,
        ge=1,
        description="Turn budget passed as --max-turns",
    )
    executable: str | None = Field(
        default=None,
        description="Explicit path to the agent CLI (skips install-location lookup)",
    )


class TelegramConfig(BaseModel):
    """Chat transport settings."""

    model_config = ConfigDict(extra="forbid")

    bot_token_env: str = Field(
        default="CODEBRIDGE_TELEGRAM_TOKEN",
        description="Environment variable holding the dedicated bot token",
    )
    chat_id: str = Field(description="Target group/chat identifier")
    poll_interval: float = Field(
        default=3.0,
        gt=0,
        description="Seconds between getUpdates polls",
    )
    progress_interval: float = Field(
        default=2.0,
        ge=0,
        description="Minimum seconds between live progress edits",
    )
    request_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Per-request HTTP timeout in seconds",
    )

    @field_validator("bot_token_env")
    @classmethod
    def _valid_env(cls, value: str) -> str:
        return _check_env_name(value)

    @field_validator("chat_id", mode="before")
    @classmethod
    def _coerce_chat_id(cls, value: object) -> object:
        # YAML reads bare group ids like -100123 as ints.
        if isinstance(value, int):
            return str(value)
        return value


class ReasoningConfig(BaseModel):
    """Reasoning backend used for chat orchestration."""

    model_config = ConfigDict(extra="forbid")

    model: str = Field(
        default="openai/MiniMax-M2.5",
        description="Model identifier as 'provider/model-name'",
    )
    base_url: str | None = Field(
        default="https://api.minimaxi.com/v1",
        description="Chat-completion endpoint base URL",
    )
    api_key_env: str = Field(
        default="MINIMAX_API_KEY",
        description="Environment variable holding the API key",
    )
    label: str = Field(
        default="MiniMax M2.5",
        description="Name shown in chat next to reasoning replies",
    )
    max_history: int = Field(
        default=30,
        ge=1,
        description="Conversation entries kept (system prompt excluded)",
    )
    max_rounds: int = Field(
        default=5,
        ge=1,
        description="Agent invocations allowed per chat message",
    )

    @field_validator("model")
    @classmethod
    def _valid_model(cls, value: str) -> str:
        if not _MODEL_RE.match(value):
            msg = f"Invalid model format '{value}' — expected 'provider/model-name'"
            raise ValueError(msg)
        return value

    @field_validator("api_key_env")
    @classmethod
    def _valid_env(cls, value: str) -> str:
        return _check_env_name(value)


class BridgeConfig(BaseModel):
    """Top-level codebridge.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1", description="Config schema version")
    agent: AgentConfig = Field(
        default_factory=AgentConfig,
        description="Coding-agent launch settings",
    )
    telegram: TelegramConfig | None = Field(
        default=None,
        description="Chat transport settings (omit to run locally only)",
    )
    reasoning: ReasoningConfig | None = Field(
        default=None,
        description="Reasoning backend (omit to disable chat orchestration)",
    )
    state_dir: str = Field(
        default=".codebridge",
        description="Directory for the continuation token and run journal",
    )
