"""Configuration models and parser for codebridge.yaml."""

from codebridge.config.models import (
    AgentConfig,
    BridgeConfig,
    ReasoningConfig,
    TelegramConfig,
)
from codebridge.config.parser import ConfigError, load_config

__all__ = [
    "AgentConfig",
    "BridgeConfig",
    "ConfigError",
    "ReasoningConfig",
    "TelegramConfig",
    "load_config",
]
