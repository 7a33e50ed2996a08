"""codebridge — drive a coding-agent CLI from a Telegram group."""

__version__ = "0.1.0"
