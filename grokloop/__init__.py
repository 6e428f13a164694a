"""grokloop: a terminal coding agent for Grok models."""

from .report import AgentError, ConfigError
from .session import Result, Session

__all__ = ["AgentError", "ConfigError", "Result", "Session"]
