"""Mode execution providers: HTTP text generation and coding agents."""

from __future__ import annotations

from .code_agent import AgentRun, ClaudeCodeAgent
from .text_gen import ClaudeCodeTextGen, HttpTextGen

__all__ = ["AgentRun", "ClaudeCodeAgent", "ClaudeCodeTextGen", "HttpTextGen"]
