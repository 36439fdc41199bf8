"""CodeAgent: multi-turn agent run whose final text is the mode's report."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TOOLS = ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]


@dataclass
class AgentRun:
    """Raw result from an agent run."""

    success: bool
    output: str
    turns: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    duration_sec: float = 0.0


class ClaudeCodeAgent:
    """Multi-turn agent via Claude Code SDK."""

    name = "claude_code"

    def __init__(
        self,
        model: str,
        max_turns: int,
        allowed_tools: list[str] | None = None,
    ):
        self.model = model
        self.max_turns = max_turns
        self.allowed_tools = list(allowed_tools or DEFAULT_TOOLS)

    async def run(self, prompt: str, cwd: Path, system_prompt: str) -> AgentRun:
        """Run the agent; the text of its last message is the report."""
        try:
            from claude_code_sdk import ClaudeCodeOptions, Message, query
        except ImportError:
            return AgentRun(success=False, output="claude-code-sdk not installed")

        options = ClaudeCodeOptions(
            model=self.model,
            max_turns=self.max_turns,
            cwd=str(cwd),
            system_prompt=system_prompt,
            allowed_tools=self.allowed_tools,
        )

        last_text = ""
        turns = 0
        tokens_in = 0
        tokens_out = 0
        start = time.monotonic()

        try:
            async for message in query(prompt=prompt, options=options):
                if not isinstance(message, Message):
                    continue
                turns += 1
                texts = [block.text for block in message.content if hasattr(block, "text")]
                if texts:
                    last_text = "\n".join(texts)
                usage = getattr(message, "usage", None)
                if usage:
                    tokens_in += getattr(usage, "input_tokens", 0)
                    tokens_out += getattr(usage, "output_tokens", 0)
        except Exception as exc:
            logger.warning("Agent run failed after %d turn(s): %s", turns, exc)
            return AgentRun(
                success=False,
                output=f"Agent error: {exc}",
                turns=turns,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                duration_sec=time.monotonic() - start,
            )

        return AgentRun(
            success=True,
            output=last_text,
            turns=turns,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            duration_sec=time.monotonic() - start,
        )
