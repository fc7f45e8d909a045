"""Coding agent execution."""

from src.loom.runner.agent import (
    MAX_OUTPUT_BYTES,
    AgentRunInput,
    AgentRunner,
    AgentRunResult,
    build_args,
    build_prompt,
)

__all__ = [
    "MAX_OUTPUT_BYTES",
    "AgentRunInput",
    "AgentRunResult",
    "AgentRunner",
    "build_args",
    "build_prompt",
]
