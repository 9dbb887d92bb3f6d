"""Tools package for Deckhand."""

from deckhand.tools.registry import (
    InvokeOutput,
    Tool,
    ToolContext,
    ToolRegistry,
)
from deckhand.tools.execute_bash import ExecuteBash
from deckhand.tools.fs_read import FsRead
from deckhand.tools.fs_write import FsWrite
from deckhand.tools.use_aws import UseAws

BUILTIN_TOOLS: list[type[Tool]] = [FsRead, FsWrite, ExecuteBash, UseAws]


def create_tool_registry() -> ToolRegistry:
    """Registry holding the built-in tool set."""
    return ToolRegistry(BUILTIN_TOOLS)


__all__ = [
    "BUILTIN_TOOLS",
    "ExecuteBash",
    "FsRead",
    "FsWrite",
    "InvokeOutput",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "UseAws",
    "create_tool_registry",
]
