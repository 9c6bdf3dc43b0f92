"""Tool registry and the tools this server ships with."""
from .registry import (
    FunctionHandler,
    Tool,
    ToolFailure,
    ToolHandler,
    ToolRegistry,
    ToolResult,
    ToolSchema,
    ToolSuccess,
)
from .user_stories import UserStoryStore, UserStoryTools, register_user_story_tools

__all__ = [
    "FunctionHandler",
    "Tool",
    "ToolFailure",
    "ToolHandler",
    "ToolRegistry",
    "ToolResult",
    "ToolSchema",
    "ToolSuccess",
    "UserStoryStore",
    "UserStoryTools",
    "register_user_story_tools",
]
