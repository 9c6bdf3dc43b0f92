"""Tool registry: tool definitions, handlers and tagged handler results."""
import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Union, runtime_checkable

from pydantic import BaseModel

from ..utils.errors import DuplicateToolError, ToolNotFoundError
from ..utils.validation import check_input_schema, validate_tool_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSuccess:
    """Successful handler outcome; ``value`` must be JSON-serializable."""
    value: Any = None


@dataclass(frozen=True)
class ToolFailure:
    """Handler-reported failure; ``message`` is passed to the client verbatim."""
    message: str
    data: Optional[Any] = None


ToolResult = Union[ToolSuccess, ToolFailure]


@runtime_checkable
class ToolHandler(Protocol):
    """Pluggable domain logic behind a tool."""

    async def invoke(self, params: Dict[str, Any]) -> ToolResult: ...


class FunctionHandler:
    """Adapts a plain function to the ToolHandler interface.

    The function is called with the arguments as keyword arguments; it may be
    sync or async. A returned ToolSuccess/ToolFailure is used as-is, any other
    return value is wrapped in ToolSuccess, and a raised exception becomes a
    ToolFailure carrying the exception text.

    Arguments the function does not declare are dropped unless it takes
    ``**kwargs``.
    """

    def __init__(self, func: Callable[..., Any]):
        self.func = func
        self.accepted = self._accepted_names(func)

    @staticmethod
    def _accepted_names(func: Callable[..., Any]) -> Optional[Set[str]]:
        try:
            parameters = inspect.signature(func).parameters.values()
        except (TypeError, ValueError):
            return None
        if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in parameters):
            return None
        return {
            p.name for p in parameters
            if p.kind in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)
        }

    async def invoke(self, params: Dict[str, Any]) -> ToolResult:
        if self.accepted is not None:
            ignored = set(params) - self.accepted
            if ignored:
                logger.debug(f"Ignoring undeclared arguments: {sorted(ignored)}")
                params = {key: value for key, value in params.items() if key in self.accepted}
        try:
            result = self.func(**params)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Tool function {getattr(self.func, '__name__', self.func)} failed: {e}")
            return ToolFailure(message=str(e))
        if isinstance(result, (ToolSuccess, ToolFailure)):
            return result
        return ToolSuccess(result)


class ToolSchema(BaseModel):
    name: str
    description: str
    inputSchema: Dict[str, Any]


@dataclass(frozen=True)
class Tool:
    """Immutable tool record owned by the registry once registered."""
    name: str
    description: str
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    handler: Optional[ToolHandler] = field(default=None, compare=False, repr=False)

    def summary(self) -> ToolSchema:
        return ToolSchema(
            name=self.name, description=self.description, inputSchema=self.input_schema
        )


class ToolRegistry:
    """Holds the tools served by one running server instance."""

    def __init__(self):
        self.tools: Dict[str, Tool] = {}
        self._lock = threading.Lock()

    def register(self, tool: Tool) -> Tool:
        """Register a tool.

        Raises:
            DuplicateToolError: a tool with the same name is already registered;
                the existing registration is left intact.
            ValueError: the name, schema or handler is unusable.
        """
        if not validate_tool_name(tool.name):
            raise ValueError(f"Invalid tool name: {tool.name!r}")
        check_input_schema(tool.input_schema)
        if not isinstance(tool.handler, ToolHandler):
            raise ValueError(f"Tool {tool.name} has no invoke() handler")

        with self._lock:
            if tool.name in self.tools:
                raise DuplicateToolError(tool.name)
            self.tools[tool.name] = tool
        logger.info(f"Registered tool: {tool.name}")
        return tool

    def register_tool(
        self,
        name: str,
        description: str,
        input_schema: Dict[str, Any],
        handler: Union[ToolHandler, Callable[..., Any]],
    ) -> Tool:
        """Register a tool from its parts; plain functions are adapted."""
        if not isinstance(handler, ToolHandler):
            handler = FunctionHandler(handler)
        return self.register(
            Tool(name=name, description=description, input_schema=input_schema, handler=handler)
        )

    def lookup(self, name: str) -> Tool:
        """Return the tool registered under ``name``.

        Raises:
            ToolNotFoundError: no such tool.
        """
        with self._lock:
            tool = self.tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def list(self) -> List[ToolSchema]:
        """Tool summaries in registration order."""
        with self._lock:
            tools = list(self.tools.values())
        return [tool.summary() for tool in tools]

    def list_tools(self) -> List[Dict[str, Any]]:
        """List all registered tools as wire-ready dicts."""
        return [schema.model_dump() for schema in self.list()]

    def __contains__(self, name: object) -> bool:
        return name in self.tools

    def __len__(self) -> int:
        return len(self.tools)
