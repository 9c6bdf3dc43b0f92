"""Capability negotiation for the initialize handshake."""
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .tools.registry import ToolRegistry, ToolSchema
from .utils.errors import InvalidParamsError

logger = logging.getLogger(__name__)

# MCP Protocol Version
MCP_PROTOCOL_VERSION = "2024-11-05"


class ClientInfo(BaseModel):
    name: str
    version: str


class InitializeParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    capabilities: Optional[Dict[str, Any]] = None
    clientInfo: Optional[ClientInfo] = None


class ServerInfo(BaseModel):
    name: str
    version: str
    description: str


class ServerCapabilities(BaseModel):
    tools: List[ToolSchema]
    transport: List[str]
    authentication: List[str]
    json_: bool = Field(True, serialization_alias="json")
    streaming: bool = False

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CapabilityNegotiator:
    """Builds the initialize result from the current registry state.

    Stateless: every call reads the registry afresh, so repeated initialize
    calls always reflect what is registered now.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        server_info: ServerInfo,
        transports: List[str],
        authentication: Optional[List[str]] = None,
    ):
        self.registry = registry
        self.server_info = server_info
        self.transports = list(transports)
        self.authentication = list(authentication or [])

    def capabilities(self) -> ServerCapabilities:
        return ServerCapabilities(
            tools=self.registry.list(),
            transport=self.transports,
            authentication=self.authentication,
        )

    def negotiate(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Answer an initialize request.

        Raises:
            InvalidParamsError: params are present but malformed.
        """
        try:
            init = InitializeParams.model_validate(params or {})
        except ValidationError as e:
            raise InvalidParamsError(
                "Invalid initialize params",
                data=[err["msg"] for err in e.errors()],
            ) from e

        if init.clientInfo:
            logger.info(f"Initialize from client {init.clientInfo.name} {init.clientInfo.version}")

        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": self.capabilities().to_wire(),
            "serverInfo": self.server_info.model_dump(),
        }
