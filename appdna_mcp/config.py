"""Server configuration from environment variables and command-line flags."""
import os
from typing import Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from . import __version__
from .utils.errors import ConfigError

TRUTHY = {"1", "true", "yes", "on"}


class ServerConfig(BaseModel):
    """Settings for one server process."""

    transport: Literal["stdio", "http"] = "http"
    host: str = "127.0.0.1"
    port: int = Field(3000, ge=0, le=65535)
    call_timeout_ms: Optional[int] = Field(None, gt=0)
    require_initialize_first: bool = False
    shutdown_grace_seconds: float = Field(5.0, ge=0)
    log_level: str = "INFO"
    server_name: str = "AppDNA User Story MCP Server"
    server_version: str = __version__
    server_description: str = "MCP server for interacting with AppDNA user stories and model data"
    authentication: List[str] = Field(default_factory=list)

    @property
    def transports(self) -> List[str]:
        """Transports this instance actually exposes."""
        if self.transport == "stdio":
            return ["stdio"]
        return ["http", "websocket"]

    @property
    def call_timeout(self) -> Optional[float]:
        if self.call_timeout_ms is None:
            return None
        return self.call_timeout_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "ServerConfig":
        """Build a config from MCP_* environment variables.

        Keyword overrides (typically parsed command-line flags) win over the
        environment; ``None`` overrides are ignored.

        Raises:
            ConfigError: a value cannot be parsed or is out of range.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        if env.get("MCP_STDIO", "").strip().lower() in TRUTHY:
            values["transport"] = "stdio"
        elif env.get("MCP_TRANSPORT"):
            values["transport"] = env["MCP_TRANSPORT"].strip().lower()
        if env.get("MCP_HOST"):
            values["host"] = env["MCP_HOST"]
        if env.get("MCP_PORT"):
            values["port"] = env["MCP_PORT"]
        if env.get("MCP_CALL_TIMEOUT_MS"):
            values["call_timeout_ms"] = env["MCP_CALL_TIMEOUT_MS"]
        if env.get("MCP_REQUIRE_INITIALIZE_FIRST"):
            values["require_initialize_first"] = (
                env["MCP_REQUIRE_INITIALIZE_FIRST"].strip().lower() in TRUTHY
            )
        if env.get("MCP_SHUTDOWN_GRACE_SECONDS"):
            values["shutdown_grace_seconds"] = env["MCP_SHUTDOWN_GRACE_SECONDS"]
        if env.get("MCP_LOG_LEVEL"):
            values["log_level"] = env["MCP_LOG_LEVEL"].upper()
        if env.get("MCP_AUTHENTICATION"):
            values["authentication"] = [
                scheme.strip() for scheme in env["MCP_AUTHENTICATION"].split(",") if scheme.strip()
            ]

        values.update({key: value for key, value in overrides.items() if value is not None})

        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
