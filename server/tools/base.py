"""Base tool interface and registry with JSON Schema support."""
from abc import ABC, abstractmethod
from functools import cached_property
from typing import Dict, Any, List, Optional
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)


class ToolMetadata(BaseModel):
    """Annotations signalling tool behaviour to the model and the loop."""
    destructive_hint: bool = False   # True if the tool mutates external state
    read_only_hint: bool = False     # True if the tool only reads data
    idempotent_hint: bool = False    # True if repeated calls have no extra effect
    open_world_hint: bool = True     # True if the tool interacts with external services
    requires_auth_hint: bool = False # True if the tool needs an integration connected


class ToolParameter(BaseModel):
    """Tool parameter definition."""
    name: str
    type: str  # JSON Schema types: "string", "integer", "number", "boolean", "array", "object"
    description: str = ""
    required: bool = False
    default: Any = None
    enum: Optional[List[str]] = None
    items: Optional[Dict[str, Any]] = None  # element schema for "array"


class ToolSchema(BaseModel):
    """Tool schema for LLM function calling."""
    name: str
    description: str
    parameters: List[ToolParameter]
    metadata: ToolMetadata = ToolMetadata()
    integration: Optional[str] = None           # provider whose scopes gate this tool
    operation_scopes: Dict[str, str] = {}       # operation -> read | write | delete

    def _input_schema(self) -> dict:
        properties: Dict[str, Any] = {}
        required_list: List[str] = []

        for param in self.parameters:
            prop: Dict[str, Any] = {"type": param.type}
            if param.description:
                prop["description"] = param.description
            if param.default is not None:
                prop["default"] = param.default
            if param.enum:
                prop["enum"] = param.enum
            if param.items:
                prop["items"] = param.items

            properties[param.name] = prop
            if param.required:
                required_list.append(param.name)

        schema: Dict[str, Any] = {
            "type": "object",
            "properties": properties,
            "additionalProperties": False,
        }
        if required_list:
            schema["required"] = required_list
        return schema

    def to_json_schema(self) -> dict:
        """Standard JSON Schema description (served by GET /chat/tools)."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self._input_schema(),
            "metadata": self.metadata.model_dump(),
        }

    def to_function_spec(self) -> dict:
        """OpenAI chat-completions `tools` entry."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self._input_schema(),
            },
        }


class BaseTool(ABC):
    """Base class for all tools."""

    @cached_property
    def schema(self) -> ToolSchema:
        """
        Return tool schema for LLM. Cached after first access so schema
        objects are not reconstructed on every call.
        """
        return self._build_schema()

    @property
    def name(self) -> str:
        return self.schema.name

    @abstractmethod
    def _build_schema(self) -> ToolSchema:
        """Subclasses implement this to define their schema."""
        ...

    @abstractmethod
    async def execute(self, **kwargs) -> Dict[str, Any]:
        """
        Execute tool with given parameters.

        Returns a JSON-serializable dict. Failures are reported as
        {'error': str} rather than raised.
        """
        ...

    async def validate_parameters(self, **kwargs) -> bool:
        """Validate parameters before execution."""
        required_params = [p.name for p in self.schema.parameters if p.required]

        missing = [p for p in required_params if p not in kwargs]
        if missing:
            raise ValueError(f"Missing required parameter(s): {', '.join(missing)}")

        return True


class ToolRegistry:
    """Central registry of available tools."""

    def __init__(self):
        self._tools: Dict[str, BaseTool] = {}
        logger.info("Tool registry initialized")

    def register(self, tool: BaseTool) -> None:
        """Register a tool."""
        name = tool.schema.name
        self._tools[name] = tool
        logger.info(f"Registered tool: {name}")

    def get_tool(self, name: str) -> Optional[BaseTool]:
        """Get tool by name."""
        return self._tools.get(name)

    def get_json_schemas(self) -> List[dict]:
        """Get all tool schemas in standard JSON Schema format."""
        return [tool.schema.to_json_schema() for tool in self._tools.values()]

    def get_function_specs(
        self,
        granted_scopes: Optional[Dict[str, List[str]]] = None,
    ) -> List[dict]:
        """
        Function specs for the model, limited to tools whose integration
        has at least one granted scope. Tools without an integration are
        always offered.
        """
        specs = []
        for tool in self._tools.values():
            integration = tool.schema.integration
            if integration and granted_scopes is not None and not granted_scopes.get(integration):
                continue
            specs.append(tool.schema.to_function_spec())
        return specs

    def list_tools(self) -> List[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_tools_status(self) -> List[dict]:
        """Return operational status for each tool."""
        statuses = []
        for name, tool in self._tools.items():
            meta = tool.schema.metadata
            statuses.append({
                "name": name,
                "integration": tool.schema.integration,
                "requires_auth": meta.requires_auth_hint,
                "destructive": meta.destructive_hint,
                "read_only": meta.read_only_hint,
            })
        return statuses
