"""Action and tool call data models"""
import json
from pydantic import BaseModel
from typing import Optional, Any
from uuid import uuid4


class ToolCall(BaseModel):
    """Tool call requested by the model"""
    action_id: str = ""
    tool_name: str
    arguments: dict[str, Any] = {}

    def __init__(self, **data):
        if 'action_id' not in data or not data['action_id']:
            data['action_id'] = str(uuid4())
        super().__init__(**data)

    @property
    def operation(self) -> str:
        op = self.arguments.get("operation")
        return op if isinstance(op, str) else ""

    def to_message_format(self) -> dict:
        """Shape used when echoing the call back in chat history."""
        return {
            "id": self.action_id,
            "type": "function",
            "function": {"name": self.tool_name, "arguments": json.dumps(self.arguments)},
        }


class ToolOutcome(BaseModel):
    """Result of executing one tool call inside the tool-calling loop"""
    action_id: str
    tool_name: str
    operation: str = ""
    success: bool = False
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    write_verified: Optional[bool] = None
    execution_time_ms: int = 0
