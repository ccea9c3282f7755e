"""Tool definitions exposed to MCP clients."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Type

from mcp.types import Tool
from pydantic import BaseModel, Field

from models.session_models import ToolCall, ToolResult

SERVER_NAME = "ComfyUI Selfie"
SERVER_VERSION = "1.0.0"
SERVER_DESCRIPTION = "Generates images of the assistant"

GENERATE_SELFIE = "generate-selfie"
GENERATE_SELFIE_DESCRIPTION = (
    "Generate an image of the assistant. This takes about a minute to generate and will return "
    "a URL to an image, which you should display in your response."
)
PROMPT_DESCRIPTION = """A partial positive text prompt for the assistant selfie generation.
Write a comma-separated list of short, simple words.
You can say the same thing in multiple ways to add emphasis.
Make sure you always describe all elements (expression, outfit, pose, camera angle).
Start with important elements, but also describe details in the prompt.
Make sure this is extensive. Emphasize keywords by surrounding them with braces.
When describing, use simple, clear expressions and no special characters, implicit words or analogies."""


class GenerateSelfieArguments(BaseModel):
    prompt: str = Field(description=PROMPT_DESCRIPTION)


ToolHandler = Callable[[ToolCall], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolDefinition:
    """A named tool with its argument model and handler."""

    name: str
    description: str
    arguments: Type[BaseModel]
    handler: ToolHandler

    def to_tool(self) -> Tool:
        schema = self.arguments.model_json_schema()
        schema.pop("title", None)
        return Tool(name=self.name, description=self.description, inputSchema=schema)


def selfie_tool(handler: ToolHandler) -> ToolDefinition:
    return ToolDefinition(
        name=GENERATE_SELFIE,
        description=GENERATE_SELFIE_DESCRIPTION,
        arguments=GenerateSelfieArguments,
        handler=handler,
    )
