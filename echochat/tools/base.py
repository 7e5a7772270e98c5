from __future__ import annotations

from abc import ABC, abstractmethod

from echochat.llm.types import ToolDefinition


class ToolError(Exception):
    """A tool failed; the message is returned to the model as an error result."""


def normalize_schema(schema: dict) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    s.setdefault("properties", {})
    s.setdefault("additionalProperties", False)
    return s


class Tool(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict: ...

    @property
    def requires_approval(self) -> bool:
        return False

    @abstractmethod
    async def execute(self, **kwargs) -> str:
        """Run the tool.  Raise ``ToolError`` to report a failure."""
        ...

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=normalize_schema(self.parameters),
        )
