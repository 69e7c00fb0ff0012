"""
TASKGATE Agent Roster

Each agent is:
  - A system prompt
  - A structured input template
  - A constrained output parser

Agents are stateless between runs. State lives in the Plan.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Protocol

from pydantic import BaseModel, Field

from taskgate.router import RouterResponse


class ChatBackend(Protocol):
    async def complete(self, role: str, messages: list[dict[str, str]], **kwargs: Any) -> RouterResponse:
        ...


class PlanningContext(BaseModel):
    """What the planner knows about the goal and the workspace."""
    goal: str
    scope: str
    workspace_root: str
    target_path: str | None = None
    project_type: str | None = None
    file_extension: str | None = None
    file_content: str | None = None
    folder_contents: list[dict[str, str]] = Field(default_factory=list)
    ai_calls_limit: int = 5
    extra: dict[str, Any] = Field(default_factory=dict)


class BaseAgent(ABC):
    """
    Base class for TASKGATE agents.

    Subclasses define:
      - role: str — maps to router model
      - system_prompt: str
      - build_messages() — constructs the chat messages
      - parse_response() — extracts structured output
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, backend: ChatBackend):
        self.backend = backend

    async def run(self, context: PlanningContext, **kwargs) -> Any:
        """Execute the agent: build messages → call backend → parse."""
        messages = self.build_messages(context)
        response = await self.backend.complete(
            role=self.role,
            messages=messages,
            **kwargs,
        )
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: PlanningContext) -> list[dict[str, str]]:
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: PlanningContext) -> Any:
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}
