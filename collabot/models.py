"""
Shared value types for collabot.

Roles, projects and structured agent output are validated pydantic models
because they arrive from files or from an agent process. Dispatch results
are plain immutable dataclasses produced by the core itself.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class Permission(str, Enum):
    """Capabilities a role may declare."""

    AGENT_DRAFT = "agent-draft"
    PROJECTS_LIST = "projects-list"
    PROJECTS_CREATE = "projects-create"


ROLE_NAME_PATTERN = r"^[a-z0-9](?:[a-z0-9]*-?[a-z0-9])*$"


class RoleDefinition(BaseModel):
    """A role an agent can be dispatched as."""

    name: str = Field(..., min_length=1, max_length=64, pattern=ROLE_NAME_PATTERN)
    description: str = Field(..., min_length=1, max_length=1024)
    model_hint: str = Field("sonnet-latest", alias="model-hint")
    display_name: Optional[str] = Field(None, alias="displayName", max_length=64)
    category: str = "coding"
    permissions: List[Permission] = Field(default_factory=list)
    prompt: str = ""

    model_config = {"populate_by_name": True, "protected_namespaces": ()}

    @property
    def persona(self) -> str:
        return self.display_name or self.name

    def can_draft(self) -> bool:
        return Permission.AGENT_DRAFT in self.permissions


class Project(BaseModel):
    """A registered project agents can be dispatched against."""

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    paths: List[str] = Field(default_factory=list)
    roles: List[str] = Field(..., min_length=1)

    def has_paths(self) -> bool:
        return len(self.paths) > 0

    def to_summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "paths": list(self.paths),
            "roles": list(self.roles),
        }


class AgentResult(BaseModel):
    """Structured output an agent reports when it finishes."""

    status: Literal["success", "partial", "failed", "blocked"]
    summary: str
    changes: Optional[List[str]] = None
    issues: Optional[List[str]] = None
    questions: Optional[List[str]] = None
    pr_url: Optional[str] = None

    model_config = {"extra": "forbid"}


DispatchStatus = Literal["completed", "aborted", "crashed"]


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch.

    Aborted and crashed dispatches may still carry a partial structured
    result if the agent produced one before stopping.
    """

    status: DispatchStatus
    structured_result: Optional[AgentResult] = None
    result: Optional[str] = None
    cost: Optional[float] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    model: Optional[str] = None
    journal_file: Optional[str] = None

    def result_payload(self) -> Optional[Dict[str, Any]]:
        """Structured result as a dict, falling back to the text result."""
        if self.structured_result is not None:
            return self.structured_result.model_dump(exclude_none=True)
        if self.result:
            return {"summary": self.result}
        return None


@dataclass
class AgentEvent:
    """A progress event forwarded from a running dispatch."""

    type: Literal["chat", "tool_use", "thinking"]
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
