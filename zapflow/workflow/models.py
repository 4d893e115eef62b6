"""Workflow definition models.

Workflows are exchanged with the visual editor as camelCase JSON
(``startNodeId``, ``variableName`` ...). The models accept either spelling and
serialize with aliases so stored definitions stay in the editor's format.

Node payloads form a closed tagged union keyed by ``type``: each node type has
exactly one content shape, so malformed definitions fail when loaded rather
than when a contact reaches the node.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..contracts import utcnow


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Edge(_CamelModel):
    """Directed link to a successor node, optionally guarded by a condition."""

    id: str
    condition: Optional[str] = None


class MessageContent(_CamelModel):
    text: str = ""


class InputContent(_CamelModel):
    prompt: Optional[str] = None
    variable_name: Optional[str] = None


class ConditionContent(_CamelModel):
    description: Optional[str] = None


class DelayContent(_CamelModel):
    delay_ms: int = Field(default=0, ge=0)


class IntegrationContent(_CamelModel):
    service: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    result_variable: Optional[str] = None
    status_message: Optional[str] = None


class EndContent(_CamelModel):
    message: Optional[str] = None


class _NodeBase(_CamelModel):
    id: str
    next: List[Edge] = Field(default_factory=list)

    def first_successor(self) -> Optional[str]:
        """Id of the single successor used by non-branching nodes."""
        return self.next[0].id if self.next else None


class MessageNode(_NodeBase):
    type: Literal["message"] = "message"
    content: MessageContent = Field(default_factory=MessageContent)


class InputNode(_NodeBase):
    type: Literal["input"] = "input"
    content: InputContent = Field(default_factory=InputContent)


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    content: ConditionContent = Field(default_factory=ConditionContent)


class DelayNode(_NodeBase):
    type: Literal["delay"] = "delay"
    content: DelayContent = Field(default_factory=DelayContent)


class IntegrationNode(_NodeBase):
    type: Literal["integration"] = "integration"
    content: IntegrationContent = Field(default_factory=IntegrationContent)


class EndNode(_NodeBase):
    type: Literal["end"] = "end"
    content: EndContent = Field(default_factory=EndContent)


Node = Annotated[
    Union[MessageNode, InputNode, ConditionNode, DelayNode, IntegrationNode, EndNode],
    Field(discriminator="type"),
]

NODE_TYPES = ("message", "input", "condition", "delay", "integration", "end")


class WorkflowDraft(_CamelModel):
    """Workflow definition as authored, before the store assigns identity."""

    name: str
    description: Optional[str] = None
    is_public: bool = False
    tags: List[str] = Field(default_factory=list)
    start_node_id: str
    nodes: List[Node] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Workflow(WorkflowDraft):
    """Stored, versioned workflow definition."""

    id: str
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the editor's JSON exchange format."""
        return self.model_dump(mode="json", by_alias=True)
