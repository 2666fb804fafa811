"""Pydantic models for workflow definitions.

A definition is the immutable-per-version graph the engine executes. Field
aliases match the camelCase JSON the builder stores, so definitions round-trip
through ``model_dump(by_alias=True)`` unchanged.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from constants import TRIGGER_NODE_TYPES


class RetryPolicySettings(BaseModel):
    """Job-level retry policy (all delays in milliseconds)."""
    model_config = {"populate_by_name": True}

    max_retries: int = Field(default=3, alias="maxRetries", ge=0, le=19)
    backoff_multiplier: float = Field(default=2.0, alias="backoffMultiplier", ge=1.0, le=10.0)
    initial_delay_ms: int = Field(default=1000, alias="initialDelayMs", ge=0)
    max_delay_ms: int = Field(default=3600000, alias="maxDelayMs", ge=0)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class WorkflowSettings(BaseModel):
    model_config = {"populate_by_name": True}

    execution_mode: Literal["auto", "sequential", "parallel"] = Field(default="auto", alias="executionMode")
    # Milliseconds; None falls back to the server default
    max_execution_time: Optional[int] = Field(default=None, alias="maxExecutionTime", ge=1000)
    retry_policy: RetryPolicySettings = Field(default_factory=RetryPolicySettings, alias="retryPolicy")
    error_handling: Literal["stop", "continue"] = Field(default="stop", alias="errorHandling")
    timezone: str = "UTC"
    branch_parallelism: Optional[int] = Field(default=None, alias="branchParallelism", ge=1, le=64)

    @field_validator("error_handling", mode="before")
    @classmethod
    def default_error_handling(cls, v):
        # Unset or legacy values behave as "stop".
        if v not in ("stop", "continue"):
            return "stop"
        return v


class EmbedSettings(BaseModel):
    model_config = {"populate_by_name": True}

    allow_public_execution: bool = Field(default=False, alias="allowPublicExecution")
    execution_token: Optional[str] = Field(default=None, alias="executionToken")


class Node(BaseModel):
    model_config = {"populate_by_name": True, "extra": "ignore"}

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    timeout: Optional[float] = Field(default=None, gt=0)

    @property
    def is_trigger(self) -> bool:
        return self.type in TRIGGER_NODE_TYPES


class Edge(BaseModel):
    model_config = {"populate_by_name": True, "extra": "ignore"}

    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")
    condition: Optional[Union[str, Dict[str, Any]]] = None

    @property
    def key(self) -> str:
        """Stable identity within one definition version."""
        if self.id:
            return self.id
        return f"{self.source}:{self.source_handle or ''}->{self.target}:{self.target_handle or ''}"


class WorkflowDefinition(BaseModel):
    """Node/edge graph plus execution settings and variable defaults."""
    model_config = {"populate_by_name": True}

    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    variables: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_graph_references(self):
        seen = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id: {node.id}")
            seen.add(node.id)
        for edge in self.edges:
            if edge.source not in seen:
                raise ValueError(f"Edge source references unknown node: {edge.source}")
            if edge.target not in seen:
                raise ValueError(f"Edge target references unknown node: {edge.target}")
        return self

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def trigger_nodes(self) -> List[Node]:
        return [node for node in self.nodes if node.is_trigger]

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
