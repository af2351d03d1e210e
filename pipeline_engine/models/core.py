"""Core Pydantic models for the pipeline engine."""

import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump using wire (camelCase) names, JSON-safe values."""
        return self.model_dump(mode="json", by_alias=True)


class NodeType(str, Enum):
    """Closed set of pipeline node types."""
    INPUT_MEDIA = "input_media"
    INPUT_TEXT = "input_text"
    PROCESS_AI_IMAGE = "process_ai_image"
    PROCESS_AI_VIDEO = "process_ai_video"
    PROCESS_AI_AUDIO = "process_ai_audio"
    PROCESS_CODE = "process_code"
    TRANSFORM_UPSCALE = "transform_upscale"
    TRANSFORM_REMOVE_BG = "transform_remove_bg"
    OUTPUT_SAVE = "output_save"
    OUTPUT_DOWNLOAD = "output_download"

    @property
    def is_input(self) -> bool:
        return self in (NodeType.INPUT_MEDIA, NodeType.INPUT_TEXT)

    @property
    def is_output(self) -> bool:
        return self in (NodeType.OUTPUT_SAVE, NodeType.OUTPUT_DOWNLOAD)

    @classmethod
    def parse(cls, value: str) -> Optional["NodeType"]:
        """Return the enum member for value, or None if it is not a known type."""
        try:
            return cls(value)
        except ValueError:
            return None


class NodeStatus(str, Enum):
    """Per-node execution status."""
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class RunOutcome(str, Enum):
    """Overall outcome of a run."""
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


class EventType(str, Enum):
    """Enumeration of execution trace event types."""
    WORKFLOW_START = "workflow_start"
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    NODE_START = "node_start"
    NODE_RETRY = "node_retry"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    NODE_SKIPPED = "node_skipped"


class Position(CamelModel):
    """Display position; ignored by the engine."""
    x: float = 0.0
    y: float = 0.0


class NodeData(CamelModel):
    """Type-specific node configuration."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    label: str = Field(default="", description="Display label")
    description: Optional[str] = Field(None, description="Optional description")
    model: Optional[str] = Field(None, description="Model identifier for AI nodes")
    prompt: Optional[str] = Field(None, description="Prompt text")
    url: Optional[str] = Field(None, description="Source URL for media inputs")
    aspect_ratio: Optional[str] = Field(None, description="Aspect ratio hint, e.g. 16:9")
    format: Optional[str] = Field(None, description="Output format, e.g. png or mp4")


class Node(CamelModel):
    """A typed node in a pipeline workflow."""
    id: str = Field(..., description="Unique identifier for the node")
    type: str = Field(..., description="Node type, one of NodeType")
    position: Position = Field(default_factory=Position)
    data: NodeData = Field(default_factory=NodeData)

    @field_validator('id', 'type')
    @classmethod
    def validate_not_blank(cls, value):
        """Ensure identifiers are not empty."""
        if not value or not value.strip():
            raise ValueError("Value cannot be empty")
        return value.strip()

    @property
    def node_type(self) -> Optional[NodeType]:
        return NodeType.parse(self.type)


class Edge(CamelModel):
    """A directed edge from source node to target node."""
    id: str = Field(..., description="Unique identifier for the edge")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    label: Optional[str] = Field(None, description="Optional edge label")

    @field_validator('id', 'source', 'target')
    @classmethod
    def validate_not_blank(cls, value):
        """Ensure node IDs are not empty."""
        if not value or not value.strip():
            raise ValueError("Value cannot be empty")
        return value.strip()


class Workflow(CamelModel):
    """A stored pipeline workflow.

    Structural invariants (unique ids, existing endpoints, acyclicity) are
    checked at validation time so that invalid workflows can still be stored
    and loaded.
    """
    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms, description="Creation time, epoch ms")
    updated_at: int = Field(default_factory=now_ms, description="Last update time, epoch ms")

    @field_validator('id', 'name')
    @classmethod
    def validate_not_blank(cls, value):
        if not value or not value.strip():
            raise ValueError("Value cannot be empty")
        return value.strip()


class ArtifactKind(str, Enum):
    """What an artifact refers to."""
    TEXT = "text"
    MEDIA = "media"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    CODE = "code"
    FILE = "file"


class Artifact(CamelModel):
    """Opaque result produced by a node and consumed by its successors."""
    kind: ArtifactKind = Field(..., description="Artifact kind")
    uri: Optional[str] = Field(None, description="Reference to generated media")
    content: Optional[str] = Field(None, description="Inline content for text and code")
    mime_type: Optional[str] = Field(None, description="MIME type if known")
    produced_by: Optional[str] = Field(None, description="ID of the producing node")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def validate_reference(self):
        """An artifact must point somewhere or carry content."""
        if self.uri is None and self.content is None:
            raise ValueError("Artifact requires a uri or content")
        return self


class ErrorRecord(CamelModel):
    """Serializable record of a node failure."""
    error_code: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, error: BaseException) -> "ErrorRecord":
        details = getattr(error, "details", None) or {}
        return cls(
            error_code=getattr(error, "error_code", type(error).__name__),
            message=str(error) or type(error).__name__,
            retryable=bool(getattr(error, "recoverable", False)),
            details={k: v for k, v in details.items() if isinstance(v, (str, int, float, bool, list, type(None)))}
        )


class ExecutionEvent(CamelModel):
    """One entry of the execution trace."""
    sequence: int
    timestamp: datetime
    event_type: EventType
    node_id: Optional[str] = None
    attempt: Optional[int] = None
    message: str = ""


class NodeRunRecord(CamelModel):
    """Persisted per-node result."""
    status: NodeStatus
    attempts: int = 0
    error: Optional[ErrorRecord] = None
    output: Optional[Artifact] = None


class RunRecord(CamelModel):
    """Persisted outcome of one run."""
    workflow_id: str
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: Optional[RunOutcome] = None
    nodes: Dict[str, NodeRunRecord] = Field(default_factory=dict)
    events: List[ExecutionEvent] = Field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.outcome is not None


class ExecutionRequest(CamelModel):
    """Request to execute a stored workflow."""
    workflow_id: str = Field(..., description="ID of the workflow to execute")
    concurrency_limit: Optional[int] = Field(None, ge=1, description="Maximum in-flight nodes")
    per_node_timeout_ms: Optional[int] = Field(None, gt=0, description="Per-invocation timeout")
    max_retries: Optional[int] = Field(None, ge=1, description="Maximum attempts per node")


class ValidationReport(CamelModel):
    """Non-raising result of workflow validation."""
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    cycle_nodes: List[str] = Field(default_factory=list)


class WorkflowSummary(CamelModel):
    """Summary information about a stored workflow."""
    id: str
    name: str
    node_count: int
    edge_count: int
    created_at: int
    updated_at: int
