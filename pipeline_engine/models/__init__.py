"""Data models for the pipeline engine."""

from .core import (
    Artifact,
    ArtifactKind,
    Edge,
    ErrorRecord,
    EventType,
    ExecutionEvent,
    ExecutionRequest,
    Node,
    NodeData,
    NodeRunRecord,
    NodeStatus,
    NodeType,
    Position,
    RunOutcome,
    RunRecord,
    ValidationReport,
    Workflow,
    WorkflowSummary,
    now_ms,
)

__all__ = [
    "Artifact",
    "ArtifactKind",
    "Edge",
    "ErrorRecord",
    "EventType",
    "ExecutionEvent",
    "ExecutionRequest",
    "Node",
    "NodeData",
    "NodeRunRecord",
    "NodeStatus",
    "NodeType",
    "Position",
    "RunOutcome",
    "RunRecord",
    "ValidationReport",
    "Workflow",
    "WorkflowSummary",
    "now_ms",
]
