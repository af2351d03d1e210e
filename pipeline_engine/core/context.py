"""Per-run execution state."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ..models.core import (
    Artifact, ErrorRecord, EventType, ExecutionEvent, NodeRunRecord, NodeStatus,
    RunOutcome, RunRecord
)
from .exceptions import ExecutionEngineError
from .graph import WorkflowGraph
from .logging import get_logger

logger = get_logger(__name__)


_TRANSITIONS = {
    NodeStatus.PENDING: {NodeStatus.RUNNING, NodeStatus.SKIPPED},
    NodeStatus.RUNNING: {NodeStatus.SUCCEEDED, NodeStatus.RETRYING, NodeStatus.FAILED},
    NodeStatus.RETRYING: {NodeStatus.RUNNING, NodeStatus.FAILED},
    NodeStatus.SUCCEEDED: set(),
    NodeStatus.FAILED: set(),
    NodeStatus.SKIPPED: set(),
}


@dataclass
class NodeState:
    """Mutable status of one node within a run."""
    status: NodeStatus = NodeStatus.PENDING
    output: Optional[Artifact] = None
    error: Optional[ErrorRecord] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class ExecutionContext:
    """Store of node outputs and statuses for a single run.

    Owned by the scheduler driving the run; handlers never see it.
    """
    run_id: str
    graph: WorkflowGraph
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    nodes: Dict[str, NodeState] = field(default_factory=dict)
    events: List[ExecutionEvent] = field(default_factory=list)

    def __post_init__(self):
        for node_id in self.graph.node_ids:
            self.nodes.setdefault(node_id, NodeState())

    @property
    def workflow_id(self) -> str:
        return self.graph.workflow_id

    def status(self, node_id: str) -> NodeStatus:
        return self.nodes[node_id].status

    def output(self, node_id: str) -> Optional[Artifact]:
        return self.nodes[node_id].output

    def inputs_for(self, node_id: str) -> Dict[str, Artifact]:
        """Outputs of every predecessor of node_id, keyed by predecessor id."""
        inputs = {}
        for pred in self.graph.predecessors(node_id):
            state = self.nodes[pred]
            if state.status != NodeStatus.SUCCEEDED or state.output is None:
                raise ExecutionEngineError(
                    f"Predecessor '{pred}' of '{node_id}' has no output",
                    run_id=self.run_id
                )
            inputs[pred] = state.output
        return inputs

    def is_ready(self, node_id: str) -> bool:
        return self.nodes[node_id].status == NodeStatus.PENDING and all(
            self.nodes[pred].status == NodeStatus.SUCCEEDED
            for pred in self.graph.predecessors(node_id)
        )

    def is_finished(self) -> bool:
        return all(state.status.is_terminal for state in self.nodes.values())

    def record_event(self, event_type: EventType, message: str = "",
                     node_id: Optional[str] = None, attempt: Optional[int] = None) -> ExecutionEvent:
        event = ExecutionEvent(
            sequence=len(self.events),
            timestamp=datetime.utcnow(),
            event_type=event_type,
            node_id=node_id,
            attempt=attempt,
            message=message,
        )
        self.events.append(event)
        return event

    def _transition(self, node_id: str, new_status: NodeStatus) -> NodeState:
        state = self.nodes[node_id]
        if new_status not in _TRANSITIONS[state.status]:
            raise ExecutionEngineError(
                f"Illegal transition for node '{node_id}': {state.status.value} -> {new_status.value}",
                run_id=self.run_id
            )
        state.status = new_status
        return state

    def mark_running(self, node_id: str) -> int:
        """Start a new attempt; returns the attempt number."""
        state = self._transition(node_id, NodeStatus.RUNNING)
        state.attempts += 1
        if state.started_at is None:
            state.started_at = datetime.utcnow()
        self.record_event(EventType.NODE_START, f"Starting node {node_id}", node_id, state.attempts)
        return state.attempts

    def mark_succeeded(self, node_id: str, artifact: Artifact) -> None:
        state = self._transition(node_id, NodeStatus.SUCCEEDED)
        state.output = artifact
        state.error = None
        state.finished_at = datetime.utcnow()
        self.record_event(EventType.NODE_COMPLETE, f"Node {node_id} succeeded", node_id, state.attempts)

    def mark_retrying(self, node_id: str, error: BaseException, delay: float) -> None:
        state = self._transition(node_id, NodeStatus.RETRYING)
        state.error = ErrorRecord.from_exception(error)
        self.record_event(
            EventType.NODE_RETRY,
            f"Node {node_id} failed ({state.error.error_code}); retrying in {delay:.2f}s",
            node_id, state.attempts
        )

    def mark_failed(self, node_id: str, error: BaseException) -> None:
        state = self._transition(node_id, NodeStatus.FAILED)
        state.error = ErrorRecord.from_exception(error)
        state.finished_at = datetime.utcnow()
        self.record_event(
            EventType.NODE_ERROR, f"Node {node_id} failed: {state.error.message}", node_id, state.attempts
        )

    def mark_skipped(self, node_id: str, reason: str) -> None:
        state = self._transition(node_id, NodeStatus.SKIPPED)
        state.finished_at = datetime.utcnow()
        self.record_event(EventType.NODE_SKIPPED, reason, node_id)

    def seed_from(self, record: RunRecord) -> List[str]:
        """Adopt succeeded nodes (with artifacts) from an earlier run of the same workflow."""
        if record.workflow_id != self.workflow_id:
            raise ExecutionEngineError(
                f"Run {record.run_id} belongs to workflow {record.workflow_id}, not {self.workflow_id}",
                run_id=self.run_id
            )
        adopted = []
        for node_id, node_record in record.nodes.items():
            if node_id not in self.nodes:
                continue
            if node_record.status == NodeStatus.SUCCEEDED and node_record.output is not None:
                state = self.nodes[node_id]
                state.status = NodeStatus.SUCCEEDED
                state.output = node_record.output
                state.attempts = node_record.attempts
                adopted.append(node_id)
        if adopted:
            logger.info(f"Run {self.run_id} resumed {len(adopted)} node(s) from run {record.run_id}")
        return adopted

    def outcome(self) -> RunOutcome:
        """succeeded if every node succeeded; failed if no output node did; else partial."""
        if all(state.status == NodeStatus.SUCCEEDED for state in self.nodes.values()):
            return RunOutcome.SUCCEEDED
        if any(self.nodes[node_id].status == NodeStatus.SUCCEEDED for node_id in self.graph.output_nodes()):
            return RunOutcome.PARTIAL
        return RunOutcome.FAILED

    def snapshot(self) -> RunRecord:
        """Current state as a persistable record; outcome is set only once finished."""
        finished = self.is_finished()
        return RunRecord(
            workflow_id=self.workflow_id,
            run_id=self.run_id,
            started_at=self.started_at,
            finished_at=self.finished_at,
            outcome=self.outcome() if finished and self.finished_at is not None else None,
            nodes={
                node_id: NodeRunRecord(
                    status=state.status,
                    attempts=state.attempts,
                    error=state.error,
                    output=state.output,
                )
                for node_id, state in self.nodes.items()
            },
            events=list(self.events),
        )
