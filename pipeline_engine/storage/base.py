"""Persistence contract used by the engine."""

from abc import ABC, abstractmethod
from typing import List

from ..models.core import Artifact, RunRecord, Workflow, WorkflowSummary


class WorkflowStore(ABC):
    """Loads and saves workflows, run results and saved artifacts.

    Shared across runs; implementations serialise writes per workflow id.
    """

    @abstractmethod
    def load(self, workflow_id: str) -> Workflow:
        """Return the stored workflow or raise WorkflowNotFoundError."""

    @abstractmethod
    def save(self, workflow: Workflow) -> Workflow:
        """Insert or update; returns the workflow with refreshed timestamps."""

    @abstractmethod
    def delete(self, workflow_id: str) -> bool:
        """Delete a workflow and its runs; False if it did not exist."""

    @abstractmethod
    def list_workflows(self) -> List[WorkflowSummary]:
        """Summaries of every stored workflow, most recently updated first."""

    @abstractmethod
    def save_run_result(self, workflow_id: str, record: RunRecord) -> None:
        """Persist the snapshot of a finished (or interrupted) run."""

    @abstractmethod
    def get_run(self, run_id: str) -> RunRecord:
        """Return a persisted run or raise RunNotFoundError."""

    @abstractmethod
    def list_runs(self, workflow_id: str) -> List[RunRecord]:
        """Persisted runs of a workflow, newest first."""

    @abstractmethod
    def save_artifact(self, workflow_id: str, run_id: str, node_id: str, artifact: Artifact) -> Artifact:
        """Persist an artifact on behalf of an output_save node; returns the stored reference."""

    @abstractmethod
    def list_artifacts(self, run_id: str) -> List[Artifact]:
        """Artifacts saved during a run, in save order."""
