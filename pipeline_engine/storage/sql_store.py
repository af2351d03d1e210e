"""SQLAlchemy-backed workflow store."""

import threading
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.error_recovery import RetryConfig, with_retry
from ..core.exceptions import RunNotFoundError, StorageError, WorkflowNotFoundError
from ..core.logging import get_logger
from ..models.core import (
    Artifact, ExecutionEvent, NodeRunRecord, RunRecord, Workflow, WorkflowSummary, now_ms
)
from .base import WorkflowStore
from .database import get_session_factory
from .models import RunEventModel, RunModel, SavedArtifactModel, WorkflowModel

logger = get_logger(__name__)

_STORAGE_RETRY = RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0, retryable_exceptions=[StorageError])


class SqlWorkflowStore(WorkflowStore):
    """Workflow store on top of a SQLAlchemy session factory."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()
        self._workflow_locks: Dict[str, threading.RLock] = {}
        self._lock_manager = threading.Lock()

    def _session(self) -> Session:
        return self._session_factory()

    def _lock_for(self, workflow_id: str) -> threading.RLock:
        with self._lock_manager:
            lock = self._workflow_locks.get(workflow_id)
            if lock is None:
                lock = self._workflow_locks[workflow_id] = threading.RLock()
            return lock

    def load(self, workflow_id: str) -> Workflow:
        db = self._session()
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(workflow_id)
            workflow = Workflow.model_validate(model.definition)
            logger.debug(f"Loaded workflow {workflow_id} ({len(workflow.nodes)} nodes)")
            return workflow
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading workflow: {str(e)}")
            raise StorageError(f"Failed to load workflow: {str(e)}", operation="load", table="pipeline_workflows")
        finally:
            db.close()

    def save(self, workflow: Workflow) -> Workflow:
        with self._lock_for(workflow.id):
            db = self._session()
            try:
                model = db.get(WorkflowModel, workflow.id)
                stamp = now_ms()
                if model is None:
                    saved = workflow.model_copy(update={"updated_at": stamp})
                    model = WorkflowModel(id=saved.id, created_at=saved.created_at)
                    db.add(model)
                else:
                    saved = workflow.model_copy(update={
                        "created_at": model.created_at,
                        "updated_at": max(stamp, model.updated_at + 1),
                    })
                model.name = saved.name
                model.definition = saved.to_json_dict()
                model.updated_at = saved.updated_at
                db.commit()
                logger.info(f"Saved workflow '{saved.name}' ({saved.id})")
                return saved
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Database error while saving workflow: {str(e)}")
                raise StorageError(f"Failed to save workflow: {str(e)}", operation="save", table="pipeline_workflows")
            finally:
                db.close()

    def delete(self, workflow_id: str) -> bool:
        with self._lock_for(workflow_id):
            db = self._session()
            try:
                model = db.get(WorkflowModel, workflow_id)
                if model is None:
                    logger.warning(f"Workflow '{workflow_id}' not found for deletion")
                    return False
                db.delete(model)
                db.commit()
                logger.info(f"Deleted workflow {workflow_id}")
                return True
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete", table="pipeline_workflows")
            finally:
                db.close()

    def list_workflows(self) -> List[WorkflowSummary]:
        db = self._session()
        try:
            models = db.query(WorkflowModel).order_by(WorkflowModel.updated_at.desc()).all()
            return [
                WorkflowSummary(
                    id=model.id,
                    name=model.name,
                    node_count=len(model.definition.get("nodes", [])),
                    edge_count=len(model.definition.get("edges", [])),
                    created_at=model.created_at,
                    updated_at=model.updated_at,
                )
                for model in models
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list", table="pipeline_workflows")
        finally:
            db.close()

    @with_retry(_STORAGE_RETRY)
    def save_run_result(self, workflow_id: str, record: RunRecord) -> None:
        with self._lock_for(workflow_id):
            db = self._session()
            try:
                model = db.get(RunModel, record.run_id)
                if model is None:
                    model = RunModel(id=record.run_id, workflow_id=workflow_id)
                    db.add(model)
                else:
                    model.events.clear()
                model.outcome = record.outcome.value if record.outcome else None
                model.started_at = record.started_at
                model.finished_at = record.finished_at
                model.nodes = {
                    node_id: node.to_json_dict() for node_id, node in record.nodes.items()
                }
                for event in record.events:
                    model.events.append(RunEventModel(
                        sequence=event.sequence,
                        timestamp=event.timestamp,
                        event_type=event.event_type.value,
                        node_id=event.node_id,
                        attempt=event.attempt,
                        message=event.message,
                    ))
                db.commit()
                logger.info(f"Saved result of run {record.run_id} for workflow {workflow_id}: {model.outcome}")
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Database error while saving run result: {str(e)}")
                raise StorageError(f"Failed to save run result: {str(e)}", operation="save_run_result", table="pipeline_runs")
            finally:
                db.close()

    def get_run(self, run_id: str) -> RunRecord:
        db = self._session()
        try:
            model = db.get(RunModel, run_id)
            if model is None:
                raise RunNotFoundError(run_id)
            return self._to_record(model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load run: {str(e)}", operation="get_run", table="pipeline_runs")
        finally:
            db.close()

    def list_runs(self, workflow_id: str) -> List[RunRecord]:
        db = self._session()
        try:
            models = (
                db.query(RunModel)
                .filter(RunModel.workflow_id == workflow_id)
                .order_by(RunModel.started_at.desc())
                .all()
            )
            return [self._to_record(model) for model in models]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list runs: {str(e)}", operation="list_runs", table="pipeline_runs")
        finally:
            db.close()

    def save_artifact(self, workflow_id: str, run_id: str, node_id: str, artifact: Artifact) -> Artifact:
        with self._lock_for(workflow_id):
            db = self._session()
            try:
                model = SavedArtifactModel(
                    workflow_id=workflow_id,
                    run_id=run_id,
                    node_id=node_id,
                    source_node_id=artifact.produced_by,
                    kind=artifact.kind.value,
                    uri=artifact.uri,
                    content=artifact.content,
                    mime_type=artifact.mime_type,
                    artifact_metadata=artifact.metadata,
                )
                db.add(model)
                db.commit()
                return artifact.model_copy(update={
                    "metadata": {**artifact.metadata, "saved_id": model.id},
                })
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to save artifact: {str(e)}", operation="save_artifact", table="saved_artifacts")
            finally:
                db.close()

    def list_artifacts(self, run_id: str) -> List[Artifact]:
        db = self._session()
        try:
            models = (
                db.query(SavedArtifactModel)
                .filter(SavedArtifactModel.run_id == run_id)
                .order_by(SavedArtifactModel.id)
                .all()
            )
            return [
                Artifact(
                    kind=model.kind,
                    uri=model.uri,
                    content=model.content,
                    mime_type=model.mime_type,
                    produced_by=model.source_node_id,
                    metadata={**(model.artifact_metadata or {}), "saved_id": model.id},
                )
                for model in models
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list artifacts: {str(e)}", operation="list_artifacts", table="saved_artifacts")
        finally:
            db.close()

    @staticmethod
    def _to_record(model: RunModel) -> RunRecord:
        return RunRecord(
            workflow_id=model.workflow_id,
            run_id=model.id,
            started_at=model.started_at,
            finished_at=model.finished_at,
            outcome=model.outcome,
            nodes={node_id: NodeRunRecord.model_validate(data) for node_id, data in (model.nodes or {}).items()},
            events=[
                ExecutionEvent(
                    sequence=event.sequence,
                    timestamp=event.timestamp,
                    event_type=event.event_type,
                    node_id=event.node_id,
                    attempt=event.attempt,
                    message=event.message,
                )
                for event in model.events
            ],
        )
