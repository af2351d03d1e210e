"""FastAPI REST endpoints for the pipeline engine."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import Field

from ..core.exceptions import (
    ExecutionEngineError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    create_error_response
)
from ..core.execution_engine import ExecutionEngine
from ..core.logging import get_logger
from ..models.core import (
    Artifact,
    CamelModel,
    ExecutionRequest,
    RunRecord,
    ValidationReport,
    Workflow,
    WorkflowSummary
)
from ..storage.base import WorkflowStore
from ..templates import instantiate_template, list_templates
from .middleware import status_code_for_error

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["pipeline"])

# Global instances (initialized by the application factory)
_store: Optional[WorkflowStore] = None
_engine: Optional[ExecutionEngine] = None


def init_dependencies(store: WorkflowStore, engine: ExecutionEngine):
    """Initialize the global dependencies."""
    global _store, _engine
    _store = store
    _engine = engine


def get_store() -> WorkflowStore:
    """Dependency to get the workflow store."""
    if _store is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow store not initialized"
        )
    return _store


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _engine


# Request/Response models
class SaveWorkflowResponse(CamelModel):
    """Response model for saving a workflow."""
    workflow_id: str = Field(..., description="Identifier of the saved workflow")
    message: str = Field(..., description="Success message")
    validation: ValidationReport = Field(..., description="Validation result of the saved definition")


class RunStartedResponse(CamelModel):
    """Response model for a started run."""
    run_id: str = Field(..., description="Unique identifier for the run")
    workflow_id: str = Field(..., description="Workflow being executed")
    message: str = Field(..., description="Success message")


class CancelRunResponse(CamelModel):
    """Response model for a cancellation request."""
    run_id: str
    cancelled: bool = Field(..., description="False if the run had already finished")


class InstantiateTemplateRequest(CamelModel):
    """Optional overrides when instantiating a template."""
    workflow_id: Optional[str] = Field(None, description="ID for the new workflow")
    name: Optional[str] = Field(None, description="Name for the new workflow")


def _raise_http_error(error: Exception, action: str) -> NoReturn:
    """Translate an engine error into an HTTPException."""
    if isinstance(error, WorkflowEngineError):
        status_code = status_code_for_error(error)
        log = logger.warning if status_code < 500 else logger.error
        log(f"Workflow engine error while trying to {action}: {error.message}")
        raise HTTPException(status_code=status_code, detail=create_error_response(error))

    logger.error(f"Unexpected error while trying to {action}: {str(error)}", exc_info=True)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while trying to {action}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Endpoints

@router.post(
    "/workflows",
    response_model=SaveWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Save a workflow",
    description="Insert or update a workflow definition and report how it validates"
)
async def save_workflow(
    workflow: Workflow,
    store: WorkflowStore = Depends(get_store),
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> SaveWorkflowResponse:
    """
    Save a workflow definition.

    Invalid workflows are stored too, so an editor can persist work in
    progress; the validation report tells the caller whether it can run.
    """
    try:
        logger.info(f"Saving workflow: {workflow.name}")
        report = engine.check(workflow)
        saved = await asyncio.to_thread(store.save, workflow)
        return SaveWorkflowResponse(
            workflow_id=saved.id,
            message=f"Workflow '{saved.name}' saved successfully",
            validation=report
        )
    except Exception as e:
        _raise_http_error(e, "save the workflow")


@router.get(
    "/workflows",
    response_model=List[WorkflowSummary],
    summary="List workflows"
)
async def list_workflows(store: WorkflowStore = Depends(get_store)) -> List[WorkflowSummary]:
    try:
        return await asyncio.to_thread(store.list_workflows)
    except Exception as e:
        _raise_http_error(e, "list workflows")


@router.get(
    "/workflows/{workflow_id}",
    response_model=Workflow,
    summary="Get a workflow definition"
)
async def get_workflow(workflow_id: str, store: WorkflowStore = Depends(get_store)) -> Workflow:
    try:
        return await asyncio.to_thread(store.load, workflow_id)
    except Exception as e:
        _raise_http_error(e, "load the workflow")


@router.delete(
    "/workflows/{workflow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a workflow and its runs"
)
async def delete_workflow(workflow_id: str, store: WorkflowStore = Depends(get_store)) -> Response:
    try:
        deleted = await asyncio.to_thread(store.delete, workflow_id)
    except Exception as e:
        _raise_http_error(e, "delete the workflow")
    if not deleted:
        _raise_http_error(WorkflowNotFoundError(workflow_id), "delete the workflow")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/workflows/{workflow_id}/validate",
    response_model=ValidationReport,
    summary="Validate a stored workflow",
    description="Report every structural and type violation without executing anything"
)
async def validate_workflow(
    workflow_id: str,
    store: WorkflowStore = Depends(get_store),
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ValidationReport:
    try:
        workflow = await asyncio.to_thread(store.load, workflow_id)
        return engine.check(workflow)
    except Exception as e:
        _raise_http_error(e, "validate the workflow")


@router.get(
    "/workflows/{workflow_id}/runs",
    response_model=List[RunRecord],
    summary="List runs of a workflow"
)
async def list_workflow_runs(
    workflow_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[RunRecord]:
    try:
        return await engine.list_runs(workflow_id)
    except Exception as e:
        _raise_http_error(e, "list runs")


@router.post(
    "/runs",
    response_model=RunStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Execute a workflow",
    description="Validate a stored workflow and start executing it; poll the run for progress"
)
async def start_run(
    request: ExecutionRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> RunStartedResponse:
    try:
        logger.info(f"Starting run for workflow: {request.workflow_id}")
        run_id = await engine.start_run(request)
        return RunStartedResponse(
            run_id=run_id,
            workflow_id=request.workflow_id,
            message="Run started successfully"
        )
    except Exception as e:
        _raise_http_error(e, "start the run")


@router.get(
    "/runs/{run_id}",
    response_model=RunRecord,
    summary="Get run status",
    description="Live snapshot of a running workflow, or the final record once it finished"
)
async def get_run(run_id: str, engine: ExecutionEngine = Depends(get_execution_engine)) -> RunRecord:
    try:
        return await engine.get_run(run_id)
    except Exception as e:
        _raise_http_error(e, "get the run")


@router.post(
    "/runs/{run_id}/cancel",
    response_model=CancelRunResponse,
    summary="Cancel a run"
)
async def cancel_run(run_id: str, engine: ExecutionEngine = Depends(get_execution_engine)) -> CancelRunResponse:
    try:
        if not engine.cancel(run_id):
            # Unknown ids are a 404; finished runs report cancelled=False.
            await engine.get_run(run_id)
            return CancelRunResponse(run_id=run_id, cancelled=False)
        return CancelRunResponse(run_id=run_id, cancelled=True)
    except Exception as e:
        _raise_http_error(e, "cancel the run")


@router.post(
    "/runs/{run_id}/resume",
    response_model=RunStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Resume a run",
    description="Start a new run that reuses the succeeded nodes of a finished run"
)
async def resume_run(run_id: str, engine: ExecutionEngine = Depends(get_execution_engine)) -> RunStartedResponse:
    try:
        if engine.is_active(run_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=create_error_response(ExecutionEngineError(
                    f"Run {run_id} is still executing", run_id=run_id
                ))
            )
        new_run_id = await engine.resume(run_id)
        record = await engine.get_run(new_run_id)
        return RunStartedResponse(
            run_id=new_run_id,
            workflow_id=record.workflow_id,
            message=f"Resumed from run {run_id}"
        )
    except HTTPException:
        raise
    except Exception as e:
        _raise_http_error(e, "resume the run")


@router.get(
    "/runs/{run_id}/artifacts",
    response_model=List[Artifact],
    summary="List artifacts saved by a run"
)
async def list_run_artifacts(run_id: str, store: WorkflowStore = Depends(get_store)) -> List[Artifact]:
    try:
        return await asyncio.to_thread(store.list_artifacts, run_id)
    except Exception as e:
        _raise_http_error(e, "list artifacts")


@router.get(
    "/templates",
    response_model=List[WorkflowSummary],
    summary="List workflow templates"
)
async def get_templates() -> List[WorkflowSummary]:
    return list_templates()


@router.post(
    "/templates/{name}",
    response_model=Workflow,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow from a template"
)
async def create_from_template(
    name: str,
    request: Optional[InstantiateTemplateRequest] = None,
    store: WorkflowStore = Depends(get_store)
) -> Workflow:
    overrides: Dict[str, Any] = {}
    if request is not None:
        overrides = {"workflow_id": request.workflow_id, "workflow_name": request.name}
    try:
        workflow = instantiate_template(name, **overrides)
    except KeyError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "TemplateNotFound", "message": str(e.args[0]), "details": {"template": name}}
        )
    try:
        return await asyncio.to_thread(store.save, workflow)
    except Exception as e:
        _raise_http_error(e, "save the workflow")
