"""Run lifecycle: start, observe, cancel, resume and persist workflow runs."""

import asyncio
import uuid
from collections import OrderedDict
from typing import Dict, List, Optional

from ..models.core import ExecutionRequest, RunRecord, ValidationReport, Workflow
from ..storage.base import WorkflowStore
from .context import ExecutionContext
from .dispatcher import NodeDispatcher
from .exceptions import ExecutionEngineError, StorageError
from .logging import get_logger, set_logging_context, clear_logging_context
from .scheduler import ExecutionSettings, WorkflowScheduler
from .validator import GraphValidator, ValidatedGraph

logger = get_logger(__name__)


class _ActiveRun:
    """Book-keeping for a run that has not been collected yet."""

    def __init__(self, context: ExecutionContext, cancel: asyncio.Event):
        self.context = context
        self.cancel = cancel
        self.task: Optional[asyncio.Task] = None
        self.record: Optional[RunRecord] = None


class ExecutionEngine:
    """
    Entry point for executing stored workflows.

    Each run gets its own ExecutionContext, cancellation event and scheduler;
    runs share only the dispatcher and the store. Finished runs are persisted
    through the store and a bounded number of them stay cached in memory.
    """

    def __init__(
        self,
        store: WorkflowStore,
        dispatcher: NodeDispatcher,
        settings: Optional[ExecutionSettings] = None,
        validator: Optional[GraphValidator] = None,
        history_size: int = 100
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings or ExecutionSettings()
        self.validator = validator or GraphValidator()
        self._runs: Dict[str, _ActiveRun] = {}
        self._finished: "OrderedDict[str, RunRecord]" = OrderedDict()
        self._history_size = history_size

    async def load_and_validate(self, workflow_id: str) -> ValidatedGraph:
        """
        Load a workflow from the store and validate it.

        Raises:
            WorkflowNotFoundError: if the workflow does not exist
            ValidationError: if the workflow is not executable
        """
        workflow = await asyncio.to_thread(self.store.load, workflow_id)
        return self.validator.validate(workflow)

    def check(self, workflow: Workflow) -> ValidationReport:
        return self.validator.check(workflow)

    async def start_run(self, request: ExecutionRequest, resume_from: Optional[RunRecord] = None) -> str:
        """
        Validate the requested workflow and start executing it in the background.

        Validation failures are raised here; no run is created for an invalid
        workflow.

        Returns:
            str: the new run id
        """
        validated = await self.load_and_validate(request.workflow_id)
        settings = self.settings.with_request(request)
        scheduler = WorkflowScheduler(self.dispatcher, settings)
        context = scheduler.create_context(validated, str(uuid.uuid4()), resume_from)
        active = _ActiveRun(context, asyncio.Event())
        self._runs[context.run_id] = active
        active.task = asyncio.create_task(
            self._execute(scheduler, validated, active), name=f"run:{context.run_id}"
        )
        active.task.add_done_callback(self._collect)
        logger.info(
            f"Started run {context.run_id} for workflow {validated.workflow_id} "
            f"(concurrency={settings.concurrency_limit}, timeout={settings.node_timeout}s, "
            f"attempts={settings.max_attempts})"
        )
        return context.run_id

    async def _execute(self, scheduler: WorkflowScheduler, validated: ValidatedGraph, active: _ActiveRun) -> RunRecord:
        context = active.context
        # Tasks inherit the caller's context; drop any request fields.
        clear_logging_context()
        token = set_logging_context(run_id=context.run_id, workflow_id=context.workflow_id)
        try:
            await scheduler.execute(validated, context, active.cancel)
        except asyncio.CancelledError:
            logger.warning(f"Run {context.run_id} was interrupted before finishing")
            await self._settle(active)
            raise
        except Exception as e:
            logger.error(f"Run {context.run_id} aborted: {str(e)}", exc_info=True)
            await self._settle(active)
            raise ExecutionEngineError(
                f"Run {context.run_id} aborted: {str(e)}",
                run_id=context.run_id,
                workflow_id=context.workflow_id
            ) from e
        finally:
            clear_logging_context(token)

        return await self._settle(active)

    @staticmethod
    def _collect(task: asyncio.Task) -> None:
        # Aborted runs are already logged in _execute; mark the exception retrieved.
        if not task.cancelled():
            task.exception()

    async def _settle(self, active: _ActiveRun) -> RunRecord:
        record = active.context.snapshot()
        active.record = record
        await self._persist(record)
        self._remember(record)
        return record

    async def _persist(self, record: RunRecord) -> None:
        try:
            await asyncio.to_thread(self.store.save_run_result, record.workflow_id, record)
        except StorageError as e:
            # The in-memory record remains available through get_run.
            logger.error(f"Failed to persist run {record.run_id}: {e.message}")

    def _remember(self, record: RunRecord) -> None:
        self._finished[record.run_id] = record
        self._finished.move_to_end(record.run_id)
        while len(self._finished) > self._history_size:
            self._finished.popitem(last=False)
        self._runs.pop(record.run_id, None)

    async def wait(self, run_id: str) -> RunRecord:
        """Wait for a run to finish and return its final record."""
        active = self._runs.get(run_id)
        if active is None:
            return await self.get_run(run_id)
        return await asyncio.shield(active.task)

    async def run(self, request: ExecutionRequest) -> RunRecord:
        """Start a run and wait for its final record."""
        run_id = await self.start_run(request)
        return await self.wait(run_id)

    def cancel(self, run_id: str) -> bool:
        """
        Request cancellation of a run.

        Nodes not yet started are skipped; in-flight nodes are abandoned and
        recorded as failed. Returns False if the run is unknown or finished.
        """
        active = self._runs.get(run_id)
        if active is None or active.record is not None:
            return False
        if not active.cancel.is_set():
            logger.info(f"Cancelling run {run_id}")
            active.cancel.set()
        return True

    def is_active(self, run_id: str) -> bool:
        active = self._runs.get(run_id)
        return active is not None and active.record is None

    def active_runs(self) -> List[str]:
        return [run_id for run_id in self._runs if self.is_active(run_id)]

    async def get_run(self, run_id: str) -> RunRecord:
        """
        Current record of a run: a live snapshot while it executes, the final
        record afterwards.

        Raises:
            RunNotFoundError: if the run is unknown to this engine and the store
        """
        active = self._runs.get(run_id)
        if active is not None:
            return active.record or active.context.snapshot()
        if run_id in self._finished:
            return self._finished[run_id]
        return await asyncio.to_thread(self.store.get_run, run_id)

    async def list_runs(self, workflow_id: str) -> List[RunRecord]:
        persisted = await asyncio.to_thread(self.store.list_runs, workflow_id)
        live = [
            active.context.snapshot() for active in self._runs.values()
            if active.record is None and active.context.workflow_id == workflow_id
        ]
        return live + persisted

    async def resume(self, run_id: str, request: Optional[ExecutionRequest] = None) -> str:
        """
        Start a new run of the same workflow that reuses the succeeded nodes
        of a finished run.

        Returns:
            str: the new run id
        """
        previous = await self.get_run(run_id)
        if self.is_active(run_id):
            raise ExecutionEngineError(
                f"Run {run_id} is still executing and cannot be resumed",
                run_id=run_id,
                workflow_id=previous.workflow_id
            )
        if request is None:
            request = ExecutionRequest(workflow_id=previous.workflow_id)
        elif request.workflow_id != previous.workflow_id:
            raise ExecutionEngineError(
                f"Run {run_id} belongs to workflow {previous.workflow_id}",
                run_id=run_id,
                workflow_id=request.workflow_id
            )
        logger.info(f"Resuming run {run_id}")
        return await self.start_run(request, resume_from=previous)

    async def shutdown(self) -> None:
        """Cancel every active run and wait for them to settle."""
        tasks = []
        for run_id in self.active_runs():
            self.cancel(run_id)
            tasks.append(self._runs[run_id].task)
        if tasks:
            logger.info(f"Waiting for {len(tasks)} run(s) to stop")
            await asyncio.gather(*tasks, return_exceptions=True)

