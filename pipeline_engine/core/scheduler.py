"""Drives one execution of a validated workflow graph."""

import asyncio
import heapq
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Set

from ..models.core import Artifact, EventType, ExecutionRequest, Node, NodeStatus, RunRecord
from .context import ExecutionContext
from .dispatcher import InvocationScope, NodeDispatcher, NodeHandler
from .error_recovery import RetryConfig, sleep_unless_cancelled
from .exceptions import RunCancelledError, ServiceTimeoutError
from .logging import (
    ErrorRecoveryLogger, clear_logging_context, get_logger, log_with_context, set_logging_context
)
from .validator import ValidatedGraph

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExecutionSettings:
    """Concurrency, timeout and retry policy for one run."""
    concurrency_limit: int = 4
    node_timeout: float = 120.0  # seconds, per invocation
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: bool = True

    def __post_init__(self):
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if self.node_timeout <= 0:
            raise ValueError("node_timeout must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_config(cls, config) -> "ExecutionSettings":
        return cls(
            concurrency_limit=config.max_concurrency,
            node_timeout=config.node_timeout,
            max_attempts=config.max_retries,
            retry_base_delay=config.retry_base_delay,
            retry_max_delay=config.retry_max_delay,
            retry_jitter=config.retry_jitter,
        )

    def with_request(self, request: ExecutionRequest) -> "ExecutionSettings":
        """Apply the optional overrides carried by an execution request."""
        overrides = {}
        if request.concurrency_limit is not None:
            overrides["concurrency_limit"] = request.concurrency_limit
        if request.per_node_timeout_ms is not None:
            overrides["node_timeout"] = request.per_node_timeout_ms / 1000.0
        if request.max_retries is not None:
            overrides["max_attempts"] = request.max_retries
        return replace(self, **overrides) if overrides else self

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )


class WorkflowScheduler:
    """
    Executes a validated graph in dependency order.

    Nodes whose predecessors have all succeeded form the ready set; ready
    nodes run as concurrent tasks, at most ``concurrency_limit`` at a time.
    A failed node's descendants are skipped without invocation while
    unrelated branches keep running. Only this class mutates the run's
    ExecutionContext.
    """

    def __init__(self, dispatcher: NodeDispatcher, settings: Optional[ExecutionSettings] = None):
        self.dispatcher = dispatcher
        self.settings = settings or ExecutionSettings()
        self._retry = self.settings.retry_config()
        self._recovery_logger = ErrorRecoveryLogger("scheduler")

    def create_context(self, validated: ValidatedGraph, run_id: Optional[str] = None,
                       resume_from: Optional[RunRecord] = None) -> ExecutionContext:
        context = ExecutionContext(run_id=run_id or str(uuid.uuid4()), graph=validated.graph)
        if resume_from is not None:
            context.seed_from(resume_from)
        return context

    async def run(self, validated: ValidatedGraph, run_id: Optional[str] = None,
                  cancel: Optional[asyncio.Event] = None,
                  resume_from: Optional[RunRecord] = None) -> ExecutionContext:
        """Execute the graph to completion and return the terminal context."""
        context = self.create_context(validated, run_id, resume_from)
        await self.execute(validated, context, cancel or asyncio.Event())
        return context

    async def execute(self, validated: ValidatedGraph, context: ExecutionContext, cancel: asyncio.Event) -> None:
        """Drive an already created context until every node is terminal."""
        token = set_logging_context(run_id=context.run_id, workflow_id=context.workflow_id)
        scope = InvocationScope(context.workflow_id, context.run_id)
        context.record_event(EventType.WORKFLOW_START, f"Executing {len(validated.order)} node(s)")
        logger.info(f"Run {context.run_id} started for workflow {context.workflow_id}")
        try:
            await self._drive(validated, context, cancel, scope)
        finally:
            context.finished_at = datetime.utcnow()
            clear_logging_context(token)

        if cancel.is_set():
            context.record_event(EventType.WORKFLOW_CANCELLED, "Run cancelled")
        outcome = context.outcome()
        context.record_event(EventType.WORKFLOW_COMPLETE, f"Run finished with outcome {outcome.value}")
        log_with_context(
            logger, logging.INFO, f"Run {context.run_id} finished: {outcome.value}",
            run_id=context.run_id, workflow_id=context.workflow_id, outcome=outcome.value
        )

    async def _drive(self, validated: ValidatedGraph, context: ExecutionContext,
                     cancel: asyncio.Event, scope: InvocationScope) -> None:
        graph = validated.graph
        semaphore = asyncio.Semaphore(self.settings.concurrency_limit)
        ready: List[str] = [node_id for node_id in validated.order if context.is_ready(node_id)]
        heapq.heapify(ready)
        in_flight: Dict[asyncio.Task, str] = {}

        try:
            while True:
                if cancel.is_set():
                    ready.clear()
                    self._skip_pending(context, set(in_flight.values()))

                while ready:
                    node_id = heapq.heappop(ready)
                    task = asyncio.create_task(
                        self._execute_node(graph.node(node_id), context, semaphore, cancel, scope),
                        name=f"{context.run_id}:{node_id}"
                    )
                    in_flight[task] = node_id

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: in_flight[t]):
                    node_id = in_flight.pop(task)
                    task.result()
                    status = context.status(node_id)
                    if status == NodeStatus.SUCCEEDED:
                        for successor in graph.successors(node_id):
                            if context.is_ready(successor):
                                heapq.heappush(ready, successor)
                    elif status == NodeStatus.FAILED:
                        self._skip_descendants(context, node_id)
        finally:
            for task in in_flight:
                task.cancel()

        stranded = [node_id for node_id, state in context.nodes.items() if not state.status.is_terminal]
        for node_id in stranded:
            logger.warning(f"Node {node_id} never became ready in run {context.run_id}")
            context.mark_skipped(node_id, "Upstream dependencies did not succeed")

    async def _execute_node(self, node: Node, context: ExecutionContext, semaphore: asyncio.Semaphore,
                            cancel: asyncio.Event, scope: InvocationScope) -> None:
        """Run one node through its attempts; records the result, never raises for handler errors."""
        set_logging_context(node_id=node.id)
        inputs = context.inputs_for(node.id)

        while True:
            async with semaphore:
                if cancel.is_set():
                    self._interrupt(context, node.id, scope)
                    return
                attempt = context.mark_running(node.id)
                log_with_context(
                    logger, logging.INFO, f"Executing node {node.id} ({node.type}), attempt {attempt}",
                    node_id=node.id, node_type=node.type, attempt=attempt
                )
                try:
                    handler = self.dispatcher.dispatch(node)
                    artifact = await self._invoke(handler, node, inputs, cancel, scope)
                except Exception as e:
                    error = e
                else:
                    context.mark_succeeded(node.id, artifact)
                    if attempt > 1:
                        self._recovery_logger.log_recovery_success(f"node {node.id}", attempt)
                    return

            if isinstance(error, RunCancelledError) or cancel.is_set():
                context.mark_failed(node.id, RunCancelledError(
                    f"Node {node.id} interrupted by cancellation", run_id=scope.run_id
                ))
                return

            if not self._retry.should_retry(error, attempt):
                logger.warning(f"Node {node.id} failed on attempt {attempt}: {error}")
                context.mark_failed(node.id, error)
                if attempt > 1:
                    self._recovery_logger.log_recovery_failure(f"node {node.id}", error, attempt)
                return

            delay = self._retry.get_delay(attempt, error)
            context.mark_retrying(node.id, error, delay)
            self._recovery_logger.log_recovery_attempt(
                f"node {node.id}", error, attempt, self._retry.max_attempts, delay
            )
            if await sleep_unless_cancelled(delay, cancel):
                context.mark_failed(node.id, RunCancelledError(
                    f"Node {node.id} cancelled while waiting to retry", run_id=scope.run_id
                ))
                return

    async def _invoke(self, handler: NodeHandler, node: Node, inputs: Mapping[str, Artifact],
                      cancel: asyncio.Event, scope: InvocationScope) -> Artifact:
        """Call the handler under the per-node timeout, abandoning it if the run is cancelled."""
        timeout = self.settings.node_timeout
        call = asyncio.ensure_future(
            asyncio.wait_for(handler.execute(node, inputs, cancel, scope), timeout=timeout)
        )
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if call not in done:
            call.cancel()
            call.add_done_callback(_discard_result)
            raise RunCancelledError(f"Node {node.id} interrupted by cancellation", run_id=scope.run_id)

        try:
            return call.result()
        except asyncio.TimeoutError:
            raise ServiceTimeoutError(f"Node {node.id} timed out after {timeout}s", timeout=timeout,
                                      capability=node.type)

    def _interrupt(self, context: ExecutionContext, node_id: str, scope: InvocationScope) -> None:
        if context.status(node_id) == NodeStatus.PENDING:
            context.mark_skipped(node_id, "Run cancelled before node started")
        else:
            context.mark_failed(node_id, RunCancelledError(
                f"Node {node_id} cancelled before retry", run_id=scope.run_id
            ))

    def _skip_pending(self, context: ExecutionContext, started: Set[str]) -> None:
        # Nodes with a task already own their transition out of pending.
        for node_id, state in context.nodes.items():
            if state.status == NodeStatus.PENDING and node_id not in started:
                context.mark_skipped(node_id, "Run cancelled before node started")

    def _skip_descendants(self, context: ExecutionContext, failed_id: str) -> None:
        for node_id in context.graph.descendants(failed_id):
            if context.status(node_id) == NodeStatus.PENDING:
                context.mark_skipped(node_id, f"Upstream node {failed_id} failed")


def _discard_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()
