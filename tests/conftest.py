"""Pytest configuration and fixtures."""

import asyncio
import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from pipeline_engine.core.dispatcher import build_default_dispatcher
from pipeline_engine.core.scheduler import ExecutionSettings
from pipeline_engine.models.core import Artifact, ArtifactKind, Workflow
from pipeline_engine.services.client import ServiceClient, ServiceRequest
from pipeline_engine.services.delivery import DeliveryTarget
from pipeline_engine.storage.database import build_engine, create_tables, get_session_factory
from pipeline_engine.storage.sql_store import SqlWorkflowStore


def make_workflow(
    nodes: Sequence[Tuple[str, str]],
    edges: Iterable[Tuple[str, str]] = (),
    workflow_id: str = "wf-1",
    name: str = "Test workflow"
) -> Workflow:
    """Build a workflow from (id, type) pairs and (source, target) pairs."""
    return Workflow.model_validate({
        "id": workflow_id,
        "name": name,
        "nodes": [
            {
                "id": node_id,
                "type": node_type,
                "data": {
                    "label": node_id,
                    "prompt": f"prompt for {node_id}",
                    "url": f"https://media.example.com/{node_id}.png",
                },
            }
            for node_id, node_type in nodes
        ],
        "edges": [
            {"id": f"e-{source}-{target}", "source": source, "target": target}
            for source, target in edges
        ],
    })


def linear_workflow(workflow_id: str = "wf-1") -> Workflow:
    """I -> P -> O."""
    return make_workflow(
        [("I", "input_text"), ("P", "process_ai_image"), ("O", "output_save")],
        [("I", "P"), ("P", "O")],
        workflow_id=workflow_id,
    )


class Hang:
    """Script step: block for the given number of seconds before succeeding."""

    def __init__(self, seconds: float):
        self.seconds = seconds


class ScriptedServiceClient(ServiceClient):
    """Service client whose behaviour per node is scripted by the test.

    Each scripted step is an exception to raise, a Hang, or None for success.
    Unscripted calls succeed.
    """

    def __init__(self, script: Optional[Dict[str, List]] = None, delay: float = 0.0):
        self.script = {node_id: list(steps) for node_id, steps in (script or {}).items()}
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def invoke(self, request: ServiceRequest, cancel: asyncio.Event) -> Artifact:
        self.calls.append(request.node_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            steps = self.script.get(request.node_id)
            step = steps.pop(0) if steps else None
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(step, Hang):
                await asyncio.sleep(step.seconds)
            elif isinstance(step, BaseException):
                raise step
            return Artifact(
                kind=ArtifactKind.IMAGE,
                uri=f"https://cdn.example.com/{request.node_id}.png",
                mime_type="image/png",
                produced_by=request.node_id,
                metadata={"inputs": sorted(request.inputs)},
            )
        finally:
            self.in_flight -= 1

    def call_count(self, node_id: str) -> int:
        return Counter(self.calls)[node_id]

    async def aclose(self) -> None:
        self.closed = True


class RecordingDelivery(DeliveryTarget):
    """Delivery target that remembers what it was handed."""

    def __init__(self):
        self.deliveries: List[Tuple[str, str, List[str]]] = []

    async def deliver(self, run_id, node_id, artifacts, output_format, cancel):
        self.deliveries.append((run_id, node_id, sorted(artifacts)))
        return Artifact(kind=ArtifactKind.FILE, uri=f"file:///downloads/{run_id}/{node_id}", produced_by=node_id)


@pytest.fixture(autouse=True)
def restore_root_logging():
    """setup_logging replaces the root handlers; put the previous ones back."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def store():
    """SQL store on a fresh in-memory database."""
    engine = build_engine("sqlite:///:memory:")
    create_tables(engine)
    yield SqlWorkflowStore(get_session_factory(engine))
    engine.dispose()


@pytest.fixture
def service_client():
    return ScriptedServiceClient()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def dispatcher(service_client, store, delivery):
    return build_default_dispatcher({"*": service_client}, store=store, delivery=delivery)


@pytest.fixture
def fast_settings():
    """Execution settings with millisecond backoff so retry tests stay quick."""
    return ExecutionSettings(
        concurrency_limit=4,
        node_timeout=2.0,
        max_attempts=3,
        retry_base_delay=0.01,
        retry_max_delay=0.02,
        retry_jitter=False,
    )
