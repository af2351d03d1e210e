"""Maps node types to the handlers that execute them."""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from ..models.core import Artifact, ArtifactKind, Node, NodeType
from ..services.client import ServiceClient, ServiceRequest
from ..services.delivery import DeliveryTarget
from ..storage.base import WorkflowStore
from .exceptions import InvalidInputError, RunCancelledError, UnknownNodeTypeError
from .logging import get_logger

logger = get_logger(__name__)


class InvocationScope:
    """Identifies the run a handler invocation belongs to."""

    __slots__ = ("workflow_id", "run_id")

    def __init__(self, workflow_id: str, run_id: str):
        self.workflow_id = workflow_id
        self.run_id = run_id


class NodeHandler(ABC):
    """Single capability: turn a node and its upstream artifacts into an artifact.

    Handlers return results instead of mutating shared state, and must return
    promptly once ``cancel`` is set.
    """

    @abstractmethod
    async def execute(
        self,
        node: Node,
        inputs: Mapping[str, Artifact],
        cancel: asyncio.Event,
        scope: InvocationScope
    ) -> Artifact:
        """Execute the node."""


class InputHandler(NodeHandler):
    """Materializes the configured value of an input node; no network."""

    async def execute(self, node, inputs, cancel, scope):
        node_type = node.node_type
        if node_type == NodeType.INPUT_TEXT:
            text = node.data.prompt if node.data.prompt is not None else node.data.label
            if not text:
                raise InvalidInputError(f"Text input '{node.id}' has no prompt or label")
            return Artifact(kind=ArtifactKind.TEXT, content=text, mime_type="text/plain", produced_by=node.id)

        if not node.data.url:
            raise InvalidInputError(f"Media input '{node.id}' has no url")
        return Artifact(
            kind=ArtifactKind.MEDIA,
            uri=node.data.url,
            produced_by=node.id,
            metadata={"label": node.data.label} if node.data.label else {},
        )


class ServiceHandler(NodeHandler):
    """Delegates AI processing and transform nodes to a ServiceClient."""

    def __init__(self, client: ServiceClient):
        self.client = client

    async def execute(self, node, inputs, cancel, scope):
        request = ServiceRequest(
            capability=node.type,
            node_id=node.id,
            model=node.data.model,
            prompt=node.data.prompt,
            url=node.data.url,
            aspect_ratio=node.data.aspect_ratio,
            format=node.data.format,
            inputs=dict(inputs),
        )
        artifact = await self.client.invoke(request, cancel)
        if artifact.produced_by is None:
            artifact = artifact.model_copy(update={"produced_by": node.id})
        return artifact


class SaveOutputHandler(NodeHandler):
    """Persists upstream artifacts through the workflow store."""

    def __init__(self, store: WorkflowStore):
        self.store = store

    async def execute(self, node, inputs, cancel, scope):
        if not inputs:
            raise InvalidInputError(f"Output node '{node.id}' received no artifacts")
        saved = []
        for artifact in inputs.values():
            if cancel.is_set():
                raise RunCancelledError(run_id=scope.run_id)
            stored = await asyncio.to_thread(
                self.store.save_artifact, scope.workflow_id, scope.run_id, node.id, artifact
            )
            saved.append(stored)

        if len(saved) == 1:
            return saved[0].model_copy(update={"produced_by": node.id})
        return Artifact(
            kind=ArtifactKind.FILE,
            uri=f"run://{scope.run_id}/{node.id}",
            produced_by=node.id,
            metadata={"saved": [a.metadata.get("saved_id") for a in saved]},
        )


class DownloadOutputHandler(NodeHandler):
    """Hands upstream artifacts to a delivery target."""

    def __init__(self, delivery: DeliveryTarget):
        self.delivery = delivery

    async def execute(self, node, inputs, cancel, scope):
        if not inputs:
            raise InvalidInputError(f"Output node '{node.id}' received no artifacts")
        return await self.delivery.deliver(scope.run_id, node.id, dict(inputs), node.data.format, cancel)


class NodeDispatcher:
    """Registry from node type to handler."""

    def __init__(self):
        self._handlers: Dict[str, NodeHandler] = {}

    def register(self, node_type, handler: NodeHandler) -> None:
        key = node_type.value if isinstance(node_type, NodeType) else str(node_type)
        if key in self._handlers:
            logger.warning(f"Replacing handler for node type '{key}'")
        self._handlers[key] = handler
        logger.debug(f"Registered {type(handler).__name__} for '{key}'")

    def handles(self, node_type: str) -> bool:
        return node_type in self._handlers

    def dispatch(self, node: Node) -> NodeHandler:
        """
        Return the handler for a node.

        Raises:
            UnknownNodeTypeError: if nothing is registered for the node's type
        """
        handler = self._handlers.get(node.type)
        if handler is None:
            raise UnknownNodeTypeError(node.type, node_id=node.id)
        return handler

    @property
    def registered_types(self):
        return sorted(self._handlers)


_SERVICE_TYPES = (
    NodeType.PROCESS_AI_IMAGE,
    NodeType.PROCESS_AI_VIDEO,
    NodeType.PROCESS_AI_AUDIO,
    NodeType.PROCESS_CODE,
    NodeType.TRANSFORM_UPSCALE,
    NodeType.TRANSFORM_REMOVE_BG,
)


def build_default_dispatcher(
    clients: Mapping[str, ServiceClient],
    store: Optional[WorkflowStore] = None,
    delivery: Optional[DeliveryTarget] = None
) -> NodeDispatcher:
    """
    Wire the standard handler table.

    Args:
        clients: service client per node type value; a "*" entry serves every
            processing type without its own client
        store: backs output_save nodes
        delivery: backs output_download nodes

    Types without a collaborator stay unregistered and fail at dispatch with
    UnknownNodeTypeError.
    """
    dispatcher = NodeDispatcher()
    input_handler = InputHandler()
    dispatcher.register(NodeType.INPUT_TEXT, input_handler)
    dispatcher.register(NodeType.INPUT_MEDIA, input_handler)

    fallback = clients.get("*")
    for node_type in _SERVICE_TYPES:
        client = clients.get(node_type.value, fallback)
        if client is not None:
            dispatcher.register(node_type, ServiceHandler(client))

    if store is not None:
        dispatcher.register(NodeType.OUTPUT_SAVE, SaveOutputHandler(store))
    if delivery is not None:
        dispatcher.register(NodeType.OUTPUT_DOWNLOAD, DownloadOutputHandler(delivery))
    return dispatcher
