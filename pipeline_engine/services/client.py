"""Service client contract for external generation and transform providers."""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional

from pydantic import Field

from ..models.core import Artifact, CamelModel


class ServiceRequest(CamelModel):
    """Payload sent to a provider for one node invocation."""
    capability: str = Field(..., description="Node type being executed, e.g. process_ai_image")
    node_id: str
    model: Optional[str] = None
    prompt: Optional[str] = None
    url: Optional[str] = None
    aspect_ratio: Optional[str] = None
    format: Optional[str] = None
    inputs: Dict[str, Artifact] = Field(default_factory=dict, description="Upstream artifacts by node id")


class ServiceClient(ABC):
    """One external capability (image, video, audio, code, upscale, ...).

    Implementations raise ServiceTimeoutError, RateLimitedError,
    InvalidInputError or ProviderError. Retrying is the engine's job.
    """

    @abstractmethod
    async def invoke(self, request: ServiceRequest, cancel: asyncio.Event) -> Artifact:
        """Perform the call and return a reference to the produced artifact."""

    async def aclose(self) -> None:
        """Release network resources."""
