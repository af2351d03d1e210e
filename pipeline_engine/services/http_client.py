"""HTTP service client that forwards node invocations to a remote worker."""

import asyncio
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as ModelValidationError

from ..core.exceptions import (
    InvalidInputError, ProviderError, RateLimitedError, RunCancelledError, ServiceTimeoutError
)
from ..core.logging import get_logger
from ..models.core import Artifact, ArtifactKind
from .client import ServiceClient, ServiceRequest

logger = get_logger(__name__)

_DEFAULT_KINDS = {
    "process_ai_image": ArtifactKind.IMAGE,
    "process_ai_video": ArtifactKind.VIDEO,
    "process_ai_audio": ArtifactKind.AUDIO,
    "process_code": ArtifactKind.CODE,
    "transform_upscale": ArtifactKind.IMAGE,
    "transform_remove_bg": ArtifactKind.IMAGE,
}


class HttpServiceClient(ServiceClient):
    """
    POSTs the request as JSON to ``{base_url}/{capability}``.

    The worker answers with ``{"uri": ..., "content": ..., "mimeType": ...,
    "kind": ...}``. Status codes map onto the service error taxonomy.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def invoke(self, request: ServiceRequest, cancel: asyncio.Event) -> Artifact:
        url = f"{self.base_url}/{request.capability}"
        payload = request.to_json_dict()

        call = asyncio.ensure_future(self._client.post(url, json=payload, headers=self._headers))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if call not in done:
            call.cancel()
            raise RunCancelledError(f"Request to {request.capability} cancelled")

        try:
            response = call.result()
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError(
                f"{request.capability} timed out: {e}", timeout=self.timeout, capability=request.capability
            )
        except httpx.TransportError as e:
            raise ProviderError(f"{request.capability} unreachable: {e}", capability=request.capability)

        return self._parse_response(request, response)

    def _parse_response(self, request: ServiceRequest, response: httpx.Response) -> Artifact:
        capability = request.capability
        if response.status_code == 429:
            raise RateLimitedError(
                f"{capability} rate limited",
                retry_after=_retry_after(response),
                capability=capability
            )
        if response.status_code in (400, 422):
            raise InvalidInputError(f"{capability} rejected input: {response.text[:200]}", capability=capability)
        if response.status_code in (408, 504):
            raise ServiceTimeoutError(f"{capability} timed out upstream", capability=capability)
        if response.status_code >= 400:
            raise ProviderError(
                f"{capability} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                capability=capability
            )

        try:
            body: Dict[str, Any] = response.json()
        except ValueError:
            raise ProviderError(f"{capability} returned a non-JSON body", capability=capability)

        if not isinstance(body, dict):
            raise ProviderError(f"{capability} returned an invalid artifact: expected a JSON object",
                                capability=capability)
        if not body.get("uri") and body.get("content") is None:
            raise ProviderError(f"{capability} returned no artifact", capability=capability)

        try:
            artifact = Artifact(
                kind=body.get("kind") or _DEFAULT_KINDS.get(capability, ArtifactKind.FILE),
                uri=body.get("uri"),
                content=body.get("content"),
                mime_type=body.get("mimeType"),
                produced_by=request.node_id,
                metadata=body.get("metadata") or {},
            )
        except ModelValidationError as e:
            raise ProviderError(f"{capability} returned an invalid artifact: {e.error_count()} error(s)",
                                capability=capability)

        logger.debug(f"{capability} produced artifact for node {request.node_id}")
        return artifact

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
