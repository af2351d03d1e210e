"""Delivery targets for output_download nodes."""

import asyncio
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from ..core.exceptions import InvalidInputError, ProviderError, RunCancelledError, ServiceTimeoutError
from ..core.logging import get_logger
from ..models.core import Artifact, ArtifactKind

logger = get_logger(__name__)

_TEXT_EXTENSIONS = {
    ArtifactKind.TEXT: "txt",
    ArtifactKind.CODE: "txt",
}


class DeliveryTarget(ABC):
    """Hands finished artifacts to the user."""

    @abstractmethod
    async def deliver(
        self,
        run_id: str,
        node_id: str,
        artifacts: Dict[str, Artifact],
        output_format: Optional[str],
        cancel: asyncio.Event
    ) -> Artifact:
        """Deliver artifacts and return a reference to what was delivered."""


class DirectoryDelivery(DeliveryTarget):
    """Writes artifacts under ``{root}/{run_id}/``; remote media is downloaded with httpx."""

    def __init__(self, root: str, timeout: float = 60.0, client: Optional[httpx.AsyncClient] = None):
        self.root = Path(root)
        self.timeout = timeout
        self._client = client

    async def deliver(self, run_id, node_id, artifacts, output_format, cancel):
        target_dir = self.root / run_id
        written: List[str] = []
        for source_id, artifact in artifacts.items():
            if cancel.is_set():
                raise RunCancelledError(f"Delivery for node {node_id} cancelled", run_id=run_id)
            extension = output_format or _guess_extension(artifact)
            path = self._contained_path(target_dir / f"{node_id}-{source_id}.{extension}")
            if artifact.content is not None:
                data = artifact.content.encode("utf-8")
            elif artifact.uri and artifact.uri.startswith(("http://", "https://")):
                data = await self._fetch(artifact.uri)
            else:
                raise InvalidInputError(f"Artifact from '{source_id}' cannot be downloaded: {artifact.uri}")
            await asyncio.to_thread(_write_bytes, path, data)
            written.append(str(path))

        logger.info(f"Delivered {len(written)} file(s) for node {node_id} in run {run_id}")
        return Artifact(
            kind=ArtifactKind.FILE,
            uri=target_dir.resolve().as_uri(),
            produced_by=node_id,
            metadata={"files": written},
        )

    def _contained_path(self, path: Path) -> Path:
        """Reject file names that would land outside the download root."""
        resolved = path.resolve()
        try:
            resolved.relative_to(self.root.resolve())
        except ValueError:
            raise InvalidInputError(f"Download path escapes the download directory: {path}")
        return resolved

    async def _fetch(self, uri: str) -> bytes:
        try:
            if self._client is not None:
                response = await self._client.get(uri)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await client.get(uri)
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError(f"Download of {uri} timed out: {e}", timeout=self.timeout)
        except httpx.TransportError as e:
            raise ProviderError(f"Download of {uri} failed: {e}")
        if response.status_code >= 400:
            raise ProviderError(f"Download of {uri} failed with HTTP {response.status_code}",
                                status_code=response.status_code)
        return response.content


def _guess_extension(artifact: Artifact) -> str:
    if artifact.mime_type:
        guessed = mimetypes.guess_extension(artifact.mime_type)
        if guessed:
            return guessed.lstrip(".")
    if artifact.kind in _TEXT_EXTENSIONS:
        return _TEXT_EXTENSIONS[artifact.kind]
    if artifact.uri:
        suffix = Path(artifact.uri.split("?")[0]).suffix
        if suffix:
            return suffix.lstrip(".")
    return "bin"


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
