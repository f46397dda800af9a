"""Artifact storage for raw generation outputs."""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

import structlog

from genqueue.jobs.errors import ArtifactStoreError
from genqueue.jobs.models import Job

logger = structlog.get_logger(__name__)


class ArtifactStore(Protocol):
    async def store(self, data: bytes, path: str) -> str:
        """Store ``data`` at ``path`` and return its URL."""
        ...


def artifact_path(job: Job, now: datetime) -> str:
    """generated/{kind}/{user_id}/{epoch_ms}_{job_id}"""
    kind = job.kind.value if job.kind else "unknown"
    epoch_ms = int(now.timestamp() * 1000)
    return f"generated/{kind}/{job.user_id}/{epoch_ms}_{job.id}"


def _write_file_atomic(path: Path, content: bytes) -> int:
    """Write file atomically and return file size.

    Creates parent directories if needed.
    Writes to temp file then renames for atomic write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    temp_path.write_bytes(content)
    temp_path.rename(path)
    return len(content)


class LocalArtifactStore:
    """Stores artifacts on the local filesystem (or a mounted volume)."""

    def __init__(self, root: str, base_url: Optional[str] = None):
        self._root = Path(root).resolve()
        self._base_url = base_url.rstrip("/") if base_url else None

    async def store(self, data: bytes, path: str) -> str:
        target = (self._root / path).resolve()
        if self._root not in target.parents:
            raise ArtifactStoreError(f"artifact path escapes storage root: {path}")

        try:
            size = await asyncio.to_thread(_write_file_atomic, target, data)
        except OSError as e:
            raise ArtifactStoreError(f"failed to write artifact {path}: {e}") from e

        logger.info("artifact_stored", path=path, size_bytes=size)
        if self._base_url:
            return f"{self._base_url}/{path}"
        return target.as_uri()
