"""Generation backend interface and HTTP client."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
import structlog

from genqueue.jobs.errors import GenerationError
from genqueue.jobs.types import JobKind

logger = structlog.get_logger(__name__)

# Receives intermediate progress (0..100) from a running generation
ProgressCallback = Callable[[int], Awaitable[None]]


@dataclass
class GenerationResult:
    """Outcome of one generation call.

    Exactly one of ``result_ref`` (the backend already stored the output) or
    ``data`` (raw bytes the caller must store) is set.
    """

    result_ref: Optional[str] = None
    data: Optional[bytes] = None
    content_type: Optional[str] = None

    def __post_init__(self):
        if (self.result_ref is None) == (self.data is None):
            raise ValueError("exactly one of result_ref or data must be set")

    @property
    def is_file(self) -> bool:
        return self.data is not None


class GenerationBackend(Protocol):
    """The image/video/audio generation service, invoked once per attempt."""

    async def generate(
        self,
        kind: JobKind,
        prompt: str,
        metadata: dict[str, Any],
        credential: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationResult:
        """Run one generation.

        Raises:
            GenerationError: If the service reports a failure
        """
        ...


class HttpGenerationBackend:
    """Calls a generation service over HTTP.

    ``POST {base_url}/v1/generate/{kind}`` with the pooled credential as bearer
    token. A JSON body with ``result_url`` is a stored result; any other content
    type is treated as the raw artifact.
    """

    def __init__(self, base_url: str, timeout: float = 600.0):
        """
        Initialize the client.

        Args:
            base_url: Generation service base URL
            timeout: Per-call timeout in seconds (default 600)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def generate(
        self,
        kind: JobKind,
        prompt: str,
        metadata: dict[str, Any],
        credential: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationResult:
        url = f"{self.base_url}/v1/generate/{kind.value}"
        payload = {"prompt": prompt, "metadata": metadata}
        headers = {"Authorization": f"Bearer {credential}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()

        except httpx.TimeoutException as e:
            logger.warning("generation_timeout", kind=kind.value, timeout=self.timeout)
            raise GenerationError(
                f"generation service timed out after {self.timeout:.0f}s"
            ) from e

        except httpx.HTTPStatusError as e:
            logger.warning(
                "generation_http_error",
                kind=kind.value,
                status_code=e.response.status_code,
            )
            raise GenerationError(
                f"generation service returned {e.response.status_code}: "
                f"{e.response.text[:200]}"
            ) from e

        except httpx.RequestError as e:
            logger.warning("generation_request_error", kind=kind.value, error=str(e))
            raise GenerationError(f"generation service unreachable: {e}") from e

        content_type = response.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            body = response.json()
            if body.get("error"):
                raise GenerationError(str(body["error"]))
            result_url = body.get("result_url")
            if not result_url:
                raise GenerationError("generation service returned no result_url")
            return GenerationResult(result_ref=result_url)

        return GenerationResult(data=response.content, content_type=content_type or None)
