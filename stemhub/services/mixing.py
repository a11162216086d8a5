"""Audio mixing collaborator client.

The workflow core never touches audio.  It hands a stem file-path set to the
mixing collaborator and stores the two paths it gets back: the mixed-down
reference file and the waveform-peaks file.

Two backends:

- ``HttpMixingClient`` — POSTs to ``{STEMHUB_MIXING_SERVICE_URL}/mix`` over
  a long-lived ``httpx.AsyncClient``.
- ``PathMixingBackend`` — used when no service URL is configured.  Derives
  deterministic output paths from the stage id; the actual mix is produced
  by an external queue consumer which later reports back through the
  guide "mix complete" callback.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from stemhub.config import settings
from stemhub.services.errors import WorkflowError

logger = logging.getLogger(__name__)


class MixingError(WorkflowError):
    """The mixing collaborator failed or returned a malformed response."""

    status_code = 502


@dataclass(frozen=True)
class MixResult:
    """Paths produced by one mix request."""

    mixed_file_path: str
    waveform_data_path: str


class MixingBackend(Protocol):
    async def mix(self, stage_id: str, stem_paths: list[str]) -> MixResult: ...


class PathMixingBackend:
    """Assigns output paths without contacting a mixing service."""

    def __init__(
        self,
        mixed_prefix: Optional[str] = None,
        waveform_prefix: Optional[str] = None,
    ) -> None:
        self.mixed_prefix = (mixed_prefix or settings.mixed_output_prefix).rstrip("/")
        self.waveform_prefix = (waveform_prefix or settings.waveform_output_prefix).rstrip("/")

    async def mix(self, stage_id: str, stem_paths: list[str]) -> MixResult:
        logger.debug("Queued mix for stage %s (%d stems)", stage_id, len(stem_paths))
        return MixResult(
            mixed_file_path=f"{self.mixed_prefix}/{stage_id}/guide.wav",
            waveform_data_path=f"{self.waveform_prefix}/{stage_id}/peaks.json",
        )


# Connection pool settings: mix requests are rare and short-lived.
_CONNECTION_LIMITS = httpx.Limits(
    max_connections=10,
    max_keepalive_connections=5,
    keepalive_expiry=30.0,
)


class HttpMixingClient:
    """
    Async client for the audio mixing service.

    Uses a long-lived httpx.AsyncClient with keepalive connection pooling.
    Call close() from the FastAPI lifespan on shutdown.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.mixing_service_url or "").rstrip("/")
        if not self.base_url:
            raise ValueError("HttpMixingClient requires a mixing service URL")
        self.timeout = timeout or settings.mixing_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(float(self.timeout)),
                limits=_CONNECTION_LIMITS,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def mix(self, stage_id: str, stem_paths: list[str]) -> MixResult:
        """Request a mixdown of *stem_paths* for *stage_id*.

        Raises:
            MixingError: Transport failure, non-2xx status or missing fields.
        """
        payload = {"stageId": stage_id, "stemPaths": stem_paths}
        try:
            response = await self.client.post("/mix", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            logger.error("❌ Mixing request for stage %s failed: %s", stage_id, exc)
            raise MixingError(f"Mixing service request failed: {exc}") from exc

        mixed = data.get("mixedFilePath") if isinstance(data, dict) else None
        waveform = data.get("waveformDataPath") if isinstance(data, dict) else None
        if not isinstance(mixed, str) or not isinstance(waveform, str):
            raise MixingError("Mixing service response is missing output paths")
        logger.info("✅ Mixed %d stems for stage %s → %s", len(stem_paths), stage_id, mixed)
        return MixResult(mixed_file_path=mixed, waveform_data_path=waveform)


_backend: Optional[MixingBackend] = None


def get_mixing_backend() -> MixingBackend:
    """Return the process-wide mixing backend, creating it on first use."""
    global _backend
    if _backend is None:
        if settings.mixing_service_url:
            _backend = HttpMixingClient()
        else:
            _backend = PathMixingBackend()
    return _backend


def set_mixing_backend(backend: Optional[MixingBackend]) -> None:
    """Override the process-wide backend (tests, alternative deployments)."""
    global _backend
    _backend = backend


async def close_mixing_backend() -> None:
    global _backend
    if isinstance(_backend, HttpMixingClient):
        await _backend.close()
    _backend = None
