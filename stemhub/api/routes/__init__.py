"""API route modules."""
from __future__ import annotations

from stemhub.api.routes import health, stages, stems, tracks, upstreams

__all__ = ["health", "stages", "stems", "tracks", "upstreams"]
