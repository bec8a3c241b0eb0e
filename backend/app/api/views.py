"""Materialized view refresh and status API endpoints.

Example:
    Refresh one view, then list every status:
        >>> client.post(
        ...     "/api/views/refresh",
        ...     params={"view_name": "parcel_risk_summary_mv"},
        ... )
        >>> client.get("/api/views/status").json()
        >>> # [{"view_name": "parcel_risk_summary_mv", "status": "idle",
        >>> #   "last_refreshed_at": "...", "duration_ms": 12, ...}, ...]
"""

from __future__ import annotations

import dataclasses
from typing import Any

import fastapi

from app.services import pipeline

router = fastapi.APIRouter(prefix="/api/views", tags=["views"])


@router.post("/refresh")
def refresh_views(
    view_name: str | None = None,
    pipe: pipeline.Pipeline = fastapi.Depends(pipeline.get_pipeline),  # noqa: B008
) -> list[dict[str, Any]]:
    """Refresh one tracked view, or all of them when no name is given.

    Args:
        view_name: Optional tracked view name.
        pipe: Ingestion pipeline (injected via FastAPI Depends).

    Returns:
        Status of every tracked view after the refresh.

    Raises:
        HTTPException: 404 for an untracked view name, 500 when the
            requested refresh fails.
    """
    scheduler = pipe.scheduler
    if view_name is None:
        scheduler.refresh_all()
    else:
        if view_name not in scheduler.views:
            raise fastapi.HTTPException(status_code=404, detail="View not found")
        try:
            scheduler.refresh(view_name)
        except Exception as exc:
            raise fastapi.HTTPException(
                status_code=500,
                detail=f"Refresh of {view_name} failed: {exc}",
            ) from exc
    return [dataclasses.asdict(status) for status in scheduler.get_statuses()]


@router.get("/status")
def view_statuses(
    pipe: pipeline.Pipeline = fastapi.Depends(pipeline.get_pipeline),  # noqa: B008
) -> list[dict[str, Any]]:
    return [dataclasses.asdict(status) for status in pipe.scheduler.get_statuses()]
