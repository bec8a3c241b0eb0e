"""Pytest configuration exposing the ``app`` package and shared fixtures."""

from __future__ import annotations

import pathlib
import sys
from collections.abc import Iterator

import pytest

BACKEND_ROOT = pathlib.Path(__file__).resolve().parent

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from app.core import config  # noqa: E402
from app.db import database  # noqa: E402
from app.db import views as db_views  # noqa: E402
from app.services import pipeline  # noqa: E402


def square_polygon(
    lon: float = 10.0, lat: float = 45.0, size: float = 0.01
) -> dict[str, object]:
    """Closed 5-vertex GeoJSON polygon with its south-west corner at lon/lat."""
    return {
        "type": "Polygon",
        "coordinates": [
            [
                [lon, lat],
                [lon + size, lat],
                [lon + size, lat + size],
                [lon, lat + size],
                [lon, lat],
            ]
        ],
    }


@pytest.fixture
def settings() -> config.Settings:
    return config.Settings(
        elevation_api_url=None,
        ingestion_workers=2,
        ingestion_queue_size=8,
        enable_view_scheduler=False,
    )


@pytest.fixture
def memory_pipeline(settings: config.Settings) -> Iterator[pipeline.Pipeline]:
    """Pipeline wired to in-memory repositories and view store."""
    pipe = pipeline.Pipeline.build(
        settings,
        parcels=database.InMemoryParcelRepository(),
        risk_repository=database.InMemoryRiskRepository(),
        view_store=db_views.InMemoryViewStore(),
    )
    pipe.scheduler.ensure_views()
    yield pipe
    pipe.orchestrator.shutdown(wait=True)
    pipe.sampler.close()
