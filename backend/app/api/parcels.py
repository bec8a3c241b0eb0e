"""Parcel create, list, update, read and delete API endpoints.

Parcels are submitted as multipart forms carrying a name, an optional
population and the boundary either as GeoJSON text (``geometry``) or as an
uploaded file (``file``: .zip, .shp, .kml, .kmz, .geojson or .json). The
geometry is parsed and measured synchronously; environmental sampling, risk
scoring and view refreshes are queued for background ingestion.

Geometry failures surface as HTTP 400 with ``{"detail": {"code",
"message"}}`` via the handler registered in ``app.main``.

Example:
    Create a parcel from a KMZ upload:
        >>> response = client.post(
        ...     "/api/parcels",
        ...     data={"name": "North field", "population": "120"},
        ...     files={"file": ("field.kmz", open("field.kmz", "rb"))},
        ... )
        >>> response.status_code
        201
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import uuid
from typing import Any

import fastapi

from app.core import config, errors
from app.db import models as db_models
from app.services import geometry_ingest, geometry_metrics, ingestion, pipeline

logger = logging.getLogger(__name__)

router = fastapi.APIRouter(prefix="/api/parcels", tags=["parcels"])

API_ACTOR = "api"


def _read_upload(file: fastapi.UploadFile, max_size: int) -> bytes:
    """Read an uploaded file into memory with size validation.

    Raises:
        HTTPException: If the file exceeds the maximum size limit (413).
    """
    chunks: list[bytes] = []
    size = 0
    for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
        size += len(chunk)
        if size > max_size:
            raise fastapi.HTTPException(
                status_code=413,
                detail="Upload too large",
            )
        chunks.append(chunk)
    return b"".join(chunks)


def _parse_submitted_geometry(
    geometry: str | None,
    file: fastapi.UploadFile | None,
    settings: config.Settings,
) -> db_models.Geometry | None:
    if file is not None and file.filename:
        data = _read_upload(file, settings.max_upload_size_bytes)
        return geometry_ingest.parse_geometry_file(data, file.filename)
    if geometry:
        return geometry_ingest.parse_inline_geometry(geometry)
    return None


def _parcel_to_dict(parcel: db_models.ParcelRecord) -> dict[str, Any]:
    return {
        "id": parcel.id,
        "name": parcel.name,
        "geometry": parcel.geometry.to_geojson(),
        "geometry_type": parcel.geometry.geom_type,
        "area": parcel.area,
        "perimeter": parcel.perimeter,
        "population": parcel.population,
        "created_at": parcel.created_at.isoformat(),
        "updated_at": parcel.updated_at.isoformat(),
    }


def _get_parcel_or_404(
    parcel_id: str, pipe: pipeline.Pipeline
) -> db_models.ParcelRecord:
    parcel = pipe.parcels.get(parcel_id)
    if parcel is None:
        raise fastapi.HTTPException(status_code=404, detail="Parcel not found")
    return parcel


@router.post("/geometry/parse")
def parse_geometry(
    file: fastapi.UploadFile,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, Any]:
    """Parse and measure an uploaded geometry file without storing it.

    Args:
        file: Uploaded geometry file from multipart form data.
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        GeoJSON geometry with its type, area (m²) and perimeter (m).
    """
    data = _read_upload(file, settings.max_upload_size_bytes)
    geometry = geometry_ingest.parse_geometry_file(data, file.filename or "")
    metrics = geometry_metrics.compute_metrics(geometry)
    return {
        "geometry": geometry.to_geojson(),
        "geometry_type": geometry.geom_type,
        "area_sq_meters": metrics.area_sq_meters,
        "perimeter_meters": metrics.perimeter_meters,
    }


@router.post("", status_code=201)
def create_parcel(
    name: str = fastapi.Form(...),
    population: int | None = fastapi.Form(None, ge=0),
    geometry: str | None = fastapi.Form(None),
    file: fastapi.UploadFile | None = None,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    pipe: pipeline.Pipeline = fastapi.Depends(pipeline.get_pipeline),  # noqa: B008
) -> dict[str, Any]:
    """Create a parcel and queue its background ingestion.

    Args:
        name: Parcel name.
        population: Optional population living on the parcel.
        geometry: Boundary as GeoJSON text, used when no file is uploaded.
        file: Boundary file upload.
        settings: Application settings (injected via FastAPI Depends).
        pipe: Ingestion pipeline (injected via FastAPI Depends).

    Returns:
        The stored parcel plus ``ingestion_queued``.

    Raises:
        HTTPException: 413 for oversized uploads.
        GeometryError: Rendered as 400 when the boundary is missing,
            unparseable or invalid.
    """
    parsed = _parse_submitted_geometry(geometry, file, settings)
    if parsed is None:
        raise errors.EmptyGeometry("No geometry or file supplied")
    metrics = geometry_metrics.compute_metrics(parsed)

    parcel = pipe.parcels.add(
        db_models.ParcelRecord(
            id=str(uuid.uuid4()),
            name=name,
            geometry=parsed,
            area=metrics.area_sq_meters,
            perimeter=metrics.perimeter_meters,
            population=population,
        )
    )
    queued = pipe.orchestrator.enqueue_ingestion(
        parcel.id,
        ingestion.IngestionOptions(
            reason="create",
            provided_population=population,
            geometry_changed=True,
            actor=API_ACTOR,
        ),
    )
    logger.info("Created parcel %s (%s)", parcel.id, parsed.geom_type)
    return {**_parcel_to_dict(parcel), "ingestion_queued": queued}


@router.patch("/{parcel_id}")
def update_parcel(
    parcel_id: str,
    name: str | None = fastapi.Form(None),
    population: int | None = fastapi.Form(None, ge=0),
    geometry: str | None = fastapi.Form(None),
    file: fastapi.UploadFile | None = None,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    pipe: pipeline.Pipeline = fastapi.Depends(pipeline.get_pipeline),  # noqa: B008
) -> dict[str, Any]:
    """Update a parcel and queue re-ingestion.

    A new boundary recomputes area and perimeter and triggers a fresh
    environmental sample; a population alone only adds a population
    snapshot.
    """
    parcel = _get_parcel_or_404(parcel_id, pipe)
    parsed = _parse_submitted_geometry(geometry, file, settings)

    changes: dict[str, Any] = {
        "updated_at": datetime.datetime.now(tz=datetime.UTC)
    }
    if name is not None:
        changes["name"] = name
    if population is not None:
        changes["population"] = population
    if parsed is not None:
        metrics = geometry_metrics.compute_metrics(parsed)
        changes.update(
            geometry=parsed,
            area=metrics.area_sq_meters,
            perimeter=metrics.perimeter_meters,
        )

    parcel = pipe.parcels.add(dataclasses.replace(parcel, **changes))
    queued = pipe.orchestrator.enqueue_ingestion(
        parcel.id,
        ingestion.IngestionOptions(
            reason="update",
            provided_population=population,
            geometry_changed=parsed is not None,
            actor=API_ACTOR,
        ),
    )
    return {**_parcel_to_dict(parcel), "ingestion_queued": queued}


@router.get("")
def list_parcels(
    pipe: pipeline.Pipeline = fastapi.Depends(pipeline.get_pipeline),  # noqa: B008
) -> list[dict[str, Any]]:
    """List every parcel, newest first."""
    return [_parcel_to_dict(parcel) for parcel in pipe.parcels.all()]


@router.delete("/{parcel_id}", status_code=204)
def delete_parcel(
    parcel_id: str,
    pipe: pipeline.Pipeline = fastapi.Depends(pipeline.get_pipeline),  # noqa: B008
) -> None:
    """Delete a parcel.

    Ingestion jobs still queued for the parcel find it missing on reload
    and stop without writing derived rows.

    Raises:
        HTTPException: 404 when the parcel does not exist.
    """
    if not pipe.parcels.delete(parcel_id):
        raise fastapi.HTTPException(status_code=404, detail="Parcel not found")
    logger.info("Deleted parcel %s", parcel_id)


@router.get("/{parcel_id}")
def get_parcel(
    parcel_id: str,
    pipe: pipeline.Pipeline = fastapi.Depends(pipeline.get_pipeline),  # noqa: B008
) -> dict[str, Any]:
    return _parcel_to_dict(_get_parcel_or_404(parcel_id, pipe))


@router.get("/{parcel_id}/risk")
def get_parcel_risk(
    parcel_id: str,
    pipe: pipeline.Pipeline = fastapi.Depends(pipeline.get_pipeline),  # noqa: B008
) -> dict[str, Any]:
    """Return the current risk inputs and latest assessment of a parcel."""
    _get_parcel_or_404(parcel_id, pipe)
    assessment = pipe.risk_engine.latest_assessment(parcel_id)
    return {
        "parcel_id": parcel_id,
        "inputs": [
            dataclasses.asdict(record)
            for record in pipe.risk_engine.risk_inputs(parcel_id)
        ],
        "assessment": dataclasses.asdict(assessment) if assessment else None,
    }
