"""Data models for parcels, derived risk data and view refresh status.

This module defines the core data structures used throughout the
application. The canonical ``Geometry`` wraps an immutable shapely shape in
WGS84 (SRID 4326). Parcel records are owned by the parcel store; the
remaining records are written by the ingestion pipeline:

- ``EnvironmentalSample``: one sampling run, every attribute optional.
- ``ClimateMetricSnapshot`` / ``PopulationSnapshot``: append-only history.
- ``RiskInput``: one mutable row per (parcel, metric).
- ``RiskAssessment``: append-only aggregation results.
- ``MaterializedViewStatus``: one row per tracked materialized view.

Example:
    Wrap a GeoJSON polygon and read it back:
        >>> from shapely import geometry as shapely_geometry
        >>> from app.db.models import Geometry
        >>> geom = Geometry(shapely_geometry.box(0.0, 0.0, 1.0, 1.0))
        >>> geom.geom_type
        'Polygon'
        >>> geom.to_geojson()["type"]
        'Polygon'
"""

from __future__ import annotations

import dataclasses
import datetime
import uuid
from typing import TYPE_CHECKING, Any, Literal

from shapely import geometry as shapely_geometry

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

WGS84_SRID = 4326

GeometryType = Literal[
    "Point",
    "LineString",
    "Polygon",
    "MultiPoint",
    "MultiLineString",
    "MultiPolygon",
    "GeometryCollection",
]
GEOMETRY_TYPES: tuple[str, ...] = (
    "Point",
    "LineString",
    "Polygon",
    "MultiPoint",
    "MultiLineString",
    "MultiPolygon",
    "GeometryCollection",
)

RiskMetric = Literal[
    "elevation",
    "slope",
    "flood_risk",
    "drought_risk",
    "sea_level_risk",
]
HAZARD_METRICS: tuple[RiskMetric, ...] = (
    "flood_risk",
    "drought_risk",
    "sea_level_risk",
)

RiskBand = Literal["LOW", "MODERATE", "HIGH"]
IngestionReason = Literal["create", "update"]
ViewRefreshState = Literal["idle", "running", "error"]


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


@dataclasses.dataclass(frozen=True)
class Geometry:
    """Canonical parcel geometry: a shapely shape in WGS84.

    Attributes:
        shape: Immutable shapely geometry in lon/lat order.
        srid: Spatial reference identifier, always 4326 after ingestion.
    """

    shape: BaseGeometry
    srid: int = WGS84_SRID

    @property
    def geom_type(self) -> str:
        return self.shape.geom_type

    @property
    def wkt(self) -> str:
        return self.shape.wkt

    def to_geojson(self) -> dict[str, Any]:
        """Return the geometry as a GeoJSON mapping."""
        return dict(shapely_geometry.mapping(self.shape))

    @classmethod
    def from_geojson(cls, data: dict[str, Any]) -> Geometry:
        """Build a geometry from a GeoJSON geometry mapping."""
        return cls(shapely_geometry.shape(data))


@dataclasses.dataclass
class ParcelRecord:
    """Land parcel as seen by the ingestion pipeline.

    Attributes:
        id: Parcel identifier (UUID string).
        name: Human-readable parcel name.
        geometry: Canonical geometry of the parcel.
        area: Ellipsoidal area in square metres.
        perimeter: Boundary length in metres.
        population: Latest population supplied with the parcel, if any.
        created_at: Creation timestamp.
        updated_at: Last modification timestamp.
    """

    id: str
    name: str
    geometry: Geometry
    area: float | None = None
    perimeter: float | None = None
    population: int | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)
    updated_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)


@dataclasses.dataclass(frozen=True)
class EnvironmentalSample:
    """Result of one environmental sampling run.

    ``None`` marks an attribute that could not be computed for the run.
    """

    elevation_meters: float | None = None
    slope_degrees: float | None = None
    avg_temperature_c: float | None = None
    rainfall_mm: float | None = None
    flood_risk_score: float | None = None
    drought_risk_score: float | None = None
    sea_level_risk_score: float | None = None
    source: str = "ingestion"

    def has_values(self) -> bool:
        return any(
            value is not None
            for field, value in dataclasses.asdict(self).items()
            if field != "source"
        )

    def risk_values(self) -> dict[RiskMetric, float | None]:
        """Map each risk metric to the sampled value feeding it."""
        return {
            "elevation": self.elevation_meters,
            "slope": self.slope_degrees,
            "flood_risk": self.flood_risk_score,
            "drought_risk": self.drought_risk_score,
            "sea_level_risk": self.sea_level_risk_score,
        }


@dataclasses.dataclass
class ClimateMetricSnapshot:
    parcel_id: str
    sample: EnvironmentalSample
    created_by: str = "system"
    collected_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)
    id: str = dataclasses.field(default_factory=lambda: str(uuid.uuid4()))


@dataclasses.dataclass
class PopulationSnapshot:
    parcel_id: str
    population: int
    density_per_sq_km: float | None
    source: str = "parcel_form"
    created_by: str = "system"
    collected_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)
    id: str = dataclasses.field(default_factory=lambda: str(uuid.uuid4()))


@dataclasses.dataclass
class RiskInput:
    """Current value of one risk metric for one parcel.

    Attributes:
        parcel_id: Owning parcel.
        metric: Metric name; unique together with ``parcel_id``.
        value: Raw measured value.
        weight: Weight of the metric in aggregation (defaults to 1).
        normalized_score: 0-100 score, ``None`` for unknown metrics.
        data_source: Where the value came from.
        last_evaluated_at: Time of the last write.
        updated_by: Actor of the last write.
    """

    parcel_id: str
    metric: str
    value: float | None
    weight: float = 1.0
    normalized_score: float | None = None
    data_source: str | None = None
    last_evaluated_at: datetime.datetime = dataclasses.field(
        default_factory=_utcnow
    )
    updated_by: str = "system"


@dataclasses.dataclass(frozen=True)
class RiskAssessment:
    """Immutable result of one risk aggregation run."""

    parcel_id: str
    overall_score: float
    risk_band: RiskBand
    drivers: dict[str, float | None]
    methodology_version: str
    assessed_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)
    created_by: str = "system"
    id: str = dataclasses.field(default_factory=lambda: str(uuid.uuid4()))


@dataclasses.dataclass
class MaterializedViewStatus:
    view_name: str
    status: ViewRefreshState = "idle"
    last_refreshed_at: datetime.datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
