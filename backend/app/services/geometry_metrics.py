"""Ellipsoidal area and perimeter of parcel geometries.

Measurements are geodesic on the WGS84 ellipsoid (``pyproj.Geod``), so they
stay accurate for parcels far from the equator without reprojecting.

Example:
    >>> from shapely import geometry as shapely_geometry
    >>> from app.db.models import Geometry
    >>> from app.services.geometry_metrics import compute_metrics
    >>> metrics = compute_metrics(
    ...     Geometry(shapely_geometry.box(0.0, 0.0, 0.01, 0.01))
    ... )
    >>> round(metrics.area_sq_meters / 1e6, 2)
    1.23
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, NamedTuple

import pyproj
import shapely
from shapely import geometry as shapely_geometry
from shapely import validation as shapely_validation

from app.core import errors

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

    from app.db import models as db_models

_GEOD = pyproj.Geod(ellps="WGS84")


class GeometryMetrics(NamedTuple):
    area_sq_meters: float
    perimeter_meters: float


def _lon_lat(coords: object) -> tuple[list[float], list[float]]:
    points = list(coords)  # type: ignore[call-overload]
    return [p[0] for p in points], [p[1] for p in points]


def _ring(ring: shapely_geometry.LinearRing) -> tuple[float, float]:
    area, perimeter = _GEOD.polygon_area_perimeter(*_lon_lat(ring.coords))
    return abs(area), perimeter


def _validate_part(shape: BaseGeometry) -> None:
    if not shape.is_valid:
        raise errors.GeometryInvalid(shapely_validation.explain_validity(shape))


def _measure(shape: BaseGeometry) -> tuple[float, float]:
    """Return (area, perimeter) of one shape, walking collections."""
    if shape.is_empty:
        return 0.0, 0.0
    if isinstance(shape, shapely_geometry.Polygon):
        _validate_part(shape)
        area, perimeter = _ring(shape.exterior)
        for interior in shape.interiors:
            hole_area, hole_perimeter = _ring(interior)
            area -= hole_area
            perimeter += hole_perimeter
        return max(area, 0.0), perimeter
    if isinstance(shape, shapely_geometry.LineString):
        _validate_part(shape)
        return 0.0, _GEOD.line_length(*_lon_lat(shape.coords))
    if isinstance(shape, shapely_geometry.Point):
        return 0.0, 0.0

    area = perimeter = 0.0
    for part in getattr(shape, "geoms", ()):
        part_area, part_perimeter = _measure(part)
        area += part_area
        perimeter += part_perimeter
    return area, perimeter


def compute_metrics(geometry: db_models.Geometry) -> GeometryMetrics:
    """Compute ellipsoidal area and perimeter of a WGS84 geometry.

    Polygon holes are subtracted from the area and their rings count toward
    the perimeter. Line strings contribute length only; points contribute
    nothing. Validity is checked per polygon and line component, so
    multi-part parcels whose members share an edge are still measured.

    Args:
        geometry: Canonical parcel geometry.

    Returns:
        Area in square metres and perimeter in metres, rounded to 2 decimals.

    Raises:
        GeometryInvalid: Empty geometry, non-finite or out-of-range
            coordinates, or a self-intersecting/degenerate component.
    """
    shape = geometry.shape
    if shape.is_empty:
        raise errors.GeometryInvalid("Geometry is empty")

    coordinates = shapely.get_coordinates(shape)
    if not all(math.isfinite(value) for value in coordinates.flat):
        raise errors.GeometryInvalid("Geometry has non-finite coordinates")
    if any(abs(lon) > 180 or abs(lat) > 90 for lon, lat in coordinates):
        raise errors.GeometryInvalid("Coordinates outside WGS84 bounds")

    area, perimeter = _measure(shape)
    return GeometryMetrics(
        area_sq_meters=round(area, 2),
        perimeter_meters=round(perimeter, 2),
    )
