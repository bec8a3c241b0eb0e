"""Tests for ellipsoidal measurements in app.services.geometry_metrics."""

from __future__ import annotations

import math

import pytest
from shapely import geometry as shapely_geometry

from app.core import errors
from app.db import models as db_models
from app.services import geometry_metrics


def _geometry(shape: shapely_geometry.base.BaseGeometry) -> db_models.Geometry:
    return db_models.Geometry(shape)


def test_polygon_area_and_perimeter() -> None:
    """A 0.01 degree square at the equator is about 1.23 km²."""
    metrics = geometry_metrics.compute_metrics(
        _geometry(shapely_geometry.box(0.0, 0.0, 0.01, 0.01))
    )
    assert metrics.area_sq_meters == pytest.approx(1_231_000, rel=0.01)
    assert metrics.perimeter_meters == pytest.approx(4_438, rel=0.01)


def test_area_shrinks_away_from_equator() -> None:
    """Geodesic areas account for meridian convergence."""
    equator = geometry_metrics.compute_metrics(
        _geometry(shapely_geometry.box(0.0, 0.0, 0.01, 0.01))
    )
    north = geometry_metrics.compute_metrics(
        _geometry(shapely_geometry.box(0.0, 60.0, 0.01, 60.01))
    )
    assert north.area_sq_meters == pytest.approx(
        equator.area_sq_meters / 2, rel=0.02
    )


def test_holes_are_subtracted() -> None:
    """Interior rings reduce the area and add to the perimeter."""
    outer = shapely_geometry.box(0.0, 0.0, 0.02, 0.02)
    hole = shapely_geometry.box(0.005, 0.005, 0.015, 0.015)
    solid = geometry_metrics.compute_metrics(_geometry(outer))
    holed = geometry_metrics.compute_metrics(
        _geometry(shapely_geometry.Polygon(outer.exterior, [hole.exterior]))
    )
    hole_metrics = geometry_metrics.compute_metrics(_geometry(hole))

    assert holed.area_sq_meters == pytest.approx(
        solid.area_sq_meters - hole_metrics.area_sq_meters, abs=1
    )
    assert holed.perimeter_meters == pytest.approx(
        solid.perimeter_meters + hole_metrics.perimeter_meters, abs=1
    )


def test_ring_orientation_does_not_matter() -> None:
    """Clockwise and counter-clockwise rings give the same area."""
    ring = [(0.0, 0.0), (0.01, 0.0), (0.01, 0.01), (0.0, 0.01)]
    ccw = geometry_metrics.compute_metrics(
        _geometry(shapely_geometry.Polygon(ring))
    )
    cw = geometry_metrics.compute_metrics(
        _geometry(shapely_geometry.Polygon(list(reversed(ring))))
    )
    assert ccw.area_sq_meters > 0
    assert cw.area_sq_meters == pytest.approx(ccw.area_sq_meters, abs=0.01)


def test_line_and_point_measurements() -> None:
    """Lines contribute length only and points contribute nothing."""
    line = geometry_metrics.compute_metrics(
        _geometry(shapely_geometry.LineString([(0.0, 0.0), (0.0, 1.0)]))
    )
    assert line.area_sq_meters == 0
    assert line.perimeter_meters == pytest.approx(110_574, rel=0.001)

    point = geometry_metrics.compute_metrics(
        _geometry(shapely_geometry.Point(10.0, 45.0))
    )
    assert point == geometry_metrics.GeometryMetrics(0.0, 0.0)


def test_collection_sums_members() -> None:
    """Collections sum the measurements of their members."""
    square = shapely_geometry.box(0.0, 0.0, 0.01, 0.01)
    collection = shapely_geometry.GeometryCollection(
        [square, shapely_geometry.Point(5.0, 5.0)]
    )
    assert geometry_metrics.compute_metrics(_geometry(collection)) == (
        geometry_metrics.compute_metrics(_geometry(square))
    )


def test_values_are_rounded() -> None:
    """Measurements are rounded to two decimals."""
    metrics = geometry_metrics.compute_metrics(
        _geometry(shapely_geometry.box(10.0, 45.0, 10.0123, 45.0077))
    )
    assert metrics.area_sq_meters == round(metrics.area_sq_meters, 2)
    assert metrics.perimeter_meters == round(metrics.perimeter_meters, 2)


def test_self_intersection_is_invalid() -> None:
    """A bow-tie polygon is rejected with its validity reason."""
    bow_tie = shapely_geometry.Polygon(
        [(0.0, 0.0), (1.0, 1.0), (1.0, 0.0), (0.0, 1.0), (0.0, 0.0)]
    )
    with pytest.raises(errors.GeometryInvalid) as excinfo:
        geometry_metrics.compute_metrics(_geometry(bow_tie))
    assert excinfo.value.code == "geometry_invalid"
    assert "Self-intersection" in str(excinfo.value.details)


def test_empty_geometry_is_invalid() -> None:
    """Empty geometries cannot be measured."""
    with pytest.raises(errors.GeometryInvalid):
        geometry_metrics.compute_metrics(_geometry(shapely_geometry.Polygon()))


@pytest.mark.parametrize(
    "point",
    [(math.inf, 0.0), (0.0, math.nan), (200.0, 10.0), (10.0, 95.0)],
)
def test_bad_coordinates_are_invalid(point: tuple[float, float]) -> None:
    """Non-finite or out-of-range coordinates are rejected."""
    line = shapely_geometry.LineString([(0.0, 0.0), point])
    with pytest.raises(errors.GeometryInvalid):
        geometry_metrics.compute_metrics(_geometry(line))
