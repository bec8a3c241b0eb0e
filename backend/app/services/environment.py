"""Environmental sampling for parcel geometries.

A sample combines an optional remote elevation lookup with local
heuristics derived from the parcel's centroid latitude and footprint:

- elevation: ``GET <ELEVATION_API_URL>?locations=lat,lon`` reading
  ``results[0].elevation``; flood and sea-level scores derive from it;
- slope: footprint area over bounding-box diagonal, capped at 30 degrees;
- temperature and rainfall: latitude heuristics, drought score from
  rainfall.

Any attribute that cannot be computed is left as ``None``. Lookup failures
are logged as warnings and never abort a sample.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx
import pyproj

from app.core import errors
from app.db import models as db_models
from app.services import geometry_metrics

if TYPE_CHECKING:
    from app.core import config

logger = logging.getLogger(__name__)

_GEOD = pyproj.Geod(ellps="WGS84")

MAX_SLOPE_DEGREES = 30.0
MIN_TEMPERATURE_C = -60.0
MIN_RAINFALL_MM = 200.0


def estimate_temperature(lat: float) -> float:
    return round(max(MIN_TEMPERATURE_C, 27 - abs(lat) * 0.4), 2)


def estimate_rainfall(lat: float) -> float:
    return round(max(MIN_RAINFALL_MM, 1200 - abs(lat) * 10), 2)


def estimate_flood_risk(elevation: float) -> float:
    if elevation <= 20:
        return 85.0
    if elevation <= 100:
        return 60.0
    if elevation <= 500:
        return 30.0
    return 10.0


def estimate_sea_level_risk(elevation: float) -> float:
    if elevation <= 10:
        return 90.0
    if elevation <= 50:
        return 55.0
    return 15.0


def estimate_drought_risk(rainfall: float) -> float:
    if rainfall < 400:
        return 70.0
    if rainfall < 800:
        return 40.0
    return 15.0


def estimate_slope(geometry: db_models.Geometry) -> float | None:
    """Estimate a slope in degrees from the parcel footprint.

    Returns ``None`` for a zero-length bounding-box diagonal or when the
    footprint cannot be measured.
    """
    min_lon, min_lat, max_lon, max_lat = geometry.shape.bounds
    _, _, diagonal_m = _GEOD.inv(min_lon, min_lat, max_lon, max_lat)
    diagonal_km = diagonal_m / 1000
    if not diagonal_km:
        return None

    try:
        metrics = geometry_metrics.compute_metrics(geometry)
    except errors.GeometryInvalid as exc:
        logger.debug("Slope estimation failed: %s", exc)
        return None

    area_km2 = metrics.area_sq_meters / 1_000_000
    slope = min(MAX_SLOPE_DEGREES, area_km2 / diagonal_km * 5)
    return round(max(0.0, slope), 2)


class EnvironmentalSampler:
    """Produce an ``EnvironmentalSample`` for a parcel geometry.

    Attributes:
        settings: Application settings (elevation endpoint and timeout).
    """

    def __init__(
        self,
        settings: config.Settings,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self._client = client or httpx.Client(
            timeout=settings.elevation_timeout_seconds
        )

    def close(self) -> None:
        self._client.close()

    def sample(
        self, geometry: db_models.Geometry
    ) -> db_models.EnvironmentalSample | None:
        """Sample environmental attributes at the geometry's centroid.

        Args:
            geometry: Canonical parcel geometry in WGS84.

        Returns:
            Sample with every attribute that could be computed, or ``None``
            when none could.
        """
        if geometry.shape.is_empty:
            return None
        centroid = geometry.shape.centroid
        lon, lat = centroid.x, centroid.y

        values: dict[str, float | None] = {}
        elevation = self.fetch_elevation(lat, lon)
        if elevation is not None:
            values["elevation_meters"] = round(elevation, 2)
            values["flood_risk_score"] = estimate_flood_risk(elevation)
            values["sea_level_risk_score"] = estimate_sea_level_risk(elevation)

        rainfall = estimate_rainfall(lat)
        values["slope_degrees"] = estimate_slope(geometry)
        values["avg_temperature_c"] = estimate_temperature(lat)
        values["rainfall_mm"] = rainfall
        values["drought_risk_score"] = estimate_drought_risk(rainfall)

        sample = db_models.EnvironmentalSample(**values)
        return sample if sample.has_values() else None

    def fetch_elevation(self, lat: float, lon: float) -> float | None:
        """Look up the elevation in metres, ``None`` when unavailable."""
        endpoint = self.settings.elevation_api_url
        if not endpoint:
            return None

        try:
            url = httpx.URL(str(endpoint))
            if "locations" not in url.params:
                url = url.copy_add_param("locations", f"{lat},{lon}")
            response = self._client.get(url)
            response.raise_for_status()
            payload: Any = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            logger.warning("Failed to fetch elevation: %s", exc)
            return None

        results = payload.get("results") if isinstance(payload, dict) else None
        first = results[0] if isinstance(results, list) and results else None
        value = first.get("elevation") if isinstance(first, dict) else None
        if isinstance(value, bool) or not isinstance(value, int | float):
            logger.warning("Elevation response has no numeric elevation")
            return None
        return float(value)
