"""Materialized view definitions and refresh-status persistence.

The analytic views are precomputed PostGIS queries over parcels and the
data the ingestion pipeline derives for them:

- ``parcel_risk_summary_mv``: one row per parcel with its latest risk
  assessment, population snapshot and climate snapshot.
- ``population_density_grid_mv``: a 0.02 degree grid over the parcel
  extent with the population and density of intersecting parcels.

Each view carries a unique index so it can be refreshed with
``REFRESH MATERIALIZED VIEW CONCURRENTLY`` without blocking readers. The
``materialized_view_refreshes`` table holds one status row per tracked
view, seeded once when the views are ensured.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import threading
from typing import TYPE_CHECKING, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from app.db import database
from app.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Sequence

    from app.core import config

logger = logging.getLogger(__name__)

RISK_SUMMARY_VIEW = "parcel_risk_summary_mv"
POPULATION_DENSITY_VIEW = "population_density_grid_mv"

POPULATION_DENSITY_VIEW_SQL = """
CREATE MATERIALIZED VIEW IF NOT EXISTS population_density_grid_mv AS
WITH parcel_extent AS (
  SELECT ST_SetSRID(ST_Extent(p.geometry)::geometry, 4326) AS geom
  FROM parcels p
),
bounds AS (
  SELECT
    ST_XMin(geom) AS minx,
    ST_YMin(geom) AS miny,
    0.02::double precision AS cell_size,
    GREATEST(CEIL((ST_XMax(geom) - ST_XMin(geom)) / 0.02)::int, 1) AS x_steps,
    GREATEST(CEIL((ST_YMax(geom) - ST_YMin(geom)) / 0.02)::int, 1) AS y_steps
  FROM parcel_extent
  WHERE geom IS NOT NULL
),
grid AS (
  SELECT ST_MakeEnvelope(
      bounds.minx + gx.step * bounds.cell_size,
      bounds.miny + gy.step * bounds.cell_size,
      bounds.minx + (gx.step + 1) * bounds.cell_size,
      bounds.miny + (gy.step + 1) * bounds.cell_size,
      4326
    ) AS geom
  FROM bounds,
  LATERAL generate_series(0, bounds.x_steps - 1) AS gx(step),
  LATERAL generate_series(0, bounds.y_steps - 1) AS gy(step)
),
latest_population AS (
  SELECT DISTINCT ON (pps.parcel_id) pps.parcel_id, pps.population
  FROM parcel_population_stats pps
  ORDER BY pps.parcel_id, pps.collected_at DESC NULLS LAST
)
SELECT
  ROW_NUMBER() OVER (ORDER BY ST_XMin(g.geom), ST_YMin(g.geom)) AS cell_id,
  g.geom,
  COALESCE(SUM(lp.population), 0) AS total_population,
  COALESCE(SUM(lp.population), 0)
    / NULLIF(ST_Area(g.geom::geography) / 1000000.0, 0) AS density_per_sqkm,
  NOW() AS computed_at
FROM grid g
LEFT JOIN parcels p ON ST_Intersects(p.geometry, g.geom)
LEFT JOIN latest_population lp ON lp.parcel_id = p.id
GROUP BY g.geom;
"""

RISK_SUMMARY_VIEW_SQL = """
CREATE MATERIALIZED VIEW IF NOT EXISTS parcel_risk_summary_mv AS
WITH latest_population AS (
  SELECT DISTINCT ON (pps.parcel_id)
    pps.parcel_id, pps.population, pps.density_per_sqkm, pps.collected_at
  FROM parcel_population_stats pps
  ORDER BY pps.parcel_id, pps.collected_at DESC NULLS LAST, pps.created_at DESC
),
latest_climate AS (
  SELECT DISTINCT ON (pcm.parcel_id)
    pcm.parcel_id, pcm.avg_temperature_c, pcm.rainfall_mm,
    pcm.elevation_meters, pcm.flood_risk_score, pcm.collected_at
  FROM parcel_climate_metrics pcm
  ORDER BY pcm.parcel_id, pcm.collected_at DESC NULLS LAST, pcm.created_at DESC
)
SELECT
  p.id AS parcel_id,
  ra.overall_score,
  ra.risk_band,
  ra.drivers,
  ra.assessed_at,
  COALESCE(lp.population, 0) AS population,
  lp.density_per_sqkm,
  lp.collected_at AS population_collected_at,
  lc.avg_temperature_c,
  lc.rainfall_mm,
  lc.elevation_meters,
  lc.flood_risk_score,
  lc.collected_at AS climate_collected_at
FROM parcels p
LEFT JOIN LATERAL (
  SELECT pra.overall_score, pra.risk_band, pra.drivers, pra.assessed_at
  FROM parcel_risk_assessments pra
  WHERE pra.parcel_id = p.id
  ORDER BY pra.assessed_at DESC
  LIMIT 1
) ra ON true
LEFT JOIN latest_population lp ON lp.parcel_id = p.id
LEFT JOIN latest_climate lc ON lc.parcel_id = p.id;
"""

VIEW_DEFINITIONS: dict[str, tuple[str, ...]] = {
    RISK_SUMMARY_VIEW: (
        RISK_SUMMARY_VIEW_SQL,
        """
        CREATE UNIQUE INDEX IF NOT EXISTS parcel_risk_summary_mv_parcel_idx
        ON parcel_risk_summary_mv (parcel_id);
        """,
    ),
    POPULATION_DENSITY_VIEW: (
        POPULATION_DENSITY_VIEW_SQL,
        """
        CREATE UNIQUE INDEX IF NOT EXISTS population_density_grid_mv_cell_idx
        ON population_density_grid_mv (cell_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS population_density_grid_mv_geom_idx
        ON population_density_grid_mv USING GIST (geom);
        """,
    ),
}


class ViewStoreProtocol(Protocol):
    """Protocol for materialized view DDL, refresh and status rows."""

    def ensure_views(self, view_names: Sequence[str]) -> None: ...

    def execute_refresh(self, view_name: str) -> None: ...

    def mark_running(self, view_name: str) -> None: ...

    def mark_refreshed(
        self,
        view_name: str,
        refreshed_at: datetime.datetime,
        duration_ms: int,
    ) -> None: ...

    def mark_error(self, view_name: str, message: str) -> None: ...

    def get_status(
        self, view_name: str
    ) -> db_models.MaterializedViewStatus | None: ...

    def list_statuses(self) -> list[db_models.MaterializedViewStatus]: ...


class InMemoryViewStore(ViewStoreProtocol):
    """In-memory view store for tests and local development.

    Refreshes are recorded in ``refreshed`` instead of touching a database.
    Status updates for names without a seeded row are ignored.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: dict[str, db_models.MaterializedViewStatus] = {}
        self.refreshed: list[str] = []

    def ensure_views(self, view_names: Sequence[str]) -> None:
        with self._lock:
            for name in view_names:
                self._statuses.setdefault(
                    name, db_models.MaterializedViewStatus(view_name=name)
                )

    def execute_refresh(self, view_name: str) -> None:
        with self._lock:
            self.refreshed.append(view_name)

    def mark_running(self, view_name: str) -> None:
        with self._lock:
            status = self._statuses.get(view_name)
            if status is not None:
                status.status = "running"
                status.error_message = None

    def mark_refreshed(
        self,
        view_name: str,
        refreshed_at: datetime.datetime,
        duration_ms: int,
    ) -> None:
        with self._lock:
            status = self._statuses.get(view_name)
            if status is not None:
                status.status = "idle"
                status.last_refreshed_at = refreshed_at
                status.duration_ms = duration_ms

    def mark_error(self, view_name: str, message: str) -> None:
        with self._lock:
            status = self._statuses.get(view_name)
            if status is not None:
                status.status = "error"
                status.error_message = message

    def get_status(
        self, view_name: str
    ) -> db_models.MaterializedViewStatus | None:
        with self._lock:
            status = self._statuses.get(view_name)
            return dataclasses.replace(status) if status else None

    def list_statuses(self) -> list[db_models.MaterializedViewStatus]:
        with self._lock:
            return [
                dataclasses.replace(self._statuses[name])
                for name in sorted(self._statuses)
            ]


class PostgresViewStore(ViewStoreProtocol):
    """PostgreSQL-backed view store.

    View and index creation is additive (``IF NOT EXISTS``); each statement
    runs in its own transaction so one failing definition does not prevent
    the others from being created.
    """

    CREATE_STATUS_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS materialized_view_refreshes (
      view_name TEXT PRIMARY KEY,
      last_refreshed_at TIMESTAMPTZ,
      duration_ms INTEGER,
      status TEXT NOT NULL DEFAULT 'idle',
      error_message TEXT,
      created_at TIMESTAMPTZ DEFAULT now(),
      updated_at TIMESTAMPTZ DEFAULT now()
    );
    """

    SEED_STATUS_SQL = """
    INSERT INTO materialized_view_refreshes (view_name, status)
    VALUES (%s, 'idle')
    ON CONFLICT (view_name) DO NOTHING;
    """

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings

    def ensure_views(self, view_names: Sequence[str]) -> None:
        """Create tracked views, their indexes and their status rows."""
        statements: list[tuple[str, tuple[object, ...] | None]] = [
            (self.CREATE_STATUS_TABLE_SQL, None)
        ]
        for name in view_names:
            statements.extend(
                (statement, None) for statement in VIEW_DEFINITIONS.get(name, ())
            )
            statements.append((self.SEED_STATUS_SQL, (name,)))

        for statement, params in statements:
            try:
                with database.connect(self.settings) as conn, conn.cursor() as cur:
                    cur.execute(statement, params)
            except psycopg2.Error:
                logger.exception("Failed executing view schema statement")

    def execute_refresh(self, view_name: str) -> None:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            quoted = psycopg2.extensions.quote_ident(  # type: ignore[arg-type]
                view_name,
                conn,
            )
            cur.execute(f"REFRESH MATERIALIZED VIEW CONCURRENTLY {quoted}")

    def mark_running(self, view_name: str) -> None:
        self._update(
            """
            UPDATE materialized_view_refreshes
            SET status = 'running', error_message = NULL, updated_at = now()
            WHERE view_name = %s
            """,
            (view_name,),
        )

    def mark_refreshed(
        self,
        view_name: str,
        refreshed_at: datetime.datetime,
        duration_ms: int,
    ) -> None:
        self._update(
            """
            UPDATE materialized_view_refreshes
            SET status = 'idle', last_refreshed_at = %s, duration_ms = %s,
                updated_at = now()
            WHERE view_name = %s
            """,
            (refreshed_at, duration_ms, view_name),
        )

    def mark_error(self, view_name: str, message: str) -> None:
        self._update(
            """
            UPDATE materialized_view_refreshes
            SET status = 'error', error_message = %s, updated_at = now()
            WHERE view_name = %s
            """,
            (message, view_name),
        )

    def get_status(
        self, view_name: str
    ) -> db_models.MaterializedViewStatus | None:
        rows = self._select(
            "SELECT * FROM materialized_view_refreshes WHERE view_name = %s",
            (view_name,),
        )
        return rows[0] if rows else None

    def list_statuses(self) -> list[db_models.MaterializedViewStatus]:
        return self._select(
            "SELECT * FROM materialized_view_refreshes ORDER BY view_name",
            None,
        )

    def _update(self, statement: str, params: tuple[object, ...]) -> None:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(statement, params)

    def _select(
        self,
        statement: str,
        params: tuple[object, ...] | None,
    ) -> list[db_models.MaterializedViewStatus]:
        with database.connect(self.settings) as conn, conn.cursor(
            cursor_factory=psycopg2.extras.RealDictCursor
        ) as cur:
            cur.execute(statement, params)
            rows = cur.fetchall()
        return [self._from_row(cast(dict[str, object], row)) for row in rows]

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.MaterializedViewStatus:
        duration = row.get("duration_ms")
        return db_models.MaterializedViewStatus(
            view_name=str(row["view_name"]),
            status=cast(db_models.ViewRefreshState, str(row["status"])),
            last_refreshed_at=database._cast(
                row.get("last_refreshed_at"), datetime.datetime
            ),
            duration_ms=int(cast(int, duration)) if duration is not None else None,
            error_message=database._cast(row.get("error_message"), str),
        )


def get_view_store(settings: config.Settings) -> ViewStoreProtocol:
    """Factory function to create the production view store."""
    return PostgresViewStore(settings)
