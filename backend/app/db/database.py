"""Database helpers and repositories for parcels and derived risk data.

Two repository families are defined, each with an in-memory backend for
tests and local development and a PostgreSQL/PostGIS backend for
production:

- parcel repositories store the parcel rows the pipeline reads
  (geometry, area, perimeter, population);
- risk repositories store population and climate snapshots (append-only),
  risk inputs (one row per parcel and metric) and risk assessments
  (append-only).
"""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import threading
from typing import TYPE_CHECKING, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
from shapely import wkt as shapely_wkt

from app.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from app.core import config


def _cast[T](value: object, dtype: type[T]) -> T | None:  # type: ignore[misc]
    """Cast a value to a specific type, returning None if value is None."""
    if value is None:
        return None

    return cast(T, value)


def _float(value: object) -> float | None:
    return float(cast(float, value)) if value is not None else None


@contextlib.contextmanager
def connect(
    settings: config.Settings,
) -> Iterator[psycopg2.extensions.connection]:
    """Open a connection, commit on success and always close it.

    Args:
        settings: Application settings containing database connection URL.

    Yields:
        psycopg2 connection inside a transaction block.
    """
    conn = psycopg2.connect(settings.database_url)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def _dict_cursor(
    conn: psycopg2.extensions.connection,
) -> psycopg2.extensions.cursor:
    return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


class ParcelRepositoryProtocol(Protocol):
    """Protocol interface for storing and retrieving parcels."""

    def add(self, parcel: db_models.ParcelRecord) -> db_models.ParcelRecord: ...

    def get(self, parcel_id: str) -> db_models.ParcelRecord | None: ...

    def all(self) -> Iterable[db_models.ParcelRecord]: ...

    def delete(self, parcel_id: str) -> bool: ...


class RiskRepositoryProtocol(Protocol):
    """Protocol interface for the data derived by the ingestion pipeline."""

    def upsert_risk_input(
        self,
        parcel_id: str,
        metric: str,
        value: float | None,
        normalized_score: float | None,
        weight: float | None = None,
        data_source: str | None = None,
        updated_by: str = "system",
    ) -> db_models.RiskInput: ...

    def list_risk_inputs(self, parcel_id: str) -> list[db_models.RiskInput]: ...

    def add_assessment(
        self, assessment: db_models.RiskAssessment
    ) -> db_models.RiskAssessment: ...

    def list_assessments(
        self, parcel_id: str
    ) -> list[db_models.RiskAssessment]: ...

    def add_climate_metric(
        self, snapshot: db_models.ClimateMetricSnapshot
    ) -> db_models.ClimateMetricSnapshot: ...

    def add_population_snapshot(
        self, snapshot: db_models.PopulationSnapshot
    ) -> db_models.PopulationSnapshot: ...


class InMemoryParcelRepository(ParcelRepositoryProtocol):
    """Simple in-memory parcel store for tests and local development."""

    def __init__(self) -> None:
        self._store: dict[str, db_models.ParcelRecord] = {}
        self._lock = threading.Lock()

    def add(self, parcel: db_models.ParcelRecord) -> db_models.ParcelRecord:
        """Add or replace a parcel.

        Args:
            parcel: Parcel to store.

        Returns:
            The stored parcel.
        """
        with self._lock:
            self._store[parcel.id] = parcel
        return parcel

    def get(self, parcel_id: str) -> db_models.ParcelRecord | None:
        with self._lock:
            return self._store.get(parcel_id)

    def all(self) -> Iterable[db_models.ParcelRecord]:
        """Return every stored parcel, newest first."""
        with self._lock:
            parcels = list(self._store.values())
        return sorted(parcels, key=lambda parcel: parcel.created_at, reverse=True)

    def delete(self, parcel_id: str) -> bool:
        with self._lock:
            return self._store.pop(parcel_id, None) is not None


class InMemoryRiskRepository(RiskRepositoryProtocol):
    """In-memory store for risk inputs, assessments and snapshots.

    Risk inputs are keyed by (parcel_id, metric) so repeated writes for the
    same pair overwrite one entry. Assessments and snapshots are lists.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.risk_inputs: dict[tuple[str, str], db_models.RiskInput] = {}
        self.assessments: list[db_models.RiskAssessment] = []
        self.climate_metrics: list[db_models.ClimateMetricSnapshot] = []
        self.population_snapshots: list[db_models.PopulationSnapshot] = []

    def upsert_risk_input(
        self,
        parcel_id: str,
        metric: str,
        value: float | None,
        normalized_score: float | None,
        weight: float | None = None,
        data_source: str | None = None,
        updated_by: str = "system",
    ) -> db_models.RiskInput:
        now = datetime.datetime.now(tz=datetime.UTC)
        with self._lock:
            record = self.risk_inputs.get((parcel_id, metric))
            if record is None:
                record = db_models.RiskInput(
                    parcel_id=parcel_id,
                    metric=metric,
                    value=value,
                    weight=weight if weight is not None else 1.0,
                    normalized_score=normalized_score,
                    data_source=data_source,
                    last_evaluated_at=now,
                    updated_by=updated_by,
                )
                self.risk_inputs[(parcel_id, metric)] = record
            else:
                record.value = value
                record.normalized_score = normalized_score
                if weight is not None:
                    record.weight = weight
                if data_source is not None:
                    record.data_source = data_source
                record.last_evaluated_at = now
                record.updated_by = updated_by
            return dataclasses.replace(record)

    def list_risk_inputs(self, parcel_id: str) -> list[db_models.RiskInput]:
        with self._lock:
            return [
                dataclasses.replace(record)
                for (owner, _), record in sorted(self.risk_inputs.items())
                if owner == parcel_id
            ]

    def add_assessment(
        self, assessment: db_models.RiskAssessment
    ) -> db_models.RiskAssessment:
        with self._lock:
            self.assessments.append(assessment)
        return assessment

    def list_assessments(
        self, parcel_id: str
    ) -> list[db_models.RiskAssessment]:
        with self._lock:
            rows = [a for a in self.assessments if a.parcel_id == parcel_id]
        return sorted(rows, key=lambda a: a.assessed_at, reverse=True)

    def add_climate_metric(
        self, snapshot: db_models.ClimateMetricSnapshot
    ) -> db_models.ClimateMetricSnapshot:
        with self._lock:
            self.climate_metrics.append(snapshot)
        return snapshot

    def add_population_snapshot(
        self, snapshot: db_models.PopulationSnapshot
    ) -> db_models.PopulationSnapshot:
        with self._lock:
            self.population_snapshots.append(snapshot)
        return snapshot


class PostgresParcelRepository(ParcelRepositoryProtocol):
    """PostgreSQL/PostGIS-backed parcel repository.

    Creates the PostGIS extension and the parcels table on initialization.
    Geometries are written as WKT with SRID 4326 and read back through
    ``ST_AsText``.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS parcels (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      geometry geometry(Geometry, 4326) NOT NULL,
      area DOUBLE PRECISION,
      perimeter DOUBLE PRECISION,
      population INTEGER,
      created_at TIMESTAMPTZ DEFAULT now(),
      updated_at TIMESTAMPTZ DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS parcels_geometry_idx
      ON parcels USING GIST (geometry);
    """

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            cur.execute(self.CREATE_TABLE_SQL)

    def add(self, parcel: db_models.ParcelRecord) -> db_models.ParcelRecord:
        with connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO parcels (
                    id, name, geometry, area, perimeter, population,
                    created_at, updated_at
                ) VALUES (%(id)s, %(name)s,
                    ST_Force2D(ST_GeomFromText(%(geometry_wkt)s, 4326)),
                    %(area)s, %(perimeter)s, %(population)s,
                    %(created_at)s, %(updated_at)s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    geometry = EXCLUDED.geometry,
                    area = EXCLUDED.area,
                    perimeter = EXCLUDED.perimeter,
                    population = EXCLUDED.population,
                    updated_at = EXCLUDED.updated_at;
                """,
                self._to_row(parcel),
            )
        return parcel

    def get(self, parcel_id: str) -> db_models.ParcelRecord | None:
        with connect(self.settings) as conn, _dict_cursor(conn) as cur:
            cur.execute(
                """
                SELECT id, name, ST_AsText(geometry) AS geometry_wkt, area,
                       perimeter, population, created_at, updated_at
                FROM parcels WHERE id = %s
                """,
                (parcel_id,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            else:
                return self._from_row(cast(dict[str, object], row))

    def all(self) -> Iterable[db_models.ParcelRecord]:
        with connect(self.settings) as conn, _dict_cursor(conn) as cur:
            cur.execute(
                """
                SELECT id, name, ST_AsText(geometry) AS geometry_wkt, area,
                       perimeter, population, created_at, updated_at
                FROM parcels ORDER BY created_at DESC
                """
            )
            rows = cur.fetchall()
            return [
                self._from_row(cast(dict[str, object], row)) for row in rows
            ]

    def delete(self, parcel_id: str) -> bool:
        """Delete a parcel; derived rows are removed by ON DELETE CASCADE."""
        with connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute("DELETE FROM parcels WHERE id = %s", (parcel_id,))
            return bool(cur.rowcount)

    @staticmethod
    def _to_row(parcel: db_models.ParcelRecord) -> dict[str, object]:
        """Convert a ParcelRecord to a parameter dictionary.

        Args:
            parcel: Parcel to convert.

        Returns:
            Dictionary suitable for parameterized SQL insertion.
        """
        return {
            "id": parcel.id,
            "name": parcel.name,
            "geometry_wkt": parcel.geometry.wkt,
            "area": parcel.area,
            "perimeter": parcel.perimeter,
            "population": parcel.population,
            "created_at": parcel.created_at,
            "updated_at": parcel.updated_at,
        }

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.ParcelRecord:
        """Convert a database row dictionary to a ParcelRecord."""
        population_value = row.get("population")
        population = (
            int(cast(int, population_value))
            if population_value is not None
            else None
        )
        now = datetime.datetime.now(datetime.UTC)
        return db_models.ParcelRecord(
            id=str(row["id"]),
            name=str(row["name"]),
            geometry=db_models.Geometry(
                shapely_wkt.loads(str(row["geometry_wkt"]))
            ),
            area=_float(row.get("area")),
            perimeter=_float(row.get("perimeter")),
            population=population,
            created_at=_cast(row.get("created_at"), datetime.datetime) or now,
            updated_at=_cast(row.get("updated_at"), datetime.datetime) or now,
        )


class PostgresRiskRepository(RiskRepositoryProtocol):
    """PostgreSQL-backed store for the data derived by ingestion.

    The (parcel_id, metric) primary key of ``parcel_risk_inputs`` backs the
    upsert; every other table is append-only.
    """

    CREATE_TABLES_SQL = (
        """
        CREATE TABLE IF NOT EXISTS parcel_population_stats (
          id TEXT PRIMARY KEY,
          parcel_id TEXT NOT NULL REFERENCES parcels (id) ON DELETE CASCADE,
          population INTEGER,
          density_per_sqkm DOUBLE PRECISION,
          source TEXT,
          collected_at TIMESTAMPTZ,
          created_by TEXT,
          created_at TIMESTAMPTZ DEFAULT now()
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS parcel_climate_metrics (
          id TEXT PRIMARY KEY,
          parcel_id TEXT NOT NULL REFERENCES parcels (id) ON DELETE CASCADE,
          avg_temperature_c DOUBLE PRECISION,
          rainfall_mm DOUBLE PRECISION,
          elevation_meters DOUBLE PRECISION,
          slope_degrees DOUBLE PRECISION,
          flood_risk_score DOUBLE PRECISION,
          drought_risk_score DOUBLE PRECISION,
          sea_level_risk_score DOUBLE PRECISION,
          data_source TEXT,
          collected_at TIMESTAMPTZ,
          created_by TEXT,
          created_at TIMESTAMPTZ DEFAULT now()
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS parcel_risk_inputs (
          parcel_id TEXT NOT NULL REFERENCES parcels (id) ON DELETE CASCADE,
          metric TEXT NOT NULL,
          value DOUBLE PRECISION,
          weight DOUBLE PRECISION NOT NULL DEFAULT 1,
          normalized_score DOUBLE PRECISION,
          data_source TEXT,
          last_evaluated_at TIMESTAMPTZ,
          updated_by TEXT,
          PRIMARY KEY (parcel_id, metric)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS parcel_risk_assessments (
          id TEXT PRIMARY KEY,
          parcel_id TEXT NOT NULL REFERENCES parcels (id) ON DELETE CASCADE,
          overall_score DOUBLE PRECISION NOT NULL,
          risk_band TEXT NOT NULL,
          drivers JSONB,
          methodology_version TEXT NOT NULL,
          assessed_at TIMESTAMPTZ NOT NULL,
          created_by TEXT
        );
        CREATE INDEX IF NOT EXISTS parcel_risk_assessments_parcel_idx
          ON parcel_risk_assessments (parcel_id, assessed_at DESC);
        """,
    )

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with connect(self.settings) as conn, conn.cursor() as cur:
            for statement in self.CREATE_TABLES_SQL:
                cur.execute(statement)

    def upsert_risk_input(
        self,
        parcel_id: str,
        metric: str,
        value: float | None,
        normalized_score: float | None,
        weight: float | None = None,
        data_source: str | None = None,
        updated_by: str = "system",
    ) -> db_models.RiskInput:
        params = {
            "parcel_id": parcel_id,
            "metric": metric,
            "value": value,
            "weight": weight,
            "normalized_score": normalized_score,
            "data_source": data_source,
            "last_evaluated_at": datetime.datetime.now(tz=datetime.UTC),
            "updated_by": updated_by,
        }
        with connect(self.settings) as conn, _dict_cursor(conn) as cur:
            cur.execute(
                """
                INSERT INTO parcel_risk_inputs (
                    parcel_id, metric, value, weight, normalized_score,
                    data_source, last_evaluated_at, updated_by
                ) VALUES (%(parcel_id)s, %(metric)s, %(value)s,
                    COALESCE(%(weight)s, 1), %(normalized_score)s,
                    %(data_source)s, %(last_evaluated_at)s, %(updated_by)s)
                ON CONFLICT (parcel_id, metric) DO UPDATE SET
                    value = EXCLUDED.value,
                    weight = COALESCE(%(weight)s, parcel_risk_inputs.weight),
                    normalized_score = EXCLUDED.normalized_score,
                    data_source = COALESCE(
                        EXCLUDED.data_source, parcel_risk_inputs.data_source
                    ),
                    last_evaluated_at = EXCLUDED.last_evaluated_at,
                    updated_by = EXCLUDED.updated_by
                RETURNING *;
                """,
                params,
            )
            row = cur.fetchone()
        return self._risk_input_from_row(cast(dict[str, object], row))

    def list_risk_inputs(self, parcel_id: str) -> list[db_models.RiskInput]:
        with connect(self.settings) as conn, _dict_cursor(conn) as cur:
            cur.execute(
                """
                SELECT * FROM parcel_risk_inputs
                WHERE parcel_id = %s ORDER BY metric
                """,
                (parcel_id,),
            )
            rows = cur.fetchall()
        return [
            self._risk_input_from_row(cast(dict[str, object], row))
            for row in rows
        ]

    def add_assessment(
        self, assessment: db_models.RiskAssessment
    ) -> db_models.RiskAssessment:
        with connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO parcel_risk_assessments (
                    id, parcel_id, overall_score, risk_band, drivers,
                    methodology_version, assessed_at, created_by
                ) VALUES (%(id)s, %(parcel_id)s, %(overall_score)s,
                    %(risk_band)s, %(drivers)s, %(methodology_version)s,
                    %(assessed_at)s, %(created_by)s);
                """,
                {
                    "id": assessment.id,
                    "parcel_id": assessment.parcel_id,
                    "overall_score": assessment.overall_score,
                    "risk_band": assessment.risk_band,
                    "drivers": psycopg2.extras.Json(assessment.drivers),
                    "methodology_version": assessment.methodology_version,
                    "assessed_at": assessment.assessed_at,
                    "created_by": assessment.created_by,
                },
            )
        return assessment

    def list_assessments(
        self, parcel_id: str
    ) -> list[db_models.RiskAssessment]:
        with connect(self.settings) as conn, _dict_cursor(conn) as cur:
            cur.execute(
                """
                SELECT * FROM parcel_risk_assessments
                WHERE parcel_id = %s ORDER BY assessed_at DESC
                """,
                (parcel_id,),
            )
            rows = cur.fetchall()
        return [
            db_models.RiskAssessment(
                id=str(row["id"]),
                parcel_id=str(row["parcel_id"]),
                overall_score=float(row["overall_score"]),
                risk_band=row["risk_band"],
                drivers=dict(row["drivers"] or {}),
                methodology_version=str(row["methodology_version"]),
                assessed_at=row["assessed_at"],
                created_by=row["created_by"] or "system",
            )
            for row in rows
        ]

    def add_climate_metric(
        self, snapshot: db_models.ClimateMetricSnapshot
    ) -> db_models.ClimateMetricSnapshot:
        sample = snapshot.sample
        with connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO parcel_climate_metrics (
                    id, parcel_id, avg_temperature_c, rainfall_mm,
                    elevation_meters, slope_degrees, flood_risk_score,
                    drought_risk_score, sea_level_risk_score, data_source,
                    collected_at, created_by
                ) VALUES (%(id)s, %(parcel_id)s, %(avg_temperature_c)s,
                    %(rainfall_mm)s, %(elevation_meters)s, %(slope_degrees)s,
                    %(flood_risk_score)s, %(drought_risk_score)s,
                    %(sea_level_risk_score)s, %(data_source)s,
                    %(collected_at)s, %(created_by)s);
                """,
                {
                    "id": snapshot.id,
                    "parcel_id": snapshot.parcel_id,
                    "avg_temperature_c": sample.avg_temperature_c,
                    "rainfall_mm": sample.rainfall_mm,
                    "elevation_meters": sample.elevation_meters,
                    "slope_degrees": sample.slope_degrees,
                    "flood_risk_score": sample.flood_risk_score,
                    "drought_risk_score": sample.drought_risk_score,
                    "sea_level_risk_score": sample.sea_level_risk_score,
                    "data_source": sample.source,
                    "collected_at": snapshot.collected_at,
                    "created_by": snapshot.created_by,
                },
            )
        return snapshot

    def add_population_snapshot(
        self, snapshot: db_models.PopulationSnapshot
    ) -> db_models.PopulationSnapshot:
        with connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO parcel_population_stats (
                    id, parcel_id, population, density_per_sqkm, source,
                    collected_at, created_by
                ) VALUES (%(id)s, %(parcel_id)s, %(population)s,
                    %(density_per_sq_km)s, %(source)s, %(collected_at)s,
                    %(created_by)s);
                """,
                dataclasses.asdict(snapshot),
            )
        return snapshot

    @staticmethod
    def _risk_input_from_row(row: dict[str, object]) -> db_models.RiskInput:
        """Convert a parcel_risk_inputs row to a RiskInput."""
        evaluated_at = _cast(
            row.get("last_evaluated_at"), datetime.datetime
        ) or datetime.datetime.now(datetime.UTC)
        weight = _float(row.get("weight"))
        return db_models.RiskInput(
            parcel_id=str(row["parcel_id"]),
            metric=str(row["metric"]),
            value=_float(row.get("value")),
            weight=weight if weight is not None else 1.0,
            normalized_score=_float(row.get("normalized_score")),
            data_source=_cast(row.get("data_source"), str),
            last_evaluated_at=evaluated_at,
            updated_by=_cast(row.get("updated_by"), str) or "system",
        )


def get_parcel_repository(
    settings: config.Settings,
) -> ParcelRepositoryProtocol:
    """Factory function to create the production parcel repository."""
    return PostgresParcelRepository(settings)


def get_risk_repository(settings: config.Settings) -> RiskRepositoryProtocol:
    """Factory function to create the production risk repository."""
    return PostgresRiskRepository(settings)
