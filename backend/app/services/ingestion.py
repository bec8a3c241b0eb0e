"""Background ingestion of parcel data after a parcel is saved.

``IngestionOrchestrator.enqueue_ingestion`` returns immediately; the work
runs on a bounded thread pool:

1. reload the parcel (a missing parcel ends the job);
2. record a population snapshot when a population was supplied;
3. when the geometry changed (always on create): sample the environment,
   store a climate snapshot and one risk input per sampled metric, then
   compute the overall assessment;
4. refresh every tracked materialized view.

Each stage is isolated: a failure is logged with the parcel id and stage
and the remaining stages still run.

Admission is bounded by ``workers + queue_size`` slots. Jobs for one parcel
never run concurrently: a trigger for a parcel that is already waiting is
merged into the waiting job, and a trigger for a parcel that is running is
kept as a single follow-up run.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import threading
from typing import TYPE_CHECKING, Any

from app.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Callable

    from app.db import database
    from app.services import environment, materialized_views, risk

logger = logging.getLogger(__name__)

POPULATION_SOURCE = "parcel_form"


@dataclasses.dataclass(frozen=True)
class IngestionOptions:
    """What triggered an ingestion job and what it must do.

    Attributes:
        reason: ``create`` or ``update``.
        provided_population: Population entered with the parcel, if any.
        geometry_changed: The parcel geometry was replaced.
        actor: Recorded as creator of the derived rows.
    """

    reason: db_models.IngestionReason
    provided_population: int | None = None
    geometry_changed: bool = False
    actor: str = "system"

    @property
    def captures_environment(self) -> bool:
        return self.geometry_changed or self.reason == "create"

    def merge(self, newer: IngestionOptions) -> IngestionOptions:
        """Combine with a later trigger for the same parcel."""
        return IngestionOptions(
            reason="create" if "create" in (self.reason, newer.reason) else "update",
            provided_population=(
                newer.provided_population
                if newer.provided_population is not None
                else self.provided_population
            ),
            geometry_changed=self.geometry_changed or newer.geometry_changed,
            actor=newer.actor,
        )


class IngestionOrchestrator:
    """Run parcel ingestion jobs on a bounded worker pool."""

    def __init__(
        self,
        parcels: database.ParcelRepositoryProtocol,
        risk_repository: database.RiskRepositoryProtocol,
        sampler: environment.EnvironmentalSampler,
        risk_engine: risk.RiskAssessmentEngine,
        scheduler: materialized_views.MaterializedViewScheduler,
        workers: int = 4,
        queue_size: int = 64,
    ) -> None:
        self.parcels = parcels
        self.risk_repository = risk_repository
        self.sampler = sampler
        self.risk_engine = risk_engine
        self.scheduler = scheduler
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="parcel-ingestion",
        )
        self._slots = threading.BoundedSemaphore(workers + queue_size)
        self._lock = threading.Lock()
        self._pending: dict[str, IngestionOptions] = {}
        self._running: set[str] = set()
        self._closed = False

    def enqueue_ingestion(self, parcel_id: str, options: IngestionOptions) -> bool:
        """Schedule ingestion for a parcel without waiting for it.

        Args:
            parcel_id: Parcel to ingest.
            options: Trigger details.

        Returns:
            ``True`` when the job was accepted or merged into a waiting job
            for the same parcel, ``False`` when the pool is saturated or
            shut down.
        """
        with self._lock:
            if self._closed:
                logger.warning(
                    "Ingestion pool is shut down, dropping parcel %s", parcel_id
                )
                return False

            waiting = self._pending.get(parcel_id)
            if waiting is not None:
                self._pending[parcel_id] = waiting.merge(options)
                logger.debug(
                    "Merged %s trigger for parcel %s", options.reason, parcel_id
                )
                return True

            if not self._slots.acquire(blocking=False):
                logger.warning(
                    "Ingestion queue full, rejecting %s of parcel %s",
                    options.reason,
                    parcel_id,
                )
                return False

            self._pending[parcel_id] = options
            if parcel_id not in self._running:
                self._executor.submit(self._drain, parcel_id)
        return True

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs and optionally wait for queued ones."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

    def _drain(self, parcel_id: str) -> None:
        while True:
            with self._lock:
                options = self._pending.pop(parcel_id, None)
                if options is None:
                    self._running.discard(parcel_id)
                    return
                self._running.add(parcel_id)
            try:
                self.process(parcel_id, options)
            finally:
                self._slots.release()

    def process(self, parcel_id: str, options: IngestionOptions) -> None:
        """Run every ingestion stage for one parcel synchronously."""
        logger.info("Ingesting parcel %s (%s)", parcel_id, options.reason)
        parcel = self._stage(parcel_id, "load", self.parcels.get, parcel_id)
        if parcel is None:
            logger.warning("Parcel %s not found for ingestion", parcel_id)
            return

        if options.provided_population is not None:
            self._stage(
                parcel_id,
                "population",
                self._record_population,
                parcel,
                options.provided_population,
                options.actor,
            )

        if options.captures_environment:
            self._capture_environment(parcel, options.actor)

        self._stage(parcel_id, "views", self.scheduler.refresh_all)

    def _stage(
        self,
        parcel_id: str,
        stage: str,
        func: Callable[..., Any],
        *args: Any,
    ) -> Any:
        try:
            return func(*args)
        except Exception:
            logger.exception(
                "Ingestion stage %s failed for parcel %s", stage, parcel_id
            )
            return None

    def _record_population(
        self,
        parcel: db_models.ParcelRecord,
        population: int,
        actor: str,
    ) -> db_models.PopulationSnapshot:
        density = (
            round(population / (parcel.area / 1_000_000), 2)
            if parcel.area and parcel.area > 0
            else None
        )
        return self.risk_repository.add_population_snapshot(
            db_models.PopulationSnapshot(
                parcel_id=parcel.id,
                population=population,
                density_per_sq_km=density,
                source=POPULATION_SOURCE,
                created_by=actor,
            )
        )

    def _capture_environment(
        self, parcel: db_models.ParcelRecord, actor: str
    ) -> None:
        sample = self._stage(parcel.id, "sample", self.sampler.sample, parcel.geometry)
        if sample is None:
            logger.debug("No environmental sample available for %s", parcel.id)
            return

        self._stage(
            parcel.id,
            "climate",
            self.risk_repository.add_climate_metric,
            db_models.ClimateMetricSnapshot(
                parcel_id=parcel.id, sample=sample, created_by=actor
            ),
        )
        for metric, value in sample.risk_values().items():
            if value is None:
                continue
            self._stage(
                parcel.id,
                f"risk_input:{metric}",
                self._upsert_risk_input,
                parcel.id,
                metric,
                value,
                sample.source,
                actor,
            )
        self._stage(
            parcel.id,
            "assessment",
            self.risk_engine.compute_overall_assessment,
            parcel.id,
            actor,
        )

    def _upsert_risk_input(
        self,
        parcel_id: str,
        metric: str,
        value: float,
        data_source: str,
        actor: str,
    ) -> db_models.RiskInput:
        return self.risk_engine.upsert_risk_input(
            parcel_id, metric, value, data_source=data_source, actor=actor
        )
