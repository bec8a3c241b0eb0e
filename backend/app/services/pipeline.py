"""Assembly of the ingestion pipeline components.

``Pipeline`` bundles the repositories and services shared by the API
handlers and background workers. ``get_pipeline`` builds the production
(PostgreSQL-backed) instance once per process; the application lifespan
starts it and stops it on shutdown.
"""

from __future__ import annotations

import dataclasses
import functools
import logging
from typing import TYPE_CHECKING

from app.core import config
from app.db import database
from app.db import views as db_views
from app.services import environment, ingestion, materialized_views, risk

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Pipeline:
    settings: config.Settings
    parcels: database.ParcelRepositoryProtocol
    risk_repository: database.RiskRepositoryProtocol
    sampler: environment.EnvironmentalSampler
    risk_engine: risk.RiskAssessmentEngine
    scheduler: materialized_views.MaterializedViewScheduler
    orchestrator: ingestion.IngestionOrchestrator

    @classmethod
    def build(
        cls,
        settings: config.Settings,
        parcels: database.ParcelRepositoryProtocol,
        risk_repository: database.RiskRepositoryProtocol,
        view_store: db_views.ViewStoreProtocol,
        http_client: httpx.Client | None = None,
    ) -> Pipeline:
        """Wire the services on top of the given storage backends.

        Args:
            settings: Application settings (pool sizes, elevation lookup).
            parcels: Parcel repository.
            risk_repository: Store for derived risk data.
            view_store: Materialized view backend.
            http_client: Optional client for elevation lookups.

        Returns:
            A pipeline that has not been started yet.
        """
        sampler = environment.EnvironmentalSampler(settings, http_client)
        risk_engine = risk.RiskAssessmentEngine(risk_repository)
        scheduler = materialized_views.MaterializedViewScheduler(view_store)
        orchestrator = ingestion.IngestionOrchestrator(
            parcels=parcels,
            risk_repository=risk_repository,
            sampler=sampler,
            risk_engine=risk_engine,
            scheduler=scheduler,
            workers=settings.ingestion_workers,
            queue_size=settings.ingestion_queue_size,
        )
        return cls(
            settings=settings,
            parcels=parcels,
            risk_repository=risk_repository,
            sampler=sampler,
            risk_engine=risk_engine,
            scheduler=scheduler,
            orchestrator=orchestrator,
        )

    def start(self) -> None:
        """Ensure the tracked views exist and start the refresh timer."""
        self.scheduler.ensure_views()
        if self.settings.enable_view_scheduler:
            self.scheduler.start(self.settings.view_refresh_interval_seconds)

    def stop(self) -> None:
        """Stop the refresh timer and drain queued ingestion jobs."""
        self.scheduler.stop()
        self.orchestrator.shutdown(wait=True)
        self.sampler.close()
        logger.info("Pipeline stopped")


@functools.lru_cache
def get_pipeline() -> Pipeline:
    """Build the production pipeline once per process."""
    settings = config.get_settings()
    return Pipeline.build(
        settings,
        parcels=database.get_parcel_repository(settings),
        risk_repository=database.get_risk_repository(settings),
        view_store=db_views.get_view_store(settings),
    )
