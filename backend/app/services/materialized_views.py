"""Refresh orchestration for the tracked materialized views.

The scheduler owns the tracked view list, records the refresh status of
each view and runs an optional periodic refresh on a daemon thread.
Concurrent refresh requests for the same view share one in-flight run.

Example:
    >>> from app.db import views
    >>> from app.services.materialized_views import MaterializedViewScheduler
    >>> scheduler = MaterializedViewScheduler(views.InMemoryViewStore())
    >>> scheduler.ensure_views()
    >>> scheduler.refresh("parcel_risk_summary_mv").status
    'idle'
"""

from __future__ import annotations

import concurrent.futures
import datetime
import logging
import threading
import time
from typing import TYPE_CHECKING

from app.db import views as db_views

if TYPE_CHECKING:
    from collections.abc import Sequence

    from app.db import models as db_models

logger = logging.getLogger(__name__)

TRACKED_VIEWS: tuple[str, ...] = (
    db_views.RISK_SUMMARY_VIEW,
    db_views.POPULATION_DENSITY_VIEW,
)


class MaterializedViewScheduler:
    """Refresh tracked views and keep their status rows current.

    Attributes:
        store: Backend executing view DDL/refreshes and status updates.
        views: Names of the tracked views.
    """

    def __init__(
        self,
        store: db_views.ViewStoreProtocol,
        views: Sequence[str] = TRACKED_VIEWS,
    ) -> None:
        self.store = store
        self.views = tuple(views)
        self._lock = threading.Lock()
        self._in_flight: dict[
            str, concurrent.futures.Future[db_models.MaterializedViewStatus | None]
        ] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def ensure_views(self) -> None:
        """Create missing views, their indexes and status rows."""
        self.store.ensure_views(self.views)

    def refresh(
        self, view_name: str
    ) -> db_models.MaterializedViewStatus | None:
        """Refresh one tracked view.

        Args:
            view_name: Name of a tracked view.

        Returns:
            The view's status after the refresh, or ``None`` for a view that
            is not tracked (nothing is executed or recorded then).

        Raises:
            Exception: Whatever the refresh raised, after the failure has
                been recorded in the status row.
        """
        if view_name not in self.views:
            logger.warning("Attempted to refresh unknown view %s", view_name)
            return None

        with self._lock:
            future = self._in_flight.get(view_name)
            owner = future is None
            if future is None:
                future = concurrent.futures.Future()
                self._in_flight[view_name] = future

        if not owner:
            logger.debug("Joining in-flight refresh of %s", view_name)
            return future.result()

        try:
            status = self._run_refresh(view_name)
        except Exception as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(status)
            return status
        finally:
            with self._lock:
                self._in_flight.pop(view_name, None)

    def _run_refresh(
        self, view_name: str
    ) -> db_models.MaterializedViewStatus | None:
        self.store.mark_running(view_name)
        started = time.perf_counter()
        try:
            self.store.execute_refresh(view_name)
        except Exception as exc:
            self.store.mark_error(view_name, str(exc))
            logger.error("Failed refreshing view %s: %s", view_name, exc)
            raise

        duration_ms = round((time.perf_counter() - started) * 1000)
        self.store.mark_refreshed(
            view_name,
            refreshed_at=datetime.datetime.now(tz=datetime.UTC),
            duration_ms=duration_ms,
        )
        logger.info("Refreshed view %s in %d ms", view_name, duration_ms)
        return self.store.get_status(view_name)

    def get_statuses(self) -> list[db_models.MaterializedViewStatus]:
        return self.store.list_statuses()

    def refresh_all(self) -> None:
        """Refresh every tracked view, logging per-view failures."""
        for view_name in self.views:
            try:
                self.refresh(view_name)
            except Exception:
                logger.exception("Refresh of view %s failed", view_name)

    def scheduled_refresh(self) -> None:
        logger.debug("Running scheduled refresh of %d views", len(self.views))
        self.refresh_all()

    def start(self, interval_seconds: float) -> None:
        """Start the periodic refresh thread if it is not running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            args=(interval_seconds,),
            name="view-refresh-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("View refresh scheduled every %s seconds", interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self, interval_seconds: float) -> None:
        while not self._stop_event.wait(interval_seconds):
            self.scheduled_refresh()
