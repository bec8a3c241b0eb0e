"""Tests for materialized view persistence in app.db.views.

The in-memory store is checked for its status transitions; the PostgreSQL
store is exercised against a fake connection to verify the DDL, status
seeding and the CONCURRENTLY refresh statement.
"""

from __future__ import annotations

import contextlib
import datetime
from collections.abc import Iterator
from typing import Any

import psycopg2
import pytest

from app.core import config
from app.db import database
from app.db import views as db_views


class RecordingCursor:
    def __init__(self, log: list[tuple[str, object]], fail_on: str | None) -> None:
        self.log = log
        self.fail_on = fail_on

    def __enter__(self) -> RecordingCursor:
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def execute(self, statement: str, params: object = None) -> None:
        if self.fail_on and self.fail_on in statement:
            raise psycopg2.ProgrammingError("relation does not exist")
        self.log.append((statement, params))


def _patch_connect(
    monkeypatch: pytest.MonkeyPatch,
    log: list[tuple[str, object]],
    fail_on: str | None = None,
) -> None:
    class Connection:
        def cursor(self, **kwargs: Any) -> RecordingCursor:
            return RecordingCursor(log, fail_on)

    @contextlib.contextmanager
    def fake_connect(settings: config.Settings) -> Iterator[Connection]:
        yield Connection()

    monkeypatch.setattr(database, "connect", fake_connect)
    monkeypatch.setattr(
        psycopg2.extensions, "quote_ident", lambda name, conn: f'"{name}"'
    )


def test_in_memory_store_status_transitions() -> None:
    """Seeded rows move through running, idle and error."""
    store = db_views.InMemoryViewStore()
    store.ensure_views([db_views.RISK_SUMMARY_VIEW])

    store.mark_running(db_views.RISK_SUMMARY_VIEW)
    running = store.get_status(db_views.RISK_SUMMARY_VIEW)
    assert running is not None
    assert running.status == "running"

    refreshed_at = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
    store.mark_refreshed(db_views.RISK_SUMMARY_VIEW, refreshed_at, 42)
    status = store.get_status(db_views.RISK_SUMMARY_VIEW)
    assert status is not None
    assert status.status == "idle"
    assert status.last_refreshed_at == refreshed_at
    assert status.duration_ms == 42

    store.mark_error(db_views.RISK_SUMMARY_VIEW, "boom")
    status = store.get_status(db_views.RISK_SUMMARY_VIEW)
    assert status is not None
    assert (status.status, status.error_message) == ("error", "boom")


def test_in_memory_store_ignores_unseeded_views() -> None:
    """Updates for views that were never ensured create nothing."""
    store = db_views.InMemoryViewStore()
    store.mark_running("unknown_mv")
    assert store.get_status("unknown_mv") is None
    assert store.list_statuses() == []


def test_in_memory_store_ensure_views_is_idempotent() -> None:
    """Ensuring twice keeps one row per view, ordered by name."""
    store = db_views.InMemoryViewStore()
    names = [db_views.RISK_SUMMARY_VIEW, db_views.POPULATION_DENSITY_VIEW]
    store.ensure_views(names)
    store.ensure_views(names)
    assert [s.view_name for s in store.list_statuses()] == sorted(names)


def test_postgres_ensure_views_continues_after_failure(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failing definition does not stop the remaining statements."""
    log: list[tuple[str, object]] = []
    _patch_connect(monkeypatch, log, fail_on="population_density_grid_mv AS")

    store = db_views.PostgresViewStore(config.Settings())
    store.ensure_views([db_views.POPULATION_DENSITY_VIEW, db_views.RISK_SUMMARY_VIEW])

    statements = [statement for statement, _ in log]
    assert any("materialized_view_refreshes" in s for s in statements)
    assert any("parcel_risk_summary_mv AS" in s for s in statements)
    seeds = [
        params for statement, params in log if "ON CONFLICT (view_name)" in statement
    ]
    assert seeds == [
        (db_views.POPULATION_DENSITY_VIEW,),
        (db_views.RISK_SUMMARY_VIEW,),
    ]


def test_postgres_refresh_is_concurrent(monkeypatch: pytest.MonkeyPatch) -> None:
    """Refreshes use REFRESH MATERIALIZED VIEW CONCURRENTLY."""
    log: list[tuple[str, object]] = []
    _patch_connect(monkeypatch, log)

    db_views.PostgresViewStore(config.Settings()).execute_refresh(
        db_views.RISK_SUMMARY_VIEW
    )
    assert log[-1][0] == (
        'REFRESH MATERIALIZED VIEW CONCURRENTLY "parcel_risk_summary_mv"'
    )


def test_postgres_status_from_row() -> None:
    """Status rows convert to MaterializedViewStatus."""
    status = db_views.PostgresViewStore._from_row(
        {
            "view_name": db_views.RISK_SUMMARY_VIEW,
            "status": "idle",
            "last_refreshed_at": None,
            "duration_ms": 17,
            "error_message": None,
        }
    )
    assert status.duration_ms == 17
    assert status.last_refreshed_at is None
