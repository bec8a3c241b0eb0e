"""Tests for the parcel and view API endpoints.

The app is built with ``main.create_app`` and its pipeline dependency is
overridden with the in-memory pipeline from conftest, so requests exercise
parsing, measurement and background ingestion without PostGIS.
"""

from __future__ import annotations

import io
import json
import zipfile
from collections.abc import Iterator
from typing import Any

import pytest
from fastapi import testclient

from app import main
from app.core import config
from app.db import database
from app.services import ingestion, pipeline
from conftest import square_polygon

KML_DOCUMENT = """<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2">
  <Document>
    <Placemark>
      <Polygon><outerBoundaryIs><LinearRing><coordinates>
        10.0,45.0,0 10.01,45.0,0 10.01,45.01,0 10.0,45.01,0 10.0,45.0,0
      </coordinates></LinearRing></outerBoundaryIs></Polygon>
    </Placemark>
  </Document>
</kml>
"""


@pytest.fixture
def client(
    memory_pipeline: pipeline.Pipeline, settings: config.Settings
) -> Iterator[testclient.TestClient]:
    app = main.create_app()
    app.dependency_overrides[pipeline.get_pipeline] = lambda: memory_pipeline
    app.dependency_overrides[config.get_settings] = lambda: settings
    yield testclient.TestClient(app)
    app.dependency_overrides.clear()


def _kmz_bytes() -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("doc.kml", KML_DOCUMENT)
    return buffer.getvalue()


def _create(client: testclient.TestClient, **data: str) -> dict[str, Any]:
    form = {"name": "North field", "geometry": json.dumps(square_polygon())}
    form.update(data)
    response = client.post("/api/parcels", data=form)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_parcel_from_geojson_text(client: testclient.TestClient) -> None:
    """Inline GeoJSON is stored with its measurements."""
    body = _create(client, population="120")

    assert body["name"] == "North field"
    assert body["geometry_type"] == "Polygon"
    assert body["population"] == 120
    assert body["area"] == pytest.approx(876_000, rel=0.01)
    assert body["perimeter"] > 0
    assert body["ingestion_queued"] is True


def test_create_parcel_from_kmz_upload(client: testclient.TestClient) -> None:
    """A KMZ upload is unpacked, parsed and measured."""
    response = client.post(
        "/api/parcels",
        data={"name": "Orchard"},
        files={
            "file": ("field.kmz", _kmz_bytes(), "application/vnd.google-earth.kmz")
        },
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["geometry_type"] == "Polygon"
    assert body["population"] is None
    assert body["area"] > 0


def test_create_without_geometry_is_rejected(client: testclient.TestClient) -> None:
    response = client.post("/api/parcels", data={"name": "Nothing"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "empty_geometry"


@pytest.mark.parametrize(
    ("filename", "content", "code"),
    [
        ("boundary.dwg", b"binary", "unsupported_format"),
        ("boundary.zip", b"not a zip", "malformed_container"),
        ("boundary.geojson", b"{broken", "parse_failure"),
    ],
)
def test_bad_upload_returns_typed_error(
    client: testclient.TestClient, filename: str, content: bytes, code: str
) -> None:
    """Geometry failures render as 400 with code and message."""
    response = client.post(
        "/api/parcels",
        data={"name": "Bad"},
        files={"file": (filename, content)},
    )
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == code
    assert detail["message"]


def test_invalid_geometry_is_rejected(client: testclient.TestClient) -> None:
    """Self-intersecting boundaries fail measurement."""
    bow_tie = {
        "type": "Polygon",
        "coordinates": [[[0, 0], [1, 1], [1, 0], [0, 1], [0, 0]]],
    }
    response = client.post(
        "/api/parcels",
        data={"name": "Bow tie", "geometry": json.dumps(bow_tie)},
    )
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "geometry_invalid"


def test_negative_population_is_rejected(client: testclient.TestClient) -> None:
    response = client.post(
        "/api/parcels",
        data={
            "name": "North field",
            "population": "-1",
            "geometry": json.dumps(square_polygon()),
        },
    )
    assert response.status_code == 422


def test_upload_size_limit(
    memory_pipeline: pipeline.Pipeline, settings: config.Settings
) -> None:
    """Uploads beyond max_upload_size_bytes are rejected with 413."""
    app = main.create_app()
    small = settings.model_copy(update={"max_upload_size_bytes": 16})
    app.dependency_overrides[pipeline.get_pipeline] = lambda: memory_pipeline
    app.dependency_overrides[config.get_settings] = lambda: small
    client = testclient.TestClient(app)

    response = client.post(
        "/api/parcels",
        data={"name": "Large"},
        files={"file": ("big.geojson", json.dumps(square_polygon()).encode())},
    )
    assert response.status_code == 413


def test_parse_endpoint_does_not_store(
    client: testclient.TestClient, memory_pipeline: pipeline.Pipeline
) -> None:
    """The parse endpoint returns geometry and metrics only."""
    response = client.post(
        "/api/parcels/geometry/parse",
        files={"file": ("field.kml", KML_DOCUMENT.encode())},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["geometry_type"] == "Polygon"
    assert body["geometry"]["type"] == "Polygon"
    assert body["area_sq_meters"] == pytest.approx(876_000, rel=0.01)
    assert body["perimeter_meters"] > 0


def test_get_and_missing_parcel(client: testclient.TestClient) -> None:
    created = _create(client)

    response = client.get(f"/api/parcels/{created['id']}")
    assert response.status_code == 200
    assert response.json()["id"] == created["id"]

    assert client.get("/api/parcels/does-not-exist").status_code == 404
    assert client.get("/api/parcels/does-not-exist/risk").status_code == 404


def test_patch_updates_fields_and_geometry(client: testclient.TestClient) -> None:
    """PATCH replaces the boundary and recomputes measurements."""
    created = _create(client)
    bigger = square_polygon(size=0.02)

    response = client.patch(
        f"/api/parcels/{created['id']}",
        data={"name": "Renamed", "population": "40", "geometry": json.dumps(bigger)},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["name"] == "Renamed"
    assert body["population"] == 40
    assert body["area"] == pytest.approx(created["area"] * 4, rel=0.01)
    assert body["created_at"] == created["created_at"]


def test_patch_missing_parcel(client: testclient.TestClient) -> None:
    response = client.patch("/api/parcels/nope", data={"name": "Renamed"})
    assert response.status_code == 404


def test_risk_after_ingestion(
    client: testclient.TestClient, memory_pipeline: pipeline.Pipeline
) -> None:
    """Once ingestion drains the risk endpoint reports inputs and assessment."""
    created = _create(client, population="50")
    memory_pipeline.orchestrator.shutdown(wait=True)

    response = client.get(f"/api/parcels/{created['id']}/risk")

    assert response.status_code == 200
    body = response.json()
    assert body["parcel_id"] == created["id"]
    assert {item["metric"] for item in body["inputs"]} == {"slope", "drought_risk"}
    assert body["assessment"]["overall_score"] == 40.0
    assert body["assessment"]["risk_band"] == "MODERATE"
    assert body["assessment"]["created_by"] == "api"


def test_view_refresh_and_status(client: testclient.TestClient) -> None:
    response = client.post(
        "/api/views/refresh", params={"view_name": "parcel_risk_summary_mv"}
    )
    assert response.status_code == 200
    statuses = {item["view_name"]: item for item in response.json()}
    assert statuses["parcel_risk_summary_mv"]["last_refreshed_at"] is not None
    assert statuses["population_density_grid_mv"]["last_refreshed_at"] is None

    response = client.post("/api/views/refresh")
    assert response.status_code == 200
    assert all(item["status"] == "idle" for item in response.json())

    status = client.get("/api/views/status").json()
    assert [item["view_name"] for item in status] == [
        "parcel_risk_summary_mv",
        "population_density_grid_mv",
    ]


def test_refresh_unknown_view(client: testclient.TestClient) -> None:
    response = client.post("/api/views/refresh", params={"view_name": "other_mv"})
    assert response.status_code == 404


def test_list_parcels(client: testclient.TestClient) -> None:
    """Every stored parcel is listed with its GeoJSON geometry."""
    assert client.get("/api/parcels").json() == []
    first = _create(client)
    second = _create(client, name="South field")

    response = client.get("/api/parcels")

    assert response.status_code == 200
    body = response.json()
    assert {item["id"] for item in body} == {first["id"], second["id"]}
    assert all(item["geometry"]["type"] == "Polygon" for item in body)


def test_delete_parcel(client: testclient.TestClient) -> None:
    created = _create(client)

    response = client.delete(f"/api/parcels/{created['id']}")

    assert response.status_code == 204
    assert response.content == b""
    assert client.get(f"/api/parcels/{created['id']}").status_code == 404
    assert client.delete(f"/api/parcels/{created['id']}").status_code == 404


def test_ingestion_after_delete_writes_nothing(
    client: testclient.TestClient,
    memory_pipeline: pipeline.Pipeline,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A job that runs after its parcel was deleted leaves no derived rows."""
    queued: list[tuple[str, ingestion.IngestionOptions]] = []

    def capture(parcel_id: str, options: ingestion.IngestionOptions) -> bool:
        queued.append((parcel_id, options))
        return True

    monkeypatch.setattr(memory_pipeline.orchestrator, "enqueue_ingestion", capture)
    created = _create(client, population="25")
    assert client.delete(f"/api/parcels/{created['id']}").status_code == 204

    [(parcel_id, options)] = queued
    memory_pipeline.orchestrator.process(parcel_id, options)

    repo = memory_pipeline.risk_repository
    assert isinstance(repo, database.InMemoryRiskRepository)
    assert repo.population_snapshots == []
    assert repo.climate_metrics == []
    assert repo.risk_inputs == {}
    assert repo.assessments == []
