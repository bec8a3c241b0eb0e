"""Unit tests for utilities in app.utils.gdal_helpers.

This module tests the low-level GDAL/OGR command execution helpers:
    - Successful command execution returns stdout (zero exit code)
    - Failure handling and error message propagation (nonzero exit code)
    - ogr2ogr GeoJSON conversion and its output validation

Monkeypatching is used to avoid actual subprocess execution, ensuring tests
are isolated, fast, and reliable.

See Also:
    - backend/app/utils/gdal_helpers.py for implementation details.
"""

import json
import pathlib
import subprocess
from typing import Any

import pytest

from app.utils import gdal_helpers


def _completed(
    returncode: int, stdout: str = "", stderr: str = ""
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(
        args=[],
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
    )


def test_run_command_success(monkeypatch: pytest.MonkeyPatch) -> None:
    """Command with zero return code returns its stdout."""

    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        return _completed(0, stdout="ok")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    assert gdal_helpers.run_command(["echo", "ok"]) == "ok"


def test_run_command_inherits_working_directory(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Commands run in the caller's directory with stringified arguments."""
    calls: list[tuple[list[str], dict[str, Any]]] = []

    def fake_run(
        args: list[str], **kwargs: Any
    ) -> subprocess.CompletedProcess[str]:
        calls.append((args, kwargs))
        return _completed(0, stdout="ok")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    gdal_helpers.run_command(["ogrinfo", pathlib.Path("parcel.kml")])

    args, kwargs = calls[0]
    assert args == ["ogrinfo", "parcel.kml"]
    assert "cwd" not in kwargs


def test_run_command_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """Command errors raise CommandError with the stderr message."""

    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        return _completed(1, stderr="fail")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="fail"):
        gdal_helpers.run_command(["false"])


def test_run_command_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    """A command that cannot start is reported as CommandError."""

    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("ogr2ogr")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError):
        gdal_helpers.run_command(["ogr2ogr"])


def test_convert_to_geojson_builds_command(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """ogr2ogr writes GeoJSON in EPSG:4326 to stdout."""
    calls: list[list[str]] = []
    collection = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {},
                "geometry": {"type": "Point", "coordinates": [1.0, 2.0]},
            }
        ],
    }

    def fake_run(
        command: list[str], *args: Any, **kwargs: Any
    ) -> subprocess.CompletedProcess[str]:
        calls.append(command)
        return _completed(0, stdout=json.dumps(collection))

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    result = gdal_helpers.convert_to_geojson(pathlib.Path("parcel.kml"))

    assert result == collection
    assert calls[0][:4] == ["ogr2ogr", "-f", "GeoJSON", "/vsistdout/"]
    assert calls[0][-2:] == ["-t_srs", "EPSG:4326"]


@pytest.mark.parametrize(
    "stdout",
    ["not json", json.dumps({"type": "FeatureCollection", "features": []})],
)
def test_convert_to_geojson_rejects_unusable_output(
    monkeypatch: pytest.MonkeyPatch,
    stdout: str,
) -> None:
    """Invalid or empty conversions raise CommandError."""

    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        return _completed(0, stdout=stdout)

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError):
        gdal_helpers.convert_to_geojson(pathlib.Path("empty.kml"))
