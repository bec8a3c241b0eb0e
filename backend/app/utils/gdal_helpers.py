"""Safe execution wrapper for GDAL/OGR command-line utilities.

This module provides a safe interface for executing GDAL and OGR command-line
tools as subprocesses, and a converter that turns any OGR-readable vector
file into a GeoJSON FeatureCollection in EPSG:4326. The converter is the
generic fallback for KML documents the placemark reader cannot handle.

All commands are executed with proper error handling, and non-zero exit codes
result in CommandError exceptions with the command's stderr output.

Example:
    Convert a KML file to GeoJSON:
        >>> from pathlib import Path
        >>> from app.utils.gdal_helpers import convert_to_geojson, CommandError

        >>> try:
        ...     collection = convert_to_geojson(Path("parcel.kml"))
        ... except CommandError as e:
        ...     print(f"Conversion failed: {e}")

    The ogr2ogr command executed:
        $ ogr2ogr -f GeoJSON /vsistdout/ parcel.kml -t_srs EPSG:4326
"""

from __future__ import annotations

import json
import subprocess
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable


class CommandError(RuntimeError):
    """Exception raised when a GDAL/OGR subprocess command fails.

    Contains the error message from the failed command's stderr output, or a
    description of why its output could not be used.

    Example:
        Handle command failures:
            >>> try:
            ...     run_command(["ogr2ogr", "-f", "GeoJSON", ...])
            ... except CommandError as e:
            ...     print(f"GDAL command failed: {e}")
    """


def run_command(command: Iterable[str | pathlib.Path]) -> str:
    """Execute a command and raise on non-zero exit.

    Args:
        command: Iterable arguments to execute (e.g., ["ogr2ogr", "-f", ...]).

    Returns:
        The command's standard output.

    Raises:
        CommandError: if the command cannot be started or exits with a
            non-zero status code. The message carries the stderr output.
    """
    try:
        result = subprocess.run(
            [str(part) for part in command],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CommandError(str(exc)) from exc
    if result.returncode != 0:
        raise CommandError(result.stderr.strip() or "Unknown command failure")
    return result.stdout


def convert_to_geojson(source_path: pathlib.Path) -> dict[str, Any]:
    """Convert a vector file to a GeoJSON FeatureCollection in EPSG:4326.

    Args:
        source_path: Path to any OGR-supported vector file.

    Returns:
        Parsed GeoJSON FeatureCollection.

    Raises:
        CommandError: If ogr2ogr fails or produces no features.
    """
    output = run_command(
        (
            "ogr2ogr",
            "-f",
            "GeoJSON",
            "/vsistdout/",
            source_path,
            "-t_srs",
            "EPSG:4326",
        )
    )
    try:
        collection = json.loads(output)
    except json.JSONDecodeError as exc:
        raise CommandError(f"ogr2ogr produced invalid GeoJSON: {exc}") from exc
    if not isinstance(collection, dict) or not collection.get("features"):
        raise CommandError("ogr2ogr conversion produced no features")
    return collection
