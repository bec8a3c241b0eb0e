"""Geometry file ingestion: untrusted uploads to one canonical geometry.

Uploaded parcel boundaries arrive as zipped shapefiles, bare ``.shp``
files, KML/KMZ documents or GeoJSON. This module decodes each of them into
GeoJSON geometries, combines multi-feature inputs into a single geometry
and returns a ``Geometry`` in WGS84 (SRID 4326).

Combination rules applied to every decoded feature list:
    - one feature passes through unchanged;
    - several features of one type become the matching Multi* geometry
      (Polygon -> MultiPolygon, LineString -> MultiLineString,
      Point -> MultiPoint; Multi* inputs are concatenated);
    - mixed types are wrapped in a GeometryCollection.

Every failure is raised as a ``GeometryError`` subclass from
``app.core.errors``; decoder and shapely exceptions never escape.

Example:
    Parse an uploaded KMZ:
        >>> from app.services.geometry_ingest import parse_geometry_file
        >>> geometry = parse_geometry_file(data, "parcels.kmz")
        >>> geometry.geom_type
        'MultiPolygon'
"""

from __future__ import annotations

import functools
import io
import json
import logging
import pathlib
import struct
import tempfile
import zipfile
from typing import TYPE_CHECKING, Any, Protocol
from xml.etree import ElementTree

import pyproj
import pyproj.exceptions
import shapefile
import shapely.errors
from shapely import geometry as shapely_geometry
from shapely import ops as shapely_ops

from app.core import errors
from app.db import models as db_models
from app.utils import gdal_helpers

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset(
    {".zip", ".shp", ".kml", ".kmz", ".geojson", ".json"}
)

SHP_FILE_CODE = 9994
SHP_HEADER_BYTES = 100

# Guards against archive entries that inflate far beyond the upload size.
MAX_ARCHIVE_ENTRY_BYTES = 256 * 1024 * 1024

_MULTI_TYPE_OF = {
    "Polygon": "MultiPolygon",
    "LineString": "MultiLineString",
    "Point": "MultiPoint",
}

_WGS84 = pyproj.CRS.from_epsg(db_models.WGS84_SRID)

GeoJSON = dict[str, Any]


class ShapefileParser(Protocol):
    """Decoder from shapefile components to a GeoJSON FeatureCollection."""

    def parse(
        self,
        shp: bytes,
        shx: bytes | None = None,
        dbf: bytes | None = None,
        prj: str | None = None,
    ) -> GeoJSON: ...


class PyshpShapefileParser:
    """Shapefile decoder backed by pyshp.

    Null shapes are skipped. When a ``.prj`` describing a CRS other than
    WGS84 is supplied, geometries are reprojected to EPSG:4326.
    """

    def parse(
        self,
        shp: bytes,
        shx: bytes | None = None,
        dbf: bytes | None = None,
        prj: str | None = None,
    ) -> GeoJSON:
        if len(shp) < SHP_HEADER_BYTES or (
            struct.unpack(">i", shp[:4])[0] != SHP_FILE_CODE
        ):
            raise errors.ParseFailure("Not an ESRI shapefile")
        transformer = self._transformer(prj)
        components = {
            name: io.BytesIO(content)
            for name, content in (("shp", shp), ("shx", shx), ("dbf", dbf))
            if content is not None
        }
        features: list[GeoJSON] = []
        try:
            with shapefile.Reader(**components) as reader:
                for shape in reader.iterShapes():
                    if shape is None or shape.shapeType == shapefile.NULL:
                        continue
                    geometry = dict(shape.__geo_interface__)
                    if transformer is not None:
                        geometry = dict(
                            shapely_geometry.mapping(
                                shapely_ops.transform(
                                    transformer.transform,
                                    shapely_geometry.shape(geometry),
                                )
                            )
                        )
                    features.append(
                        {"type": "Feature", "properties": {}, "geometry": geometry}
                    )
        except (
            shapefile.ShapefileException,
            struct.error,
            EOFError,
            IndexError,
            ValueError,
        ) as exc:
            raise errors.ParseFailure(f"Invalid shapefile: {exc}") from exc

        logger.debug("Shapefile decoded with %d feature(s)", len(features))
        return {"type": "FeatureCollection", "features": features}

    @staticmethod
    def _transformer(prj: str | None) -> pyproj.Transformer | None:
        if not prj or not prj.strip():
            return None
        try:
            source = pyproj.CRS.from_wkt(prj)
        except pyproj.exceptions.CRSError as exc:
            raise errors.ParseFailure(f"Invalid .prj definition: {exc}") from exc
        if source.equals(_WGS84, ignore_axis_order=True):
            return None
        return pyproj.Transformer.from_crs(source, _WGS84, always_xy=True)


@functools.lru_cache
def get_shapefile_parser() -> ShapefileParser:
    """Return the process-wide shapefile parser."""
    return PyshpShapefileParser()


def parse_geometry_file(
    data: bytes,
    filename: str,
    parser: ShapefileParser | None = None,
) -> db_models.Geometry:
    """Parse an uploaded geometry file into one canonical geometry.

    Args:
        data: Raw file bytes.
        filename: Original filename; its extension selects the decoder.
        parser: Shapefile decoder, defaults to the process-wide parser.

    Returns:
        Geometry in WGS84 (SRID 4326).

    Raises:
        UnsupportedFormat: Extension outside the allowlist, or a zip with no
            shapefile, KML or GeoJSON entry.
        MalformedContainer: Corrupt zip/KMZ archive.
        MissingKml: KMZ archive without a ``.kml`` entry.
        EmptyGeometry: The file decodes to no features.
        ParseFailure: Any decoding failure.
    """
    extension = pathlib.PurePosixPath(filename.replace("\\", "/")).suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise errors.UnsupportedFormat(extension or filename)

    parser = parser or get_shapefile_parser()
    if extension == ".zip":
        geometries = _geometries_from_zip(data, parser)
    elif extension == ".shp":
        geometries = _extract_geometries(parser.parse(shp=data))
    elif extension == ".kml":
        geometries = _geometries_from_kml(data)
    elif extension == ".kmz":
        geometries = _geometries_from_kmz(data)
    else:
        geometries = _extract_geometries(_load_json(data))

    geometry = _to_geometry(combine_geometries(geometries))
    logger.info(
        "Parsed %s into %s from %d feature(s)",
        filename,
        geometry.geom_type,
        len(geometries),
    )
    return geometry


def parse_inline_geometry(data: GeoJSON | str | bytes) -> db_models.Geometry:
    """Parse a GeoJSON Geometry, Feature or FeatureCollection object.

    Args:
        data: GeoJSON mapping or its JSON text.

    Returns:
        Geometry in WGS84 (SRID 4326).

    Raises:
        EmptyGeometry: No geometry could be found.
        ParseFailure: The text is not JSON or the geometry is malformed.
    """
    if isinstance(data, str | bytes):
        data = _load_json(data if isinstance(data, bytes) else data.encode())
    return _to_geometry(combine_geometries(_extract_geometries(data)))


def combine_geometries(geometries: list[GeoJSON]) -> GeoJSON:
    """Combine decoded GeoJSON geometries into a single geometry.

    Args:
        geometries: Non-empty list of GeoJSON geometry mappings.

    Returns:
        The single geometry, the matching Multi* geometry for a homogeneous
        list, or a GeometryCollection for mixed types.
    """
    if len(geometries) == 1:
        return geometries[0]

    kinds = {geometry.get("type") for geometry in geometries}
    if len(kinds) == 1:
        kind = kinds.pop()
        try:
            if kind in _MULTI_TYPE_OF:
                return {
                    "type": _MULTI_TYPE_OF[kind],
                    "coordinates": [g["coordinates"] for g in geometries],
                }
            if kind in _MULTI_TYPE_OF.values():
                return {
                    "type": kind,
                    "coordinates": [
                        part for g in geometries for part in g["coordinates"]
                    ],
                }
        except (KeyError, TypeError) as exc:
            raise errors.ParseFailure(f"Malformed {kind} geometry") from exc

    return {"type": "GeometryCollection", "geometries": geometries}


def _load_json(data: bytes) -> Any:
    try:
        return json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise errors.ParseFailure(f"Invalid JSON: {exc}") from exc


def _extract_geometries(data: Any) -> list[GeoJSON]:
    """Return the geometries of a GeoJSON Geometry, Feature or collection."""
    if not isinstance(data, dict):
        raise errors.EmptyGeometry("No GeoJSON object found")

    kind = data.get("type")
    if kind == "FeatureCollection":
        features = data.get("features") or []
        if not isinstance(features, list):
            raise errors.ParseFailure("FeatureCollection.features is not a list")
        geometries = [
            feature["geometry"]
            for feature in features
            if isinstance(feature, dict) and isinstance(feature.get("geometry"), dict)
        ]
        if not geometries:
            raise errors.EmptyGeometry("No features with geometry")
        return geometries

    if kind == "Feature":
        geometry = data.get("geometry")
        if not isinstance(geometry, dict):
            raise errors.EmptyGeometry("Feature contains no geometry")
        return [geometry]

    if kind in db_models.GEOMETRY_TYPES and (
        "coordinates" in data or "geometries" in data
    ):
        return [data]

    raise errors.EmptyGeometry("No GeoJSON geometry, Feature or FeatureCollection")


def _to_geometry(data: GeoJSON) -> db_models.Geometry:
    try:
        shape = shapely_geometry.shape(data)
    except (
        shapely.errors.ShapelyError,
        ValueError,
        TypeError,
        KeyError,
        IndexError,
        AttributeError,
    ) as exc:
        raise errors.ParseFailure(f"Malformed geometry: {exc}") from exc

    if shape.geom_type not in db_models.GEOMETRY_TYPES:
        raise errors.ParseFailure(f"Unsupported geometry type {shape.geom_type}")
    if shape.is_empty:
        raise errors.EmptyGeometry("Geometry has no coordinates")
    return db_models.Geometry(shape)


def _open_archive(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
        raise errors.MalformedContainer(str(exc)) from exc


def _archive_entries(archive: zipfile.ZipFile) -> list[str]:
    return [
        info.filename
        for info in archive.infolist()
        if not info.is_dir() and not info.filename.startswith("__MACOSX/")
    ]


def _read_entry(archive: zipfile.ZipFile, name: str) -> bytes:
    if archive.getinfo(name).file_size > MAX_ARCHIVE_ENTRY_BYTES:
        raise errors.MalformedContainer(f"Archive entry {name} is too large")
    try:
        return archive.read(name)
    except (zipfile.BadZipFile, RuntimeError, NotImplementedError) as exc:
        raise errors.MalformedContainer(f"Cannot read {name}: {exc}") from exc


def _first_with_suffix(entries: list[str], *suffixes: str) -> str | None:
    return next(
        (name for name in entries if name.lower().endswith(suffixes)),
        None,
    )


def _geometries_from_zip(
    data: bytes,
    parser: ShapefileParser,
) -> list[GeoJSON]:
    """Decode a zip container, preferring shapefile, then KML, then GeoJSON."""
    with _open_archive(data) as archive:
        entries = sorted(_archive_entries(archive))

        shp_name = _first_with_suffix(entries, ".shp")
        if shp_name is not None:
            stem = shp_name[: -len(".shp")].lower()
            siblings = {
                name[len(stem):].lower(): name
                for name in entries
                if name.lower().startswith(stem)
            }

            def component(suffix: str) -> bytes | None:
                name = siblings.get(suffix)
                return _read_entry(archive, name) if name else None

            prj = component(".prj")
            collection = parser.parse(
                shp=_read_entry(archive, shp_name),
                shx=component(".shx"),
                dbf=component(".dbf"),
                prj=prj.decode("utf-8", errors="ignore") if prj else None,
            )
            return _extract_geometries(collection)

        kml_name = _first_with_suffix(entries, ".kml")
        if kml_name is not None:
            return _geometries_from_kml(_read_entry(archive, kml_name))

        json_name = _first_with_suffix(entries, ".geojson", ".json")
        if json_name is not None:
            return _extract_geometries(_load_json(_read_entry(archive, json_name)))

    raise errors.UnsupportedFormat("Archive has no shapefile, KML or GeoJSON entry")


def _geometries_from_kmz(data: bytes) -> list[GeoJSON]:
    with _open_archive(data) as archive:
        kml_name = _first_with_suffix(_archive_entries(archive), ".kml")
        if kml_name is None:
            raise errors.MissingKml()
        return _geometries_from_kml(_read_entry(archive, kml_name))


def _local_name(tag: object) -> str:
    return str(tag).rsplit("}", 1)[-1]


def _iter_named(
    element: ElementTree.Element, name: str
) -> Iterator[ElementTree.Element]:
    return (child for child in element.iter() if _local_name(child.tag) == name)


def _parse_coordinates(text: str) -> list[list[float]]:
    """Parse KML ``lon,lat[,alt]`` tuples into 2D points, skipping bad ones."""
    points: list[list[float]] = []
    for chunk in text.split():
        try:
            values = [float(part) for part in chunk.split(",") if part.strip()]
        except ValueError:
            continue
        if len(values) < 2 or any(v != v for v in values[:2]):
            continue
        points.append(values[:2])
    return points


def _closed_ring(points: list[list[float]]) -> list[list[float]]:
    return points if points[0] == points[-1] else [*points, points[0]]


def _placemark_geometry(
    placemark: ElementTree.Element,
    index: int,
) -> GeoJSON | None:
    name_node = next(_iter_named(placemark, "name"), None)
    name = (name_node.text or "").strip() if name_node is not None else ""
    name = name or f"Feature {index + 1}"

    coordinates_node = next(_iter_named(placemark, "coordinates"), None)
    points = _parse_coordinates(
        coordinates_node.text or "" if coordinates_node is not None else ""
    )
    if not points:
        logger.warning("Placemark %r has no usable coordinates", name)
        return None

    tags = {_local_name(element.tag) for element in placemark.iter()}
    if "Polygon" in tags:
        if len(points) < 4:
            logger.warning(
                "Polygon %r has too few coordinates (%d)", name, len(points)
            )
            return None
        return {"type": "Polygon", "coordinates": [_closed_ring(points)]}
    if "LineString" in tags and len(points) >= 2:
        return {"type": "LineString", "coordinates": points}
    if "Point" in tags and len(points) == 1:
        return {"type": "Point", "coordinates": points[0]}

    if len(points) == 1:
        return {"type": "Point", "coordinates": points[0]}
    if len(points) >= 4:
        return {"type": "Polygon", "coordinates": [_closed_ring(points)]}
    return {"type": "LineString", "coordinates": points}


def _placemark_geometries(placemarks: list[ElementTree.Element]) -> list[GeoJSON]:
    geometries = [
        geometry
        for index, placemark in enumerate(placemarks)
        if (geometry := _placemark_geometry(placemark, index)) is not None
    ]
    if not geometries:
        raise ValueError("No valid geometries found in KML placemarks")
    logger.debug("Extracted %d geometries from KML placemarks", len(geometries))
    return geometries


def _convert_kml_with_ogr(data: bytes) -> list[GeoJSON]:
    with tempfile.TemporaryDirectory() as tmpdir:
        source = pathlib.Path(tmpdir) / "upload.kml"
        source.write_bytes(data)
        return _extract_geometries(gdal_helpers.convert_to_geojson(source))


def _geometries_from_kml(data: bytes) -> list[GeoJSON]:
    """Decode KML placemarks, falling back to ogr2ogr conversion."""
    try:
        root = ElementTree.fromstring(data)
    except ElementTree.ParseError as exc:
        raise errors.ParseFailure(f"Invalid KML: {exc}") from exc

    placemarks = list(_iter_named(root, "Placemark"))
    manual_error: str | None = None
    if placemarks:
        try:
            return _placemark_geometries(placemarks)
        except ValueError as exc:
            manual_error = str(exc)
            logger.info("Placemark extraction failed (%s), trying ogr2ogr", exc)
    else:
        logger.info("KML has no placemarks, trying ogr2ogr")

    try:
        return _convert_kml_with_ogr(data)
    except (gdal_helpers.CommandError, errors.GeometryError) as exc:
        raise errors.ParseFailure(manual_error or str(exc)) from exc
