"""Domain errors raised while turning uploads into parcel geometries.

Every failure on the synchronous parse/measure path is a subclass of
``GeometryError``. Each subclass carries a stable ``code`` and a
user-facing ``message`` so API handlers can render a consistent response
without inspecting exception text.

Example:
    Map an error to a response body:
        >>> from app.core import errors
        >>> try:
        ...     raise errors.UnsupportedFormat()
        ... except errors.GeometryError as exc:
        ...     body = exc.to_dict()
        >>> body["code"]
        'unsupported_format'
"""

from __future__ import annotations

GEOMETRY_MESSAGES: dict[str, str] = {
    "unsupported_format": (
        "Unsupported file format. Please upload a valid .zip (Shapefile), "
        ".shp, .geojson, .json, .kml, or .kmz file."
    ),
    "empty_geometry": "Uploaded file contains no features or valid geometry.",
    "malformed_container": "Uploaded archive is corrupt or not a zip file.",
    "missing_kml": "KMZ archive does not contain a valid .kml file.",
    "parse_failure": "Failed to parse geometry data.",
    "geometry_invalid": "Invalid geometry structure or coordinates.",
}


class GeometryError(ValueError):
    """Base class for geometry parsing and validation failures.

    Attributes:
        code: Stable machine-readable identifier of the failure kind.
        message: User-facing message.
        details: Optional technical detail (parser message, validity reason).
    """

    code = "geometry_error"

    def __init__(self, details: str | None = None) -> None:
        self.message = GEOMETRY_MESSAGES.get(self.code, "Geometry error.")
        self.details = details
        super().__init__(
            f"{self.message} ({details})" if details else self.message
        )

    def to_dict(self) -> dict[str, str]:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class UnsupportedFormat(GeometryError):
    code = "unsupported_format"


class EmptyGeometry(GeometryError):
    code = "empty_geometry"


class MalformedContainer(GeometryError):
    code = "malformed_container"


class MissingKml(GeometryError):
    code = "missing_kml"


class ParseFailure(GeometryError):
    code = "parse_failure"


class GeometryInvalid(GeometryError):
    code = "geometry_invalid"
