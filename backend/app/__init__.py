"""App package initializer for the parcel risk backend.

This package contains the backend that turns uploaded parcel boundaries
into canonical WGS84 geometries and derives environmental and risk data
for them in the background.

- Parses zipped shapefiles, bare .shp files, KML/KMZ and GeoJSON uploads
- Measures ellipsoidal area and perimeter at ingestion time
- Samples elevation, slope, climate heuristics and hazard scores
- Stores risk inputs and assessments in PostGIS and keeps the analytic
  materialized views refreshed

See module sub-docstrings for details on architecture and usage.
"""
