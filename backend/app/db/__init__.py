"""Database interface and repository abstractions.

This package consolidates the repository protocols and implementations for
parcels, derived risk data and materialized view status. It provides a
stable import location for repository dependency injection throughout the
application, supporting production (PostgreSQL/PostGIS) and in-memory
backends.

Example:
    Build the production repositories:
        >>> from app.db import database, views
        >>> parcels = database.get_parcel_repository(settings)
        >>> view_store = views.get_view_store(settings)
"""
