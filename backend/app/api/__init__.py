"""API router subpackage for the parcel risk backend.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - parcels: Endpoints for parsing boundaries and creating, updating and
      reading parcels and their risk data.
    - views: Endpoints for refreshing materialized views and reading their
      refresh status.
"""
