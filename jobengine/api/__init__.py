"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface to:
- create, list and inspect background jobs (status, progress, audit log)
- cancel pending jobs and retry failed ones
- trigger execution of the next due job (shared-secret protected)

The API is intentionally thin: core behavior lives in `jobengine/runtime` and `jobengine/storage`.
"""
