"""
Celery worker entry point for the sync service.

Run with: celery -A main worker --beat (from apps/worker, with apps/api importable).
"""
import os
import sys

# The worker image mounts the API package at /api; locally fall back to the sibling checkout.
API_DIR = os.environ.get("SYNC_API_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "api"))
sys.path.insert(0, API_DIR)

from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()

app = celery_app


@celery_app.task(name="worker.health_check")
def health_check():
    """Liveness probe for the worker and broker."""
    return {"status": "ok", "tasks": sorted(t for t in celery_app.tasks if t.startswith("tasks."))}
