from __future__ import annotations
import os


def _int_or_none(value: str | None) -> int | None:
    return int(value) if value else None


# "redis://...", "memory://", or a directory path
CACHE_URL = os.environ.get("CIFLOW_CACHE", ".ciflow/cache")
CACHE_KEEP = int(os.environ.get("CIFLOW_CACHE_KEEP", "5"))
CACHE_TTL = _int_or_none(os.environ.get("CIFLOW_CACHE_TTL"))  # seconds, redis only
WORKERS = _int_or_none(os.environ.get("CIFLOW_WORKERS"))      # default: one per job
GRACE_SECONDS = float(os.environ.get("CIFLOW_GRACE_SECONDS", "5"))
RUN_HISTORY = int(os.environ.get("CIFLOW_RUN_HISTORY", "100"))  # finished runs the server remembers
