# MiastoAlert Duplicate Guard
# Rejects a report when one of the same type already sits inside a small
# axis-aligned box around it in the same city within the last five minutes.
#
# 0.002 degrees is roughly 200 m of latitude; the box is deliberately not a
# geodesic radius, so it is narrower east-west at higher latitudes.
#
# The check is read-only and runs before the insert. Two identical
# submissions racing each other can both pass; see SERIALIZE_DUPLICATES.

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from db import adapt_sql, get_engine

log = logging.getLogger("miastoalert")

DUPLICATE_WINDOW_SEC = 5 * 60
DUPLICATE_BOX_DEG = 0.002

# When true, lifecycle.create_report runs check and insert in one store
# transaction locked per (city, type).
SERIALIZE_DUPLICATES = os.environ.get(
    "MIASTOALERT_SERIALIZE_DUPLICATES", "false"
).lower() in ("1", "true", "yes")


@dataclass
class Candidate:
    type: str
    lat: float
    lng: float


def find_duplicate(conn, candidate: Candidate, city: str, now=None,
                   backend: str = "sqlite") -> Optional[str]:
    """Id of a matching recent report, or None. Internal use only."""
    now = time.time() if now is None else now
    row = conn.execute(
        adapt_sql(
            """
            SELECT id FROM reports
            WHERE city = ?
              AND type = ?
              AND created_at > ?
              AND abs(lat - ?) < ?
              AND abs(lng - ?) < ?
            LIMIT 1
            """,
            backend,
        ),
        (
            city, candidate.type, now - DUPLICATE_WINDOW_SEC,
            candidate.lat, DUPLICATE_BOX_DEG,
            candidate.lng, DUPLICATE_BOX_DEG,
        ),
    ).fetchone()
    return row["id"] if row else None


def should_reject(candidate: Candidate, city: str, now=None, conn=None,
                  backend: str = "sqlite") -> bool:
    """True when an equivalent report already exists nearby in time and space."""
    if conn is not None:
        existing = find_duplicate(conn, candidate, city, now=now, backend=backend)
    else:
        with get_engine().connection() as (read_conn, read_backend):
            existing = find_duplicate(read_conn, candidate, city, now=now, backend=read_backend)

    if existing:
        log.info(
            "DUPLICATE REJECTED city=%s type=%s lat=%.5f lng=%.5f matches=%s",
            city, candidate.type, candidate.lat, candidate.lng, existing,
        )
        return True
    return False
