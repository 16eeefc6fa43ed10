# MiastoAlert Report Lifecycle Engine
# Create (after the duplicate guard), list inside a visibility window,
# confirm once per user, delete through moderation, expire through the sweep.
#
# Report lifecycle:
#   created ── visible for 60 min ── expired (hidden) ── swept (deleted)
#                   │
#                   └── deleted by moderator/owner (author rating -1)
#
# All coordination is the store's: cross-entity mutations run in a single
# transaction and no engine operation waits on another in-process.

import logging
import math
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

import reputation
from db import adapt_sql, get_engine
from duplicates import SERIALIZE_DUPLICATES, Candidate, find_duplicate, should_reject
from errors import AlreadyConfirmed, DuplicateReport, MiastoAlertError, NotFound, ValidationError
from identity import Caller, UserStore, ensure_active

LOG_FILE = os.environ.get(
    "MIASTOALERT_LOG_FILE", os.path.join(os.path.dirname(__file__), "miastoalert.log")
)


# ── Logging ──────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file handlers on the shared "miastoalert" logger."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("miastoalert")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


log = setup_logging()


# ── Report model ─────────────────────────────────────────────────────


class ReportType(str, Enum):
    POLICE_CHECKPOINT = "policja"
    TICKET_INSPECTION = "kontrola"


_TYPE_ALIASES = {
    "policja": ReportType.POLICE_CHECKPOINT,
    "policecheckpoint": ReportType.POLICE_CHECKPOINT,
    "kontrola": ReportType.TICKET_INSPECTION,
    "ticketinspection": ReportType.TICKET_INSPECTION,
}

VISIBILITY_WINDOW_SEC = 60 * 60
SUPPORTED_WINDOWS_MIN = (30, 60)
DEFAULT_WINDOW_MIN = 30
SWEEP_INTERVAL_SEC = int(os.environ.get("MIASTOALERT_SWEEP_INTERVAL_SEC", "60"))

MAX_LOCATION_LENGTH = 200
MAX_LABEL_LENGTH = 50


@dataclass
class Report:
    id: str
    city: str
    type: str
    location: str
    lat: float
    lng: float
    created_at: float
    bus_number: Optional[str] = None
    direction: Optional[str] = None
    author_id: Optional[str] = None
    confirmation_count: int = 0

    @property
    def expires_at(self) -> float:
        return self.created_at + VISIBILITY_WINDOW_SEC

    def to_dict(self) -> dict:
        d = asdict(self)
        d["expires_at"] = self.expires_at
        return d


def _report_from_row(row) -> Report:
    r = dict(row)
    return Report(
        id=r["id"],
        city=r["city"],
        type=r["type"],
        location=r["location"],
        bus_number=r.get("bus_number"),
        direction=r.get("direction"),
        lat=float(r["lat"]),
        lng=float(r["lng"]),
        created_at=float(r["created_at"]),
        author_id=r.get("user_id"),
        confirmation_count=int(r.get("confirmation_count") or 0),
    )


_REPORT_SELECT = """
    SELECT r.id, r.city, r.type, r.location, r.bus_number, r.direction,
           r.lat, r.lng, r.created_at, r.user_id,
           COUNT(c.user_id) AS confirmation_count
    FROM reports r
    LEFT JOIN confirmations c ON c.report_id = r.id
"""


# ── Validation ───────────────────────────────────────────────────────


def parse_report_type(value) -> ReportType:
    if isinstance(value, ReportType):
        return value
    if not isinstance(value, str):
        raise ValidationError("Invalid report type.")
    rtype = _TYPE_ALIASES.get(value.strip().lower())
    if rtype is None:
        raise ValidationError(f"Invalid report type: {value!r}")
    return rtype


def _coordinate(value, label, bound) -> float:
    # bool is an int subclass; a JSON true is not a coordinate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{label} must be a number.")
    value = float(value)
    if not math.isfinite(value) or abs(value) > bound:
        raise ValidationError(f"{label} out of range.")
    return value


def _optional_label(value, label) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be text.")
    value = value.strip()
    if len(value) > MAX_LABEL_LENGTH:
        raise ValidationError(f"{label} longer than {MAX_LABEL_LENGTH} characters.")
    return value or None


def validate_report_input(data: dict) -> dict:
    """Normalize client input. City and author are never read from here."""
    location = data.get("location")
    if not isinstance(location, str) or not location.strip():
        raise ValidationError("Street or stop is required.")
    location = location.strip()
    if len(location) > MAX_LOCATION_LENGTH:
        raise ValidationError(f"Location longer than {MAX_LOCATION_LENGTH} characters.")

    return {
        "type": parse_report_type(data.get("type")).value,
        "location": location,
        "bus_number": _optional_label(data.get("bus_number"), "Bus number"),
        "direction": _optional_label(data.get("direction"), "Direction"),
        "lat": _coordinate(data.get("lat"), "Latitude", 90.0),
        "lng": _coordinate(data.get("lng"), "Longitude", 180.0),
    }


def clamp_window(minutes) -> int:
    """30 or 60; anything else falls back to 30."""
    try:
        minutes = int(minutes)
    except (TypeError, ValueError):
        return DEFAULT_WINDOW_MIN
    return minutes if minutes in SUPPORTED_WINDOWS_MIN else DEFAULT_WINDOW_MIN


# ── Create / read ────────────────────────────────────────────────────


def _fetch_report(conn, report_id, backend="sqlite") -> Optional[Report]:
    row = conn.execute(
        adapt_sql(_REPORT_SELECT + " WHERE r.id = ? GROUP BY r.id", backend),
        (report_id,),
    ).fetchone()
    return _report_from_row(row) if row else None


def _insert_report(conn, report_id, city, fields, author_id, created_at, backend="sqlite"):
    conn.execute(
        adapt_sql(
            """
            INSERT INTO reports (id, city, type, location, bus_number, direction,
                                 lat, lng, created_at, user_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            backend,
        ),
        (
            report_id, city, fields["type"], fields["location"],
            fields["bus_number"], fields["direction"],
            fields["lat"], fields["lng"], created_at, author_id,
        ),
    )


def create_report(caller: Caller, data: dict, now=None) -> Report:
    """Create a report in the caller's city after the duplicate check."""
    ensure_active(caller)
    if not caller.has_city:
        raise ValidationError("Select a city before reporting.")

    fields = validate_report_input(data)
    now = time.time() if now is None else now
    candidate = Candidate(type=fields["type"], lat=fields["lat"], lng=fields["lng"])
    report_id = f"rep_{uuid.uuid4()}"
    engine = get_engine()

    if SERIALIZE_DUPLICATES:
        with engine.transaction() as (conn, backend):
            engine.lock_key(conn, f"{caller.city}:{fields['type']}")
            if find_duplicate(conn, candidate, caller.city, now=now, backend=backend):
                raise DuplicateReport(
                    "A similar report nearby was already added in the last 5 minutes."
                )
            _insert_report(conn, report_id, caller.city, fields, caller.id, now, backend)
            report = _fetch_report(conn, report_id, backend)
    else:
        if should_reject(candidate, caller.city, now=now):
            raise DuplicateReport(
                "A similar report nearby was already added in the last 5 minutes."
            )
        with engine.transaction() as (conn, backend):
            _insert_report(conn, report_id, caller.city, fields, caller.id, now, backend)
            report = _fetch_report(conn, report_id, backend)

    log.info(
        "REPORT CREATED %s city=%s type=%s author=%s lat=%.5f lng=%.5f",
        report.id, report.city, report.type, caller.id, report.lat, report.lng,
    )
    return report


def get_report(report_id: str) -> Optional[Report]:
    """Fetch one report regardless of age. Listing is what applies the window."""
    with get_engine().connection() as (conn, backend):
        return _fetch_report(conn, report_id, backend)


def list_reports(city: str, window_minutes=DEFAULT_WINDOW_MIN, now=None) -> list:
    """Reports of `city` created within the window, newest first."""
    if not city:
        raise ValidationError("City is required.")
    minutes = clamp_window(window_minutes)
    now = time.time() if now is None else now
    since = now - minutes * 60

    with get_engine().connection() as (conn, backend):
        rows = conn.execute(
            adapt_sql(
                _REPORT_SELECT
                + " WHERE r.city = ? AND r.created_at > ?"
                " GROUP BY r.id ORDER BY r.created_at DESC",
                backend,
            ),
            (city, since),
        ).fetchall()
    return [_report_from_row(r) for r in rows]


def list_recent_reports(limit=200) -> list:
    """All cities, newest first, for the moderation overview."""
    with get_engine().connection() as (conn, backend):
        rows = conn.execute(
            adapt_sql(_REPORT_SELECT + " GROUP BY r.id ORDER BY r.created_at DESC LIMIT ?", backend),
            (limit,),
        ).fetchall()
    return [_report_from_row(r) for r in rows]


# ── Confirmation ─────────────────────────────────────────────────────


def confirm_report(caller: Caller, report_id: str, now=None):
    """Record the caller's confirmation and credit the report's author.

    The confirmation row and the rating increment commit together. The
    composite key decides between concurrent double confirmations.
    """
    ensure_active(caller)
    now = time.time() if now is None else now

    with get_engine().transaction() as (conn, backend):
        # FOR SHARE keeps a concurrent delete from removing the row under us
        lock = " FOR SHARE" if backend == "postgres" else ""
        row = conn.execute(
            adapt_sql("SELECT user_id FROM reports WHERE id = ?" + lock, backend),
            (report_id,),
        ).fetchone()
        if not row:
            raise NotFound("Report does not exist.")

        cur = conn.execute(
            adapt_sql(
                "INSERT INTO confirmations (user_id, report_id, confirmed_at) VALUES (?, ?, ?) "
                "ON CONFLICT (user_id, report_id) DO NOTHING",
                backend,
            ),
            (caller.id, report_id, now),
        )
        if cur.rowcount == 0:
            raise AlreadyConfirmed("You already confirmed this report.")

        author_id = row["user_id"]
        reputation.record_confirmation_received(conn, author_id, report_id, backend=backend)

    log.info("REPORT CONFIRMED %s by=%s author=%s", report_id, caller.id, author_id or "-")


# ── Deletion ─────────────────────────────────────────────────────────


def delete_report(report_id: str) -> dict:
    """Hard-delete a report and its confirmations; live author rating -1.

    Role gating belongs to moderation.delete_report.
    """
    with get_engine().transaction() as (conn, backend):
        rows = conn.execute(
            adapt_sql("DELETE FROM reports WHERE id = ? RETURNING user_id", backend),
            (report_id,),
        ).fetchall()
        if not rows:
            raise NotFound("Report does not exist.")
        author_id = rows[0]["user_id"]
        penalized = reputation.record_report_removed(conn, author_id, report_id, backend=backend)

    log.info("REPORT DELETED %s author=%s penalized=%s", report_id, author_id or "-", penalized)
    return {"report_id": report_id, "author_id": author_id, "author_penalized": penalized}


# ── Expiry sweep ─────────────────────────────────────────────────────


def sweep_expired(now=None) -> int:
    """Delete reports older than the visibility window. Ratings are untouched."""
    now = time.time() if now is None else now
    cutoff = now - VISIBILITY_WINDOW_SEC
    with get_engine().transaction() as (conn, backend):
        cur = conn.execute(
            adapt_sql("DELETE FROM reports WHERE created_at < ?", backend),
            (cutoff,),
        )
        removed = cur.rowcount
    if removed:
        log.info("SWEEP removed %d expired report(s)", removed)
    return removed


def sweep_tick(now=None) -> dict:
    """One scheduled run. Failures are logged and swallowed; the next tick retries."""
    result = {"reports_removed": 0, "sessions_removed": 0, "ok": True}
    try:
        result["reports_removed"] = sweep_expired(now=now)
    except MiastoAlertError as e:
        result["ok"] = False
        log.error("SWEEP FAILED: %s", e)
    except Exception:
        result["ok"] = False
        log.exception("SWEEP FAILED with unexpected error")

    try:
        result["sessions_removed"] = UserStore.cleanup_expired_sessions(now=now)
    except MiastoAlertError as e:
        log.warning("SESSION CLEANUP FAILED: %s", e)
    except Exception:
        log.exception("SESSION CLEANUP FAILED with unexpected error")
    return result


def sweep_loop(interval=SWEEP_INTERVAL_SEC, callback=None, stop_event=None):
    """
    Sweep every `interval` seconds until `stop_event` is set.
    Run this in a thread.
    """
    stop_event = stop_event or threading.Event()
    while not stop_event.is_set():
        result = sweep_tick()
        if callback:
            try:
                callback(result)
            except Exception:
                log.exception("SWEEP callback failed")
        stop_event.wait(interval)


def start_sweep_monitor(interval=SWEEP_INTERVAL_SEC, callback=None, stop_event=None):
    """Start the sweep loop in a background thread. Fire and forget."""
    t = threading.Thread(
        target=sweep_loop, args=(interval, callback, stop_event),
        name="miastoalert-sweep", daemon=True,
    )
    t.start()
    log.info("SWEEP MONITOR started (interval=%ds)", interval)
    return t
