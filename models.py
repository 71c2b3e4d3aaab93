"""
SQLite persistence for AssetLink selections, analyses and events.

This module is the default selection store: it implements the same
store contract as rest_store.RestStore (insert_selection, get_selections,
link_session_selections, set_missing_analysis_id, save_analysis,
get_latest_analysis_id, link_session_analyses), so callers pass the
module itself wherever a store is expected.

No ORM, just raw sqlite3. Every write that re-tags or back-fills is a
conditional UPDATE, so running it twice is harmless.
"""

import sqlite3
import os
import json
import time
import uuid
import logging
import functools
from datetime import datetime, timezone
from typing import Optional

from al_trace import get_trace

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("ASSETLINK_DB_PATH", "assetlink.db")

SELECTIONS_TABLE = "user_asset_selections"
ANALYSES_TABLE = "user_property_analyses"


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript(f"""
        CREATE TABLE IF NOT EXISTS {SELECTIONS_TABLE} (
            id              TEXT PRIMARY KEY,
            user_id         TEXT,
            session_id      TEXT,
            analysis_id     TEXT,
            asset_type      TEXT NOT NULL,
            asset_data      TEXT NOT NULL DEFAULT '{{}}',
            monthly_revenue REAL NOT NULL DEFAULT 0,
            setup_cost      REAL NOT NULL DEFAULT 0,
            roi_months      REAL,
            status          TEXT NOT NULL DEFAULT 'selected',
            selected_at     TEXT NOT NULL,
            CHECK ((user_id IS NULL) <> (session_id IS NULL))
        );
        CREATE INDEX IF NOT EXISTS idx_selections_user ON {SELECTIONS_TABLE}(user_id);
        CREATE INDEX IF NOT EXISTS idx_selections_session ON {SELECTIONS_TABLE}(session_id);
        CREATE INDEX IF NOT EXISTS idx_selections_analysis ON {SELECTIONS_TABLE}(analysis_id);

        CREATE TABLE IF NOT EXISTS {ANALYSES_TABLE} (
            id                    TEXT PRIMARY KEY,
            user_id               TEXT,
            session_id            TEXT,
            property_address      TEXT NOT NULL,
            analysis_results      TEXT,
            total_monthly_revenue REAL NOT NULL DEFAULT 0,
            total_opportunities   INTEGER NOT NULL DEFAULT 0,
            created_at            TEXT NOT NULL,
            CHECK ((user_id IS NULL) <> (session_id IS NULL))
        );
        CREATE INDEX IF NOT EXISTS idx_analyses_user ON {ANALYSES_TABLE}(user_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_analyses_session ON {ANALYSES_TABLE}(session_id);

        CREATE TABLE IF NOT EXISTS events (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type  TEXT NOT NULL,
            user_id     TEXT,
            session_id  TEXT,
            metadata    TEXT,
            created_at  TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
    """)
    conn.commit()
    conn.close()


def generate_id():
    """Opaque row identifier."""
    return str(uuid.uuid4())


def utc_now_iso():
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _traced(endpoint):
    """Record the wrapped store call on the current trace, if any."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            start = time.monotonic()
            status = 200
            try:
                return fn(*args, **kwargs)
            except sqlite3.Error:
                status = 500
                raise
            finally:
                trace = get_trace()
                if trace:
                    trace.record_backend_call(
                        service="sqlite",
                        endpoint=endpoint,
                        elapsed_ms=int((time.monotonic() - start) * 1000),
                        status_code=status,
                    )
        return wrapper
    return decorator


def _selection_from_row(row):
    data = dict(row)
    try:
        data["asset_data"] = json.loads(data.get("asset_data") or "{}")
    except (json.JSONDecodeError, TypeError):
        logger.error("Corrupted asset_data for selection %s", data.get("id"))
        data["asset_data"] = {}
    return data


# ---------------------------------------------------------------------------
# Asset selections
# ---------------------------------------------------------------------------

@_traced("insert_selection")
def insert_selection(row):
    """
    Insert one selection row and return it as stored.

    row must carry exactly one of user_id / session_id; the table's CHECK
    constraint rejects anything else with sqlite3.IntegrityError.
    id and selected_at are generated when missing.
    """
    record = {
        "id": row.get("id") or generate_id(),
        "user_id": row.get("user_id"),
        "session_id": row.get("session_id"),
        "analysis_id": row.get("analysis_id"),
        "asset_type": row["asset_type"],
        "asset_data": row.get("asset_data") or {},
        "monthly_revenue": row.get("monthly_revenue") or 0,
        "setup_cost": row.get("setup_cost") or 0,
        "roi_months": row.get("roi_months"),
        "status": row.get("status") or "selected",
        "selected_at": row.get("selected_at") or utc_now_iso(),
    }
    conn = _get_db()
    try:
        conn.execute(
            f"""INSERT INTO {SELECTIONS_TABLE}
               (id, user_id, session_id, analysis_id, asset_type, asset_data,
                monthly_revenue, setup_cost, roi_months, status, selected_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record["id"],
                record["user_id"],
                record["session_id"],
                record["analysis_id"],
                record["asset_type"],
                json.dumps(record["asset_data"]),
                record["monthly_revenue"],
                record["setup_cost"],
                record["roi_months"],
                record["status"],
                record["selected_at"],
            ),
        )
        conn.commit()
    finally:
        conn.close()
    return record


@_traced("get_selections")
def get_selections(user_id=None, session_id=None):
    """
    Raw selection rows for one owner, most recent first.

    Session lookups only return rows that have not been linked to a user.
    Ties on selected_at are ordered by id so the order is deterministic.
    Returns [] when neither owner is given.
    """
    if user_id:
        where, params = "user_id = ?", (user_id,)
    elif session_id:
        where, params = "session_id = ? AND user_id IS NULL", (session_id,)
    else:
        return []

    conn = _get_db()
    try:
        rows = conn.execute(
            f"SELECT * FROM {SELECTIONS_TABLE} WHERE {where} ORDER BY selected_at DESC, id ASC",
            params,
        ).fetchall()
    finally:
        conn.close()
    return [_selection_from_row(r) for r in rows]


@_traced("get_selections_by_analysis")
def get_selections_by_analysis(analysis_id):
    conn = _get_db()
    try:
        rows = conn.execute(
            f"SELECT * FROM {SELECTIONS_TABLE} WHERE analysis_id = ? ORDER BY selected_at DESC, id ASC",
            (analysis_id,),
        ).fetchall()
    finally:
        conn.close()
    return [_selection_from_row(r) for r in rows]


def get_selection(selection_id):
    """Load one selection by id, or None."""
    conn = _get_db()
    try:
        row = conn.execute(
            f"SELECT * FROM {SELECTIONS_TABLE} WHERE id = ?", (selection_id,)
        ).fetchone()
    finally:
        conn.close()
    return _selection_from_row(row) if row else None


@_traced("link_session_selections")
def link_session_selections(session_id, user_id):
    """
    Re-tag anonymous selections of session_id with user_id.

    Only rows with no user_id match, so a second run links 0 rows and a
    row that already belongs to a user is never touched.
    Returns the number of rows linked.
    """
    conn = _get_db()
    try:
        cur = conn.execute(
            f"""UPDATE {SELECTIONS_TABLE}
               SET user_id = ?, session_id = NULL
               WHERE session_id = ? AND user_id IS NULL""",
            (user_id, session_id),
        )
        changed = cur.rowcount
        conn.commit()
    finally:
        conn.close()
    return changed


@_traced("set_missing_analysis_id")
def set_missing_analysis_id(analysis_id, user_id=None, session_id=None):
    """
    Set analysis_id on the owner's selections that have none.

    Existing analysis ids are never overwritten. Returns rows updated.
    """
    if user_id:
        where, params = "user_id = ?", (user_id,)
    elif session_id:
        where, params = "session_id = ? AND user_id IS NULL", (session_id,)
    else:
        return 0

    conn = _get_db()
    try:
        cur = conn.execute(
            f"""UPDATE {SELECTIONS_TABLE}
               SET analysis_id = ?
               WHERE {where} AND analysis_id IS NULL""",
            (analysis_id, *params),
        )
        changed = cur.rowcount
        conn.commit()
    finally:
        conn.close()
    return changed


# ---------------------------------------------------------------------------
# Property analyses
# ---------------------------------------------------------------------------

@_traced("save_analysis")
def save_analysis(property_address, analysis_results, user_id=None, session_id=None,
                  total_monthly_revenue=0, total_opportunities=0, created_at=None):
    """Persist a property analysis for a user or an anonymous session. Returns the row."""
    record = {
        "id": generate_id(),
        "user_id": user_id,
        "session_id": None if user_id else session_id,
        "property_address": property_address,
        "analysis_results": analysis_results,
        "total_monthly_revenue": total_monthly_revenue or 0,
        "total_opportunities": total_opportunities or 0,
        "created_at": created_at or utc_now_iso(),
    }
    conn = _get_db()
    try:
        conn.execute(
            f"""INSERT INTO {ANALYSES_TABLE}
               (id, user_id, session_id, property_address, analysis_results,
                total_monthly_revenue, total_opportunities, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record["id"],
                record["user_id"],
                record["session_id"],
                property_address,
                json.dumps(analysis_results) if analysis_results is not None else None,
                record["total_monthly_revenue"],
                record["total_opportunities"],
                record["created_at"],
            ),
        )
        conn.commit()
    finally:
        conn.close()
    return record


def get_analysis(analysis_id) -> Optional[dict]:
    """Load one analysis by id with analysis_results parsed, or None."""
    conn = _get_db()
    try:
        row = conn.execute(
            f"SELECT * FROM {ANALYSES_TABLE} WHERE id = ?", (analysis_id,)
        ).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    data = dict(row)
    if data.get("analysis_results"):
        try:
            data["analysis_results"] = json.loads(data["analysis_results"])
        except (json.JSONDecodeError, TypeError) as e:
            logger.error("Corrupted analysis_results for analysis %s: %s", analysis_id, e)
            data["analysis_results"] = None
    return data


@_traced("get_latest_analysis_id")
def get_latest_analysis_id(user_id) -> Optional[str]:
    """
    Id of the user's most recently created analysis that has results.
    Ties on created_at resolve to the lowest id.
    """
    if not user_id:
        return None
    conn = _get_db()
    try:
        row = conn.execute(
            f"""SELECT id FROM {ANALYSES_TABLE}
               WHERE user_id = ? AND analysis_results IS NOT NULL
               ORDER BY created_at DESC, id ASC LIMIT 1""",
            (user_id,),
        ).fetchone()
    finally:
        conn.close()
    return row["id"] if row else None


@_traced("link_session_analyses")
def link_session_analyses(session_id, user_id):
    """Re-tag the session's anonymous analyses with user_id. Returns rows linked."""
    conn = _get_db()
    try:
        cur = conn.execute(
            f"""UPDATE {ANALYSES_TABLE}
               SET user_id = ?, session_id = NULL
               WHERE session_id = ? AND user_id IS NULL""",
            (user_id, session_id),
        )
        changed = cur.rowcount
        conn.commit()
    finally:
        conn.close()
    return changed


# ---------------------------------------------------------------------------
# Analytics events
# ---------------------------------------------------------------------------

def log_event(event_type, user_id=None, session_id=None, metadata=None):
    """
    Append an analytics event.

    event_type: one of selection_recorded, analysis_recorded,
                reconcile_completed, reconcile_partial_failure,
                persistence_error
    metadata:   optional dict of extra info
    """
    now = utc_now_iso()
    conn = _get_db()
    try:
        conn.execute(
            """INSERT INTO events (event_type, user_id, session_id, metadata, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                event_type,
                user_id,
                session_id,
                json.dumps(metadata, default=str) if metadata else None,
                now,
            ),
        )
        conn.commit()
    finally:
        conn.close()


def safe_log_event(event_type, **kwargs):
    """log_event that never raises; telemetry must not break a request."""
    try:
        log_event(event_type, **kwargs)
    except Exception:
        logger.warning("Failed to log %s event", event_type, exc_info=True)


def get_event_counts():
    """Event counts by type, e.g. {"selection_recorded": 12, ...}."""
    conn = _get_db()
    try:
        rows = conn.execute(
            "SELECT event_type, COUNT(*) as cnt FROM events GROUP BY event_type"
        ).fetchall()
    finally:
        conn.close()
    return {row["event_type"]: row["cnt"] for row in rows}
