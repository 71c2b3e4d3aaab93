"""
Asset selections: recording, deduplicated reads, and the read-side cache.

A selection is one user choice to monetize one property asset. Every row
is tagged with exactly one owner: a user id once the browser has signed
in and been reconciled, or the anonymous session id before that.

Reads never show raw rows. A user who picks "parking" twice has two rows;
list_active_selections() shows only the most recent one per asset type,
and the revenue/setup totals are summed over that deduplicated set.
"""

import json
import logging
import math
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from signals import selections_changed

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """The backend read or write behind a user-initiated operation failed."""

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


# =============================================================================
# Types
# =============================================================================

@dataclass(frozen=True)
class OwnerRef:
    """Exactly one of user_id / session_id."""
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.user_id) == bool(self.session_id):
            raise ValueError("OwnerRef needs exactly one of user_id or session_id")

    @classmethod
    def for_user(cls, user_id: str) -> "OwnerRef":
        return cls(user_id=user_id)

    @classmethod
    def for_session(cls, session_id: str) -> "OwnerRef":
        return cls(session_id=session_id)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def key(self) -> tuple:
        return ("user", self.user_id) if self.user_id else ("session", self.session_id)

    def as_columns(self) -> Dict[str, Optional[str]]:
        return {"user_id": self.user_id, "session_id": self.session_id}


@dataclass
class AssetSelection:
    id: str
    owner: OwnerRef
    asset_type: str
    asset_data: Dict[str, Any]
    monthly_revenue: float
    setup_cost: float
    selected_at: str
    roi_months: Optional[float] = None
    analysis_id: Optional[str] = None
    status: str = "selected"

    @classmethod
    def from_row(cls, row: dict) -> "AssetSelection":
        return cls(
            id=row["id"],
            owner=OwnerRef(user_id=row.get("user_id"), session_id=row.get("session_id")),
            asset_type=row["asset_type"],
            asset_data=row.get("asset_data") or {},
            monthly_revenue=float(row.get("monthly_revenue") or 0),
            setup_cost=float(row.get("setup_cost") or 0),
            selected_at=row["selected_at"],
            roi_months=row.get("roi_months"),
            analysis_id=row.get("analysis_id"),
            status=row.get("status") or "selected",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.owner.user_id,
            "session_id": self.owner.session_id,
            "analysis_id": self.analysis_id,
            "asset_type": self.asset_type,
            "asset_data": self.asset_data,
            "monthly_revenue": self.monthly_revenue,
            "setup_cost": self.setup_cost,
            "roi_months": self.roi_months,
            "status": self.status,
            "selected_at": self.selected_at,
        }


@dataclass
class SelectionView:
    """Deduplicated selections for one owner plus aggregates over them."""
    owner: OwnerRef
    selections: List[AssetSelection] = field(default_factory=list)
    raw_count: int = 0

    @property
    def total_monthly_revenue(self) -> float:
        return sum(s.monthly_revenue for s in self.selections)

    @property
    def total_setup_cost(self) -> float:
        return sum(s.setup_cost for s in self.selections)

    def to_dict(self) -> dict:
        return {
            "selections": [s.to_dict() for s in self.selections],
            "count": len(self.selections),
            "raw_count": self.raw_count,
            "total_monthly_revenue": self.total_monthly_revenue,
            "total_setup_cost": self.total_setup_cost,
        }


# =============================================================================
# Validation helpers
# =============================================================================

def _check_amount(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    value = float(value)
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be a non-negative number, got {value!r}")
    return value


def validate_asset_data(asset_data) -> Dict[str, Any]:
    """None becomes {}; anything but a JSON-serializable mapping is rejected."""
    if asset_data is None:
        return {}
    if not isinstance(asset_data, dict):
        raise ValueError(f"asset_data must be an object, got {type(asset_data).__name__}")
    try:
        json.dumps(asset_data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"asset_data is not JSON-serializable: {e}") from e
    return asset_data


_FRACTION_RE = re.compile(r"\.(\d+)")
_SHORT_OFFSET_RE = re.compile(r"(\d{2}:\d{2}(?:\.\d+)?[+-]\d{2})$")


def compute_roi_months(setup_cost: float, monthly_revenue: float) -> Optional[float]:
    """Months to recoup setup_cost, or None when there is no revenue."""
    if monthly_revenue <= 0:
        return None
    return round(setup_cost / monthly_revenue, 1)


def _parse_ts(value: str) -> datetime:
    """
    ISO-8601 timestamp as an aware datetime (naive values are UTC).

    PostgREST trims trailing zeros from fractional seconds and may send a
    "Z" or "+HH" offset; those are normalised so fromisoformat() on every
    supported Python accepts them.
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    value = _SHORT_OFFSET_RE.sub(r"\1:00", value)
    value = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# =============================================================================
# Recording
# =============================================================================

def record_selection(
    store,
    identity,
    asset_type: str,
    asset_data,
    monthly_revenue,
    setup_cost=0,
    roi_months=None,
    analysis_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> str:
    """
    Persist one asset selection and return its id.

    The row is tagged with user_id when given, otherwise with the browser's
    anonymous session id (created on first use). analysis_id falls back to
    the identity's active analysis; if there is none the row is written
    without one and back-filled later.

    Raises ValueError for bad input and PersistenceError when the store
    write fails. Nothing is retried here.
    """
    if not isinstance(asset_type, str) or not asset_type.strip():
        raise ValueError("asset_type is required")
    monthly_revenue = _check_amount("monthly_revenue", monthly_revenue)
    setup_cost = _check_amount("setup_cost", setup_cost if setup_cost is not None else 0)
    if roi_months is not None:
        roi_months = _check_amount("roi_months", roi_months)
    else:
        roi_months = compute_roi_months(setup_cost, monthly_revenue)
    asset_data = validate_asset_data(asset_data)

    if user_id:
        owner = OwnerRef.for_user(user_id)
    else:
        owner = OwnerRef.for_session(identity.get_or_create_session_id())

    if not analysis_id:
        analysis_id = identity.get_active_analysis_id()

    row = {
        **owner.as_columns(),
        "analysis_id": analysis_id or None,
        "asset_type": asset_type.strip(),
        "asset_data": asset_data,
        "monthly_revenue": monthly_revenue,
        "setup_cost": setup_cost,
        "roi_months": roi_months,
        "status": "selected",
    }
    try:
        saved = store.insert_selection(row)
    except Exception as e:
        logger.error("Failed to save %s selection for %s: %s", asset_type, owner.key, e)
        raise PersistenceError(f"Could not save {asset_type} selection", cause=e) from e

    logger.info(
        "Saved %s selection %s for %s=%s (analysis=%s)",
        row["asset_type"], saved["id"], owner.key[0], owner.key[1], analysis_id or "-",
    )
    return saved["id"]


def record_selections(store, identity, assets: List[dict], user_id: Optional[str] = None) -> List[dict]:
    """
    Record several selections, one write each.

    Returns one result per input: {"asset_type", "id"} on success or
    {"asset_type", "error", "retry"} on failure. A bad or failed asset
    does not stop the others.
    """
    results = []
    for asset in assets:
        asset_type = asset.get("asset_type") if isinstance(asset, dict) else None
        try:
            if not isinstance(asset, dict):
                raise ValueError("each asset must be an object")
            selection_id = record_selection(
                store,
                identity,
                asset_type,
                asset.get("asset_data"),
                asset.get("monthly_revenue"),
                setup_cost=asset.get("setup_cost", 0),
                roi_months=asset.get("roi_months"),
                analysis_id=asset.get("analysis_id"),
                user_id=user_id,
            )
            results.append({"asset_type": asset_type, "id": selection_id})
        except ValueError as e:
            results.append({"asset_type": asset_type, "error": str(e), "retry": False})
        except PersistenceError as e:
            results.append({"asset_type": asset_type, "error": str(e), "retry": True})
    return results


# =============================================================================
# Reading
# =============================================================================

def dedupe_selections(selections: List[AssetSelection]) -> List[AssetSelection]:
    """
    Keep the most recent selection per case-insensitive asset type.

    On an exact selected_at tie the first one encountered wins, so the
    result depends only on the input order (stores return selected_at
    DESC, id ASC). Output is ordered most recent first.
    """
    latest: Dict[str, AssetSelection] = {}
    for selection in selections:
        key = selection.asset_type.lower()
        current = latest.get(key)
        if current is None or _parse_ts(selection.selected_at) > _parse_ts(current.selected_at):
            latest[key] = selection
    # sorted() is stable with reverse=True, so ties keep first-seen order
    return sorted(latest.values(), key=lambda s: _parse_ts(s.selected_at), reverse=True)


def list_active_selections(store, owner: OwnerRef, analysis_id: Optional[str] = None) -> SelectionView:
    """
    Deduplicated selections for owner.

    With analysis_id, only that analysis's selections are shown, unless
    none match, in which case all of the owner's selections are shown.
    Raises PersistenceError when the store read fails.
    """
    try:
        if owner.user_id:
            rows = store.get_selections(user_id=owner.user_id)
        else:
            rows = store.get_selections(session_id=owner.session_id)
    except Exception as e:
        logger.error("Failed to load selections for %s: %s", owner.key, e)
        raise PersistenceError("Could not load selections", cause=e) from e

    selections = [AssetSelection.from_row(r) for r in rows]
    if analysis_id:
        matching = [s for s in selections if s.analysis_id == analysis_id]
        if matching:
            selections = matching

    return SelectionView(owner=owner, selections=dedupe_selections(selections), raw_count=len(rows))


def owner_for(identity, user_id: Optional[str] = None) -> Optional[OwnerRef]:
    """The owner whose selections a read should show, or None if there is none yet."""
    if user_id:
        return OwnerRef.for_user(user_id)
    session_id = identity.peek_session_id()
    if session_id:
        return OwnerRef.for_session(session_id)
    return None


def is_asset_configured(selections: List[AssetSelection], asset_type: str) -> bool:
    """True if any selection's type contains asset_type or is contained in it (case-insensitive)."""
    needle = (asset_type or "").strip().lower()
    if not needle:
        return False
    for selection in selections:
        have = selection.asset_type.lower()
        if needle in have or have in needle:
            return True
    return False


# =============================================================================
# Read-side cache
# =============================================================================

class SelectionViewCache:
    """
    Short-lived per-owner cache of SelectionView results.

    Entries expire after ttl seconds and are dropped early when
    selections_changed fires for the owner, or when invalidate() is called
    after a local write. The cache is per process.

    invalidate() bumps a generation counter. A load only stores its
    result if no invalidation happened while the loader ran, so an
    invalidation that lands mid-load is never lost.
    """

    def __init__(self, ttl: float = 30.0, max_entries: int = 1024):
        self.ttl = ttl
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: Dict[tuple, tuple] = {}
        self._generation = 0
        selections_changed.connect(self._on_selections_changed, weak=False)

    def get(self, owner: OwnerRef, loader: Callable[[], SelectionView], analysis_id: Optional[str] = None) -> SelectionView:
        key = (owner.key, analysis_id)
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry and now - entry[0] < self.ttl:
                return entry[1]
            generation = self._generation
        view = loader()
        with self._lock:
            if self._generation == generation:
                self._entries[key] = (time.monotonic(), view)
                if len(self._entries) > self.max_entries:
                    self._prune()
        return view

    def invalidate(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> int:
        """Drop entries for the given user and/or session. Returns entries dropped."""
        targets = set()
        if user_id:
            targets.add(("user", user_id))
        if session_id:
            targets.add(("session", session_id))
        with self._lock:
            self._generation += 1
            stale = [k for k in self._entries if k[0] in targets]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generation += 1

    def _prune(self) -> None:
        """Drop expired entries, then the oldest ones, down to max_entries. Caller holds the lock."""
        now = time.monotonic()
        for k in [k for k, (stored, _) in self._entries.items() if now - stored >= self.ttl]:
            del self._entries[k]
        if len(self._entries) > self.max_entries:
            by_age = sorted(self._entries, key=lambda k: self._entries[k][0])
            for k in by_age[:len(self._entries) - self.max_entries]:
                del self._entries[k]

    def disconnect(self) -> None:
        selections_changed.disconnect(self._on_selections_changed)

    def _on_selections_changed(self, sender, user_id=None, session_id=None, **kwargs):
        dropped = self.invalidate(user_id=user_id, session_id=session_id)
        if dropped:
            logger.debug("Invalidated %d cached selection views for user=%s session=%s",
                         dropped, user_id, session_id)
