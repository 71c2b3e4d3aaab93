"""Unit tests for selections.py: recording, deduplicated reads and the view cache.

Recording and reads run against the real SQLite store from conftest;
failure paths use a MagicMock store.
"""

import math
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

import models
from reconcile import reconcile
from selections import (
    AssetSelection,
    OwnerRef,
    PersistenceError,
    SelectionView,
    SelectionViewCache,
    _parse_ts,
    compute_roi_months,
    dedupe_selections,
    is_asset_configured,
    list_active_selections,
    owner_for,
    record_selection,
    record_selections,
    validate_asset_data,
)
from session_identity import SessionIdentity, MemoryStorage, ANALYSIS_KEY, SESSION_KEY
from signals import selections_changed


def _selection(asset_type, selected_at, monthly_revenue=0, id=None, analysis_id=None):
    return AssetSelection(
        id=id or f"{asset_type}-{selected_at}",
        owner=OwnerRef.for_user("U1"),
        asset_type=asset_type,
        asset_data={},
        monthly_revenue=monthly_revenue,
        setup_cost=0,
        selected_at=selected_at,
        analysis_id=analysis_id,
    )


def _ts(second):
    return f"2024-01-01T00:00:{second:02d}+00:00"


# =========================================================================
# OwnerRef
# =========================================================================

class TestOwnerRef:
    def test_user(self):
        owner = OwnerRef.for_user("U1")
        assert owner.is_authenticated
        assert owner.key == ("user", "U1")
        assert owner.as_columns() == {"user_id": "U1", "session_id": None}

    def test_session(self):
        owner = OwnerRef.for_session("S1")
        assert not owner.is_authenticated
        assert owner.key == ("session", "S1")

    def test_both_rejected(self):
        with pytest.raises(ValueError):
            OwnerRef(user_id="U1", session_id="S1")

    def test_neither_rejected(self):
        with pytest.raises(ValueError):
            OwnerRef()


# =========================================================================
# Validation helpers
# =========================================================================

class TestValidation:
    def test_asset_data_none_becomes_empty(self):
        assert validate_asset_data(None) == {}

    def test_asset_data_must_be_mapping(self):
        with pytest.raises(ValueError):
            validate_asset_data(["spaces", 2])

    def test_asset_data_must_serialize(self):
        with pytest.raises(ValueError):
            validate_asset_data({"when": object()})

    def test_roi_months(self):
        assert compute_roi_months(1000, 300) == 3.3
        assert compute_roi_months(0, 200) == 0.0

    def test_roi_months_without_revenue(self):
        assert compute_roi_months(500, 0) is None


# =========================================================================
# record_selection
# =========================================================================

class TestRecordSelection:
    def test_anonymous_row_tagged_with_session(self, identity):
        selection_id = record_selection(models, identity, "parking", {"spaces": 2}, 100)
        row = models.get_selection(selection_id)

        assert row["session_id"] == identity.peek_session_id()
        assert row["user_id"] is None
        assert row["asset_data"] == {"spaces": 2}

    def test_user_row_has_no_session(self, identity):
        selection_id = record_selection(models, identity, "pool", None, 80, user_id="U1")
        row = models.get_selection(selection_id)

        assert row["user_id"] == "U1"
        assert row["session_id"] is None

    def test_exactly_one_owner_tag(self, identity):
        ids = [
            record_selection(models, identity, "parking", {}, 100),
            record_selection(models, identity, "pool", {}, 80, user_id="U1"),
            record_selection(models, SessionIdentity(MemoryStorage()), "garden", {}, 10),
        ]
        for selection_id in ids:
            row = models.get_selection(selection_id)
            assert (row["user_id"] is None) != (row["session_id"] is None)

    def test_uses_active_analysis(self):
        identity = SessionIdentity(MemoryStorage({ANALYSIS_KEY: "A1"}))
        selection_id = record_selection(models, identity, "parking", {}, 100)
        assert models.get_selection(selection_id)["analysis_id"] == "A1"

    def test_explicit_analysis_wins(self):
        identity = SessionIdentity(MemoryStorage({ANALYSIS_KEY: "A1"}))
        selection_id = record_selection(models, identity, "parking", {}, 100, analysis_id="A2")
        assert models.get_selection(selection_id)["analysis_id"] == "A2"

    def test_no_analysis_yet(self, identity):
        selection_id = record_selection(models, identity, "parking", {}, 100)
        assert models.get_selection(selection_id)["analysis_id"] is None

    def test_roi_computed_when_missing(self, identity):
        selection_id = record_selection(models, identity, "solar", {}, 100, setup_cost=1200)
        assert models.get_selection(selection_id)["roi_months"] == 12.0

    @pytest.mark.parametrize("revenue", [-1, "100", True, math.inf, math.nan, None])
    def test_bad_revenue_rejected(self, identity, revenue):
        with pytest.raises(ValueError):
            record_selection(models, identity, "parking", {}, revenue)

    @pytest.mark.parametrize("asset_type", ["", "   ", None])
    def test_asset_type_required(self, identity, asset_type):
        with pytest.raises(ValueError):
            record_selection(models, identity, asset_type, {}, 100)

    def test_rejected_input_writes_nothing(self, identity):
        sid = identity.get_or_create_session_id()
        with pytest.raises(ValueError):
            record_selection(models, identity, "parking", {}, -5)
        assert models.get_selections(session_id=sid) == []

    def test_store_failure_raises_persistence_error(self, identity):
        store = MagicMock()
        cause = RuntimeError("connection reset")
        store.insert_selection.side_effect = cause

        with pytest.raises(PersistenceError) as exc:
            record_selection(store, identity, "parking", {}, 100)
        assert exc.value.cause is cause
        assert store.insert_selection.call_count == 1


class TestRecordSelections:
    def test_partial_results(self, identity):
        results = record_selections(models, identity, [
            {"asset_type": "parking", "monthly_revenue": 100},
            {"asset_type": "pool", "monthly_revenue": -3},
            "not-an-object",
        ])

        assert results[0]["asset_type"] == "parking"
        assert "id" in results[0]
        assert results[1] == {"asset_type": "pool", "error": results[1]["error"], "retry": False}
        assert results[2]["retry"] is False

    def test_store_failure_is_retryable(self, identity):
        store = MagicMock()
        store.insert_selection.side_effect = RuntimeError("timeout")
        results = record_selections(store, identity, [{"asset_type": "parking", "monthly_revenue": 1}])
        assert results[0]["retry"] is True


# =========================================================================
# Deduplication
# =========================================================================

class TestDedupeSelections:
    def test_latest_per_type(self):
        result = dedupe_selections([
            _selection("parking", _ts(1), 100),
            _selection("parking", _ts(2), 150),
            _selection("pool", _ts(1), 80),
        ])
        assert [(s.asset_type, s.monthly_revenue) for s in result] == [("parking", 150), ("pool", 80)]

    def test_case_insensitive(self):
        result = dedupe_selections([
            _selection("Parking", _ts(3)),
            _selection("parking", _ts(1)),
        ])
        assert len(result) == 1
        assert result[0].asset_type == "Parking"

    def test_tie_keeps_first_encountered(self):
        result = dedupe_selections([
            _selection("parking", _ts(1), 100, id="a"),
            _selection("parking", _ts(1), 200, id="b"),
        ])
        assert [s.id for s in result] == ["a"]

    def test_mixed_offsets_compare_as_instants(self):
        result = dedupe_selections([
            _selection("parking", "2024-01-01T01:00:00+01:00", id="earlier"),
            _selection("parking", "2024-01-01T00:30:00+00:00", id="later"),
        ])
        assert result[0].id == "later"

    def test_empty(self):
        assert dedupe_selections([]) == []

    def test_trimmed_fractional_seconds(self):
        result = dedupe_selections([
            _selection("parking", "2024-01-01T00:00:00.12345+00:00", id="earlier"),
            _selection("parking", "2024-01-01T00:00:00.9+00:00", id="later"),
            _selection("pool", "2024-01-01T00:00:01Z", id="pool"),
        ])
        assert [s.id for s in result] == ["pool", "later"]


class TestParseTimestamp:
    @pytest.mark.parametrize("value,expected", [
        ("2024-01-01T00:00:00.12345+00:00", datetime(2024, 1, 1, 0, 0, 0, 123450, tzinfo=timezone.utc)),
        ("2024-01-01T00:00:00.1234567+00:00", datetime(2024, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)),
        ("2024-01-01T00:00:00.5Z", datetime(2024, 1, 1, 0, 0, 0, 500000, tzinfo=timezone.utc)),
        ("2024-01-01T02:00:00+02", datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)),
        ("2024-01-01T00:00:00", datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)),
    ])
    def test_normalised_forms(self, value, expected):
        assert _parse_ts(value) == expected

    def test_rows_from_backend_with_short_fractions(self):
        store = MagicMock()
        store.get_selections.return_value = [
            {"id": "b", "user_id": "U1", "session_id": None, "asset_type": "parking",
             "asset_data": {}, "monthly_revenue": 150, "setup_cost": 0,
             "selected_at": "2024-01-01T00:00:02.12345+00:00"},
            {"id": "a", "user_id": "U1", "session_id": None, "asset_type": "parking",
             "asset_data": {}, "monthly_revenue": 100, "setup_cost": 0,
             "selected_at": "2024-01-01T00:00:01.5+00:00"},
        ]
        view = list_active_selections(store, OwnerRef.for_user("U1"))
        assert [s.id for s in view.selections] == ["b"]
        assert view.raw_count == 2


class TestListActiveSelections:
    def test_totals_over_deduplicated_rows(self):
        for asset_type, second, revenue in [("parking", 1, 100), ("parking", 2, 150), ("pool", 1, 80)]:
            models.insert_selection({
                "user_id": "U1",
                "asset_type": asset_type,
                "monthly_revenue": revenue,
                "selected_at": _ts(second),
            })

        view = list_active_selections(models, OwnerRef.for_user("U1"))

        assert len(view.selections) == 2
        assert {(s.asset_type, s.monthly_revenue) for s in view.selections} == {("parking", 150), ("pool", 80)}
        assert view.total_monthly_revenue == 230
        assert view.raw_count == 3

    def test_session_owner(self, identity):
        record_selection(models, identity, "parking", {}, 100)
        view = list_active_selections(models, OwnerRef.for_session(identity.peek_session_id()))
        assert [s.asset_type for s in view.selections] == ["parking"]

    def test_analysis_filter(self):
        models.insert_selection({"user_id": "U1", "asset_type": "parking", "analysis_id": "A1"})
        models.insert_selection({"user_id": "U1", "asset_type": "pool", "analysis_id": "A2"})

        view = list_active_selections(models, OwnerRef.for_user("U1"), analysis_id="A1")
        assert [s.asset_type for s in view.selections] == ["parking"]

    def test_analysis_filter_falls_back_to_all(self):
        models.insert_selection({"user_id": "U1", "asset_type": "parking", "analysis_id": "A1"})
        models.insert_selection({"user_id": "U1", "asset_type": "pool"})

        view = list_active_selections(models, OwnerRef.for_user("U1"), analysis_id="A-missing")
        assert len(view.selections) == 2

    def test_read_failure_raises_persistence_error(self):
        store = MagicMock()
        store.get_selections.side_effect = RuntimeError("HTTP 503")
        with pytest.raises(PersistenceError):
            list_active_selections(store, OwnerRef.for_user("U1"))

    def test_to_dict(self):
        view = SelectionView(owner=OwnerRef.for_user("U1"), selections=[_selection("pool", _ts(1), 80)], raw_count=2)
        body = view.to_dict()
        assert body["count"] == 1
        assert body["raw_count"] == 2
        assert body["total_monthly_revenue"] == 80
        assert body["selections"][0]["user_id"] == "U1"


class TestOwnerFor:
    def test_user_wins(self, identity):
        identity.get_or_create_session_id()
        assert owner_for(identity, "U1") == OwnerRef.for_user("U1")

    def test_session(self, identity):
        sid = identity.get_or_create_session_id()
        assert owner_for(identity) == OwnerRef.for_session(sid)

    def test_none_before_first_write(self, identity):
        assert owner_for(identity) is None


class TestIsAssetConfigured:
    def test_substring_either_way(self):
        selections = [_selection("rooftop solar", _ts(1)), _selection("ev", _ts(1))]
        assert is_asset_configured(selections, "Solar")
        assert is_asset_configured(selections, "ev charging")
        assert not is_asset_configured(selections, "pool")

    def test_blank_is_never_configured(self):
        assert not is_asset_configured([_selection("parking", _ts(1))], "  ")


# =========================================================================
# SelectionViewCache
# =========================================================================

class TestSelectionViewCache:
    @pytest.fixture()
    def cache(self):
        c = SelectionViewCache(ttl=60)
        yield c
        c.disconnect()

    def _loader(self, owner):
        calls = []

        def load():
            calls.append(1)
            return SelectionView(owner=owner)
        return load, calls

    def test_hit_within_ttl(self, cache):
        owner = OwnerRef.for_user("U1")
        load, calls = self._loader(owner)
        first = cache.get(owner, load)
        second = cache.get(owner, load)
        assert first is second
        assert len(calls) == 1

    def test_expires(self):
        cache = SelectionViewCache(ttl=0.01)
        try:
            owner = OwnerRef.for_user("U1")
            load, calls = self._loader(owner)
            cache.get(owner, load)
            time.sleep(0.02)
            cache.get(owner, load)
            assert len(calls) == 2
        finally:
            cache.disconnect()

    def test_keyed_by_analysis(self, cache):
        owner = OwnerRef.for_user("U1")
        load, calls = self._loader(owner)
        cache.get(owner, load, analysis_id="A1")
        cache.get(owner, load, analysis_id="A2")
        assert len(calls) == 2

    def test_invalidate(self, cache):
        user = OwnerRef.for_user("U1")
        anon = OwnerRef.for_session("S1")
        load_user, user_calls = self._loader(user)
        load_anon, anon_calls = self._loader(anon)
        cache.get(user, load_user)
        cache.get(anon, load_anon)

        assert cache.invalidate(session_id="S1") == 1
        cache.get(user, load_user)
        cache.get(anon, load_anon)
        assert len(user_calls) == 1
        assert len(anon_calls) == 2

    def test_selections_changed_signal_invalidates(self, cache):
        owner = OwnerRef.for_user("U1")
        load, calls = self._loader(owner)
        cache.get(owner, load)

        selections_changed.send(self, user_id="U1", session_id="S1", summary=None)
        cache.get(owner, load)
        assert len(calls) == 2

    def test_invalidation_during_load_not_overwritten(self, cache):
        models.insert_selection({"session_id": "S1", "asset_type": "parking"})
        owner = OwnerRef.for_user("U1")
        calls = []

        def load_then_reconcile():
            calls.append(1)
            view = list_active_selections(models, owner)
            if len(calls) == 1:
                # Sign-in reconciliation lands after the read, before the store
                reconcile(models, SessionIdentity(MemoryStorage({SESSION_KEY: "S1"})), "U1")
            return view

        stale = cache.get(owner, load_then_reconcile)
        fresh = cache.get(owner, load_then_reconcile)

        assert stale.selections == []
        assert len(calls) == 2
        assert [s.asset_type for s in fresh.selections] == ["parking"]

    def test_explicit_invalidate_during_load(self, cache):
        owner = OwnerRef.for_user("U1")
        load, calls = self._loader(owner)

        def racing_load():
            view = load()
            cache.invalidate(user_id="U1")
            return view

        cache.get(owner, racing_load)
        cache.get(owner, load)
        assert len(calls) == 2

    def test_bounded_entries_drop_oldest(self):
        cache = SelectionViewCache(ttl=60, max_entries=2)
        try:
            owners = [OwnerRef.for_user(u) for u in ("U1", "U2", "U3")]
            loaders = [self._loader(o) for o in owners]
            for owner, (load, _) in zip(owners, loaders):
                cache.get(owner, load)

            assert len(cache._entries) == 2
            cache.get(owners[2], loaders[2][0])
            cache.get(owners[0], loaders[0][0])
            # U1 was evicted and reloaded; U3 stayed cached
            assert len(loaders[0][1]) == 2
            assert len(loaders[2][1]) == 1
        finally:
            cache.disconnect()
