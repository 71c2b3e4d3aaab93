"""
Reconciliation of anonymous selections after sign-in.

reconcile() runs three steps against the store:

  1. link_selections:   re-tag the session's anonymous selections with the user
  2. link_analyses:     re-tag the session's anonymous analyses with the user
  3. backfill_analysis: give every user selection without an analysis_id
                         the best known analysis id, and make it active

Each step runs on its own. A failure is captured as a
ReconciliationPartialFailure on that step's result and logged; later
steps still run and earlier steps are not undone. reconcile() never
raises. Every write is a conditional UPDATE (user_id IS NULL,
analysis_id IS NULL), so concurrent or repeated runs converge on the
same state.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from al_trace import TraceContext, get_trace, set_trace
from signals import selections_changed

logger = logging.getLogger(__name__)

STEP_LINK_SELECTIONS = "link_selections"
STEP_LINK_ANALYSES = "link_analyses"
STEP_BACKFILL = "backfill_analysis"


class ReconciliationPartialFailure(Exception):
    """One reconciliation step failed. Never raised to callers."""

    def __init__(self, step, cause):
        super().__init__(f"{step} failed: {cause}")
        self.step = step
        self.cause = cause


@dataclass
class StepResult:
    name: str
    count: int = 0
    skipped: bool = False
    error: Optional[ReconciliationPartialFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "step": self.name,
            "count": self.count,
            "skipped": self.skipped,
            "error": str(self.error.cause) if self.error else None,
        }


@dataclass
class ReconcileSummary:
    """Best-effort outcome of one reconcile() run. Advisory, for telemetry."""
    user_id: str
    session_id: Optional[str]
    steps: List[StepResult] = field(default_factory=list)
    analysis_id: Optional[str] = None
    analysis_source: Optional[str] = None
    timings: List[dict] = field(default_factory=list)

    def step(self, name: str) -> Optional[StepResult]:
        for result in self.steps:
            if result.name == name:
                return result
        return None

    def _count(self, name: str) -> int:
        result = self.step(name)
        return result.count if result else 0

    @property
    def linked(self) -> int:
        return self._count(STEP_LINK_SELECTIONS)

    @property
    def analyses_linked(self) -> int:
        return self._count(STEP_LINK_ANALYSES)

    @property
    def backfilled(self) -> int:
        return self._count(STEP_BACKFILL)

    @property
    def ok(self) -> bool:
        return all(s.ok for s in self.steps)

    @property
    def failures(self) -> List[ReconciliationPartialFailure]:
        return [s.error for s in self.steps if s.error]

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "linked": self.linked,
            "analyses_linked": self.analyses_linked,
            "backfilled": self.backfilled,
            "analysis_id": self.analysis_id,
            "analysis_source": self.analysis_source,
            "ok": self.ok,
            "steps": [s.to_dict() for s in self.steps],
            "timings": self.timings,
        }


def _run_step(trace: TraceContext, name: str, fn: Callable[[], Optional[int]]) -> StepResult:
    """Run one step; None from fn means the step had nothing to do."""
    trace.start_step(name)
    start = time.time()
    result = StepResult(name=name)
    try:
        count = fn()
        if count is None:
            result.skipped = True
        else:
            result.count = count
    except Exception as e:
        result.error = ReconciliationPartialFailure(name, e)
        logger.warning("[reconcile] step %s failed: %s", name, e, exc_info=True)
    trace.record_step(
        name,
        start,
        time.time(),
        rows=result.count,
        skipped=result.skipped,
        error_class=type(result.error.cause).__name__ if result.error else "",
        error_message=str(result.error.cause) if result.error else "",
    )
    trace.end_step()
    return result


def resolve_analysis_id(store, identity, user_id: str, known_analysis_id: Optional[str] = None):
    """
    Best analysis id for back-filling, with where it came from.

    Prior context first (the id recovered by an earlier reconciliation for
    this user, then the browser's active analysis), then a fresh lookup of
    the user's most recent analysis. Returns (None, None) if none exists.
    """
    if known_analysis_id:
        return known_analysis_id, "prior_reconcile"
    active = identity.get_active_analysis_id()
    if active:
        return active, "active_analysis"
    latest = store.get_latest_analysis_id(user_id)
    if latest:
        return latest, "latest_analysis"
    return None, None


def reconcile(store, identity, user_id: str, known_analysis_id: Optional[str] = None,
              trace_id: Optional[str] = None) -> ReconcileSummary:
    """
    Link the browser's anonymous data to user_id and back-fill analysis ids.

    Never raises. Sends selections_changed when done so read-side caches
    refetch.
    """
    session_id = identity.peek_session_id()
    summary = ReconcileSummary(user_id=user_id, session_id=session_id)

    outer_trace = get_trace()
    trace = TraceContext(trace_id=trace_id or f"reconcile-{uuid.uuid4().hex[:8]}")
    set_trace(trace)
    try:
        def link_selections():
            if not session_id:
                return None
            return store.link_session_selections(session_id, user_id)

        def link_analyses():
            if not session_id:
                return None
            return store.link_session_analyses(session_id, user_id)

        def backfill():
            analysis_id, source = resolve_analysis_id(store, identity, user_id, known_analysis_id)
            if not analysis_id:
                return None
            summary.analysis_id = analysis_id
            summary.analysis_source = source
            updated = store.set_missing_analysis_id(analysis_id, user_id=user_id)
            identity.set_active_analysis_id(analysis_id)
            return updated

        summary.steps.append(_run_step(trace, STEP_LINK_SELECTIONS, link_selections))
        summary.steps.append(_run_step(trace, STEP_LINK_ANALYSES, link_analyses))
        summary.steps.append(_run_step(trace, STEP_BACKFILL, backfill))
    finally:
        summary.timings = trace.steps_to_list()
        trace.log_summary()
        set_trace(outer_trace)

    logger.info(
        "[reconcile] user=%s session=%s linked=%d analyses=%d backfilled=%d analysis=%s ok=%s",
        user_id, session_id or "-", summary.linked, summary.analyses_linked,
        summary.backfilled, summary.analysis_id or "-", summary.ok,
    )

    try:
        selections_changed.send(reconcile, user_id=user_id, session_id=session_id, summary=summary)
    except Exception:
        logger.exception("[reconcile] selections_changed receiver failed")

    return summary
