"""
Thread-scoped tracing for AssetLink backend work.

Provides a thread-local TraceContext that records:
  - Per-step timing for reconciliation (step_name, elapsed_ms, rows, errors)
  - Per-backend-call timing (service, endpoint, elapsed_ms, status)
  - End-of-run summary (total_elapsed, total_backend_calls, outcome)

Usage:
    from al_trace import TraceContext, get_trace, set_trace

    ctx = TraceContext(trace_id=request_id)
    outer = get_trace()
    set_trace(ctx)
    ...
    ctx.log_summary()
    set_trace(outer)

    # In store clients:
    trace = get_trace()
    if trace:
        trace.record_backend_call(...)
"""

import time
import threading
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class BackendCallRecord:
    """One call into the selection store (REST request or SQLite statement)."""
    service: str          # "rest" | "sqlite"
    endpoint: str         # table or operation name
    elapsed_ms: int
    status_code: int
    step: str = ""        # which reconciliation step was running


@dataclass
class StepRecord:
    """One reconciliation step (link_selections, backfill_analysis, ...)."""
    step_name: str
    elapsed_ms: int = 0
    rows: int = 0
    backend_calls: int = 0
    skipped: bool = False
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for one request or one background job."""
    trace_id: str
    start: float = field(default_factory=time.time)
    steps: List[StepRecord] = field(default_factory=list)
    calls: List[BackendCallRecord] = field(default_factory=list)
    _current_step: str = ""

    def start_step(self, name: str):
        self._current_step = name

    def end_step(self):
        self._current_step = ""

    def record_step(
        self,
        step_name: str,
        start_ts: float,
        end_ts: float,
        rows: int = 0,
        skipped: bool = False,
        error_class: str = "",
        error_message: str = "",
    ):
        calls_in_step = sum(1 for c in self.calls if c.step == step_name)
        rec = StepRecord(
            step_name=step_name,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            rows=rows,
            backend_calls=calls_in_step,
            skipped=skipped,
            error_class=error_class,
            error_message=error_message,
        )
        self.steps.append(rec)

        status = "SKIP" if skipped else ("ERR" if error_class else "OK")
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [step] trace=%s %s %s %dms rows=%d calls=%d%s",
            self.trace_id,
            step_name,
            status,
            rec.elapsed_ms,
            rows,
            calls_in_step,
            err_info,
        )

    def record_backend_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
    ):
        rec = BackendCallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            step=self._current_step,
        )
        self.calls.append(rec)
        logger.debug(
            "  [backend] trace=%s step=%s svc=%s ep=%s ms=%d http=%d",
            self.trace_id,
            self._current_step or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
        )

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.start) * 1000)
        completed = [s for s in self.steps if not s.skipped and not s.error_class]
        skipped = [s for s in self.steps if s.skipped]
        errored = [s for s in self.steps if s.error_class and not s.skipped]

        if errored and not completed:
            outcome = "error"
        elif not completed and not errored:
            outcome = "empty"
        elif errored:
            outcome = "partial"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_backend_calls": len(self.calls),
            "steps_completed": len(completed),
            "steps_skipped": len(skipped),
            "steps_errored": len(errored),
            "final_outcome": outcome,
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d backend_calls=%d "
            "completed=%d skipped=%d errored=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_backend_calls"],
            s["steps_completed"],
            s["steps_skipped"],
            s["steps_errored"],
            s["final_outcome"],
        )

    def steps_to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "step": s.step_name,
                "elapsed_ms": s.elapsed_ms,
                "rows": s.rows,
                "backend_calls": s.backend_calls,
                "skipped": s.skipped,
                "error": (
                    f"{s.error_class}: {s.error_message}"
                    if s.error_class else None
                ),
            }
            for s in self.steps
        ]


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current thread's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx
