"""
Background reconciliation worker.

Runs in a dedicated thread per gunicorn worker process. Sign-in events
(the user_signed_in signal) and lazy triggers from read endpoints enqueue
a job; the thread pops jobs, runs reconcile() against a detached copy of
the browser's identity, and resolves the job's Future with the summary.
Supports graceful shutdown via a stop event; jobs still queued at stop
are cancelled.

The worker also keeps the per-process reconciliation context:
  - which (user, session) pairs already ran in this process lifetime
  - the last analysis id recovered for each user, reused as prior context
Both are capped at max_entries (oldest evicted) and cleared per user on
sign-out.
"""

import logging
import os
import queue
import threading
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Optional

from models import safe_log_event
from reconcile import reconcile
from session_identity import SessionIdentity, MemoryStorage, SESSION_KEY, ANALYSIS_KEY
from signals import user_signed_in

logger = logging.getLogger(__name__)

# Seconds the loop blocks on an empty queue before re-checking the stop event
POLL_INTERVAL = 2.0

# Users and (user, session) pairs remembered per process; oldest are evicted first
CONTEXT_MAX_ENTRIES = int(os.environ.get("RECONCILE_CONTEXT_MAX", "10000"))


@dataclass
class ReconcileJob:
    user_id: str
    session_id: Optional[str]
    active_analysis_id: Optional[str]
    future: Future


class ReconcileWorker:
    def __init__(self, store, inline: bool = False, max_entries: int = CONTEXT_MAX_ENTRIES):
        self.store = store
        self.inline = inline
        self.max_entries = max_entries
        self._queue: "queue.Queue[ReconcileJob]" = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._attempted: "OrderedDict[tuple, bool]" = OrderedDict()
        self._known_analysis: "OrderedDict[str, str]" = OrderedDict()
        self._last_summary: OrderedDict = OrderedDict()
        user_signed_in.connect(self._on_user_signed_in, weak=False)

    # ------------------------------------------------------------------
    # Reconciliation context
    # ------------------------------------------------------------------

    def needs_reconcile(self, user_id: str, session_id: Optional[str]) -> bool:
        """True until a job for this (user, session) has been submitted in this process."""
        with self._lock:
            return (user_id, session_id) not in self._attempted

    def known_analysis_id(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._known_analysis.get(user_id)

    def last_summary(self, user_id: str):
        with self._lock:
            return self._last_summary.get(user_id)

    def record_summary(self, summary) -> None:
        """Keep a finished run's recovered analysis id as prior context for the user."""
        with self._lock:
            if summary.analysis_id:
                self._remember(self._known_analysis, summary.user_id, summary.analysis_id)
            self._remember(self._last_summary, summary.user_id, summary)

    def forget(self, user_id: str) -> None:
        """Drop everything remembered about user_id (on sign-out)."""
        with self._lock:
            self._known_analysis.pop(user_id, None)
            self._last_summary.pop(user_id, None)
            for pair in [p for p in self._attempted if p[0] == user_id]:
                del self._attempted[pair]

    def _remember(self, mapping: OrderedDict, key, value) -> None:
        """Insert as most recent and evict the oldest past max_entries. Caller holds the lock."""
        mapping[key] = value
        mapping.move_to_end(key)
        while len(mapping) > self.max_entries:
            mapping.popitem(last=False)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, user_id: str, session_id: Optional[str] = None,
               active_analysis_id: Optional[str] = None) -> Future:
        """
        Queue a reconcile for user_id and return a Future for its summary.
        In inline mode, or when the thread is not running, the job runs
        before this returns.
        """
        future: Future = Future()
        job = ReconcileJob(user_id, session_id, active_analysis_id, future)
        with self._lock:
            self._remember(self._attempted, (user_id, session_id), True)
        if self.inline or not self.is_running():
            self._run_job(job)
        else:
            self._queue.put(job)
        return future

    def _on_user_signed_in(self, sender, user_id=None, session_id=None, active_analysis_id=None, **kwargs):
        if not user_id:
            return
        logger.info("[worker] Sign-in for user %s, queueing reconcile", user_id)
        self.submit(user_id, session_id=session_id, active_analysis_id=active_analysis_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _run_job(self, job: ReconcileJob) -> None:
        if not job.future.set_running_or_notify_cancel():
            return
        storage = {}
        if job.session_id:
            storage[SESSION_KEY] = job.session_id
        if job.active_analysis_id:
            storage[ANALYSIS_KEY] = job.active_analysis_id
        identity = SessionIdentity(MemoryStorage(storage))
        try:
            summary = reconcile(
                self.store,
                identity,
                job.user_id,
                known_analysis_id=self.known_analysis_id(job.user_id),
            )
        except Exception as e:
            # reconcile() is not supposed to raise; keep the thread alive if it does
            logger.exception("[worker] Unhandled error reconciling user %s", job.user_id)
            job.future.set_exception(e)
            return

        self.record_summary(summary)
        safe_log_event(
            "reconcile_completed" if summary.ok else "reconcile_partial_failure",
            user_id=job.user_id,
            session_id=job.session_id,
            metadata=summary.to_dict(),
        )
        job.future.set_result(summary)

    def _loop(self) -> None:
        logger.info("[worker] Reconciliation worker thread started")
        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._run_job(job)
            except Exception:
                logger.exception("[worker] Job for user %s crashed", job.user_id)
            finally:
                self._queue.task_done()
        logger.info("[worker] Reconciliation worker thread stopped")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the thread. Only one thread is started per worker object."""
        if self.inline or self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="reconcile-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> int:
        """
        Signal the thread to stop, optionally waiting for it, and cancel
        jobs still in the queue. Returns the number of jobs cancelled.
        """
        self._stop_event.set()
        if timeout is not None and self._thread is not None:
            self._thread.join(timeout)
        cancelled = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                break
            if job.future.cancel():
                cancelled += 1
            self._queue.task_done()
        if cancelled:
            logger.info("[worker] Cancelled %d queued reconcile jobs on stop", cancelled)
        return cancelled

    def close(self) -> None:
        self.stop()
        user_signed_in.disconnect(self._on_user_signed_in)
