"""
Gunicorn config. Starts the reconciliation worker thread in each worker
process (post_fork). With --workers 2, two processes each run one thread
that drains that process's reconcile queue.

when_ready hook runs a post-deploy smoke test against localhost once the
server is accepting connections.
"""

import logging
import os
import threading


def when_ready(server):
    """Run smoke test in a background thread once gunicorn is listening."""
    port = os.environ.get("PORT", "8000")
    base_url = f"http://127.0.0.1:{port}"

    def _run_smoke():
        import time
        time.sleep(2)  # brief grace period for workers to finish forking
        logger = logging.getLogger("gunicorn.error")
        try:
            from smoke_test import run_tests
            logger.info("Post-deploy smoke test starting against %s", base_url)
            if run_tests(base_url):
                logger.info("Post-deploy smoke test PASSED")
            else:
                logger.error("Post-deploy smoke test FAILED")
        except Exception:
            logger.exception("Post-deploy smoke test crashed")

    t = threading.Thread(target=_run_smoke, daemon=True)
    t.start()


def post_fork(server, worker):
    """Start the reconciliation worker thread in this gunicorn worker process."""
    try:
        from app import reconcile_worker
        reconcile_worker.start()
    except Exception as e:
        logging.getLogger(__name__).exception("Failed to start reconciliation worker: %s", e)


def worker_exit(server, worker):
    try:
        from app import reconcile_worker
        reconcile_worker.stop(timeout=5)
    except Exception:
        logging.getLogger(__name__).exception("Failed to stop reconciliation worker")
