#!/usr/bin/env python3
"""
AssetLink post-deploy smoke test.
Hits the health check and the read endpoints a fresh browser would use,
and asserts the JSON shape the frontend depends on. Read-only: it never
records selections against a live backend.
Usage:
    python smoke_test.py                          # uses http://127.0.0.1:8000
    python smoke_test.py https://your-url.app     # custom base URL
Exit codes:
    0 = all checks passed
    1 = one or more checks failed

Webhook alerting:
    Set SMOKE_ALERT_WEBHOOK to a Slack or Discord webhook URL.
    On failure, a JSON payload is POSTed with a "text" field summary.
    If unset, alerting is silently skipped.
"""
import json
import os
import sys
import urllib.request
import urllib.error
from datetime import datetime, timezone

DEFAULT_BASE_URL = "http://127.0.0.1:8000"

# Keys the dashboard reads from GET /api/selections
SELECTION_VIEW_KEYS = [
    "selections",
    "count",
    "total_monthly_revenue",
    "total_setup_cost",
]


def fetch_json(url: str) -> tuple[int, dict | None]:
    """Fetch a URL, return (status_code, parsed JSON or None)."""
    req = urllib.request.Request(url, headers={"User-Agent": "AssetLink-Smoke/1.0"})
    try:
        with urllib.request.urlopen(req, timeout=15) as resp:
            body = resp.read().decode("utf-8", errors="replace")
            return resp.status, json.loads(body) if body else None
    except urllib.error.HTTPError as e:
        return e.code, None
    except Exception as e:
        print(f"  FETCH ERROR: {e}")
        return 0, None


def send_webhook_alert(failures: list[str]) -> None:
    """POST a failure summary to SMOKE_ALERT_WEBHOOK. Fire-and-forget."""
    webhook_url = os.environ.get("SMOKE_ALERT_WEBHOOK", "").strip()
    if not webhook_url:
        return

    commit = os.environ.get("RAILWAY_GIT_COMMIT_SHA", "unknown")[:7]
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    text = f"AssetLink smoke test failed on deploy {commit} at {timestamp}: {'; '.join(failures)}"

    req = urllib.request.Request(
        webhook_url,
        data=json.dumps({"text": text}).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=5):
            pass
    except Exception as e:
        print(f"  ALERT WARN: webhook POST failed ({e})")


def run_tests(base_url: str) -> bool:
    failures: list[str] = []

    print(f"\n[1] Health check: {base_url}/healthz")
    status, body = fetch_json(f"{base_url}/healthz")
    if status != 200 or not body or body.get("status") != "ok":
        print(f"  FAIL: status {status}, body {body}")
        failures.append(f"Test 1 (healthz): HTTP {status}")
    else:
        print(f"  PASS (backend={body.get('backend')}, worker={body.get('worker_running')})")

    print(f"\n[2] Anonymous selections: {base_url}/api/selections")
    status, body = fetch_json(f"{base_url}/api/selections")
    if status != 200 or body is None:
        print(f"  FAIL: status {status}")
        failures.append(f"Test 2 (selections): HTTP {status}")
    else:
        missing = [k for k in SELECTION_VIEW_KEYS if k not in body]
        if missing:
            print(f"  FAIL: missing keys {missing}")
            failures.append(f"Test 2 (selections): missing keys {missing}")
        elif body["count"] != 0:
            print(f"  WARN: fresh browser sees {body['count']} selections")
        else:
            print("  PASS (empty view for a new browser)")

    print(f"\n[3] Unknown route: {base_url}/api/nonexistent")
    status, _ = fetch_json(f"{base_url}/api/nonexistent")
    if status == 404:
        print("  PASS (returned 404)")
    else:
        print(f"  WARN: returned {status}")

    if failures:
        send_webhook_alert(failures)
    return not failures


def main():
    base_url = sys.argv[1].rstrip("/") if len(sys.argv) > 1 else DEFAULT_BASE_URL
    print("AssetLink Smoke Test")
    print(f"Target: {base_url}")
    print("=" * 60)

    ok = run_tests(base_url)

    print("\n" + "=" * 60)
    if ok:
        print("ALL CHECKS PASSED")
        sys.exit(0)
    else:
        print("ONE OR MORE CHECKS FAILED")
        sys.exit(1)


if __name__ == "__main__":
    main()
