"""
PostgREST (Supabase-compatible) selection store.

Implements the same store contract as the SQLite models module so the
recorder, read view and reconciler can run against a managed backend:

    GET    /rest/v1/<table>?<column>=eq.<value>&order=...
    POST   /rest/v1/<table>                      (Prefer: return=representation)
    PATCH  /rest/v1/<table>?<filters>            (Prefer: return=representation)

Every call is a single HTTP request with no retries; callers decide what
a failure means. HTTP errors, transport errors and unparseable bodies all
raise BackendError. Each call is recorded on the current al_trace context.
"""

import json
import logging
import os
import time
import uuid
from typing import Any, Dict, List, Optional

import requests

from al_trace import get_trace
from models import SELECTIONS_TABLE, ANALYSES_TABLE, utc_now_iso

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Raised when the REST backend call fails."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class RestStore:
    DEFAULT_TIMEOUT = 10  # seconds

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.base_url = (base_url or os.environ.get("BACKEND_URL", "")).rstrip("/")
        self.api_key = api_key if api_key is not None else os.environ.get("BACKEND_API_KEY", "")
        self.timeout = timeout or float(os.environ.get("BACKEND_TIMEOUT", self.DEFAULT_TIMEOUT))
        if not self.base_url:
            raise ValueError("RestStore needs BACKEND_URL")

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(self, method: str, table: str, params=None, body=None,
                 prefer: Optional[str] = None) -> Any:
        url = f"{self.base_url}/rest/v1/{table}"
        start = time.monotonic()
        trace = get_trace()
        status_code = 0
        try:
            session = requests.Session()
            session.trust_env = False
            resp = session.request(
                method,
                url,
                params=params,
                data=json.dumps(body) if body is not None else None,
                headers=self._headers(prefer),
                timeout=self.timeout,
            )
            status_code = resp.status_code
            if status_code >= 400:
                logger.warning("[rest] %s %s -> HTTP %d", method, table, status_code)
                raise BackendError(
                    f"{method} {table} failed: HTTP {status_code} {resp.text[:200]}",
                    status_code=status_code,
                )
            if not resp.text:
                return None
            try:
                return resp.json()
            except ValueError:
                raise BackendError(
                    f"{method} {table} returned non-JSON body (HTTP {status_code})",
                    status_code=status_code,
                )
        except requests.exceptions.RequestException as e:
            raise BackendError(f"{method} {table} request failed: {e}") from e
        finally:
            if trace:
                trace.record_backend_call(
                    service="rest",
                    endpoint=f"{method} {table}",
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                )

    @staticmethod
    def _owner_params(user_id: Optional[str], session_id: Optional[str]) -> Optional[Dict[str, str]]:
        if user_id:
            return {"user_id": f"eq.{user_id}"}
        if session_id:
            return {"session_id": f"eq.{session_id}", "user_id": "is.null"}
        return None

    # ------------------------------------------------------------------
    # Asset selections
    # ------------------------------------------------------------------

    def insert_selection(self, row: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(row)
        body.setdefault("id", str(uuid.uuid4()))
        body.setdefault("selected_at", utc_now_iso())
        body["asset_data"] = body.get("asset_data") or {}
        data = self._request("POST", SELECTIONS_TABLE, body=body, prefer="return=representation")
        if not data:
            raise BackendError("No data returned from insert operation")
        return data[0] if isinstance(data, list) else data

    def get_selections(self, user_id: Optional[str] = None,
                       session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params = self._owner_params(user_id, session_id)
        if params is None:
            return []
        params["select"] = "*"
        params["order"] = "selected_at.desc,id.asc"
        return self._request("GET", SELECTIONS_TABLE, params=params) or []

    def get_selections_by_analysis(self, analysis_id: str) -> List[Dict[str, Any]]:
        params = {
            "analysis_id": f"eq.{analysis_id}",
            "select": "*",
            "order": "selected_at.desc,id.asc",
        }
        return self._request("GET", SELECTIONS_TABLE, params=params) or []

    def link_session_selections(self, session_id: str, user_id: str) -> int:
        params = {"session_id": f"eq.{session_id}", "user_id": "is.null", "select": "id"}
        data = self._request(
            "PATCH", SELECTIONS_TABLE, params=params,
            body={"user_id": user_id, "session_id": None},
            prefer="return=representation",
        )
        return len(data or [])

    def set_missing_analysis_id(self, analysis_id: str, user_id: Optional[str] = None,
                                session_id: Optional[str] = None) -> int:
        params = self._owner_params(user_id, session_id)
        if params is None:
            return 0
        params["analysis_id"] = "is.null"
        params["select"] = "id"
        data = self._request(
            "PATCH", SELECTIONS_TABLE, params=params,
            body={"analysis_id": analysis_id},
            prefer="return=representation",
        )
        return len(data or [])

    # ------------------------------------------------------------------
    # Property analyses
    # ------------------------------------------------------------------

    def save_analysis(self, property_address, analysis_results, user_id=None, session_id=None,
                      total_monthly_revenue=0, total_opportunities=0, created_at=None):
        body = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "session_id": None if user_id else session_id,
            "property_address": property_address,
            "analysis_results": analysis_results,
            "total_monthly_revenue": total_monthly_revenue or 0,
            "total_opportunities": total_opportunities or 0,
            "created_at": created_at or utc_now_iso(),
        }
        data = self._request("POST", ANALYSES_TABLE, body=body, prefer="return=representation")
        if not data:
            raise BackendError("No data returned from insert operation")
        return data[0] if isinstance(data, list) else data

    def get_latest_analysis_id(self, user_id: str) -> Optional[str]:
        if not user_id:
            return None
        params = {
            "user_id": f"eq.{user_id}",
            "analysis_results": "not.is.null",
            "select": "id",
            "order": "created_at.desc,id.asc",
            "limit": "1",
        }
        data = self._request("GET", ANALYSES_TABLE, params=params) or []
        return data[0]["id"] if data else None

    def link_session_analyses(self, session_id: str, user_id: str) -> int:
        params = {"session_id": f"eq.{session_id}", "user_id": "is.null", "select": "id"}
        data = self._request(
            "PATCH", ANALYSES_TABLE, params=params,
            body={"user_id": user_id, "session_id": None},
            prefer="return=representation",
        )
        return len(data or [])
