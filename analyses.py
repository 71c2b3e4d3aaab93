"""
Recording property analyses and making them the active analysis.

An analysis is the estimate produced for one address. Saving one makes
it the browser's active analysis, so later selections are tagged with it.
The owner's pending (untagged) selections are back-filled right away,
whether the owner is the anonymous session or a signed-in user.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from selections import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class AnalysisRecord:
    id: str
    user_id: Optional[str]
    session_id: Optional[str]
    total_monthly_revenue: float
    total_opportunities: int
    selections_linked: int = 0

    def to_dict(self) -> dict:
        return {
            "analysis_id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "total_monthly_revenue": self.total_monthly_revenue,
            "total_opportunities": self.total_opportunities,
            "selections_linked": self.selections_linked,
        }


def summarize_opportunities(analysis_results: dict):
    """(total monthly revenue, opportunity count) over topOpportunities."""
    opportunities = (analysis_results or {}).get("topOpportunities") or []
    total = 0.0
    for opp in opportunities:
        if not isinstance(opp, dict):
            continue
        try:
            total += float(opp.get("monthlyRevenue") or 0)
        except (TypeError, ValueError):
            continue
    return total, len(opportunities)


def record_analysis(store, identity, property_address: str, analysis_results: dict,
                    user_id: Optional[str] = None) -> AnalysisRecord:
    """
    Save an analysis for user_id, or for the anonymous session when signed out.

    Raises ValueError for bad input and PersistenceError if the save fails.
    Back-filling the owner's pending selections is best-effort and only logged.
    """
    if not isinstance(property_address, str) or not property_address.strip():
        raise ValueError("property_address is required")
    if not isinstance(analysis_results, dict):
        raise ValueError("analysis_results must be an object")

    session_id = None if user_id else identity.get_or_create_session_id()
    total_revenue, total_opportunities = summarize_opportunities(analysis_results)

    try:
        saved = store.save_analysis(
            property_address.strip(),
            analysis_results,
            user_id=user_id,
            session_id=session_id,
            total_monthly_revenue=total_revenue,
            total_opportunities=total_opportunities,
        )
    except Exception as e:
        logger.error("Failed to save analysis for %s: %s", property_address, e)
        raise PersistenceError("Could not save property analysis", cause=e) from e

    record = AnalysisRecord(
        id=saved["id"],
        user_id=user_id,
        session_id=session_id,
        total_monthly_revenue=total_revenue,
        total_opportunities=total_opportunities,
    )
    identity.set_active_analysis_id(record.id)

    owner = {"user_id": user_id} if user_id else {"session_id": session_id}
    try:
        record.selections_linked = store.set_missing_analysis_id(record.id, **owner)
    except Exception:
        logger.warning("Could not link pending selections to analysis %s", record.id, exc_info=True)

    logger.info("Saved analysis %s (%d opportunities, $%.0f/mo)",
                record.id, total_opportunities, total_revenue)
    return record
