"""
Report Payload Builder
=======================

Composes the weekly report's structured input from truth totals, the
per-campaign deal rollup, the funnel views, the consultant funnel and the
data-quality diagnostics. The result is plain JSON-ready data.

Every figure degrades to 0 or None when its source is missing. Unattributed
revenue and deals are max(0, truth - attributed), or None without truth.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from etl.funnel import FunnelViews
from etl.lib.utils import iso
from etl.loss_reasons import LossReasons
from models.marketing_models import (
    UNATTRIBUTED,
    CampaignDealRollup,
    ConsultantFunnelRow,
    DataGap,
    SalesTruthTotals,
)

TOP_CAMPAIGNS = 8


def _money(value) -> float:
    return float(value) if value is not None else 0.0


def _unattributed(truth_value, attributed_value):
    if truth_value is None:
        return None
    return max(0, truth_value - attributed_value)


def truth_section(truth: Optional[SalesTruthTotals]) -> Optional[Dict[str, Any]]:
    if truth is None:
        return None
    return {
        "window_start_date": truth.window_start_date,
        "window_end_date": truth.window_end_date,
        "deals_won": truth.deals_won_count,
        "revenue_won": _money(truth.revenue_won),
        "units_sold": truth.units_sold,
        "revenue_new_prospect": _money(truth.revenue_new_prospect),
        "revenue_old_prospect": _money(truth.revenue_old_prospect),
        "deals_missing_contact": truth.deals_missing_contact,
    }


def _campaign_entry(c: CampaignDealRollup) -> Dict[str, Any]:
    return {
        "name": c.utm_campaign,
        "revenue_won": _money(c.revenue_won),
        "deals_won": c.deals_won,
        "pipeline_created": _money(c.pipeline_created),
        "deals_created": c.deals_created,
        "revenue_by_dealtype": dict(c.revenue_by_dealtype),
    }


def build_payload(
    truth: Optional[SalesTruthTotals] = None,
    campaigns: Optional[List[CampaignDealRollup]] = None,
    funnel: Optional[FunnelViews] = None,
    consultants: Optional[List[ConsultantFunnelRow]] = None,
    loss_reasons: Optional[LossReasons] = None,
    deal_diagnostics: Optional[Dict[str, int]] = None,
    coverage: Optional[Dict[str, Dict[str, int]]] = None,
    gaps: Optional[List[DataGap]] = None,
    window_days: int = 90,
    generated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Assemble the report payload.

    Args:
        truth: Latest truth totals, or None when never computed.
        campaigns: Per-campaign deal rollup rows (UNATTRIBUTED included).
        funnel: Campaign funnel views (all / top / bottom).
        consultants: Consultant funnel rows.
        loss_reasons: Disqualification reason rollup.
        deal_diagnostics: Counters from the deal rollup.
        coverage: Attribution method counts, keyed "leads" / "deals".
        gaps: Units skipped during this run.

    Returns:
        Nested dict of plain values, safe for json.dumps.
    """
    campaigns = campaigns or []
    generated_at = generated_at or datetime.now(timezone.utc)

    attributed = [c for c in campaigns if c.utm_campaign != UNATTRIBUTED]
    attributed_revenue = sum((_money(c.revenue_won) for c in attributed), 0.0)
    attributed_deals = sum(c.deals_won for c in attributed)
    attributed_pipeline = sum((_money(c.pipeline_created) for c in attributed), 0.0)

    truth_data = truth_section(truth)
    truth_revenue = truth_data["revenue_won"] if truth_data else None
    truth_deals = truth_data["deals_won"] if truth_data else None

    top_revenue = sorted(attributed, key=lambda c: _money(c.revenue_won), reverse=True)
    top_pipeline = sorted(attributed, key=lambda c: _money(c.pipeline_created), reverse=True)

    return {
        "generated_at": iso(generated_at),
        "window_days": window_days,
        "truth": truth_data,
        "totals": {
            "truth_revenue": truth_revenue,
            "truth_deals": truth_deals,
            "truth_units": truth_data["units_sold"] if truth_data else None,
            "revenue_new_prospect": truth_data["revenue_new_prospect"] if truth_data else None,
            "revenue_old_prospect": truth_data["revenue_old_prospect"] if truth_data else None,
            "attributed_revenue": attributed_revenue,
            "attributed_deals_won": attributed_deals,
            "unattributed_revenue": _unattributed(truth_revenue, attributed_revenue),
            "unattributed_deals": _unattributed(truth_deals, attributed_deals),
            "attributed_pipeline": attributed_pipeline,
        },
        "top_revenue": [_campaign_entry(c) for c in top_revenue[:TOP_CAMPAIGNS]],
        "top_pipeline": [_campaign_entry(c) for c in top_pipeline[:TOP_CAMPAIGNS]],
        "funnel": (funnel or FunnelViews()).to_dict(),
        "consultants": [c.model_dump() for c in consultants or []],
        "loss_reasons": loss_reasons.to_dict() if loss_reasons is not None else None,
        "data_quality": {
            "deal_diagnostics": dict(deal_diagnostics) if deal_diagnostics is not None else None,
            "attribution_coverage": dict(coverage or {}),
            "data_gaps": [g.model_dump() for g in gaps or []],
        },
    }
