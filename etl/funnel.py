"""
Funnel Aggregator
==================

Groups attributed leads by campaign and lead stage and derives the funnel
rates used by the weekly report:

    mql_eligible      = max(0, leads_total - marketing_prospect)
    sql               = sales_qualified + zoom_booked
    mql_eligible_rate, sql_rate, zoom_rate, disqualified_rate   over leads_total
    mql_to_sql_rate   = sql / mql_eligible   (0 when mql_eligible is 0)
    sql_to_zoom_rate  = zoom_booked / sql    (0 when sql is 0)

Leads in the Not Applicable stage never enter any bucket or denominator.
The same derivation grouped by owner gives the consultant funnel.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Hashable, Iterable, List, Optional, Tuple

from etl.lib.logger import setup_logger
from etl.lib.stages import LeadStage, StageMap
from etl.lib.utils import safe_div
from etl.loss_reasons import NO_REASON
from models.marketing_models import (
    Attribution,
    ConsultantFunnelRow,
    FunnelCounts,
    FunnelRow,
    Lead,
    Owner,
)

logger = setup_logger("funnel")


def tally(rows: Iterable[Tuple[Hashable, Optional[LeadStage]]]) -> Dict[Hashable, FunnelCounts]:
    """
    Count leads per group key by stage.

    Groups appear in first-seen order. NOT_APPLICABLE rows are dropped;
    unknown stages (None) still count toward leads_total.
    """
    grouped: Dict[Hashable, FunnelCounts] = {}
    for key, stage in rows:
        if stage is LeadStage.NOT_APPLICABLE:
            continue
        counts = grouped.setdefault(key, FunnelCounts())
        counts.leads_total += 1
        if stage is LeadStage.MARKETING_PROSPECT:
            counts.non_mql_marketing_prospect += 1
        elif stage is LeadStage.DISQUALIFIED:
            counts.disqualified += 1
        elif stage is LeadStage.SALES_QUALIFIED:
            counts.sql_sales_qualified_stage += 1
        elif stage is LeadStage.ZOOM_BOOKED:
            counts.zoom_booked += 1
    return grouped


def derive_rates(counts: FunnelCounts) -> dict:
    """Derived fields shared by every funnel row."""
    total = counts.leads_total
    mql_eligible = max(0, total - counts.non_mql_marketing_prospect)
    sql = counts.sql_sales_qualified_stage + counts.zoom_booked
    return {
        "leads_total": total,
        "non_mql_marketing_prospect": counts.non_mql_marketing_prospect,
        "mql_eligible": mql_eligible,
        "disqualified": counts.disqualified,
        "sql_sales_qualified_stage": counts.sql_sales_qualified_stage,
        "sql": sql,
        "zoom_booked": counts.zoom_booked,
        "mql_eligible_rate": safe_div(mql_eligible, total),
        "sql_rate": safe_div(sql, total),
        "zoom_rate": safe_div(counts.zoom_booked, total),
        "disqualified_rate": safe_div(counts.disqualified, total),
        "mql_to_sql_rate": safe_div(sql, mql_eligible),
        "sql_to_zoom_rate": safe_div(counts.zoom_booked, sql),
    }


def build_campaign_funnel(
    attributed: Iterable[Tuple[Lead, Attribution]],
    stage_map: StageMap,
    deals_won_by_campaign: Optional[Dict[str, int]] = None,
) -> List[FunnelRow]:
    """One FunnelRow per resolved campaign, in first-seen order."""
    deals_won_by_campaign = deals_won_by_campaign or {}
    grouped = tally(
        (attribution.utm_campaign, stage_map.classify(lead.lead_stage))
        for lead, attribution in attributed
    )
    return [
        FunnelRow(
            utm_campaign=campaign,
            deals_won=deals_won_by_campaign.get(campaign, 0),
            **derive_rates(counts),
        )
        for campaign, counts in grouped.items()
    ]


def rank(rows: List[FunnelRow], min_leads: int, n: int, descending: bool) -> List[FunnelRow]:
    """Eligible rows (leads_total >= min_leads) ordered by zoom_rate; equal rates keep input order."""
    eligible = [r for r in rows if r.leads_total >= min_leads]
    return sorted(eligible, key=lambda r: r.zoom_rate, reverse=descending)[:n]


@dataclass
class FunnelViews:
    all: List[FunnelRow] = field(default_factory=list)
    top: List[FunnelRow] = field(default_factory=list)
    bottom: List[FunnelRow] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "all": [r.model_dump() for r in self.all],
            "top": [r.model_dump() for r in self.top],
            "bottom": [r.model_dump() for r in self.bottom],
        }


def funnel_views(rows: List[FunnelRow], min_leads: int = 30,
                 top_n: int = 5, bottom_n: int = 5) -> FunnelViews:
    return FunnelViews(
        all=list(rows),
        top=rank(rows, min_leads, top_n, descending=True),
        bottom=rank(rows, min_leads, bottom_n, descending=False),
    )


# ---------------------------------------------------------------------------
# Consultant funnel
# ---------------------------------------------------------------------------

def build_consultant_funnel(
    leads: Iterable[Lead],
    owners: Iterable[Owner],
    stage_map: StageMap,
    consultant_names: List[str],
) -> List[ConsultantFunnelRow]:
    """
    Funnel per named consultant. Leads need a stage and an owner on the
    allow-list; names match case-insensitively and print as configured.
    Sorted by callable leads, descending.
    """
    allowed = {name.strip().lower(): name for name in consultant_names}
    owner_names: Dict[str, str] = {}
    for owner in owners:
        name = (owner.full_name or "").strip().lower()
        if name in allowed:
            owner_names[owner.owner_id] = allowed[name]

    keyed: List[Tuple[str, LeadStage]] = []
    reasons: Dict[str, Counter] = {}
    for lead in leads:
        if not lead.lead_stage or lead.owner_id not in owner_names:
            continue
        consultant = owner_names[lead.owner_id]
        stage = stage_map.classify(lead.lead_stage)
        keyed.append((consultant, stage))
        if stage is LeadStage.DISQUALIFIED:
            reasons.setdefault(consultant, Counter())[lead.disqualification_reason or NO_REASON] += 1

    rows = []
    for consultant, counts in tally(keyed).items():
        callable_leads = max(0, counts.leads_total - counts.non_mql_marketing_prospect)
        top_reasons = reasons.get(consultant, Counter()).most_common(3)
        rows.append(ConsultantFunnelRow(
            owner=consultant,
            callable=callable_leads,
            callable_zoom_rate=safe_div(counts.zoom_booked, callable_leads),
            callable_disqualified_rate=safe_div(counts.disqualified, callable_leads),
            top_disqualification_reasons=[f"{reason}:{n}" for reason, n in top_reasons],
            **derive_rates(counts),
        ))

    rows.sort(key=lambda r: r.callable, reverse=True)
    logger.info("Consultant funnel: %d consultants", len(rows))
    return rows


# ---------------------------------------------------------------------------
# Store loaders
# ---------------------------------------------------------------------------

def load_owners(store) -> List[Owner]:
    return [Owner.model_validate(r) for r in store.select("owner_cache")]


def summarize(views: FunnelViews, as_of: Optional[datetime] = None) -> None:
    leads = sum(r.leads_total for r in views.all)
    logger.info(
        "Funnel%s: %d campaigns, %d leads, %d top / %d bottom eligible",
        f" as of {as_of:%Y-%m-%d}" if as_of else "",
        len(views.all), leads, len(views.top), len(views.bottom),
    )
