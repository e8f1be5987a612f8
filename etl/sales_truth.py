"""
Sales truth totals: authoritative won-deal figures for the window, computed
by close date independently of any attribution. The report compares these
against the campaign-attributed sums to size the unattributed remainder.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Tuple

from etl.lib.errors import StoreError
from etl.lib.logger import setup_logger
from models.marketing_models import ContactAttribution, Deal, SalesTruthTotals, StepResult

logger = setup_logger("sales_truth")

TABLE = "sales_truth_totals_90d"


def compute_truth(
    deals: Iterable[Deal],
    contacts: Dict[str, ContactAttribution],
    config,
    window_start: datetime,
    window_end: datetime,
) -> SalesTruthTotals:
    """
    Won-stage deals closed in [window_start, window_end), excluding excluded
    deal types. Revenue is split new vs old prospect by whether the primary
    contact was created within NEW_PROSPECT_DAYS before the close date;
    unknown contact dates count as old.
    """
    won_stages = set(config.won_stages)
    new_prospect = timedelta(days=config.new_prospect_days)
    totals = SalesTruthTotals(
        window_start_date=window_start.date().isoformat(),
        window_end_date=window_end.date().isoformat(),
    )

    for deal in deals:
        if deal.dealstage not in won_stages or deal.closed_at is None:
            continue
        if not (window_start <= deal.closed_at < window_end):
            continue
        if config.is_excluded_dealtype(deal.dealtype):
            continue

        totals.deals_won_count += 1
        totals.revenue_won += deal.amount
        totals.units_sold += deal.units

        contact = contacts.get(deal.primary_contact_id or "")
        if deal.primary_contact_id is None:
            totals.deals_missing_contact += 1
        created = contact.contact_created_at if contact else None
        if created is not None and deal.closed_at - created <= new_prospect:
            totals.revenue_new_prospect += deal.amount
        else:
            totals.revenue_old_prospect += deal.amount

    return totals


def run(store, config, snapshot) -> Tuple[StepResult, SalesTruthTotals]:
    """Compute truth totals from a deal snapshot and persist them."""
    result = StepResult(step="sales_truth")
    totals = compute_truth(snapshot.deals, snapshot.contacts, config,
                           snapshot.window_start, snapshot.window_end)
    result.counts.update({
        "deals_won": totals.deals_won_count,
        "deals_missing_contact": totals.deals_missing_contact,
    })
    upsert = store.upsert(TABLE, [totals.to_row()], on_conflict="window_start_date,window_end_date")
    for failure in upsert.failed_batches:
        result.add_gap(TABLE, failure)

    logger.info(
        "Truth totals %s..%s: %d deals won, revenue %s, %d units",
        totals.window_start_date, totals.window_end_date,
        totals.deals_won_count, totals.revenue_won, totals.units_sold,
    )
    return result, totals


def load_latest(store) -> Optional[SalesTruthTotals]:
    """Most recent truth totals row, or None if none are stored."""
    try:
        row = store.latest(TABLE, order_by="window_end_date")
    except StoreError as e:
        logger.warning("Could not read truth totals: %s", e)
        return None
    return SalesTruthTotals.model_validate(row) if row else None
