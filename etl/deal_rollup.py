"""
Revenue / Deal Rollup
======================

Reads every deal created or closed inside the rolling window, attributes
it through its primary contact and accumulates, per
(campaign, source, medium, owner, deal type):

- deals_created / pipeline_created   created inside the window, any stage
- deals_won / revenue_won            won stage AND closed inside the window

Deals of an excluded type (SSAS, FIC by default) contribute nothing but
are still counted as evaluated. Results land in deal_revenue_rollup_90d
and, summed across deal types, in deal_campaign_rollup_90d for the funnel
join.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from etl.attribution import AttributionResolver, load_submissions
from etl.cache_contacts import refresh_contacts
from etl.lib.errors import APIError
from etl.lib.logger import setup_logger
from etl.lib.utils import batched, safe_int
from models.marketing_models import (
    Attribution,
    CampaignDealRollup,
    ContactAttribution,
    Deal,
    DealRollupRow,
    StepResult,
)

logger = setup_logger("deal_rollup")

ROLLUP_TABLE = "deal_revenue_rollup_90d"
ROLLUP_KEY = "utm_campaign,utm_source,utm_medium,owner_id,dealtype"
CAMPAIGN_TABLE = "deal_campaign_rollup_90d"

DEAL_PROPERTIES = [
    "dealname",
    "amount",
    "dealtype",
    "dealstage",
    "pipeline",
    "createdate",
    "closedate",
    "hubspot_owner_id",
    "total_no_of_sales",
]


def transform_deal(record: dict, contact_ids: Optional[List[str]] = None) -> Deal:
    props = record.get("properties") or {}
    return Deal(
        deal_id=str(record["id"]),
        dealtype=props.get("dealtype"),
        dealstage=props.get("dealstage"),
        amount=props.get("amount"),
        units=safe_int(props.get("total_no_of_sales")),
        created_at=props.get("createdate") or record.get("createdAt"),
        closed_at=props.get("closedate"),
        owner_id=props.get("hubspot_owner_id"),
        contact_ids=contact_ids or [],
    )


@dataclass
class DealSnapshot:
    """Window deals with their primary contacts, shared by rollup and truth totals."""
    window_start: datetime
    window_end: datetime
    deals: List[Deal] = field(default_factory=list)
    contacts: Dict[str, ContactAttribution] = field(default_factory=dict)


def _search_window(client, date_field: str, since: datetime, result: StepResult) -> List[dict]:
    since_ms = str(int(since.timestamp() * 1000))
    filters = [{"propertyName": date_field, "operator": "GTE", "value": since_ms}]
    sorts = [{"propertyName": date_field, "direction": "ASCENDING"}]
    records: List[dict] = []
    pages = client.search_pages("deals", filters, DEAL_PROPERTIES, sorts=sorts)
    page_no = 0
    while True:
        page_no += 1
        try:
            records.extend(next(pages))
        except StopIteration:
            break
        except APIError as e:
            logger.error("Deal search on %s page %d failed, stopping early: %s",
                         date_field, page_no, e)
            result.add_gap(f"deals by {date_field} page {page_no}", e)
            break
    return records


def fetch_snapshot(client, store, config, result: StepResult,
                   now: Optional[datetime] = None) -> DealSnapshot:
    """Fetch window deals, their contact associations and primary contacts."""
    now = now or datetime.now(timezone.utc)
    snapshot = DealSnapshot(window_start=now - timedelta(days=config.window_days), window_end=now)

    # Created-in-window and closed-in-window deals, merged by ID
    raw: Dict[str, dict] = {}
    for date_field in ("createdate", "closedate"):
        for record in _search_window(client, date_field, snapshot.window_start, result):
            if record.get("id") is not None:
                raw.setdefault(str(record["id"]), record)

    deal_ids = list(raw)
    associations: Dict[str, List[str]] = {}
    for index, chunk in enumerate(batched(deal_ids, config.crm_batch_size)):
        try:
            associations.update(client.associations("deals", "contacts", chunk))
        except APIError as e:
            logger.warning("Deal association batch %d failed, skipping: %s", index, e)
            result.add_gap(f"deal associations batch {index}", e)

    for deal_id, record in raw.items():
        try:
            snapshot.deals.append(transform_deal(record, associations.get(deal_id)))
        except ValidationError as e:
            logger.warning("Skipping malformed deal %s: %s", deal_id, e)
            result.bump("skipped")

    primary_ids = {d.primary_contact_id for d in snapshot.deals if d.primary_contact_id}
    snapshot.contacts = refresh_contacts(client, store, primary_ids, result,
                                         config.crm_batch_size)
    result.counts["deals_fetched"] = len(snapshot.deals)
    logger.info("Deal snapshot: %d deals, %d primary contacts",
                len(snapshot.deals), len(snapshot.contacts))
    return snapshot


def _in_window(ts: Optional[datetime], start: datetime, end: datetime) -> bool:
    return ts is not None and start <= ts <= end


@dataclass
class DealRollup:
    rows: List[DealRollupRow] = field(default_factory=list)
    campaigns: List[CampaignDealRollup] = field(default_factory=list)
    diagnostics: Dict[str, int] = field(default_factory=dict)
    attributions: List[Tuple[Deal, Attribution]] = field(default_factory=list)
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


def rollup_deals(deals: List[Deal], resolver: AttributionResolver, config,
                 window_start: datetime, window_end: datetime) -> DealRollup:
    """Accumulate deals into per-key and per-campaign rollups. Pure."""
    won_stages = set(config.won_stages)
    buckets: Dict[tuple, DealRollupRow] = {}
    rollup = DealRollup(window_start=window_start, window_end=window_end, diagnostics={
        "total_evaluated_deals": 0,
        "excluded_deals": 0,
        "deals_missing_contact": 0,
        "unattributed_deals": 0,
    })
    diag = rollup.diagnostics

    for deal in deals:
        diag["total_evaluated_deals"] += 1
        if config.is_excluded_dealtype(deal.dealtype):
            diag["excluded_deals"] += 1
            continue

        if deal.primary_contact_id is None:
            diag["deals_missing_contact"] += 1
        attribution = resolver.resolve_deal(deal)
        if not attribution.is_attributed:
            diag["unattributed_deals"] += 1
        rollup.attributions.append((deal, attribution))

        created = _in_window(deal.created_at, window_start, window_end)
        won = deal.dealstage in won_stages and _in_window(deal.closed_at, window_start, window_end)
        if not (created or won):
            continue

        row = DealRollupRow(
            utm_campaign=attribution.utm_campaign,
            utm_source=attribution.utm_source or "",
            utm_medium=attribution.utm_medium or "",
            owner_id=deal.owner_id or "",
            dealtype=deal.dealtype,
            window_start=window_start,
            window_end=window_end,
        )
        row = buckets.setdefault(row.key, row)
        if created:
            row.deals_created += 1
            row.pipeline_created += deal.amount
        if won:
            row.deals_won += 1
            row.revenue_won += deal.amount

    rollup.rows = list(buckets.values())
    rollup.campaigns = by_campaign(rollup.rows)
    return rollup


def by_campaign(rows: List[DealRollupRow]) -> List[CampaignDealRollup]:
    """Sum rollup rows across source, medium, owner and deal type."""
    campaigns: Dict[str, CampaignDealRollup] = {}
    for row in rows:
        c = campaigns.setdefault(row.utm_campaign, CampaignDealRollup(utm_campaign=row.utm_campaign))
        c.deals_won += row.deals_won
        c.revenue_won += row.revenue_won
        c.deals_created += row.deals_created
        c.pipeline_created += row.pipeline_created
        if row.deals_won:
            c.deals_won_by_dealtype[row.dealtype] = (
                c.deals_won_by_dealtype.get(row.dealtype, 0) + row.deals_won
            )
            c.revenue_by_dealtype[row.dealtype] = (
                c.revenue_by_dealtype.get(row.dealtype, 0.0) + float(row.revenue_won)
            )
    return list(campaigns.values())


def _expired_rows(
    store, rollup: DealRollup,
) -> Tuple[List[DealRollupRow], List[CampaignDealRollup]]:
    """Zeroed rows for persisted keys that have left the rolling window."""
    live_keys = {r.key for r in rollup.rows}
    expired = []
    for row in store.select(ROLLUP_TABLE, columns=ROLLUP_KEY):
        stale = DealRollupRow.model_validate(row)
        if stale.key not in live_keys:
            expired.append(DealRollupRow(
                **{k: getattr(stale, k) for k in ROLLUP_KEY.split(",")},
                window_start=rollup.window_start, window_end=rollup.window_end,
            ))

    live_campaigns = {c.utm_campaign for c in rollup.campaigns}
    expired_campaigns = [
        CampaignDealRollup(utm_campaign=row["utm_campaign"])
        for row in store.select(CAMPAIGN_TABLE, columns="utm_campaign")
        if row.get("utm_campaign") and row["utm_campaign"] not in live_campaigns
    ]
    return expired, expired_campaigns


def persist(store, rollup: DealRollup, result: StepResult) -> None:
    expired, expired_campaigns = _expired_rows(store, rollup)
    if expired or expired_campaigns:
        logger.info("Zeroing %d rollup rows and %d campaigns outside the window",
                    len(expired), len(expired_campaigns))
    result.counts["expired_rows"] = len(expired) + len(expired_campaigns)

    rows = [r.to_row() for r in rollup.rows + expired]
    upsert = store.upsert(ROLLUP_TABLE, rows, on_conflict=ROLLUP_KEY)
    for failure in upsert.failed_batches:
        result.add_gap(ROLLUP_TABLE, failure)
    result.counts["rollup_rows"] = upsert.written

    rows = [c.to_row() for c in rollup.campaigns + expired_campaigns]
    upsert = store.upsert(CAMPAIGN_TABLE, rows, on_conflict="utm_campaign")
    for failure in upsert.failed_batches:
        result.add_gap(CAMPAIGN_TABLE, failure)
    result.counts["campaign_rows"] = upsert.written


def submissions_since(snapshot: DealSnapshot) -> datetime:
    """Earliest deal creation in the snapshot, so older deals still see their submissions."""
    created = [d.created_at for d in snapshot.deals if d.created_at is not None]
    return min(created + [snapshot.window_start])


def run(client, store, config, now: Optional[datetime] = None,
        snapshot: Optional[DealSnapshot] = None) -> Tuple[StepResult, DealRollup, DealSnapshot]:
    result = StepResult(step="deal_rollup")
    if snapshot is None:
        snapshot = fetch_snapshot(client, store, config, result, now=now)

    resolver = AttributionResolver(snapshot.contacts,
                                   load_submissions(store, submissions_since(snapshot)))
    rollup = rollup_deals(snapshot.deals, resolver, config,
                          snapshot.window_start, snapshot.window_end)
    result.counts.update(rollup.diagnostics)

    persist(store, rollup, result)

    logger.info(
        "Deal rollup: %d evaluated, %d excluded, %d missing contact, %d unattributed; "
        "%d rollup rows across %d campaigns",
        rollup.diagnostics["total_evaluated_deals"], rollup.diagnostics["excluded_deals"],
        rollup.diagnostics["deals_missing_contact"], rollup.diagnostics["unattributed_deals"],
        len(rollup.rows), len(rollup.campaigns),
    )
    return result, rollup, snapshot


def _has_activity(c: CampaignDealRollup) -> bool:
    return bool(c.deals_won or c.deals_created or c.revenue_won or c.pipeline_created)


def load_campaigns(store) -> List[CampaignDealRollup]:
    """Per-campaign rollup rows as last persisted; zeroed (expired) campaigns dropped."""
    campaigns = [CampaignDealRollup.model_validate(r) for r in store.select(CAMPAIGN_TABLE)]
    return [c for c in campaigns if _has_activity(c)]
