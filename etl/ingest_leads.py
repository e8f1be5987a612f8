"""
Lead Facts Ingestion
=====================

Searches HubSpot leads modified inside the rolling window and upserts them
into lead_facts_raw (last-write-wins on lead_id). Each page is upserted as
soon as it arrives, so an aborted run leaves a consistent partial snapshot.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import ValidationError

from etl.lib.errors import APIError
from etl.lib.logger import setup_logger
from etl.lib.utils import parse_timestamp
from models.marketing_models import Lead, StepResult

logger = setup_logger("ingest_leads")

TABLE = "lead_facts_raw"

# Properties requested from the leads object (schema version 1)
LEAD_PROPERTIES_V1 = [
    "hs_createdate",
    "hs_lastmodifieddate",
    "hs_lead_status",
    "hs_pipeline_stage",
    "hubspot_owner_id",
    "hs_lead_disqualification_reason",
]
MODIFIED_FIELD = "hs_lastmodifieddate"


def transform_lead(record: dict, now: datetime) -> Optional[Lead]:
    """
    Map a CRM lead search result to a Lead row. A lead with no creation date
    has no place in the cohort and maps to None.
    """
    props = record.get("properties") or {}
    created = (
        parse_timestamp(props.get("hs_createdate"))
        or parse_timestamp(record.get("createdAt"))
    )
    if created is None:
        return None
    updated = (
        parse_timestamp(props.get(MODIFIED_FIELD))
        or parse_timestamp(record.get("updatedAt"))
        or now
    )
    return Lead(
        lead_id=record["id"],
        created_at=created,
        updated_at=updated,
        lead_status=props.get("hs_lead_status"),
        lead_stage=props.get("hs_pipeline_stage"),
        owner_id=props.get("hubspot_owner_id"),
        disqualification_reason=props.get("hs_lead_disqualification_reason"),
    )


def run(client, store, config, now: Optional[datetime] = None) -> StepResult:
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=config.window_days)
    since_ms = str(int(since.timestamp() * 1000))
    result = StepResult(step="ingest_leads")

    filters = [{"propertyName": MODIFIED_FIELD, "operator": "GTE", "value": since_ms}]
    sorts = [{"propertyName": MODIFIED_FIELD, "direction": "ASCENDING"}]

    pages = client.search_pages("leads", filters, LEAD_PROPERTIES_V1, sorts=sorts)
    page_no = 0
    while True:
        page_no += 1
        try:
            records = next(pages)
        except StopIteration:
            break
        except APIError as e:
            # Without the page we have no cursor; stop with what we have.
            logger.error("Lead search page %d failed, stopping early: %s", page_no, e)
            result.add_gap(f"leads page {page_no}", e)
            break

        leads: List[Lead] = []
        for record in records:
            if record.get("id") is None:
                result.bump("skipped")
                continue
            try:
                lead = transform_lead(record, now)
            except ValidationError as e:
                logger.warning("Skipping malformed lead %s: %s", record.get("id"), e)
                result.bump("skipped")
                continue
            if lead is None:
                logger.warning("Skipping lead %s without a create date", record["id"])
                result.bump("skipped")
                continue
            leads.append(lead)

        upsert = store.upsert(TABLE, [lead.to_row() for lead in leads], on_conflict="lead_id")
        for failure in upsert.failed_batches:
            result.add_gap(f"leads page {page_no}", failure)
        result.bump("fetched", len(records))
        result.bump("upserted", upsert.written)
        result.bump("pages")
        logger.info("Page %d: %d leads", page_no, len(records))

    logger.info(
        "Lead ingestion (%dd): %d pages, %d fetched, %d upserted",
        config.window_days, result.counts.get("pages", 0),
        result.counts.get("fetched", 0), result.counts.get("upserted", 0),
    )
    return result
