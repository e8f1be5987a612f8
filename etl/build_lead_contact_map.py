"""
Lead -> Contact Map Builder
============================

Reads the leads updated inside the window from lead_facts_raw, asks HubSpot
for their contact associations in batches of 100, and inserts any missing
(lead_id, contact_id) edges into lead_contact_map. Existing edges are left
untouched.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from etl.lib.errors import APIError, StoreError
from etl.lib.logger import setup_logger
from etl.lib.utils import batched
from models.marketing_models import LeadContactEdge, StepResult

logger = setup_logger("build_lead_contact_map")

TABLE = "lead_contact_map"


def run(client, store, config, now: Optional[datetime] = None) -> StepResult:
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=config.window_days)
    result = StepResult(step="build_lead_contact_map")

    try:
        rows = store.select_since("lead_facts_raw", "updated_at", since, columns="lead_id")
    except StoreError as e:
        logger.error("Could not read leads for association lookup: %s", e)
        result.add_gap("lead_facts_raw", e)
        return result

    lead_ids = [str(r["lead_id"]) for r in rows]
    result.counts["leads_considered"] = len(lead_ids)

    for index, chunk in enumerate(batched(lead_ids, config.crm_batch_size)):
        try:
            mapping = client.associations("leads", "contacts", chunk)
        except APIError as e:
            logger.warning("Association batch %d failed, skipping: %s", index, e)
            result.add_gap(f"lead associations batch {index}", e)
            continue

        edges = []
        for lead_id, contact_ids in mapping.items():
            if contact_ids:
                result.bump("leads_with_contacts")
            for contact_id in contact_ids:
                edges.append(LeadContactEdge(lead_id=lead_id, contact_id=contact_id).to_row())

        upsert = store.upsert(TABLE, edges, on_conflict="lead_id,contact_id",
                              ignore_duplicates=True)
        for failure in upsert.failed_batches:
            result.add_gap(f"lead associations batch {index}", failure)
        result.bump("edges", upsert.written)

    logger.info(
        "Lead->contact map: %d leads, %d with contacts, %d edges written",
        len(lead_ids), result.counts.get("leads_with_contacts", 0),
        result.counts.get("edges", 0),
    )
    return result
