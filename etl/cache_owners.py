"""
Owner Cache Refresh
====================

Pages every active HubSpot owner and upserts it into owner_cache keyed by
owner_id. Used to put consultant names on leads.
"""
from __future__ import annotations

from typing import List

from etl.lib.errors import APIError
from etl.lib.logger import setup_logger
from etl.lib.utils import norm_str
from models.marketing_models import Owner, StepResult

logger = setup_logger("cache_owners")

TABLE = "owner_cache"


def transform_owner(record: dict) -> Owner:
    """Map a /crm/v3/owners record to an Owner row."""
    first = norm_str(record.get("firstName"))
    last = norm_str(record.get("lastName"))
    full = norm_str(record.get("fullName")) or " ".join(p for p in (first, last) if p) or None
    active = record.get("active")
    if active is None and "archived" in record:
        active = not record.get("archived")
    return Owner(
        owner_id=record.get("id"),
        email=norm_str(record.get("email")),
        first_name=first,
        last_name=last,
        full_name=full,
        is_active=active,
    )


def run(client, store, config) -> StepResult:
    result = StepResult(step="cache_owners")
    try:
        records = client.fetch_owners()
    except APIError as e:
        logger.error("Owner fetch failed, cache left as-is: %s", e)
        result.add_gap("owners", e)
        return result

    owners: List[Owner] = []
    for record in records:
        if record.get("id") is None:
            result.bump("skipped")
            continue
        owners.append(transform_owner(record))

    upsert = store.upsert(TABLE, [o.to_row() for o in owners], on_conflict="owner_id")
    for failure in upsert.failed_batches:
        result.add_gap(TABLE, failure)

    result.counts.update({"fetched": len(records), "upserted": upsert.written})
    logger.info("Owner cache: %d fetched, %d upserted", len(records), upsert.written)
    return result
