"""
Contact Attribution Cache Refresh
===================================

Batch-reads every contact referenced by lead_contact_map and upserts its
email and attribution properties into contact_attribution_cache. The deal
rollup reuses refresh_contacts() for deal primary contacts.
"""
from __future__ import annotations

from typing import Dict, Iterable, List

from pydantic import ValidationError

from etl.lib.errors import APIError, StoreError
from etl.lib.logger import setup_logger
from etl.lib.utils import batched
from models.marketing_models import ContactAttribution, StepResult

logger = setup_logger("cache_contacts")

TABLE = "contact_attribution_cache"

CONTACT_PROPERTIES = [
    "email",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "hs_latest_source",
    "hs_latest_source_data_1",
    "hs_latest_source_data_2",
    "hs_analytics_source_data_1",
    "hs_analytics_source_data_2",
    "facebook_ad_name",
    "hs_analytics_first_touch_converting_campaign",
    "hs_analytics_last_touch_converting_campaign",
    "createdate",
]


def transform_contact(record: dict) -> ContactAttribution:
    props = record.get("properties") or {}
    return ContactAttribution(
        contact_id=record["id"],
        email=props.get("email"),
        utm_source=props.get("utm_source"),
        utm_medium=props.get("utm_medium"),
        utm_campaign=props.get("utm_campaign"),
        hs_latest_source=props.get("hs_latest_source"),
        hs_latest_source_data_1=props.get("hs_latest_source_data_1"),
        hs_latest_source_data_2=props.get("hs_latest_source_data_2"),
        hs_analytics_source_data_1=props.get("hs_analytics_source_data_1"),
        hs_analytics_source_data_2=props.get("hs_analytics_source_data_2"),
        facebook_ad_name=props.get("facebook_ad_name"),
        first_touch_converting_campaign=props.get("hs_analytics_first_touch_converting_campaign"),
        last_touch_converting_campaign=props.get("hs_analytics_last_touch_converting_campaign"),
        contact_created_at=props.get("createdate"),
    )


def refresh_contacts(client, store, contact_ids: Iterable[str], result: StepResult,
                     batch_size: int = 100) -> Dict[str, ContactAttribution]:
    """
    Fetch and upsert the given contacts. Failed batches are recorded on
    `result` and skipped.

    Returns:
        contact_id -> ContactAttribution for every contact successfully read.
    """
    ids = sorted({str(c) for c in contact_ids if c})
    contacts: Dict[str, ContactAttribution] = {}

    for index, chunk in enumerate(batched(ids, batch_size)):
        try:
            records = client.batch_read("contacts", chunk, CONTACT_PROPERTIES)
        except APIError as e:
            logger.warning("Contact batch %d failed, skipping: %s", index, e)
            result.add_gap(f"contacts batch {index}", e)
            continue

        rows: List[dict] = []
        for record in records:
            try:
                contact = transform_contact(record)
            except (KeyError, ValidationError) as e:
                logger.warning("Skipping malformed contact %s: %s", record.get("id"), e)
                result.bump("skipped")
                continue
            contacts[contact.contact_id] = contact
            rows.append(contact.to_row())

        upsert = store.upsert(TABLE, rows, on_conflict="contact_id")
        for failure in upsert.failed_batches:
            result.add_gap(f"contacts batch {index}", failure)
        result.bump("upserted", upsert.written)

        if index % 20 == 0:
            logger.info("Progress: %d/%d contacts processed",
                        min((index + 1) * batch_size, len(ids)), len(ids))

    return contacts


def run(client, store, config) -> StepResult:
    result = StepResult(step="cache_contacts")
    try:
        edges = store.select("lead_contact_map", columns="contact_id")
    except StoreError as e:
        logger.error("Could not read lead_contact_map: %s", e)
        result.add_gap("lead_contact_map", e)
        return result

    contact_ids = {str(e["contact_id"]) for e in edges}
    result.counts["contacts"] = len(contact_ids)
    contacts = refresh_contacts(client, store, contact_ids, result, config.crm_batch_size)

    with_utm = sum(1 for c in contacts.values() if c.utm_campaign)
    result.counts["with_utm_campaign"] = with_utm
    logger.info(
        "Contact cache: %d contacts, %d upserted, %d with utm_campaign",
        len(contact_ids), result.counts.get("upserted", 0), with_utm,
    )
    return result
