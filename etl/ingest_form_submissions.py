"""
Form Submission Ingestion
==========================

Pulls HubSpot form submissions for the last FORM_INGEST_DAYS days into
form_submissions_raw.

- Forms whose name matches the exclusion pattern (default "Practitioner")
  are skipped and never stored.
- Email and UTM fields are extracted from the submission values.
- Rows are insert-if-absent on (form_guid, submitted_at, email,
  utm_campaign, page_url), so re-running over the same window is a no-op.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError

from etl.lib.errors import APIError
from etl.lib.logger import setup_logger
from etl.lib.utils import norm_str, parse_timestamp
from models.marketing_models import FormSubmission, StepResult

logger = setup_logger("ingest_form_submissions")

TABLE = "form_submissions_raw"
CONFLICT_KEY = "form_guid,submitted_at,email,utm_campaign,page_url"

UTM_FIELDS = ["utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content"]


def values_to_map(values) -> Dict[str, Any]:
    """Submission `values` list -> {lowercased field name: value}."""
    mapped: Dict[str, Any] = {}
    for v in values or []:
        if not isinstance(v, dict):
            continue
        name = v.get("name") or v.get("fieldName") or v.get("key")
        if not name:
            continue
        value = v.get("value", v.get("values"))
        mapped[str(name).lower()] = value
    return mapped


def transform_submission(raw: dict, form_guid: str, form_name: str) -> Optional[FormSubmission]:
    """Build a FormSubmission, or None when submittedAt is unusable."""
    submitted_at = parse_timestamp(raw.get("submittedAt"))
    if submitted_at is None:
        return None
    values = values_to_map(raw.get("values"))
    return FormSubmission(
        submitted_at=submitted_at,
        form_guid=form_guid,
        form_name=form_name,
        page_url=raw.get("pageUrl"),
        email=values.get("email"),
        raw_values_json=values,
        **{field: values.get(field) for field in UTM_FIELDS},
    )


def _key_row(sub: FormSubmission) -> Dict[str, Any]:
    row = sub.to_row()
    # Composite key columns can't be NULL for the uniqueness guard to hold
    for column in ("email", "utm_campaign", "page_url"):
        if row[column] is None:
            row[column] = ""
    return row


def run(client, store, config, now: Optional[datetime] = None,
        days: Optional[int] = None) -> StepResult:
    now = now or datetime.now(timezone.utc)
    days = days or config.form_ingest_days
    cutoff = now - timedelta(days=days)
    result = StepResult(step="ingest_form_submissions")

    try:
        forms = client.fetch_forms()
    except APIError as e:
        logger.error("Form listing failed: %s", e)
        result.add_gap("forms", e)
        return result

    for form in forms:
        form_guid = norm_str(form.get("id") or form.get("guid"))
        form_name = norm_str(form.get("name")) or "(unnamed form)"
        if not form_guid:
            continue
        if config.is_excluded_form(form_name):
            result.bump("forms_excluded")
            continue

        rows = []
        try:
            for page in client.form_submission_pages(form_guid):
                reached_cutoff = False
                for raw in page:
                    result.bump("returned")
                    try:
                        sub = transform_submission(raw, form_guid, form_name)
                    except ValidationError as e:
                        logger.debug("Skipping malformed submission on %s: %s", form_guid, e)
                        sub = None
                    if sub is None:
                        result.bump("skipped")
                        continue
                    if sub.submitted_at < cutoff:
                        # Results come newest -> oldest
                        reached_cutoff = True
                        break
                    rows.append(_key_row(sub))
                if reached_cutoff:
                    break
        except APIError as e:
            logger.warning("Submissions for form %s (%s) failed: %s", form_name, form_guid, e)
            result.add_gap(f"form {form_guid}", e)

        upsert = store.upsert(TABLE, rows, on_conflict=CONFLICT_KEY, ignore_duplicates=True)
        for failure in upsert.failed_batches:
            result.add_gap(f"form {form_guid}", failure)
        result.bump("processed", len(rows))
        result.bump("forms_scanned")

    logger.info(
        "Form submissions (%dd): %d forms scanned, %d excluded, %d processed",
        days, result.counts.get("forms_scanned", 0),
        result.counts.get("forms_excluded", 0), result.counts.get("processed", 0),
    )
    return result
