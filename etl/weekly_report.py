"""
Weekly Report
==============

Turns the report payload into the boardroom narrative and ships it:

1. Render through the AI provider (task "weekly_report"); on any failure
   fall back to the deterministic text renderer below.
2. Upsert the rendered text and payload into weekly_reports, keyed by the
   ISO Monday of the run week.
3. Write the payload atomically to data/processed/weekly_report_payload.json.
4. Email the report when SMTP and recipients are configured.

Missing figures always print as "not available"; nothing is invented.
"""
from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from etl.lib.ai_provider import ai_complete
from etl.lib.logger import PROJECT_ROOT, setup_logger
from etl.lib.mailer import ReportMailer
from etl.lib.utils import atomic_write_json
from models.marketing_models import StepResult

logger = setup_logger("weekly_report")

TABLE = "weekly_reports"
PAYLOAD_PATH = PROJECT_ROOT / "data" / "processed" / "weekly_report_payload.json"
NOT_AVAILABLE = "not available"


SYSTEM_PROMPT = """
You write a boardroom-ready weekly report for a UK marketing director.
Be specific, numerical, and action-oriented.
Use GBP (£) formatting, bullet points, and short headings.

For lead qualification, treat "Zoom Booked" as the qualified milestone.

The consultants section must only include the consultants present in the data.

Explain attribution coverage clearly:
- Truth totals = ALL sales pipeline closed-won deals in the window (close date)
- Attributed totals = deals and revenue linked to campaigns via our attribution rules
- Unattributed = truth minus attributed

If a figure is null or missing, write "not available" and do not invent it.
""".strip()

USER_PROMPT_TEMPLATE = """
Generate the report in two main sections plus an executive summary:

1) Executive Summary (truth totals + attribution coverage)
- Total revenue won, deals won and units sold (truth)
- New prospect revenue (<= {new_prospect_days}d) vs older/unknown
- Attributed vs unattributed revenue and deals
- Attributed pipeline created

2) A) Marketing Performance
- Top campaigns by attributed revenue (table)
- Top campaigns by attributed pipeline (table)
- Funnel: best and worst campaigns by Zoom Booked rate (min {min_leads} leads)
- Lead quality: top disqualification reasons
- 3-5 concrete actions

3) B) Sales Performance (consultants only)
For each consultant: callable leads, Zoom Booked count and rate, Sales
Qualified count, Disqualified count and rate, top 3 disqualification reasons.
Then call out best/worst outliers and coaching priorities tied to reasons.

Close with a short data-quality note using data_quality.

Data JSON:
{payload_json}
""".strip()


def week_start(now: datetime) -> date:
    """ISO Monday of the week containing `now`."""
    day = now.date()
    return day - timedelta(days=day.weekday())


def build_user_prompt(payload: Dict[str, Any], min_leads: int = 30,
                      new_prospect_days: int = 30) -> str:
    return USER_PROMPT_TEMPLATE.format(
        min_leads=min_leads,
        new_prospect_days=new_prospect_days,
        payload_json=json.dumps(payload, indent=2, default=str),
    )


# ─── Deterministic renderer ────────────────────────────────

def _money(value) -> str:
    return NOT_AVAILABLE if value is None else f"£{value:,.0f}"


def _count(value) -> str:
    return NOT_AVAILABLE if value is None else f"{value:,}"


def _pct(value) -> str:
    return NOT_AVAILABLE if value is None else f"{value * 100:.1f}%"


def render_fallback(payload: Dict[str, Any]) -> str:
    """Plain-text report built only from payload figures."""
    totals = payload.get("totals") or {}
    lines: List[str] = [
        f"Weekly Marketing Attribution Report ({payload.get('window_days', 90)}-day window)",
        "",
        "EXECUTIVE SUMMARY",
    ]
    if payload.get("truth") is None:
        lines.append("- Sales truth totals are not available for this window.")
    lines += [
        f"- Revenue won (truth): {_money(totals.get('truth_revenue'))}",
        f"- Deals won (truth): {_count(totals.get('truth_deals'))}",
        f"- Units sold (truth): {_count(totals.get('truth_units'))}",
        f"- New prospect revenue: {_money(totals.get('revenue_new_prospect'))}",
        f"- Older/unknown prospect revenue: {_money(totals.get('revenue_old_prospect'))}",
        f"- Attributed revenue: {_money(totals.get('attributed_revenue'))}"
        f" / unattributed: {_money(totals.get('unattributed_revenue'))}",
        f"- Attributed deals: {_count(totals.get('attributed_deals_won'))}"
        f" / unattributed: {_count(totals.get('unattributed_deals'))}",
        f"- Attributed pipeline created: {_money(totals.get('attributed_pipeline'))}",
        "",
        "A) MARKETING PERFORMANCE",
        "Top campaigns by attributed revenue:",
    ]
    top_revenue = payload.get("top_revenue") or []
    if not top_revenue:
        lines.append(f"  {NOT_AVAILABLE}")
    for c in top_revenue:
        lines.append(f"  - {c['name']}: {_money(c.get('revenue_won'))} "
                     f"({_count(c.get('deals_won'))} deals)")

    lines.append("Top campaigns by attributed pipeline:")
    top_pipeline = payload.get("top_pipeline") or []
    if not top_pipeline:
        lines.append(f"  {NOT_AVAILABLE}")
    for c in top_pipeline:
        lines.append(f"  - {c['name']}: {_money(c.get('pipeline_created'))} "
                     f"({_count(c.get('deals_created'))} deals created)")

    funnel = payload.get("funnel") or {}
    for label, key in (("Best Zoom Booked rate:", "top"), ("Worst Zoom Booked rate:", "bottom")):
        lines.append(label)
        rows = funnel.get(key) or []
        if not rows:
            lines.append(f"  {NOT_AVAILABLE}")
        for r in rows:
            lines.append(f"  - {r['utm_campaign']}: {_pct(r.get('zoom_rate'))} of "
                         f"{_count(r.get('leads_total'))} leads, "
                         f"disqualified {_pct(r.get('disqualified_rate'))}")

    lines.append("Top disqualification reasons:")
    reasons = (payload.get("loss_reasons") or {}).get("top_reasons") or []
    if not reasons:
        lines.append(f"  {NOT_AVAILABLE}")
    for r in reasons[:5]:
        lines.append(f"  - {r['reason']}: {r['count']}")

    lines += ["", "B) SALES PERFORMANCE (CONSULTANTS)"]
    consultants = payload.get("consultants") or []
    if not consultants:
        lines.append(f"  {NOT_AVAILABLE}")
    for c in consultants:
        reasons_text = ", ".join(c.get("top_disqualification_reasons") or []) or "none"
        lines.append(
            f"  - {c['owner']}: {_count(c.get('callable'))} callable, "
            f"{_count(c.get('zoom_booked'))} Zoom Booked ({_pct(c.get('callable_zoom_rate'))}), "
            f"{_count(c.get('sql_sales_qualified_stage'))} Sales Qualified, "
            f"{_count(c.get('disqualified'))} disqualified "
            f"({_pct(c.get('callable_disqualified_rate'))}); top reasons: {reasons_text}"
        )

    quality = payload.get("data_quality") or {}
    diagnostics = quality.get("deal_diagnostics")
    lines += ["", "DATA QUALITY"]
    if diagnostics is None:
        lines.append(f"- Deal diagnostics: {NOT_AVAILABLE}")
    else:
        lines.append(
            "- Deals evaluated: {total_evaluated_deals}, excluded: {excluded_deals}, "
            "missing contact: {deals_missing_contact}, unattributed: {unattributed_deals}"
            .format(**{k: diagnostics.get(k, 0) for k in (
                "total_evaluated_deals", "excluded_deals",
                "deals_missing_contact", "unattributed_deals")})
        )
    for scope, counts in (quality.get("attribution_coverage") or {}).items():
        lines.append(
            f"- {scope.capitalize()} attribution: {counts.get('form_submission', 0)} via form, "
            f"{counts.get('contact_utm', 0)} via contact UTM, "
            f"{counts.get('converting_campaign', 0)} via converting campaign, "
            f"{counts.get('unattributed', 0)} unattributed of {counts.get('total', 0)}"
        )
    gaps = quality.get("data_gaps") or []
    lines.append(f"- Data gaps this run: {len(gaps)}")
    for gap in gaps:
        lines.append(f"  - {gap['step']} / {gap['unit']}: {gap['error']}")

    return "\n".join(lines)


# ─── Rendering, persistence, delivery ──────────────────────

async def render_narrative(payload: Dict[str, Any], config, store=None) -> Tuple[str, str]:
    """
    Render the report text.

    Returns:
        (text, source) where source is "ai" or "fallback".
    """
    user_prompt = build_user_prompt(payload, config.min_leads, config.new_prospect_days)
    try:
        response = await ai_complete(
            task="weekly_report",
            system_prompt=SYSTEM_PROMPT,
            user_prompt=user_prompt,
            store=store,
        )
        text = response.content.strip()
        if text:
            return text, "ai"
        logger.warning("AI narrative was empty, using fallback renderer")
    except Exception as e:
        logger.warning("AI narrative failed, using fallback renderer: %s", e)
    return render_fallback(payload), "fallback"


def persist_report(store, payload: Dict[str, Any], text: str, source: str,
                   now: datetime, result: StepResult) -> None:
    row = {
        "week_start": week_start(now).isoformat(),
        "generated_at": now.isoformat(),
        "report_text": text,
        "renderer": source,
        "payload": payload,
    }
    upsert = store.upsert(TABLE, [row], on_conflict="week_start")
    for failure in upsert.failed_batches:
        result.add_gap(TABLE, failure)


async def run(
    store,
    config,
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
    dry_run: bool = False,
    send_email: bool = True,
    mailer: Optional[ReportMailer] = None,
    payload_path: Path = PAYLOAD_PATH,
) -> Tuple[StepResult, str]:
    now = now or datetime.now(timezone.utc)
    result = StepResult(step="weekly_report")

    text, source = await render_narrative(payload, config, store=None if dry_run else store)
    result.counts["ai_rendered"] = int(source == "ai")
    result.counts["characters"] = len(text)

    if dry_run:
        logger.info("Dry run: report rendered (%s, %d chars), not persisted", source, len(text))
        return result, text

    persist_report(store, payload, text, source, now, result)
    if not atomic_write_json(payload, payload_path):
        result.add_gap("payload file", f"could not write {payload_path}")

    if send_email:
        mailer = mailer or ReportMailer()
        subject = f"Weekly Marketing Attribution Report: w/c {week_start(now):%d %b %Y}"
        sent = mailer.send(config.report_email_to, subject, text)
        result.counts["emailed"] = int(sent)

    logger.info("Weekly report for w/c %s rendered via %s", week_start(now), source)
    return result, text
