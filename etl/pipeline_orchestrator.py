"""
Attribution ETL — Pipeline Orchestrator
=========================================
Runs the weekly attribution batch with step tracking, parallel ingestion,
data-gap collection and run logging to Supabase.

Pipeline phases:
    1. Ingest  (parallel) owners, leads, form submissions
               (then)     lead->contact map, contact cache
    2. Rollup            deal revenue rollup, sales truth totals
    3. Report            attribution, funnel, consultants, payload, narrative

Failures of a page, batch or step are recorded as data gaps and the run
carries on. Only configuration problems stop the run.

Usage:
    python main.py                                  # full pipeline
    python main.py --phase ingest                   # ingest only
    python main.py --skip-ingest                    # rollup + report
    python main.py --dry-run                        # render report, write nothing
    python main.py --no-email --window-days 30
"""
from __future__ import annotations

import argparse
import asyncio
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from etl import (
    build_lead_contact_map,
    cache_contacts,
    cache_owners,
    deal_rollup,
    ingest_form_submissions,
    ingest_leads,
    sales_truth,
    weekly_report,
)
from etl.attribution import coverage, load_attributed_leads
from etl.funnel import (
    build_campaign_funnel,
    build_consultant_funnel,
    funnel_views,
    load_owners,
    summarize,
)
from etl.lib.config import PipelineConfig
from etl.lib.errors import (
    APIError,
    ConfigError,
    PipelineError,
    SchemaValidationError,
    StepError,
)
from etl.lib.logger import setup_logger
from etl.lib.stages import StageMap
from etl.lib.supabase_client import TableStore
from etl.loss_reasons import rollup_loss_reasons
from etl.report_payload import build_payload
from integrations.hubspot import HubSpotClient
from models.marketing_models import DataGap, StepResult

logger = setup_logger("pipeline_orchestrator")

PHASES = ("ingest", "rollup", "report")
RUNS_TABLE = "pipeline_runs"


@dataclass
class PipelineRun:
    """State shared by the phases of one run."""
    config: PipelineConfig
    client: Any
    store: Any
    stage_map: StageMap
    now: datetime
    dry_run: bool = False
    send_email: bool = True
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    steps: List[dict] = field(default_factory=list)
    gaps: List[DataGap] = field(default_factory=list)
    rollup: Optional[deal_rollup.DealRollup] = None
    truth: Any = None

    def record(self, name: str, status: str, duration: float,
               result: Optional[StepResult] = None, error: Optional[str] = None) -> None:
        if result is not None:
            self.gaps.extend(result.gaps)
        if error is not None:
            self.gaps.append(DataGap(step=name, unit="step", error=error))
        self.steps.append({
            "name": name,
            "status": status,
            "duration_ms": round(duration * 1000),
            "counts": dict(result.counts) if result else {},
            "gaps": len(result.gaps) if result else 0,
            "error": error,
        })


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------
def run_step(run: PipelineRun, name: str, fn: Callable, *args, **kwargs):
    """
    Execute one step, recording its duration, counts and gaps.

    Configuration-level errors propagate; anything else fails the step only.

    Returns:
        Whatever the step returned, or None if it failed or was skipped.
    """
    if run.dry_run:
        logger.info("[DRY RUN] Would execute: %s", name)
        run.record(name, "skipped", 0.0)
        return None

    logger.info("Running: %s", name)
    start = time.time()
    try:
        output = fn(*args, **kwargs)
    except (ConfigError, SchemaValidationError):
        raise
    except Exception as e:
        duration = time.time() - start
        error = StepError(name, e)
        logger.error("%s after %.1fs, continuing pipeline", error, duration,
                     exc_info=not isinstance(e, PipelineError))
        run.record(name, "failed", duration, error=str(error))
        return None

    duration = time.time() - start
    result = output[0] if isinstance(output, tuple) else output
    status = "success" if not result.gaps else "partial"
    logger.info("%s completed in %.1fs (%s) %s", name, duration, status, result.counts)
    run.record(name, status, duration, result)
    return output


async def run_ingest(run: PipelineRun) -> None:
    c, s, cfg = run.client, run.store, run.config

    # Independent sources first, in parallel threads
    parallel = [
        ("Cache Owners", cache_owners.run, (c, s, cfg)),
        ("Ingest Leads", ingest_leads.run, (c, s, cfg, run.now)),
        ("Ingest Form Submissions", ingest_form_submissions.run, (c, s, cfg, run.now)),
    ]
    await asyncio.gather(*(
        asyncio.to_thread(run_step, run, name, fn, *args) for name, fn, args in parallel
    ))

    # Edges need leads; contacts need edges
    run_step(run, "Build Lead-Contact Map", build_lead_contact_map.run, c, s, cfg, run.now)
    run_step(run, "Cache Contacts", cache_contacts.run, c, s, cfg)


def run_rollup(run: PipelineRun) -> None:
    output = run_step(run, "Deal Rollup", deal_rollup.run,
                      run.client, run.store, run.config, run.now)
    if output is None:
        return
    _, run.rollup, snapshot = output
    output = run_step(run, "Sales Truth Totals", sales_truth.run, run.store, run.config, snapshot)
    if output is not None:
        run.truth = output[1]


def _load(result: StepResult, unit: str, fn: Callable, default):
    """Read one report source; a store failure becomes a gap and a default."""
    try:
        return fn()
    except PipelineError as e:
        logger.warning("Report source %s unavailable: %s", unit, e)
        result.add_gap(unit, e)
        return default


def build_report_payload(run: PipelineRun) -> Tuple[StepResult, Dict[str, Any]]:
    """Gather every report source and compose the payload."""
    cfg, store = run.config, run.store
    result = StepResult(step="report_payload")
    since = run.now - timedelta(days=cfg.window_days)

    attributed = _load(result, "attributed leads", lambda: load_attributed_leads(store, since), [])
    if run.rollup is not None:
        campaigns = run.rollup.campaigns
    else:
        campaigns = _load(result, "campaign rollup", lambda: deal_rollup.load_campaigns(store), [])
    deals_won = {c.utm_campaign: c.deals_won for c in campaigns}

    views = funnel_views(
        build_campaign_funnel(attributed, run.stage_map, deals_won),
        min_leads=cfg.min_leads, top_n=cfg.top_n, bottom_n=cfg.bottom_n,
    )
    summarize(views, run.now)
    owners = _load(result, "owner cache", lambda: load_owners(store), [])
    consultants = build_consultant_funnel(
        [lead for lead, _ in attributed], owners, run.stage_map, cfg.consultant_names,
    )
    truth = run.truth or sales_truth.load_latest(store)

    attribution_coverage = {"leads": coverage(attributed)}
    if run.rollup is not None:
        attribution_coverage["deals"] = coverage(run.rollup.attributions)

    payload = build_payload(
        truth=truth,
        campaigns=campaigns,
        funnel=views,
        consultants=consultants,
        loss_reasons=rollup_loss_reasons(attributed, run.stage_map),
        deal_diagnostics=run.rollup.diagnostics if run.rollup else None,
        coverage=attribution_coverage,
        gaps=run.gaps + result.gaps,
        window_days=cfg.window_days,
        generated_at=run.now,
    )
    result.counts.update({"leads": len(attributed), "campaigns": len(views.all)})
    return result, payload


async def run_report(run: PipelineRun) -> None:
    start = time.time()
    try:
        result, payload = build_report_payload(run)
    except (ConfigError, SchemaValidationError):
        raise
    except Exception as e:
        logger.error("Report payload failed: %s", e, exc_info=True)
        run.record("Report Payload", "failed", time.time() - start, error=str(e))
        payload = build_payload(gaps=run.gaps, window_days=run.config.window_days,
                                generated_at=run.now)
    else:
        run.record("Report Payload", "success" if not result.gaps else "partial",
                   time.time() - start, result)

    start = time.time()
    result, _ = await weekly_report.run(
        run.store, run.config, payload, now=run.now,
        dry_run=run.dry_run, send_email=run.send_email,
    )
    run.record("Weekly Report", "success" if not result.gaps else "partial",
               time.time() - start, result)


# ---------------------------------------------------------------------------
# Run tracking (Supabase)
# ---------------------------------------------------------------------------
def save_pipeline_run(run: PipelineRun, status: str, error_log: Optional[str] = None) -> None:
    """Upsert the pipeline_runs record; tracking never fails the run."""
    if run.dry_run:
        return
    row = {
        "run_id": run.run_id,
        "started_at": run.now.isoformat(),
        "status": status,
        "steps": run.steps,
        "data_gaps": [g.model_dump() for g in run.gaps],
        "error_log": error_log,
    }
    if status != "running":
        row["finished_at"] = datetime.now(timezone.utc).isoformat()
    try:
        run.store.upsert(RUNS_TABLE, [row], on_conflict="run_id")
    except Exception as e:
        logger.warning("Failed to record pipeline run %s: %s", run.run_id, e)


# ---------------------------------------------------------------------------
# Main pipeline
# ---------------------------------------------------------------------------
def resolve_stage_map(client, config: PipelineConfig) -> StageMap:
    """
    Lead stage IDs from the CRM pipeline metadata. An unreachable API falls
    back to the known production IDs; a missing label is fatal.
    """
    try:
        pipelines = client.fetch_pipelines("leads")
    except APIError as e:
        logger.warning("Lead pipeline metadata unavailable, using default stage IDs: %s", e)
        return StageMap.default()
    return StageMap.from_pipelines(pipelines, pipeline_id=config.lead_pipeline_id)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Marketing attribution ETL")
    parser.add_argument("--phase", choices=PHASES, help="Run only a specific phase")
    parser.add_argument("--skip-ingest", action="store_true", help="Skip the ingest phase")
    parser.add_argument("--dry-run", action="store_true",
                        help="Skip writes: render the report without persisting or emailing")
    parser.add_argument("--no-email", action="store_true", help="Do not email the report")
    parser.add_argument("--window-days", type=int, help="Override WINDOW_DAYS")
    return parser.parse_args(argv)


def selected_phases(args: argparse.Namespace) -> List[str]:
    if args.phase:
        return [args.phase]
    return [p for p in PHASES if not (p == "ingest" and args.skip_ingest)]


async def execute(run: PipelineRun, phases: List[str]) -> None:
    for phase in phases:
        logger.info("-" * 40)
        logger.info("Phase: %s", phase)
        logger.info("-" * 40)
        if phase == "ingest":
            await run_ingest(run)
        elif phase == "rollup":
            run_rollup(run)
        elif phase == "report":
            await run_report(run)


def log_summary(run: PipelineRun, elapsed: float) -> None:
    logger.info("=" * 60)
    logger.info("  Pipeline Complete")
    logger.info("  Total steps: %d", len(run.steps))
    logger.info("  Data gaps:   %d", len(run.gaps))
    logger.info("  Duration:    %.1fs", elapsed)
    logger.info("=" * 60)
    for step in run.steps:
        icon = {"success": "OK", "partial": "GAPS", "failed": "FAIL"}.get(step["status"], "SKIP")
        logger.info(
            "  [%4s] %-25s %6dms%s",
            icon, step["name"], step["duration_ms"],
            f"  {step['error'][:80]}" if step["error"] else "",
        )


def main(argv: Optional[Sequence[str]] = None,
         client_factory: Callable = HubSpotClient,
         store_factory: Callable = TableStore.from_config) -> int:
    """
    Run the pipeline.

    Returns:
        Process exit code: 0 completed (possibly with gaps), 2 configuration
        error, 1 unexpected fatal error.
    """
    args = parse_args(argv)

    logger.info("=" * 60)
    logger.info("  MARKETING ATTRIBUTION ETL")
    logger.info("=" * 60)
    if args.dry_run:
        logger.info("  Mode: DRY RUN")

    try:
        config = PipelineConfig.from_env()
    except ConfigError as e:
        logger.critical("Configuration error: %s", e)
        return 2
    if args.window_days is not None:
        if args.window_days <= 0:
            logger.critical("Configuration error: --window-days must be positive")
            return 2
        config.window_days = args.window_days

    run = None
    pipeline_start = time.time()
    try:
        client = client_factory(config.hubspot_token)
        store = store_factory(config)
        run = PipelineRun(
            config=config,
            client=client,
            store=store,
            stage_map=resolve_stage_map(client, config),
            now=datetime.now(timezone.utc),
            dry_run=args.dry_run,
            send_email=not args.no_email,
        )
        save_pipeline_run(run, "running")
        asyncio.run(execute(run, selected_phases(args)))
    except (ConfigError, SchemaValidationError) as e:
        logger.critical("Configuration error: %s", e)
        if run is not None:
            save_pipeline_run(run, "failed", str(e))
        return 2
    except KeyboardInterrupt:
        logger.warning("Pipeline interrupted by user")
        if run is not None:
            save_pipeline_run(run, "failed", "Interrupted by user")
        return 130
    except Exception as e:
        logger.critical("Pipeline fatal error: %s", e, exc_info=True)
        if run is not None:
            save_pipeline_run(run, "failed", str(e))
        return 1

    log_summary(run, time.time() - pipeline_start)
    failed = [s for s in run.steps if s["status"] == "failed"]
    status = "success" if not failed and not run.gaps else "partial"
    error_log = "\n".join(f"{s['name']}: {s['error']}" for s in failed) or None
    save_pipeline_run(run, status, error_log)
    return 0


if __name__ == "__main__":
    sys.exit(main())
