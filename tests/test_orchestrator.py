"""Tests for the pipeline orchestrator: step tracking, phases and exit codes."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import FakeHubSpot, FakeStore

from etl import pipeline_orchestrator as orchestrator
from etl.lib.errors import APIError, ConfigError
from etl.lib.stages import DEFAULT_STAGE_IDS, STAGE_LABELS, LeadStage, StageMap
from models.marketing_models import StepResult

CREDENTIALS = {
    "HUBSPOT_PRIVATE_APP_TOKEN": "pat-123",
    "SUPABASE_URL": "https://x.supabase.co",
    "SUPABASE_SERVICE_ROLE_KEY": "service",
    "LOG_TO_FILE": "false",
}


def make_run(config, store=None, client=None, dry_run=False):
    return orchestrator.PipelineRun(
        config=config,
        client=client or FakeHubSpot(),
        store=store or FakeStore(),
        stage_map=StageMap.default(),
        now=datetime(2024, 3, 1, 12, tzinfo=timezone.utc),
        dry_run=dry_run,
        send_email=False,
    )


class TestRunStep:
    def test_success_records_counts(self, config):
        run = make_run(config)
        result = StepResult(step="x", counts={"fetched": 3})
        assert orchestrator.run_step(run, "Step", lambda: result) is result
        assert run.steps[0]["status"] == "success"
        assert run.steps[0]["counts"] == {"fetched": 3}

    def test_gaps_make_step_partial(self, config):
        run = make_run(config)
        result = StepResult(step="x")
        result.add_gap("page 2", "timeout")
        orchestrator.run_step(run, "Step", lambda: (result, "extra"))
        assert run.steps[0]["status"] == "partial"
        assert [g.unit for g in run.gaps] == ["page 2"]

    def test_failure_becomes_gap_and_continues(self, config):
        run = make_run(config)

        def boom():
            raise RuntimeError("disk full")

        assert orchestrator.run_step(run, "Ingest Leads", boom) is None
        assert run.steps[0]["status"] == "failed"
        assert "disk full" in run.steps[0]["error"]
        assert run.gaps[0].step == "Ingest Leads"

    def test_config_error_propagates(self, config):
        run = make_run(config)

        def bad_config():
            raise ConfigError("missing", setting="X")

        with pytest.raises(ConfigError):
            orchestrator.run_step(run, "Step", bad_config)

    def test_dry_run_skips(self, config):
        run = make_run(config, dry_run=True)
        fn = MagicMock()
        assert orchestrator.run_step(run, "Step", fn) is None
        fn.assert_not_called()
        assert run.steps[0]["status"] == "skipped"


class TestStageResolution:
    def test_api_failure_falls_back_to_defaults(self, config):
        stage_map = orchestrator.resolve_stage_map(FakeHubSpot(fail={"pipelines"}), config)
        assert all(stage_map.id_for(s) == DEFAULT_STAGE_IDS[s] for s in LeadStage)

    def test_pipeline_metadata_used(self, config):
        stages = [{"id": f"x-{s.value}", "label": label} for s, label in STAGE_LABELS.items()]
        client = FakeHubSpot(pipelines=[{"id": "p", "stages": stages}])
        stage_map = orchestrator.resolve_stage_map(client, config)
        assert stage_map.id_for(LeadStage.ZOOM_BOOKED) == "x-zoom_booked"


class TestPhases:
    def test_selected_phases(self):
        parse = orchestrator.parse_args
        assert orchestrator.selected_phases(parse([])) == ["ingest", "rollup", "report"]
        assert orchestrator.selected_phases(parse(["--skip-ingest"])) == ["rollup", "report"]
        assert orchestrator.selected_phases(parse(["--phase", "rollup"])) == ["rollup"]

    def test_ingest_runs_every_step(self, config):
        run = make_run(config)
        asyncio.run(orchestrator.run_ingest(run))
        names = [s["name"] for s in run.steps]
        assert set(names[:3]) == {"Cache Owners", "Ingest Leads", "Ingest Form Submissions"}
        assert names[3:] == ["Build Lead-Contact Map", "Cache Contacts"]

    def test_rollup_failure_skips_truth(self, config):
        run = make_run(config, client=FakeHubSpot(search_pages={"deals": [[]]}))
        with patch("etl.deal_rollup.run", side_effect=RuntimeError("boom")):
            orchestrator.run_rollup(run)
        assert [s["name"] for s in run.steps] == ["Deal Rollup"]
        assert run.truth is None

    def test_payload_reads_persisted_sources(self, config):
        store = FakeStore({
            "deal_campaign_rollup_90d": [
                {"utm_campaign": "spring", "deals_won": 2, "revenue_won": "3000"},
            ],
            "sales_truth_totals_90d": [
                {"window_start_date": "2023-12-02", "window_end_date": "2024-03-01",
                 "deals_won_count": 5, "revenue_won": "8000"},
            ],
        })
        result, payload = orchestrator.build_report_payload(make_run(config, store=store))
        assert payload["totals"]["attributed_revenue"] == 3000.0
        assert payload["totals"]["unattributed_revenue"] == 5000.0
        assert payload["data_quality"]["deal_diagnostics"] is None
        assert result.gaps == []


class TestMain:
    @patch.dict("os.environ", {"LOG_TO_FILE": "false"}, clear=True)
    def test_missing_config_exits_2(self):
        factory = MagicMock()
        assert orchestrator.main([], client_factory=factory, store_factory=factory) == 2
        factory.assert_not_called()

    @patch.dict("os.environ", CREDENTIALS, clear=True)
    def test_bad_window_exits_2(self):
        assert orchestrator.main(["--window-days", "0"], client_factory=MagicMock(),
                                 store_factory=MagicMock()) == 2

    @patch.dict("os.environ", CREDENTIALS, clear=True)
    def test_missing_stage_label_exits_2(self):
        client = FakeHubSpot(pipelines=[{"id": "p", "stages": []}])
        assert orchestrator.main([], client_factory=lambda token: client,
                                 store_factory=lambda cfg: FakeStore()) == 2

    @patch.dict("os.environ", CREDENTIALS, clear=True)
    def test_dry_run_writes_nothing(self):
        store = FakeStore()
        with patch("etl.weekly_report.ai_complete", AsyncMock(side_effect=RuntimeError("down"))):
            code = orchestrator.main(
                ["--dry-run"],
                client_factory=lambda token: FakeHubSpot(fail={"pipelines"}),
                store_factory=lambda cfg: store,
            )
        assert code == 0
        assert store.upsert_calls == []

    @patch.dict("os.environ", CREDENTIALS, clear=True)
    def test_full_run_records_pipeline_run(self):
        store = FakeStore()
        client = FakeHubSpot(pipelines=[{"id": "p", "stages": [
            {"id": DEFAULT_STAGE_IDS[s], "label": label} for s, label in STAGE_LABELS.items()
        ]}])
        with patch("etl.weekly_report.ai_complete",
                   AsyncMock(side_effect=RuntimeError("down"))), \
                patch("etl.weekly_report.atomic_write_json", return_value=True):
            code = orchestrator.main(["--no-email"], client_factory=lambda token: client,
                                     store_factory=lambda cfg: store)

        assert code == 0
        [run_row] = store.tables["pipeline_runs"]
        assert run_row["status"] == "success"
        assert run_row["error_log"] is None
        assert [s["name"] for s in run_row["steps"]][-2:] == ["Report Payload", "Weekly Report"]
        assert len(run_row["steps"]) == 9
        assert store.tables["weekly_reports"][0]["renderer"] == "fallback"

    @patch.dict("os.environ", CREDENTIALS, clear=True)
    def test_failed_step_still_exits_0(self):
        store = FakeStore()
        client = FakeHubSpot(fail={"pipelines", "owners"})
        with patch("etl.weekly_report.ai_complete", AsyncMock(return_value=MagicMock(content="ok"))), \
                patch("etl.weekly_report.atomic_write_json", return_value=True), \
                patch("etl.cache_owners.run", side_effect=APIError("owners down")):
            code = orchestrator.main(["--no-email"], client_factory=lambda token: client,
                                     store_factory=lambda cfg: store)
        assert code == 0
        [run_row] = store.tables["pipeline_runs"]
        assert run_row["status"] == "partial"
        assert "Cache Owners" in run_row["error_log"]

    @patch.dict("os.environ", CREDENTIALS, clear=True)
    def test_unexpected_error_exits_1(self):
        def broken_store(cfg):
            raise RuntimeError("cannot build store")

        assert orchestrator.main([], client_factory=lambda token: FakeHubSpot(),
                                 store_factory=broken_store) == 1
