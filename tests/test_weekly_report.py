"""Tests for report rendering, persistence and delivery."""

import json
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import FakeStore

from etl import weekly_report
from etl.lib.ai_provider import AIResponse, ai_complete, provider_configured
from etl.lib.errors import ConfigError
from etl.lib.mailer import ReportMailer
from etl.report_payload import build_payload
from etl.weekly_report import NOT_AVAILABLE, render_fallback, render_narrative, week_start
from models.marketing_models import CampaignDealRollup, SalesTruthTotals

NOW = datetime(2024, 3, 6, 8, 30, tzinfo=timezone.utc)  # a Wednesday


def ai_response(text):
    return AIResponse(content=text, provider="groq", model="test-model",
                      input_tokens=10, output_tokens=20, latency_ms=5)


@pytest.fixture
def payload():
    truth = SalesTruthTotals(window_start_date="2023-12-02", window_end_date="2024-03-01",
                             deals_won_count=4, revenue_won="12000", units_sold=5)
    campaigns = [CampaignDealRollup(utm_campaign="spring", revenue_won="5000", deals_won=2)]
    return build_payload(truth=truth, campaigns=campaigns, generated_at=NOW)


class TestFallbackRenderer:
    def test_sections_and_figures(self, payload):
        text = render_fallback(payload)
        for heading in ("EXECUTIVE SUMMARY", "A) MARKETING PERFORMANCE",
                        "B) SALES PERFORMANCE (CONSULTANTS)", "DATA QUALITY"):
            assert heading in text
        assert "Revenue won (truth): £12,000" in text
        assert "spring: £5,000 (2 deals)" in text
        assert "unattributed: £7,000" in text

    def test_missing_truth_prints_not_available(self):
        text = render_fallback(build_payload(generated_at=NOW))
        assert "Sales truth totals are not available for this window." in text
        assert f"Revenue won (truth): {NOT_AVAILABLE}" in text
        assert f"Deal diagnostics: {NOT_AVAILABLE}" in text

    def test_gaps_listed(self):
        data = build_payload(generated_at=NOW)
        data["data_quality"]["data_gaps"] = [
            {"step": "ingest_leads", "unit": "leads page 3", "error": "timeout"},
        ]
        text = render_fallback(data)
        assert "Data gaps this run: 1" in text
        assert "ingest_leads / leads page 3: timeout" in text


class TestRenderNarrative:
    async def test_ai_text_used(self, payload, config):
        with patch("etl.weekly_report.ai_complete",
                   AsyncMock(return_value=ai_response("  Boardroom report  "))) as mock_ai:
            text, source = await render_narrative(payload, config)
        assert (text, source) == ("Boardroom report", "ai")
        prompt = mock_ai.call_args.kwargs["user_prompt"]
        assert '"attributed_revenue": 5000.0' in prompt

    async def test_provider_failure_falls_back(self, payload, config):
        with patch("etl.weekly_report.ai_complete",
                   AsyncMock(side_effect=ConfigError("GROQ_API_KEY not set"))):
            text, source = await render_narrative(payload, config)
        assert source == "fallback"
        assert "EXECUTIVE SUMMARY" in text

    async def test_empty_ai_text_falls_back(self, payload, config):
        with patch("etl.weekly_report.ai_complete", AsyncMock(return_value=ai_response("   "))):
            _, source = await render_narrative(payload, config)
        assert source == "fallback"


class TestRun:
    async def test_persists_writes_and_emails(self, payload, config, tmp_path):
        store = FakeStore()
        mailer = MagicMock()
        mailer.send.return_value = True
        config.report_email_to = ["director@x.test"]
        path = tmp_path / "weekly_report_payload.json"

        with patch("etl.weekly_report.ai_complete", AsyncMock(return_value=ai_response("Report"))):
            result, text = await weekly_report.run(store, config, payload, now=NOW,
                                                   mailer=mailer, payload_path=path)

        [row] = store.tables["weekly_reports"]
        assert row["week_start"] == "2024-03-04"
        assert row["renderer"] == "ai"
        assert row["report_text"] == "Report"
        assert json.loads(path.read_text())["totals"]["truth_revenue"] == 12000.0
        recipients, subject, body = mailer.send.call_args.args
        assert recipients == ["director@x.test"]
        assert "04 Mar 2024" in subject
        assert result.counts == {"ai_rendered": 1, "characters": 6, "emailed": 1}

    async def test_same_week_overwrites(self, payload, config, tmp_path):
        store = FakeStore()
        with patch("etl.weekly_report.ai_complete", AsyncMock(side_effect=RuntimeError("down"))):
            for _ in range(2):
                await weekly_report.run(store, config, payload, now=NOW, send_email=False,
                                        payload_path=tmp_path / "p.json")
        assert len(store.tables["weekly_reports"]) == 1
        assert store.tables["weekly_reports"][0]["renderer"] == "fallback"

    async def test_dry_run_writes_nothing(self, payload, config, tmp_path):
        store = FakeStore()
        mailer = MagicMock()
        path = tmp_path / "p.json"
        with patch("etl.weekly_report.ai_complete", AsyncMock(side_effect=RuntimeError("down"))):
            result, text = await weekly_report.run(store, config, payload, now=NOW, dry_run=True,
                                                   mailer=mailer, payload_path=path)
        assert store.upsert_calls == []
        assert not path.exists()
        mailer.send.assert_not_called()
        assert "EXECUTIVE SUMMARY" in text

    async def test_store_failure_is_gap(self, payload, config, tmp_path):
        store = FakeStore(fail_tables={"weekly_reports"})
        with patch("etl.weekly_report.ai_complete", AsyncMock(return_value=ai_response("Report"))):
            result, _ = await weekly_report.run(store, config, payload, now=NOW, send_email=False,
                                                payload_path=tmp_path / "p.json")
        assert [g.unit for g in result.gaps] == ["weekly_reports"]


class TestWeekStart:
    def test_monday_of_week(self):
        assert week_start(NOW) == date(2024, 3, 4)
        assert week_start(datetime(2024, 3, 4, tzinfo=timezone.utc)) == date(2024, 3, 4)
        assert week_start(datetime(2024, 3, 10, 23, tzinfo=timezone.utc)) == date(2024, 3, 4)


class TestAIProvider:
    @patch.dict("os.environ", {"AI_PROVIDER": "groq"}, clear=True)
    async def test_missing_key_raises_and_logs(self):
        store = MagicMock()
        with pytest.raises(ConfigError):
            await ai_complete("weekly_report", "system", "user", store=store)
        store.client.table.assert_called_with("report_ai_logs")
        row = store.client.table.return_value.insert.call_args.args[0]
        assert row["success"] is False
        assert row["task"] == "weekly_report"

    @patch.dict("os.environ", {"AI_PROVIDER": "claude", "ANTHROPIC_API_KEY": "k"}, clear=True)
    def test_provider_configured(self):
        assert provider_configured() is True
        assert provider_configured("groq") is False


class TestMailer:
    @patch.dict("os.environ", {}, clear=True)
    def test_unconfigured_skips(self):
        assert ReportMailer().send(["a@x.test"], "s", "body") is False

    @patch.dict("os.environ", {"SMTP_USER": "u", "SMTP_PASSWORD": "p"}, clear=True)
    def test_no_recipients_skips(self):
        assert ReportMailer().send([], "s", "body") is False

    @patch.dict("os.environ", {"SMTP_USER": "u@x.test", "SMTP_PASSWORD": "p"}, clear=True)
    def test_sends_over_ssl(self):
        with patch("smtplib.SMTP_SSL") as smtp:
            assert ReportMailer().send(["a@x.test"], "Subject", "body") is True
        server = smtp.return_value.__enter__.return_value
        server.login.assert_called_once_with("u@x.test", "p")
        server.send_message.assert_called_once()
