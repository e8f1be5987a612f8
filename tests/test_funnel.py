"""Tests for campaign and consultant funnel aggregation."""

from datetime import datetime, timezone

import pytest

from etl.funnel import (
    build_campaign_funnel,
    build_consultant_funnel,
    funnel_views,
    tally,
)
from etl.lib.stages import LeadStage
from models.marketing_models import Attribution, Lead, Owner

CREATED = datetime(2024, 2, 1, tzinfo=timezone.utc)

NEW = "new-stage-id"
MP = "1134678094"
DQ = "unqualified-stage-id"
SQ = "1213103916"
ZOOM = "qualified-stage-id"
NA = "1109558437"

_seq = iter(range(1, 100000))


def lead(stage, owner=None, reason=None):
    return Lead(lead_id=str(next(_seq)), created_at=CREATED, lead_stage=stage,
                owner_id=owner, disqualification_reason=reason)


def leads_for(campaign, **stages):
    """{"MP": 20, "SQ": 30} -> attributed leads for one campaign."""
    ids = {"NEW": NEW, "MP": MP, "DQ": DQ, "SQ": SQ, "ZOOM": ZOOM, "NA": NA}
    out = []
    for name, n in stages.items():
        out += [(lead(ids[name]), Attribution(utm_campaign=campaign, method="contact_utm"))
                for _ in range(n)]
    return out


class TestCampaignFunnel:
    def test_hundred_lead_campaign(self, stage_map):
        attributed = leads_for("spring", MP=20, DQ=10, SQ=30, ZOOM=15, NEW=25)
        [row] = build_campaign_funnel(attributed, stage_map)

        assert row.leads_total == 100
        assert row.mql_eligible == 80
        assert row.sql == 45
        assert row.zoom_rate == pytest.approx(0.15)
        assert row.disqualified_rate == pytest.approx(0.10)
        assert row.mql_to_sql_rate == pytest.approx(0.5625)
        assert row.sql_to_zoom_rate == pytest.approx(15 / 45)
        assert row.mql_eligible_rate == pytest.approx(0.8)

    def test_not_applicable_excluded_from_counts(self, stage_map):
        attributed = leads_for("spring", NA=50, ZOOM=5, NEW=5)
        [row] = build_campaign_funnel(attributed, stage_map)
        assert row.leads_total == 10
        assert row.zoom_rate == pytest.approx(0.5)

    def test_campaign_with_only_not_applicable_leads_disappears(self, stage_map):
        attributed = leads_for("ghost", NA=3) + leads_for("real", NEW=1)
        rows = build_campaign_funnel(attributed, stage_map)
        assert [r.utm_campaign for r in rows] == ["real"]

    def test_unknown_stage_counts_toward_total_only(self, stage_map):
        attributed = [(lead("mystery"), Attribution(utm_campaign="x")),
                      (lead(None), Attribution(utm_campaign="x"))]
        [row] = build_campaign_funnel(attributed, stage_map)
        assert row.leads_total == 2
        assert row.sql == 0

    def test_all_marketing_prospects_give_zero_rates(self, stage_map):
        [row] = build_campaign_funnel(leads_for("mp_only", MP=4), stage_map)
        assert row.mql_eligible == 0
        assert row.mql_to_sql_rate == 0.0
        assert row.sql_to_zoom_rate == 0.0

    def test_rates_are_bounded(self, stage_map):
        attributed = (leads_for("a", MP=3, SQ=2, ZOOM=7)
                      + leads_for("b", DQ=9)
                      + leads_for("c", NEW=1))
        for row in build_campaign_funnel(attributed, stage_map):
            for rate in (row.mql_eligible_rate, row.sql_rate, row.zoom_rate,
                         row.disqualified_rate, row.mql_to_sql_rate, row.sql_to_zoom_rate):
                assert 0.0 <= rate <= 1.0
            assert row.sql == row.sql_sales_qualified_stage + row.zoom_booked
            assert row.mql_eligible <= row.leads_total

    def test_empty_input(self, stage_map):
        assert build_campaign_funnel([], stage_map) == []
        views = funnel_views([])
        assert views.to_dict() == {"all": [], "top": [], "bottom": []}

    def test_deals_won_joined_by_campaign(self, stage_map):
        attributed = leads_for("spring", NEW=2) + leads_for("autumn", NEW=1)
        rows = build_campaign_funnel(attributed, stage_map, {"spring": 3})
        assert {r.utm_campaign: r.deals_won for r in rows} == {"spring": 3, "autumn": 0}

    def test_tally_first_seen_order(self):
        grouped = tally([("b", LeadStage.NEW), ("a", LeadStage.ZOOM_BOOKED), ("b", None)])
        assert list(grouped) == ["b", "a"]
        assert grouped["b"].leads_total == 2
        assert grouped["a"].zoom_booked == 1


class TestFunnelViews:
    def rows(self, stage_map):
        attributed = (
            leads_for("small_hot", ZOOM=10)
            + leads_for("big_good", ZOOM=15, NEW=15)
            + leads_for("big_tie_1", ZOOM=3, NEW=27)
            + leads_for("big_tie_2", ZOOM=3, NEW=27)
            + leads_for("big_cold", NEW=40)
        )
        return build_campaign_funnel(attributed, stage_map)

    def test_min_leads_filters_rankings_not_all(self, stage_map):
        views = funnel_views(self.rows(stage_map), min_leads=30, top_n=5, bottom_n=5)
        assert len(views.all) == 5
        assert "small_hot" not in [r.utm_campaign for r in views.top]
        assert "small_hot" not in [r.utm_campaign for r in views.bottom]

    def test_top_and_bottom_order(self, stage_map):
        views = funnel_views(self.rows(stage_map), min_leads=30, top_n=2, bottom_n=2)
        assert [r.utm_campaign for r in views.top] == ["big_good", "big_tie_1"]
        assert [r.utm_campaign for r in views.bottom] == ["big_cold", "big_tie_1"]

    def test_ties_keep_input_order(self, stage_map):
        views = funnel_views(self.rows(stage_map), min_leads=30, top_n=5, bottom_n=5)
        top = [r.utm_campaign for r in views.top]
        assert top.index("big_tie_1") < top.index("big_tie_2")

    def test_to_dict_is_plain(self, stage_map):
        data = funnel_views(self.rows(stage_map), min_leads=30).to_dict()
        assert data["top"][0]["utm_campaign"] == "big_good"
        assert isinstance(data["all"][0]["zoom_rate"], float)


class TestConsultantFunnel:
    owners = [
        Owner(owner_id="1", full_name="Jane Doe"),
        Owner(owner_id="2", full_name="Sam Smith"),
        Owner(owner_id="3", full_name="Not Listed"),
    ]

    def test_allow_list_and_sort(self, stage_map):
        leads = (
            [lead(NEW, "1") for _ in range(2)]
            + [lead(NEW, "2") for _ in range(5)]
            + [lead(NEW, "3") for _ in range(9)]
        )
        rows = build_consultant_funnel(leads, self.owners, stage_map, ["jane doe", "SAM SMITH"])
        assert [r.owner for r in rows] == ["SAM SMITH", "jane doe"]
        assert [r.callable for r in rows] == [5, 2]

    def test_callable_rates_and_reasons(self, stage_map):
        leads = [
            lead(MP, "1"),
            lead(ZOOM, "1"),
            lead(DQ, "1", "Budget"),
            lead(DQ, "1", "Budget"),
            lead(DQ, "1"),
            lead(NA, "1"),
        ]
        [row] = build_consultant_funnel(leads, self.owners, stage_map, ["Jane Doe"])
        assert row.leads_total == 5
        assert row.callable == 4
        assert row.callable_zoom_rate == pytest.approx(0.25)
        assert row.callable_disqualified_rate == pytest.approx(0.75)
        assert row.top_disqualification_reasons == ["Budget:2", "NO_REASON:1"]

    def test_leads_without_stage_or_owner_skipped(self, stage_map):
        leads = [lead(None, "1"), lead(NEW, None), lead(NEW, "1")]
        [row] = build_consultant_funnel(leads, self.owners, stage_map, ["Jane Doe"])
        assert row.leads_total == 1

    def test_reasons_capped_at_three(self, stage_map):
        leads = [lead(DQ, "2", r) for r in ("a", "a", "b", "b", "c", "d")]
        [row] = build_consultant_funnel(leads, self.owners, stage_map, ["Sam Smith"])
        assert len(row.top_disqualification_reasons) == 3
        assert row.top_disqualification_reasons[:2] == ["a:2", "b:2"]
