"""
Attribution ETL — Pydantic Models
===================================

Rows for the persisted fact stores and caches, plus the derived rows
produced by attribution, funnel and revenue rollups.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from etl.lib.utils import norm_str, parse_timestamp, safe_decimal

UNATTRIBUTED = "UNATTRIBUTED"


class _Row(BaseModel):
    """Base for store rows: tolerant of extra columns, strings trimmed to None."""
    model_config = ConfigDict(extra="ignore")

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _ts(value: Any) -> Optional[datetime]:
    return parse_timestamp(value)


# ─── Entity caches ──────────────────────────────────────────

class Owner(_Row):
    """CRM user / sales consultant."""
    owner_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("owner_id", mode="before")
    @classmethod
    def _id(cls, v):
        return str(v).strip()


class ContactAttribution(_Row):
    """One cached CRM contact with its last-known attribution fields."""
    contact_id: str
    email: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    hs_latest_source: Optional[str] = None
    hs_latest_source_data_1: Optional[str] = None
    hs_latest_source_data_2: Optional[str] = None
    hs_analytics_source_data_1: Optional[str] = None
    hs_analytics_source_data_2: Optional[str] = None
    facebook_ad_name: Optional[str] = None
    first_touch_converting_campaign: Optional[str] = None
    last_touch_converting_campaign: Optional[str] = None
    contact_created_at: Optional[datetime] = None

    @field_validator("contact_id", mode="before")
    @classmethod
    def _id(cls, v):
        return str(v).strip()

    @field_validator(
        "email", "utm_source", "utm_medium", "utm_campaign",
        "hs_latest_source", "hs_latest_source_data_1", "hs_latest_source_data_2",
        "hs_analytics_source_data_1", "hs_analytics_source_data_2",
        "facebook_ad_name", "first_touch_converting_campaign",
        "last_touch_converting_campaign",
        mode="before",
    )
    @classmethod
    def _text(cls, v):
        return norm_str(v)

    @field_validator("contact_created_at", mode="before")
    @classmethod
    def _created(cls, v):
        return _ts(v)

    @property
    def converting_campaign(self) -> Optional[str]:
        """Last-touch converting campaign, else first-touch."""
        return self.last_touch_converting_campaign or self.first_touch_converting_campaign


# ─── Raw fact stores ────────────────────────────────────────

class Lead(_Row):
    """One CRM lead (last-write-wins on every ingestion)."""
    lead_id: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    lead_status: Optional[str] = None
    lead_stage: Optional[str] = None
    owner_id: Optional[str] = None
    disqualification_reason: Optional[str] = None

    @field_validator("lead_id", mode="before")
    @classmethod
    def _id(cls, v):
        return str(v).strip()

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _dates(cls, v):
        return _ts(v)

    @field_validator("lead_status", "lead_stage", "owner_id", "disqualification_reason",
                     mode="before")
    @classmethod
    def _text(cls, v):
        return norm_str(v)


class LeadContactEdge(_Row):
    lead_id: str
    contact_id: str


class FormSubmission(_Row):
    """One CRM form submission. Joinable only when email is present."""
    submitted_at: datetime
    form_guid: str
    form_name: Optional[str] = None
    page_url: Optional[str] = None
    email: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    raw_values_json: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("submitted_at", mode="before")
    @classmethod
    def _submitted(cls, v):
        return _ts(v)

    @field_validator("form_name", "page_url", "email", "utm_source", "utm_medium",
                     "utm_campaign", "utm_term", "utm_content", mode="before")
    @classmethod
    def _text(cls, v):
        return norm_str(v)

    @field_validator("raw_values_json", mode="before")
    @classmethod
    def _raw(cls, v):
        return v if isinstance(v, dict) else {}


class Deal(_Row):
    """A CRM deal as read for the revenue rollup (not persisted raw)."""
    deal_id: str
    dealtype: str = "Unknown"
    dealstage: Optional[str] = None
    amount: Decimal = Decimal("0")
    units: int = 0
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    owner_id: Optional[str] = None
    contact_ids: List[str] = Field(default_factory=list)

    @field_validator("dealtype", mode="before")
    @classmethod
    def _dealtype(cls, v):
        return norm_str(v) or "Unknown"

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v):
        return safe_decimal(v)

    @field_validator("created_at", "closed_at", mode="before")
    @classmethod
    def _dates(cls, v):
        return _ts(v)

    @property
    def primary_contact_id(self) -> Optional[str]:
        return self.contact_ids[0] if self.contact_ids else None


# ─── Derived rows ───────────────────────────────────────────

class Attribution(BaseModel):
    """Resolved campaign for one fact."""
    utm_campaign: str = UNATTRIBUTED
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    method: str = "unattributed"   # form_submission | contact_utm | converting_campaign | unattributed
    contact_id: Optional[str] = None
    submitted_at: Optional[datetime] = None

    @property
    def is_attributed(self) -> bool:
        return self.utm_campaign != UNATTRIBUTED


class DealRollupRow(_Row):
    """deal_revenue_rollup_90d row; text key columns are never null."""
    utm_campaign: str = UNATTRIBUTED
    utm_source: str = ""
    utm_medium: str = ""
    owner_id: str = ""
    dealtype: str = ""
    deals_won: int = 0
    revenue_won: Decimal = Decimal("0")
    deals_created: int = 0
    pipeline_created: Decimal = Decimal("0")
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.utm_campaign, self.utm_source, self.utm_medium, self.owner_id, self.dealtype)


class CampaignDealRollup(_Row):
    """deal_campaign_rollup_90d row: sums across deal types."""
    utm_campaign: str = UNATTRIBUTED
    deals_won: int = 0
    revenue_won: Decimal = Decimal("0")
    deals_created: int = 0
    pipeline_created: Decimal = Decimal("0")
    revenue_by_dealtype: Dict[str, float] = Field(default_factory=dict)
    deals_won_by_dealtype: Dict[str, int] = Field(default_factory=dict)


class FunnelCounts(BaseModel):
    """Stage buckets shared by campaign and consultant funnels."""
    leads_total: int = 0
    non_mql_marketing_prospect: int = 0
    disqualified: int = 0
    sql_sales_qualified_stage: int = 0
    zoom_booked: int = 0


class FunnelRow(BaseModel):
    """Per-campaign funnel metrics for one report run."""
    utm_campaign: str
    leads_total: int
    non_mql_marketing_prospect: int
    mql_eligible: int
    disqualified: int
    sql_sales_qualified_stage: int
    sql: int
    zoom_booked: int
    deals_won: int = 0
    mql_eligible_rate: float
    sql_rate: float
    zoom_rate: float
    disqualified_rate: float
    mql_to_sql_rate: float
    sql_to_zoom_rate: float


class ConsultantFunnelRow(FunnelRow):
    """Funnel grouped by owner; utm_campaign holds no meaning here."""
    utm_campaign: str = ""
    owner: str
    callable: int
    callable_zoom_rate: float
    callable_disqualified_rate: float
    top_disqualification_reasons: List[str] = Field(default_factory=list)


class SalesTruthTotals(_Row):
    """Authoritative won-deal totals for the window (close date)."""
    window_start_date: str
    window_end_date: str
    deals_won_count: int = 0
    revenue_won: Decimal = Decimal("0")
    units_sold: int = 0
    revenue_new_prospect: Decimal = Decimal("0")
    revenue_old_prospect: Decimal = Decimal("0")
    deals_missing_contact: int = 0

    @field_validator("revenue_won", "revenue_new_prospect", "revenue_old_prospect",
                     mode="before")
    @classmethod
    def _money(cls, v):
        return safe_decimal(v)


class DataGap(BaseModel):
    """A unit of work (page, batch, step) that was skipped during the run."""
    step: str
    unit: str
    error: str


class StepResult(BaseModel):
    """Counters and skipped units for one pipeline step."""
    step: str
    counts: Dict[str, int] = Field(default_factory=dict)
    gaps: List[DataGap] = Field(default_factory=list)

    def add_gap(self, unit: str, error: Any) -> None:
        self.gaps.append(DataGap(step=self.step, unit=unit, error=str(error)))

    def bump(self, counter: str, by: int = 1) -> None:
        self.counts[counter] = self.counts.get(counter, 0) + by
