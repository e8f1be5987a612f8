"""
Pipeline configuration.

All settings come from the environment; .env at the project root is loaded
first. Required credentials are validated up front so a misconfigured run
aborts before any CRM or store I/O.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from etl.lib.errors import ConfigError
from etl.lib.logger import setup_logger
from etl.lib.utils import split_csv

logger = setup_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(PROJECT_ROOT / ".env")

DEFAULT_WON_STAGES = ["1054943521"]
DEFAULT_EXCLUDED_DEALTYPES = ["SSAS", "FIC"]
DEFAULT_CONSULTANTS = [
    "Jordan Sharpe",
    "Laura McCarthy",
    "Akash Bajaj",
    "Gareth Robertson",
    "David Gittings",
    "Spencer Dunn",
]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %d", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r, using %d", name, raw, default)
        return default
    return value


@dataclass
class PipelineConfig:
    """Settings for one pipeline run."""
    hubspot_token: str = ""
    supabase_url: str = ""
    supabase_key: str = ""

    window_days: int = 90
    form_ingest_days: int = 7
    new_prospect_days: int = 30
    min_leads: int = 30
    top_n: int = 5
    bottom_n: int = 5
    crm_batch_size: int = 100
    store_batch_size: int = 500

    won_stages: List[str] = field(default_factory=lambda: list(DEFAULT_WON_STAGES))
    excluded_dealtypes: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_DEALTYPES))
    form_exclude_pattern: str = "Practitioner"
    consultant_names: List[str] = field(default_factory=lambda: list(DEFAULT_CONSULTANTS))
    lead_pipeline_id: Optional[str] = None

    report_email_to: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, require_credentials: bool = True) -> "PipelineConfig":
        """
        Build a config from environment variables.

        Raises:
            ConfigError: if a required credential is missing.
        """
        hubspot_token = (
            os.getenv("HUBSPOT_PRIVATE_APP_TOKEN", "")
            or os.getenv("HUBSPOT_API_KEY", "")
        )
        supabase_url = os.getenv("SUPABASE_URL", "")
        supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
            or os.getenv("SUPABASE_KEY", "")
        )

        if require_credentials:
            if not hubspot_token:
                raise ConfigError(
                    "HUBSPOT_PRIVATE_APP_TOKEN must be set", setting="HUBSPOT_PRIVATE_APP_TOKEN",
                )
            if not supabase_url or not supabase_key:
                raise ConfigError(
                    "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set",
                    setting="SUPABASE_URL",
                )

        config = cls(
            hubspot_token=hubspot_token,
            supabase_url=supabase_url,
            supabase_key=supabase_key,
            window_days=_env_int("WINDOW_DAYS", 90),
            form_ingest_days=_env_int("FORM_INGEST_DAYS", 7),
            new_prospect_days=_env_int("NEW_PROSPECT_DAYS", 30),
            min_leads=_env_int("MIN_LEADS", 30),
            top_n=_env_int("TOP_N", 5),
            bottom_n=_env_int("BOTTOM_N", 5),
            crm_batch_size=_env_int("BATCH_SIZE", 100),
            form_exclude_pattern=os.getenv("FORM_EXCLUDE_PATTERN", "Practitioner").strip(),
            lead_pipeline_id=os.getenv("LEAD_PIPELINE_ID") or None,
            report_email_to=split_csv(os.getenv("REPORT_EMAIL_TO")),
        )

        won = split_csv(os.getenv("SALES_PIPELINE_WON_STAGES"))
        if won:
            config.won_stages = won
        if os.getenv("EXCLUDED_DEALTYPES") is not None:
            config.excluded_dealtypes = split_csv(os.getenv("EXCLUDED_DEALTYPES"))
        consultants = split_csv(os.getenv("CONSULTANT_NAMES"))
        if consultants:
            config.consultant_names = consultants

        return config

    def is_excluded_dealtype(self, dealtype: Optional[str]) -> bool:
        """Case-insensitive membership in the excluded deal-type set."""
        wanted = (dealtype or "").strip().lower()
        return bool(wanted) and wanted in {t.lower() for t in self.excluded_dealtypes}

    def is_excluded_form(self, form_name: Optional[str]) -> bool:
        pattern = self.form_exclude_pattern.lower()
        return bool(pattern) and pattern in (form_name or "").lower()
