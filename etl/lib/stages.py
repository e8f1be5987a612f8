"""
Lead pipeline stages.

Stage IDs differ per HubSpot portal, so they are resolved once at startup
from the lead pipeline metadata by label and validated before any
aggregation runs. Aggregation code only ever sees LeadStage members.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Optional

from etl.lib.errors import SchemaValidationError
from etl.lib.logger import setup_logger

logger = setup_logger(__name__)


class LeadStage(str, Enum):
    NEW = "new"
    ATTEMPTING = "attempting"
    CONNECTED = "connected"
    SALES_QUALIFIED = "sales_qualified"
    ZOOM_BOOKED = "zoom_booked"
    DISQUALIFIED = "disqualified"
    NOT_APPLICABLE = "not_applicable"
    MARKETING_PROSPECT = "marketing_prospect"


# Label as shown in the HubSpot lead pipeline
STAGE_LABELS: Dict[LeadStage, str] = {
    LeadStage.NEW: "New",
    LeadStage.ATTEMPTING: "Attempting",
    LeadStage.CONNECTED: "Connected",
    LeadStage.SALES_QUALIFIED: "Sales Qualified",
    LeadStage.ZOOM_BOOKED: "Zoom Booked",
    LeadStage.DISQUALIFIED: "Disqualified",
    LeadStage.NOT_APPLICABLE: "Not Applicable",
    LeadStage.MARKETING_PROSPECT: "Marketing Prospect",
}

# Production stage IDs, used when pipeline metadata is not fetched (tests, dry runs)
DEFAULT_STAGE_IDS: Dict[LeadStage, str] = {
    LeadStage.NEW: "new-stage-id",
    LeadStage.ATTEMPTING: "attempting-stage-id",
    LeadStage.CONNECTED: "connected-stage-id",
    LeadStage.SALES_QUALIFIED: "1213103916",
    LeadStage.ZOOM_BOOKED: "qualified-stage-id",
    LeadStage.DISQUALIFIED: "unqualified-stage-id",
    LeadStage.NOT_APPLICABLE: "1109558437",
    LeadStage.MARKETING_PROSPECT: "1134678094",
}


class StageMap:
    """Bidirectional mapping between CRM stage IDs and LeadStage members."""

    def __init__(self, ids: Dict[LeadStage, str]):
        missing = [s for s in LeadStage if s not in ids]
        if missing:
            raise SchemaValidationError(
                "Lead stages unresolved: " + ", ".join(STAGE_LABELS[s] for s in missing),
                field="lead_stage",
            )
        self._ids = dict(ids)
        self._by_id = {stage_id: stage for stage, stage_id in ids.items()}

    @classmethod
    def default(cls) -> "StageMap":
        return cls(DEFAULT_STAGE_IDS)

    @classmethod
    def from_pipelines(
        cls,
        pipelines: Iterable[dict],
        pipeline_id: Optional[str] = None,
    ) -> "StageMap":
        """
        Resolve stage IDs from HubSpot pipeline definitions
        (``/crm/v3/pipelines/leads`` results) by case-insensitive label.

        Raises:
            SchemaValidationError: if any expected label is absent.
        """
        wanted = {label.lower(): stage for stage, label in STAGE_LABELS.items()}
        ids: Dict[LeadStage, str] = {}

        for pipeline in pipelines:
            if pipeline_id and str(pipeline.get("id")) != str(pipeline_id):
                continue
            for stage in pipeline.get("stages", []):
                label = str(stage.get("label", "")).strip().lower()
                member = wanted.get(label)
                if member and member not in ids and stage.get("id") is not None:
                    ids[member] = str(stage["id"])

        stage_map = cls(ids)
        logger.info("Resolved %d lead stages from pipeline metadata", len(ids))
        return stage_map

    def id_for(self, stage: LeadStage) -> str:
        return self._ids[stage]

    def classify(self, stage_id: Optional[str]) -> Optional[LeadStage]:
        """LeadStage for a raw CRM stage ID, or None if unknown/empty."""
        if not stage_id:
            return None
        return self._by_id.get(str(stage_id).strip())
