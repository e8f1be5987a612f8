"""
Disqualification reasons for leads in the window, overall and per resolved
campaign. Leads without a recorded reason are counted as NO_REASON.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from etl.lib.logger import setup_logger
from etl.lib.stages import LeadStage, StageMap
from models.marketing_models import UNATTRIBUTED, Attribution, Lead

logger = setup_logger("loss_reasons")

NO_REASON = "NO_REASON"


@dataclass
class LossReasons:
    by_reason: Counter = field(default_factory=Counter)
    by_campaign: Counter = field(default_factory=Counter)
    by_campaign_reason: Dict[str, Counter] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.by_reason.values())

    @property
    def unattributed(self) -> int:
        return self.by_campaign.get(UNATTRIBUTED, 0)

    def to_dict(self, limit: int = 10) -> dict:
        return {
            "total_disqualified": self.total,
            "unattributed": self.unattributed,
            "top_reasons": [{"reason": r, "count": n} for r, n in self.by_reason.most_common(limit)],
            "top_campaigns": [
                {
                    "utm_campaign": c,
                    "count": n,
                    "top_reasons": [
                        {"reason": r, "count": k}
                        for r, k in self.by_campaign_reason[c].most_common(3)
                    ],
                }
                for c, n in self.by_campaign.most_common(limit)
            ],
        }


def rollup_loss_reasons(attributed: Iterable[Tuple[Lead, Attribution]],
                        stage_map: StageMap) -> LossReasons:
    reasons = LossReasons()
    for lead, attribution in attributed:
        if stage_map.classify(lead.lead_stage) is not LeadStage.DISQUALIFIED:
            continue
        reason = lead.disqualification_reason or NO_REASON
        campaign = attribution.utm_campaign
        reasons.by_reason[reason] += 1
        reasons.by_campaign[campaign] += 1
        reasons.by_campaign_reason.setdefault(campaign, Counter())[reason] += 1

    logger.info("Loss reasons: %d disqualified leads, %d distinct reasons, %d unattributed",
                reasons.total, len(reasons.by_reason), reasons.unattributed)
    return reasons

