"""
Attribution Resolver
=====================

Maps a lead or deal to a best-guess campaign identifier. Leads and
submissions share no foreign key, so the join is fuzzy: a linked contact's
email is matched against form submissions near the fact's creation time.

Resolution order (first match wins, per linked contact in join order):
    1. Form submission from the contact's email inside
       [created_at - 14d, created_at + 3d]; at-or-before created_at is
       preferred, then the smallest absolute time delta. If the winner
       carries a utm_campaign, that is the answer.
    2. The contact's cached utm_campaign.
    3. Next linked contact.
Deals additionally fall back to the primary contact's last/first-touch
converting campaign. Anything left over is UNATTRIBUTED.

Resolution is a pure function of its inputs; the loaders at the bottom of
this module only gather those inputs from the store.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from etl.lib.logger import setup_logger
from models.marketing_models import (
    Attribution,
    ContactAttribution,
    Deal,
    FormSubmission,
    Lead,
    LeadContactEdge,
)

logger = setup_logger("attribution")

# Business heuristic for the submission join; see DESIGN.md before changing.
SUBMISSION_LOOKBACK = timedelta(days=14)
SUBMISSION_LOOKAHEAD = timedelta(days=3)


def _email_key(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email and email.strip() else None


def pick_submission(candidates: Sequence[FormSubmission],
                    created_at: datetime) -> Optional[FormSubmission]:
    """
    Choose the single winning submission for a fact.

    Prefers submissions at or before `created_at`; falls back to the ones
    after. Within the chosen side, the smallest absolute delta wins and
    ties keep the earlier candidate in `candidates` order.
    """
    if not candidates:
        return None
    before = [s for s in candidates if s.submitted_at <= created_at]
    pool = before or list(candidates)
    return min(pool, key=lambda s: abs((created_at - s.submitted_at).total_seconds()))


class SubmissionIndex:
    """Joinable form submissions grouped by lower-cased email."""

    def __init__(self, submissions: Iterable[FormSubmission] = ()):
        self._by_email: Dict[str, List[FormSubmission]] = {}
        for sub in submissions:
            key = _email_key(sub.email)
            if key is None:
                continue
            self._by_email.setdefault(key, []).append(sub)

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_email.values())

    def candidates(self, email: Optional[str], created_at: datetime) -> List[FormSubmission]:
        key = _email_key(email)
        if key is None:
            return []
        start = created_at - SUBMISSION_LOOKBACK
        end = created_at + SUBMISSION_LOOKAHEAD
        return [s for s in self._by_email.get(key, []) if start <= s.submitted_at <= end]


class AttributionResolver:
    """Resolves facts against a snapshot of the contact cache and submissions."""

    def __init__(self, contacts: Dict[str, ContactAttribution],
                 submissions: Iterable[FormSubmission] = ()):
        self.contacts = contacts
        self.submissions = (
            submissions if isinstance(submissions, SubmissionIndex)
            else SubmissionIndex(submissions)
        )

    def _resolve_contact(self, contact_id: str, created_at: datetime) -> Attribution:
        contact = self.contacts.get(str(contact_id))
        if contact is None:
            return Attribution(contact_id=str(contact_id))

        winner = pick_submission(self.submissions.candidates(contact.email, created_at),
                                 created_at)
        if winner is not None and winner.utm_campaign:
            return Attribution(
                utm_campaign=winner.utm_campaign,
                utm_source=winner.utm_source,
                utm_medium=winner.utm_medium,
                method="form_submission",
                contact_id=contact.contact_id,
                submitted_at=winner.submitted_at,
            )

        if contact.utm_campaign:
            return Attribution(
                utm_campaign=contact.utm_campaign,
                utm_source=contact.utm_source,
                utm_medium=contact.utm_medium,
                method="contact_utm",
                contact_id=contact.contact_id,
            )

        return Attribution(contact_id=contact.contact_id)

    def resolve(self, created_at: datetime, contact_ids: Sequence[str]) -> Attribution:
        """Attribution for a fact created at `created_at` linked to `contact_ids`."""
        for contact_id in contact_ids:
            attribution = self._resolve_contact(contact_id, created_at)
            if attribution.is_attributed:
                return attribution
        return Attribution()

    def resolve_campaign(self, created_at: datetime, contact_ids: Sequence[str]) -> str:
        return self.resolve(created_at, contact_ids).utm_campaign

    def resolve_deal(self, deal: Deal) -> Attribution:
        """
        Deals go through their primary contact only. When neither a
        submission nor cached UTM fields resolve it, the contact's converting
        campaign is used.
        """
        contact_id = deal.primary_contact_id
        if contact_id is None:
            return Attribution()

        if deal.created_at is not None:
            attribution = self.resolve(deal.created_at, [contact_id])
            if attribution.is_attributed:
                return attribution

        contact = self.contacts.get(contact_id)
        if contact is not None:
            if contact.converting_campaign:
                return Attribution(
                    utm_campaign=contact.converting_campaign,
                    utm_source=contact.utm_source,
                    utm_medium=contact.utm_medium,
                    method="converting_campaign",
                    contact_id=contact_id,
                )
            # No created date to window against; the cached UTM still counts
            if deal.created_at is None and contact.utm_campaign:
                return Attribution(
                    utm_campaign=contact.utm_campaign,
                    utm_source=contact.utm_source,
                    utm_medium=contact.utm_medium,
                    method="contact_utm",
                    contact_id=contact_id,
                )
        return Attribution(contact_id=contact_id)


# ---------------------------------------------------------------------------
# Lead join
# ---------------------------------------------------------------------------

def contacts_by_lead(edges: Iterable[LeadContactEdge]) -> Dict[str, List[str]]:
    """lead_id -> contact IDs in stable first-seen order, de-duplicated."""
    grouped: Dict[str, List[str]] = {}
    for edge in edges:
        bucket = grouped.setdefault(edge.lead_id, [])
        if edge.contact_id not in bucket:
            bucket.append(edge.contact_id)
    return grouped


def attribute_leads(
    leads: Iterable[Lead],
    edges: Iterable[LeadContactEdge],
    resolver: AttributionResolver,
) -> List[Tuple[Lead, Attribution]]:
    """Resolve every lead once; leads without contacts become UNATTRIBUTED."""
    linked = contacts_by_lead(edges)
    return [
        (lead, resolver.resolve(lead.created_at, linked.get(lead.lead_id, [])))
        for lead in leads
    ]


def coverage(attributed: Iterable[Tuple[object, Attribution]]) -> Dict[str, int]:
    """Count facts by resolution method (for the data-quality appendix)."""
    counts = Counter(a.method for _, a in attributed)
    return {
        "form_submission": counts.get("form_submission", 0),
        "contact_utm": counts.get("contact_utm", 0),
        "converting_campaign": counts.get("converting_campaign", 0),
        "unattributed": counts.get("unattributed", 0),
        "total": sum(counts.values()),
    }


# ---------------------------------------------------------------------------
# Store loaders
# ---------------------------------------------------------------------------

def load_contacts(store, contact_ids: Iterable[str]) -> Dict[str, ContactAttribution]:
    rows = store.select_in("contact_attribution_cache", "contact_id", contact_ids)
    contacts = {}
    for row in rows:
        contact = ContactAttribution.model_validate(row)
        contacts[contact.contact_id] = contact
    return contacts


def load_submissions(store, since: datetime) -> List[FormSubmission]:
    """Submissions that can match any fact created at or after `since`."""
    rows = store.select_since("form_submissions_raw", "submitted_at", since - SUBMISSION_LOOKBACK)
    return [FormSubmission.model_validate(r) for r in rows if r.get("submitted_at")]


def load_window_leads(store, since: datetime) -> List[Lead]:
    rows = store.select_since("lead_facts_raw", "created_at", since)
    return [Lead.model_validate(r) for r in rows if r.get("created_at")]


def load_attributed_leads(store, since: datetime) -> List[Tuple[Lead, Attribution]]:
    """Leads created since `since`, each with its resolved attribution."""
    leads = load_window_leads(store, since)
    if not leads:
        return []
    edges = [
        LeadContactEdge.model_validate(r)
        for r in store.select_in("lead_contact_map", "lead_id", [l.lead_id for l in leads])
    ]
    contacts = load_contacts(store, {e.contact_id for e in edges})
    resolver = AttributionResolver(contacts, load_submissions(store, since))
    attributed = attribute_leads(leads, edges, resolver)
    logger.info("Attributed %d leads: %s", len(attributed), coverage(attributed))
    return attributed
