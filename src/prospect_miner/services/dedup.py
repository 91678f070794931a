"""Merge discovered companies into the mining lead store.

A candidate becomes a ``MiningLead`` only when its normalized CNPJ is
unknown to both the main CRM collection and the mining collection. This
module is the only place new mining leads are written.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Sequence, Set

from prospect_miner.models import (
    CandidateCompany,
    MiningLead,
    ProvenanceSource,
    normalize_cnpj,
)
from prospect_miner.services.environment import EnvironmentManager
from prospect_miner.services.store import KeyValueStore

logger = logging.getLogger(__name__)


LEADS_KEY = "leads"
CRM_LEADS_KEY = "crm_leads"

NOT_LOCATED = "not located"
NO_VALUE = "—"
DEFAULT_SOURCES = ("web_search", "ai_discovery")


def crm_natural_key(record: Any) -> str:
    """Natural key of a main-CRM lead, whatever spelling the CRM uses."""

    if not isinstance(record, dict):
        return ""
    return normalize_cnpj(record.get("cnpjRaw") or record.get("cnpj_raw") or record.get("cnpj"))


def source_uris(sources: Iterable[Any]) -> List[str]:
    uris: List[str] = []
    for source in sources or []:
        if isinstance(source, ProvenanceSource):
            uri = source.uri
        elif isinstance(source, dict):
            uri = source.get("uri") or (source.get("web") or {}).get("uri")
        else:
            uri = None
        if uri and uri not in uris:
            uris.append(uri)
    return uris


def build_lead(job_id: str, company: CandidateCompany, sources: List[str]) -> MiningLead:
    """Project a provider record onto a lead, filling every optional field."""

    return MiningLead(
        job_id=job_id,
        cnpj_raw=company.natural_key,
        cnpj=company.cnpj,
        name=company.name,
        trade_name=company.trade_name or company.name or "Company located",
        segment=company.segment,
        city=company.city,
        state=company.state,
        phone_company=company.phone or NOT_LOCATED,
        email_company=company.email_company or NOT_LOCATED,
        partners=company.partners or ["Pending"],
        contact_name=company.decision_maker_name or "Owner",
        contact_phone=company.decision_maker_phone_formatted or NO_VALUE,
        contact_email=company.email or NO_VALUE,
        score_ia=company.icp_score or 3,
        debt_status=company.debt_status or "Regular",
        debt_value_est=company.estimated_revenue or NO_VALUE,
        website=company.website or "",
        sources=list(sources) if sources else list(DEFAULT_SOURCES),
    )


class LeadPersistencePipeline:
    def __init__(self, store: KeyValueStore, environment: EnvironmentManager):
        self.store = store
        self.environment = environment

    def persist(
        self,
        job_id: str,
        candidates: Sequence[CandidateCompany],
        sources: Iterable[Any] = (),
    ) -> int:
        """Append unseen candidates as leads of ``job_id``; return how many."""

        leads_key = self.environment.scoped_key(LEADS_KEY)
        with self.store.lock:
            all_leads = self.store.read_collection(leads_key)
            crm_leads = self.store.read_collection(self.environment.scoped_key(CRM_LEADS_KEY))
            crm_keys: Set[str] = {crm_natural_key(l) for l in crm_leads} - {""}
            mined_keys: Set[str] = {
                normalize_cnpj(l.get("cnpj_raw")) for l in all_leads if isinstance(l, dict)
            } - {""}
            uris = source_uris(sources)

            added = 0
            skipped = 0
            for company in candidates:
                key = company.natural_key
                if not key or key in crm_keys or key in mined_keys:
                    skipped += 1
                    continue
                lead = build_lead(job_id, company, uris)
                all_leads.append(lead.model_dump(mode="json"))
                mined_keys.add(key)
                added += 1

            if added:
                self.store.write_collection(leads_key, all_leads)
        logger.info(
            "Job %s: persisted %d new lead(s), skipped %d duplicate/keyless candidate(s)",
            job_id,
            added,
            skipped,
        )
        return added

    def count_for_job(self, job_id: str) -> int:
        """Leads stored for ``job_id``, imported or not."""

        rows = self.store.read_collection(self.environment.scoped_key(LEADS_KEY))
        return sum(1 for row in rows if isinstance(row, dict) and row.get("job_id") == job_id)
