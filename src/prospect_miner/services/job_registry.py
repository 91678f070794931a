"""Store-backed registry of mining jobs and their leads.

The registry owns every ``MiningJob`` record. It does not run workers;
the engine pairs each registry mutation with the matching scheduler
start/stop.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from prospect_miner.models import (
    JobAction,
    JobFilters,
    JobParams,
    JobStatus,
    MiningJob,
    MiningLead,
    normalize_cnpj,
    parse_records,
)
from prospect_miner.services import job_state
from prospect_miner.services.dedup import LEADS_KEY
from prospect_miner.services.environment import EnvironmentManager
from prospect_miner.services.events import JOB_SAVED, LEADS_IMPORTED, EventBus, MiningEvent
from prospect_miner.services.store import KeyValueStore

logger = logging.getLogger(__name__)


JOBS_KEY = "jobs"


class MiningError(Exception):
    """Base class for mining engine errors."""


class JobValidationError(MiningError):
    """Raised when job parameters are missing or invalid; nothing is written."""


def _log_job_event(job_id: str, action: str, payload: Optional[Dict[str, Any]] = None) -> None:
    """Emit a structured log line for ops consumption."""
    data = payload or {}
    logger.info("EVENT|job_id=%s|action=%s|data=%s", job_id, action, json.dumps(data, ensure_ascii=False))


class JobRegistry:
    def __init__(self, store: KeyValueStore, environment: EnvironmentManager, events: EventBus):
        self.store = store
        self.environment = environment
        self.events = events

    # Reads

    def list_jobs(self) -> List[MiningJob]:
        """All jobs of the current environment, newest first."""

        jobs = parse_records(MiningJob, self.store.read_collection(self.environment.scoped_key(JOBS_KEY)))
        # Insertion order breaks ties between identical timestamps.
        ordered = sorted(enumerate(jobs), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [job for _, job in ordered]

    def get_job(self, job_id: str) -> Optional[MiningJob]:
        return next((j for j in self.list_jobs() if j.id == job_id), None)

    def running_job_ids(self) -> List[str]:
        return [j.id for j in self.list_jobs() if j.status == JobStatus.RUNNING]

    def get_leads_for_job(self, job_id: str) -> List[MiningLead]:
        leads = parse_records(MiningLead, self.store.read_collection(self.environment.scoped_key(LEADS_KEY)))
        return [l for l in leads if l.job_id == job_id and not l.is_imported]

    # Writes

    def create_job(self, params: Union[JobParams, Dict[str, Any]]) -> MiningJob:
        try:
            p = params if isinstance(params, JobParams) else JobParams.model_validate(params)
        except ValidationError as exc:
            raise JobValidationError(str(exc)) from exc

        job = MiningJob(
            name=p.segment_name,
            status=JobStatus.RUNNING,
            config_payload=p.model_dump(mode="json"),
            filters=JobFilters(
                segment=p.segment_name,
                state=p.state,
                city=p.city,
                size=p.size,
                tax_regime=p.tax_regime,
                fiscal_filter=p.fiscal_filter,
            ),
            target_count=p.target_count,
            auto_create_segment=p.auto_create_segment,
            enrich=p.enrich,
        )
        self.save_job(job)
        self.environment.log_action("MINING_JOB_CREATE", job.id, after=job.model_dump(mode="json"))
        _log_job_event(job.id, "created", {"segment": p.segment_name, "target": p.target_count})
        return job

    def save_job(self, job: MiningJob) -> None:
        """Upsert ``job`` into the jobs collection and notify observers."""

        key = self.environment.scoped_key(JOBS_KEY)
        record = job.model_dump(mode="json")
        with self.store.lock:
            rows = self.store.read_collection(key)
            for i, row in enumerate(rows):
                if isinstance(row, dict) and row.get("id") == job.id:
                    rows[i] = record
                    break
            else:
                rows.append(record)
            self.store.write_collection(key, rows)
        self.events.publish(MiningEvent(JOB_SAVED, job.id, {"status": job.status.value}))

    def apply_control(self, job_id: str, action: Union[JobAction, str]) -> Optional[MiningJob]:
        """Apply pause/resume/cancel; ``None`` when nothing changed."""

        action = JobAction(action)
        with self.store.lock:
            job = self.get_job(job_id)
            if job is None:
                logger.info("Ignoring %s for unknown job %s", action.value, job_id)
                return None

            target = job_state.control_target(job.status, action)
            if target is None:
                logger.info("Ignoring %s for job %s in status %s", action.value, job_id, job.status.value)
                return None

            before = job.status
            job.status = target
            job.touch()
            self.save_job(job)
        self.environment.log_action(
            f"MINING_JOB_{action.value.upper()}",
            job.id,
            before={"status": before.value},
            after={"status": target.value},
        )
        _log_job_event(job.id, action.value, {"from": before.value, "to": target.value})
        return job

    def finish_job(self, job: MiningJob, status: JobStatus, reason: str) -> MiningJob:
        """Move a Running job into Completed or Failed and persist it."""

        before = job.status
        job.status = job_state.automatic_target(job.status, status)
        job.touch()
        self.save_job(job)
        self.environment.log_action(
            f"MINING_JOB_{status.value.upper()}",
            job.id,
            before={"status": before.value},
            after={"status": status.value, "reason": reason},
        )
        _log_job_event(
            job.id,
            status.value.lower(),
            {"reason": reason, "found": job.found_count, "pages": job.pages_fetched, "errors": job.errors},
        )
        return job

    def mark_imported(self, natural_key: str) -> int:
        """Flag every lead with ``natural_key`` as imported; returns how many flipped."""

        key = normalize_cnpj(natural_key)
        if not key:
            return 0
        leads_key = self.environment.scoped_key(LEADS_KEY)
        flipped = 0
        with self.store.lock:
            rows = self.store.read_collection(leads_key)
            for row in rows:
                if isinstance(row, dict) and normalize_cnpj(row.get("cnpj_raw")) == key and not row.get("is_imported"):
                    row["is_imported"] = True
                    flipped += 1
            if flipped:
                self.store.write_collection(leads_key, rows)
        if flipped:
            self.environment.log_action("MINING_LEAD_IMPORT", key, after={"is_imported": True, "leads": flipped})
        self.events.publish(MiningEvent(LEADS_IMPORTED, None, {"cnpj_raw": key, "flipped": flipped}))
        return flipped
