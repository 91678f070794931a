"""Tests for the store-backed job registry."""

import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (SRC, ROOT):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

import pytest

from prospect_miner.models import CandidateCompany, CompanySize, JobStatus, MiningEnv, utcnow
from prospect_miner.services.dedup import LEADS_KEY, LeadPersistencePipeline
from prospect_miner.services.environment import EnvironmentManager
from prospect_miner.services.events import JOB_SAVED, LEADS_IMPORTED, EventBus
from prospect_miner.services.job_registry import JOBS_KEY, JobRegistry, JobValidationError
from prospect_miner.services.job_state import InvalidTransition
from prospect_miner.services.store import MemoryStore


def make_registry():
    store = MemoryStore()
    env = EnvironmentManager(store)
    events = EventBus()
    seen = []
    events.subscribe(seen.append)
    return store, env, JobRegistry(store, env, events), seen


def test_create_job_defaults():
    store, env, registry, events = make_registry()
    job = registry.create_job({"segment_name": "Padarias", "city": "Belo Horizonte", "state": "MG"})

    assert job.id.startswith("job-")
    assert job.status == JobStatus.RUNNING
    assert job.name == "Padarias"
    assert job.target_count == 100
    assert (job.found_count, job.pages_fetched, job.errors) == (0, 0, 0)
    assert job.filters.segment == "Padarias"
    assert job.filters.size == "all"
    assert job.config_payload["city"] == "Belo Horizonte"

    assert [r["id"] for r in store.read_collection(JOBS_KEY)] == [job.id]
    assert env.get_audit_trail()[0].action == "MINING_JOB_CREATE"
    assert events[-1].kind == JOB_SAVED


def test_create_job_accepts_known_size():
    _, _, registry, _ = make_registry()
    job = registry.create_job({"segment_name": "Clínicas", "size": "Pequeno Porte (EPP)", "target_count": 5})
    assert job.filters.size == CompanySize.EPP


@pytest.mark.parametrize(
    "params",
    [
        {},
        {"segment_name": "   "},
        {"segment_name": "Padarias", "target_count": 0},
        {"segment_name": "Padarias", "size": "Gigante"},
    ],
)
def test_create_job_rejects_invalid_params_without_writing(params):
    store, env, registry, events = make_registry()
    with pytest.raises(JobValidationError):
        registry.create_job(params)
    assert store.read_collection(JOBS_KEY) == []
    assert env.get_audit_trail() == []
    assert events == []


def test_list_jobs_newest_first_with_stable_ties():
    store, _, registry, _ = make_registry()
    a = registry.create_job({"segment_name": "A"})
    b = registry.create_job({"segment_name": "B"})
    c = registry.create_job({"segment_name": "C"})

    # Force identical timestamps; insertion order must break the tie.
    rows = store.read_collection(JOBS_KEY)
    stamp = rows[0]["created_at"]
    for row in rows:
        row["created_at"] = stamp
    store.write_collection(JOBS_KEY, rows)
    assert [j.id for j in registry.list_jobs()] == [c.id, b.id, a.id]

    older = registry.get_job(a.id)
    older.created_at = utcnow() + timedelta(days=1)
    registry.save_job(older)
    assert registry.list_jobs()[0].id == a.id


def test_list_jobs_skips_malformed_rows():
    store, _, registry, _ = make_registry()
    job = registry.create_job({"segment_name": "A"})
    rows = store.read_collection(JOBS_KEY) + [{"id": "broken"}]
    store.write_collection(JOBS_KEY, rows)
    assert [j.id for j in registry.list_jobs()] == [job.id]


def test_apply_control_transitions_and_audits():
    _, env, registry, _ = make_registry()
    job = registry.create_job({"segment_name": "Padarias"})

    paused = registry.apply_control(job.id, "pause")
    assert paused.status == JobStatus.PAUSED
    assert registry.get_job(job.id).status == JobStatus.PAUSED

    resumed = registry.apply_control(job.id, "resume")
    assert resumed.status == JobStatus.RUNNING

    cancelled = registry.apply_control(job.id, "cancel")
    assert cancelled.status == JobStatus.CANCELLED

    actions = [e.action for e in env.get_audit_trail()]
    assert actions[:3] == ["MINING_JOB_CANCEL", "MINING_JOB_RESUME", "MINING_JOB_PAUSE"]


def test_apply_control_is_noop_for_terminal_and_unknown_jobs():
    _, env, registry, _ = make_registry()
    job = registry.create_job({"segment_name": "Padarias"})
    registry.apply_control(job.id, "cancel")
    audit_size = len(env.get_audit_trail())

    assert registry.apply_control(job.id, "resume") is None
    assert registry.apply_control(job.id, "pause") is None
    assert registry.apply_control("job-missing", "pause") is None
    assert registry.get_job(job.id).status == JobStatus.CANCELLED
    assert len(env.get_audit_trail()) == audit_size


def test_finish_job_only_from_running():
    _, env, registry, _ = make_registry()
    job = registry.create_job({"segment_name": "Padarias"})
    registry.finish_job(job, JobStatus.COMPLETED, "target_reached")

    stored = registry.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert env.get_audit_trail()[0].new_state["reason"] == "target_reached"

    with pytest.raises(InvalidTransition):
        registry.finish_job(stored, JobStatus.FAILED, "late")


def test_leads_for_job_and_mark_imported():
    store, env, registry, events = make_registry()
    pipeline = LeadPersistencePipeline(store, env)
    job = registry.create_job({"segment_name": "Padarias"})
    other = registry.create_job({"segment_name": "Clínicas"})
    pipeline.persist(job.id, [CandidateCompany(cnpj_raw="11222333000144"), CandidateCompany(cnpj_raw="55666777000188")])
    pipeline.persist(other.id, [CandidateCompany(cnpj_raw="99888777000166")])

    assert len(registry.get_leads_for_job(job.id)) == 2

    assert registry.mark_imported("11.222.333/0001-44") == 1
    assert [l.cnpj_raw for l in registry.get_leads_for_job(job.id)] == ["55666777000188"]
    assert events[-1].kind == LEADS_IMPORTED
    assert env.get_audit_trail()[0].action == "MINING_LEAD_IMPORT"

    # Importing again flips nothing and writes no audit entry.
    audit_size = len(env.get_audit_trail())
    assert registry.mark_imported("11222333000144") == 0
    assert registry.mark_imported("") == 0
    assert len(env.get_audit_trail()) == audit_size
    assert any(r["is_imported"] for r in store.read_collection(LEADS_KEY))


def test_registry_follows_environment():
    store, env, registry, _ = make_registry()
    prod = registry.create_job({"segment_name": "Prod"})
    env.set_env(MiningEnv.STAGING)
    staging = registry.create_job({"segment_name": "Staging"})

    assert [j.id for j in registry.list_jobs()] == [staging.id]
    assert [r["id"] for r in store.read_collection(JOBS_KEY)] == [prod.id]
    assert registry.running_job_ids() == [staging.id]
