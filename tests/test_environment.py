"""Tests for environment scoping, the audit trail and snapshots."""

import logging
import sys
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (SRC, ROOT):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from prospect_miner.models import MiningEnv
from prospect_miner.services.environment import (
    AUDIT_KEY,
    ENV_KEY,
    SNAPSHOTS_KEY,
    EnvironmentManager,
)
from prospect_miner.services.store import MemoryStore, StoreError


def test_production_keys_are_unprefixed():
    env = EnvironmentManager(MemoryStore())
    assert env.env == MiningEnv.PRODUCTION
    assert env.scoped_key("jobs") == "jobs"


def test_staging_keys_are_prefixed():
    env = EnvironmentManager(MemoryStore(), default_env=MiningEnv.STAGING)
    assert env.scoped_key("jobs") == "staging_jobs"


def test_persisted_env_wins_over_default():
    store = MemoryStore(initial={ENV_KEY: "STAGING"})
    env = EnvironmentManager(store, default_env=MiningEnv.PRODUCTION)
    assert env.env == MiningEnv.STAGING


def test_unknown_persisted_env_falls_back_to_default():
    store = MemoryStore(initial={ENV_KEY: "QA"})
    env = EnvironmentManager(store)
    assert env.env == MiningEnv.PRODUCTION


def test_set_env_persists_and_runs_reset_hooks():
    store = MemoryStore()
    env = EnvironmentManager(store)
    seen = []
    env.on_reset(seen.append)

    env.set_env(MiningEnv.STAGING)

    assert env.env == MiningEnv.STAGING
    assert store.read_value(ENV_KEY) == "STAGING"
    assert seen == [MiningEnv.STAGING]
    # A fresh manager over the same store picks the switch up.
    assert EnvironmentManager(store).env == MiningEnv.STAGING


def test_audit_entries_are_newest_first_and_capped():
    env = EnvironmentManager(MemoryStore(), audit_log_cap=3)
    for i in range(5):
        env.log_action("MINING_JOB_CREATE", f"job-{i}")

    trail = env.get_audit_trail()
    assert [e.entity_id for e in trail] == ["job-4", "job-3", "job-2"]
    assert trail[0].actor_id == "system"
    assert trail[0].actor_name == "Mining Engine"


def test_audit_is_scoped_per_environment():
    store = MemoryStore()
    env = EnvironmentManager(store)
    env.log_action("MINING_JOB_CREATE", "job-prod")
    env.set_env(MiningEnv.STAGING)
    env.log_action("MINING_JOB_CREATE", "job-staging")

    assert [e.entity_id for e in env.get_audit_trail()] == ["job-staging"]
    assert len(store.read_collection(AUDIT_KEY)) == 1
    assert len(store.read_collection("staging_" + AUDIT_KEY)) == 1


def test_destructive_actions_log_a_warning(caplog):
    env = EnvironmentManager(MemoryStore())
    with caplog.at_level(logging.WARNING, logger="prospect_miner.services.environment"):
        env.log_action("LEAD_PURGE", "lead-1", actor_name="Admin")
    assert "Destructive operation detected: LEAD_PURGE by Admin" in caplog.text


def test_audit_failure_is_swallowed():
    store = MemoryStore()
    env = EnvironmentManager(store)
    with patch.object(store, "write_collection", side_effect=StoreError("down")):
        assert env.log_action("MINING_JOB_CREATE", "job-1") is None
    assert env.get_audit_trail() == []


def test_snapshots_keep_retention_newest_first():
    env = EnvironmentManager(MemoryStore(), snapshot_retention=2)
    first = env.create_snapshot([{"id": "l1"}], [])
    second = env.create_snapshot([{"id": "l2"}], [])
    third = env.create_snapshot([{"id": "l3"}], [{"id": "u1"}])

    snapshots = env.get_snapshots()
    assert [s.id for s in snapshots] == [third.id, second.id]
    assert first.id not in {s.id for s in snapshots}
    assert snapshots[0].env == MiningEnv.PRODUCTION
    assert snapshots[0].data == {"leads": [{"id": "l3"}], "users": [{"id": "u1"}]}


def test_restore_returns_data_and_audits():
    store = MemoryStore()
    env = EnvironmentManager(store)
    snap = env.create_snapshot([{"id": "l1"}], [])

    data = env.restore_from_snapshot(snap.id)

    assert data == {"leads": [{"id": "l1"}], "users": []}
    trail = env.get_audit_trail()
    assert trail[0].action == "DISASTER_RECOVERY_RESTORE"
    assert trail[0].entity_id == snap.id
    assert trail[0].actor_name == "Recovery"


def test_restore_unknown_snapshot_returns_none():
    env = EnvironmentManager(MemoryStore())
    assert env.restore_from_snapshot("snap-missing") is None
    assert env.get_audit_trail() == []


def test_snapshot_failure_is_swallowed():
    store = MemoryStore()
    env = EnvironmentManager(store)
    with patch.object(store, "write_collection", side_effect=StoreError("down")):
        assert env.create_snapshot([], []) is None
    assert store.read_collection(SNAPSHOTS_KEY) == []
