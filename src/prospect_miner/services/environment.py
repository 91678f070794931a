"""Environment scoping, audit trail and snapshots.

Every key the registry and the dedup pipeline touch goes through
``EnvironmentManager.scoped_key`` so production and staging data live in
separate partitions of the same store. Switching environment is a full
reset: registered reset hooks stop in-memory workers and reload them
from the newly selected partition.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from prospect_miner.models import AuditEntry, MiningEnv, Snapshot, parse_records
from prospect_miner.services.store import KeyValueStore

logger = logging.getLogger(__name__)


ENV_KEY = "current_env"
AUDIT_KEY = "audit_trail"
SNAPSHOTS_KEY = "snapshots"
STAGING_PREFIX = "staging_"

DESTRUCTIVE_MARKERS = ("DELETE", "PURGE")


class EnvironmentManager:
    def __init__(
        self,
        store: KeyValueStore,
        default_env: MiningEnv = MiningEnv.PRODUCTION,
        audit_log_cap: int = 500,
        snapshot_retention: int = 7,
    ):
        self.store = store
        self.audit_log_cap = audit_log_cap
        self.snapshot_retention = snapshot_retention
        self._reset_hooks: List[Callable[[MiningEnv], None]] = []

        saved = store.read_value(ENV_KEY)
        try:
            self._env = MiningEnv(saved) if saved else MiningEnv(default_env)
        except ValueError:
            logger.warning("Ignoring unknown persisted environment %r", saved)
            self._env = MiningEnv(default_env)

    @property
    def env(self) -> MiningEnv:
        return self._env

    def scoped_key(self, base_key: str) -> str:
        if self._env == MiningEnv.PRODUCTION:
            return base_key
        return f"{STAGING_PREFIX}{base_key}"

    def on_reset(self, hook: Callable[[MiningEnv], None]) -> None:
        self._reset_hooks.append(hook)

    def set_env(self, env: MiningEnv) -> None:
        """Switch partitions and reset everyone holding in-memory state."""

        env = MiningEnv(env)
        previous = self._env
        with self.store.lock:
            self.store.write_value(ENV_KEY, env.value)
            self._env = env
        logger.info("Environment switched %s -> %s", previous.value, env.value)
        for hook in list(self._reset_hooks):
            hook(env)

    # Audit trail

    def log_action(
        self,
        action: str,
        entity_id: str,
        actor_id: str = "system",
        actor_name: str = "Mining Engine",
        before: Any = None,
        after: Any = None,
    ) -> Optional[AuditEntry]:
        """Prepend an audit entry; best effort, never raises."""

        entry = AuditEntry(
            action=action,
            entity_id=entity_id,
            actor_id=actor_id,
            actor_name=actor_name,
            previous_state=before,
            new_state=after,
        )
        try:
            key = self.scoped_key(AUDIT_KEY)
            with self.store.lock:
                logs = self.store.read_collection(key)
                logs = [entry.model_dump(mode="json")] + logs
                self.store.write_collection(key, logs[: self.audit_log_cap])
        except Exception as exc:
            logger.warning("Failed to write audit entry %s for %s: %s", action, entity_id, exc)
            return None

        if any(marker in action for marker in DESTRUCTIVE_MARKERS):
            logger.warning("Destructive operation detected: %s by %s", action, actor_name)
        return entry

    def get_audit_trail(self) -> List[AuditEntry]:
        return parse_records(AuditEntry, self.store.read_collection(self.scoped_key(AUDIT_KEY)))

    # Snapshots

    def create_snapshot(self, leads: List[Any], users: List[Any]) -> Optional[Snapshot]:
        """Store a backup of the lead and user collections, newest first."""

        try:
            snapshot = Snapshot(env=self._env, data={"leads": list(leads), "users": list(users)})
            key = self.scoped_key(SNAPSHOTS_KEY)
            with self.store.lock:
                snapshots = self.store.read_collection(key)
                snapshots = [snapshot.model_dump(mode="json")] + snapshots
                self.store.write_collection(key, snapshots[: self.snapshot_retention])
        except Exception as exc:
            logger.error("Failed to create snapshot: %s", exc)
            return None
        logger.info("Snapshot %s created at %s", snapshot.id, snapshot.timestamp.isoformat())
        return snapshot

    def get_snapshots(self) -> List[Snapshot]:
        return parse_records(Snapshot, self.store.read_collection(self.scoped_key(SNAPSHOTS_KEY)))

    def restore_from_snapshot(self, snapshot_id: str) -> Optional[Dict[str, List[Any]]]:
        """Return the data held by ``snapshot_id``; the caller reapplies it."""

        snap = next((s for s in self.get_snapshots() if s.id == snapshot_id), None)
        if snap is None:
            return None
        self.log_action(
            "DISASTER_RECOVERY_RESTORE",
            snap.id,
            actor_id="system",
            actor_name="Recovery",
            before=None,
            after=snap.data,
        )
        return snap.data

