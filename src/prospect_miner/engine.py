"""The mining engine: one service object wiring store, provider and workers.

Usage:
    ```python
    engine = MiningEngine(store=MemoryStore(), provider=my_provider)
    engine.subscribe(lambda event: print(event.kind, event.job_id))

    async def main():
        engine.hydrate()
        job = engine.create_job(segment_name="Padarias", city="Belo Horizonte",
                                state="MG", target_count=50)
        ...
        engine.control_job(job.id, "pause")
        await engine.shutdown()
    ```

The job methods are synchronous and retry store failures with a blocking
backoff. Workers never go through them; their store work runs off the
event loop (see ``workers/scheduler.py``).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from prospect_miner.config.settings import Settings, get_settings
from prospect_miner.models import JobAction, JobParams, JobStatus, MiningEnv, MiningJob, MiningLead
from prospect_miner.services.dedup import LeadPersistencePipeline
from prospect_miner.services.discovery import DiscoveryProvider
from prospect_miner.services.environment import EnvironmentManager
from prospect_miner.services.events import ENV_CHANGED, EventBus, MiningEvent, Subscriber
from prospect_miner.services.job_registry import JobRegistry
from prospect_miner.services.notifications import MilestoneNotifier
from prospect_miner.services.store import KeyValueStore, store_retry
from prospect_miner.workers.scheduler import WorkerScheduler

logger = logging.getLogger(__name__)


class MiningEngine:
    def __init__(
        self,
        store: KeyValueStore,
        provider: DiscoveryProvider,
        settings: Optional[Settings] = None,
        events: Optional[EventBus] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.events = events or EventBus()
        self.environment = EnvironmentManager(
            store,
            default_env=self.settings.mining_env,
            audit_log_cap=self.settings.audit_log_cap,
            snapshot_retention=self.settings.snapshot_retention,
        )
        self.registry = JobRegistry(store, self.environment, self.events)
        self.pipeline = LeadPersistencePipeline(store, self.environment)
        self.scheduler = WorkerScheduler(
            self.registry,
            self.pipeline,
            provider,
            poll_interval=self.settings.poll_interval_seconds,
            max_errors=self.settings.max_errors,
            exhaustion_empty_pages=self.settings.exhaustion_empty_pages,
            notifier=MilestoneNotifier(
                self.events,
                step=self.settings.notification_milestone_step,
                to_email=self.settings.notification_email,
            ),
        )
        self.environment.on_reset(self._on_env_reset)

    # Jobs

    def create_job(self, params: Union[JobParams, Dict[str, Any], None] = None, **kwargs: Any) -> MiningJob:
        """Persist a new Running job and start its worker.

        Raises ``JobValidationError`` before writing anything when the
        parameters are incomplete.
        """

        job = store_retry(self.registry.create_job)(params if params is not None else kwargs)
        self.scheduler.start(job.id)
        return job

    def list_jobs(self) -> List[MiningJob]:
        return self.registry.list_jobs()

    def get_job(self, job_id: str) -> Optional[MiningJob]:
        return self.registry.get_job(job_id)

    def get_leads_for_job(self, job_id: str) -> List[MiningLead]:
        return self.registry.get_leads_for_job(job_id)

    def control_job(self, job_id: str, action: Union[JobAction, str]) -> Optional[MiningJob]:
        job = store_retry(self.registry.apply_control)(job_id, action)
        if job is None:
            return None
        if job.status == JobStatus.RUNNING:
            self.scheduler.start(job_id)
        else:
            self.scheduler.stop(job_id)
        return job

    def mark_imported(self, natural_key: str) -> int:
        """Call after the lead was inserted into the CRM by the caller."""

        return store_retry(self.registry.mark_imported)(natural_key)

    # Workers

    def hydrate(self) -> int:
        """Restart workers for persisted Running jobs (after a restart or reload)."""

        return self.scheduler.hydrate()

    async def shutdown(self) -> None:
        await self.scheduler.aclose()

    # Observers and environment

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        return self.events.subscribe(callback)

    @property
    def env(self) -> MiningEnv:
        return self.environment.env

    def set_env(self, env: Union[MiningEnv, str]) -> None:
        store_retry(self.environment.set_env)(MiningEnv(env))

    def _on_env_reset(self, env: MiningEnv) -> None:
        self.scheduler.stop_all()
        restarted = self.scheduler.hydrate()
        logger.info("Environment reset to %s; %d worker(s) restarted", env.value, restarted)
        self.events.publish(MiningEvent(ENV_CHANGED, None, {"env": env.value}))
