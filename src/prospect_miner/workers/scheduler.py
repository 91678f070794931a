"""Per-job polling workers for mining jobs.

Each Running job gets one asyncio task that sleeps ``poll_interval``,
runs one tick (fetch a page, dedup, persist), and goes back to sleep only
after the tick finished, so a job's ticks never overlap and pages are
requested in increasing order.

Store and SMTP work is blocking, so a tick runs it in a thread while
holding the store lock, and waits between failed store attempts with
``asyncio.sleep``. A slow or failing store delays only the job whose tick
hit it.

Stopping a worker never aborts an in-flight provider call: a sleeping
worker is cancelled, a busy one is flagged and exits after its tick, and
the tick itself discards a result whose job is no longer Running.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from prospect_miner.models import DiscoveryResult, JobStatus, MiningJob
from prospect_miner.services import job_state, retry
from prospect_miner.services.dedup import LeadPersistencePipeline
from prospect_miner.services.discovery import DiscoveryProvider, request_for
from prospect_miner.services.job_registry import JobRegistry
from prospect_miner.services.notifications import MilestoneNotifier
from prospect_miner.services.store import WRITE_ATTEMPTS, WRITE_BASE_DELAY, WRITE_MAX_DELAY, StoreError

logger = logging.getLogger(__name__)


# (keep_going, job, milestone to announce)
_PageOutcome = Tuple[bool, Optional[MiningJob], Optional[int]]


@dataclass
class _Worker:
    task: Optional[asyncio.Task] = None
    busy: bool = False
    stopped: bool = False


class WorkerScheduler:
    def __init__(
        self,
        registry: JobRegistry,
        pipeline: LeadPersistencePipeline,
        provider: DiscoveryProvider,
        *,
        poll_interval: float = 10.0,
        max_errors: int = 10,
        exhaustion_empty_pages: int = 3,
        notifier: Optional[MilestoneNotifier] = None,
        store_attempts: int = WRITE_ATTEMPTS,
        store_base_delay: float = WRITE_BASE_DELAY,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.provider = provider
        self.poll_interval = poll_interval
        self.max_errors = max_errors
        self.exhaustion_empty_pages = exhaustion_empty_pages
        self.notifier = notifier
        self.store_attempts = store_attempts
        self.store_base_delay = store_base_delay
        self._workers: Dict[str, _Worker] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # Worker lifecycle

    def is_active(self, job_id: str) -> bool:
        worker = self._workers.get(job_id)
        return worker is not None and worker.task is not None and not worker.task.done()

    def active_job_ids(self) -> List[str]:
        return [job_id for job_id in self._workers if self.is_active(job_id)]

    def start(self, job_id: str) -> bool:
        """Start the worker for ``job_id``; no-op if one is already live."""

        if self.is_active(job_id):
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop; job %s stays Running and will be picked up by hydrate()",
                job_id,
            )
            return False

        worker = _Worker()
        worker.task = loop.create_task(self._run(job_id, worker), name=f"mining-worker-{job_id}")
        self._workers[job_id] = worker
        logger.info("Started worker for job %s (interval: %.1fs)", job_id, self.poll_interval)
        return True

    def stop(self, job_id: str) -> bool:
        worker = self._workers.pop(job_id, None)
        if worker is None:
            return False
        worker.stopped = True
        if not worker.busy and worker.task is not None:
            worker.task.cancel()
        logger.info("Stopped worker for job %s", job_id)
        return True

    def stop_all(self) -> List[asyncio.Task]:
        tasks = [w.task for w in self._workers.values() if w.task is not None]
        for job_id in list(self._workers):
            self.stop(job_id)
        return tasks

    async def aclose(self) -> None:
        """Stop every worker and wait until their tasks have finished."""

        tasks = self.stop_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._locks.clear()

    def hydrate(self) -> int:
        """Restart a worker for every persisted Running job."""

        started = 0
        for job_id in self.registry.running_job_ids():
            if self.start(job_id):
                started += 1
        logger.info("Hydrated %d background job(s)", started)
        return started

    async def _run(self, job_id: str, worker: _Worker) -> None:
        try:
            while not worker.stopped:
                await asyncio.sleep(self.poll_interval)
                if worker.stopped:
                    break
                worker.busy = True
                try:
                    keep_going = await self.process_next_page(job_id)
                finally:
                    worker.busy = False
                if not keep_going:
                    break
        except asyncio.CancelledError:
            logger.debug("Worker for job %s cancelled", job_id)
            raise
        finally:
            if self._workers.get(job_id) is worker:
                del self._workers[job_id]

    # Ticks

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    async def process_next_page(self, job_id: str) -> bool:
        """Run one fetch-dedup-persist cycle; returns False once the job is done.

        Never raises: errors stay local to this job's tick.
        """

        lock = self._lock_for(job_id)
        async with lock:
            try:
                keep_going = await self._tick(job_id)
            except Exception:
                logger.exception("Tick failed for job %s; will retry next interval", job_id)
                keep_going = True
        if not keep_going and not self.is_active(job_id) and not lock.locked():
            if self._locks.get(job_id) is lock:
                del self._locks[job_id]
        return keep_going

    async def _in_store(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run ``func`` in a thread under the store lock, retrying store failures."""

        return await retry.retry_async(
            self._locked,
            func,
            *args,
            max_attempts=self.store_attempts,
            base_delay=self.store_base_delay,
            max_delay=WRITE_MAX_DELAY,
            exceptions=(StoreError,),
        )

    def _locked(self, func: Callable[..., Any], *args: Any) -> Any:
        with self.registry.store.lock:
            return func(*args)

    async def _tick(self, job_id: str) -> bool:
        job = await self._in_store(self.registry.get_job, job_id)
        if job is None or job.status != JobStatus.RUNNING:
            logger.info(
                "Job %s is %s; stopping worker",
                job_id,
                job.status.value if job else "missing",
            )
            self.stop(job_id)
            return False

        if job.target_reached:
            await self._in_store(self._finish_running, job_id, JobStatus.COMPLETED, "target_reached")
            self.stop(job_id)
            return False

        request = request_for(job)
        try:
            result = await self.provider.prospect(request)
        except Exception as exc:
            keep_going = await self._in_store(self._record_failure, job_id, request.page, exc)
            if not keep_going:
                self.stop(job_id)
            return keep_going

        keep_going, saved, milestone = await self._in_store(
            self._apply_page, job_id, job.pages_fetched, request.page, result
        )
        if saved is not None and milestone is not None and self.notifier is not None:
            await asyncio.to_thread(self.notifier.announce, saved, milestone)
        if not keep_going:
            self.stop(job_id)
        return keep_going

    # Store-side steps; each runs in a thread with the store lock held and
    # re-reads the job so a retried attempt starts from what is stored.

    def _apply_page(self, job_id: str, cursor: int, page: int, result: DiscoveryResult) -> _PageOutcome:
        job = self.registry.get_job(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            logger.info("Discarding page %d for job %s: job no longer running", page, job_id)
            return False, None, None
        if job.pages_fetched != cursor:
            logger.info("Discarding page %d for job %s: cursor moved while fetching", page, job_id)
            return True, None, None

        if not result.companies:
            return self._record_empty_page(job, page), None, None

        added = self.pipeline.persist(job.id, result.companies, result.sources)
        # Counted from the store so leads written by an attempt whose job
        # save failed are not lost to dedup on the retry.
        job.found_count = max(job.found_count, self.pipeline.count_for_job(job.id))
        job.pages_fetched += 1
        job.empty_pages = 0
        job.touch()
        logger.info(
            "Job %s page %d: %d candidate(s), %d new, %d/%d found",
            job.id,
            page,
            len(result.companies),
            added,
            job.found_count,
            job.target_count,
        )
        milestone = self.notifier.check(job) if self.notifier is not None else None

        if job.target_reached:
            self.registry.finish_job(job, JobStatus.COMPLETED, "target_reached")
            return False, job, milestone
        self.registry.save_job(job)
        return True, job, milestone

    def _record_empty_page(self, job: MiningJob, page: int) -> bool:
        job.pages_fetched += 1
        job.empty_pages += 1
        job.touch()
        logger.info("Job %s page %d returned no companies (%d in a row)", job.id, page, job.empty_pages)
        if job_state.is_exhausted(job.found_count, job.pages_fetched, self.exhaustion_empty_pages):
            self.registry.finish_job(job, JobStatus.COMPLETED, "search_exhausted")
            return False
        self.registry.save_job(job)
        return True

    def _record_failure(self, job_id: str, page: int, exc: Exception) -> bool:
        job = self.registry.get_job(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return False

        job.errors += 1
        job.touch()
        logger.warning(
            "Provider failed for job %s page %d (error %d, limit %d): %s",
            job_id,
            page,
            job.errors,
            self.max_errors,
            exc,
        )
        if job_state.has_failed(job.errors, self.max_errors):
            self.registry.finish_job(job, JobStatus.FAILED, f"provider_errors: {exc}")
            return False
        self.registry.save_job(job)
        return True

    def _finish_running(self, job_id: str, status: JobStatus, reason: str) -> None:
        job = self.registry.get_job(job_id)
        if job is not None and job.status == JobStatus.RUNNING:
            self.registry.finish_job(job, status, reason)
