"""Long-running process hosting the mining engine's background workers.

On start it restarts a worker for every persisted Running job, then keeps
the event loop alive until SIGINT/SIGTERM, when every worker is stopped
(in-flight provider calls are allowed to finish).

Usage:
    python -m prospect_miner.workers.mining_runner

Environment Variables:
    MINING_PROVIDER: "module:factory" returning a DiscoveryProvider (required)
    MINING_STORE_BACKEND: memory | postgres | supabase (default: memory)
    MINING_ENV: PRODUCTION | STAGING (default: PRODUCTION)
    LOG_LEVEL: Logging level (default: INFO)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

from prospect_miner.config.settings import Settings, get_settings
from prospect_miner.engine import MiningEngine
from prospect_miner.services.discovery import load_provider
from prospect_miner.services.events import MiningEvent
from prospect_miner.services.store import build_store
from prospect_miner.workers.utils import load_env_files

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> MiningEngine:
    if not settings.provider_factory:
        raise SystemExit("MINING_PROVIDER must be set to 'module:factory'")
    provider = load_provider(settings.provider_factory)
    store = build_store(settings)
    return MiningEngine(store=store, provider=provider, settings=settings)


def _log_event(event: MiningEvent) -> None:
    logger.debug("Change event %s job_id=%s data=%s", event.kind, event.job_id, event.data)


async def run_forever(engine: MiningEngine, stop_event: asyncio.Event) -> None:
    engine.subscribe(_log_event)
    started = engine.hydrate()
    logger.info(
        "Mining runner ready (env=%s, workers=%d, interval=%.1fs)",
        engine.env.value,
        started,
        engine.settings.poll_interval_seconds,
    )
    try:
        await stop_event.wait()
    finally:
        logger.info("Mining runner shutting down; stopping %d worker(s)", len(engine.scheduler.active_job_ids()))
        await engine.shutdown()


async def _main_async(settings: Settings) -> None:
    engine = build_engine(settings)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops lack add_signal_handler; Ctrl+C still raises KeyboardInterrupt.
            pass
    await run_forever(engine, stop_event)


def main() -> None:
    """Entry point for the mining worker process."""
    load_env_files()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = get_settings()
    logger.info(
        "Mining runner starting up (store=%s, env=%s)",
        settings.store_backend,
        settings.mining_env.value,
    )
    try:
        asyncio.run(_main_async(settings))
    except KeyboardInterrupt:
        logger.info("Mining runner shutting down (user interrupt)")


if __name__ == "__main__":  # pragma: no cover
    main()
