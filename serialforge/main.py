"""
SerialForge - Main Entry Point
Consumes story runs from the Redis queue and drives one Runner per story.
"""

import asyncio
import logging
import os
import signal
from typing import Optional

from dotenv import load_dotenv

from .agents import create_llm_client
from .config import (
    EngineSettings,
    LLMConfiguration,
    create_default_config_from_env,
    create_engine_settings_from_env,
)
from .core.runner import Runner, RunnerCallbacks
from .models import RunJob
from .services import DurableStore, GenerationService, InMemoryStore, SupabaseStore
from .services.run_queue import RunQueueService, RunWorker

# Load environment variables
load_dotenv()

logger = logging.getLogger("serialforge.main")


class SerialForgeOrchestrator:
    """Wires providers, persistence and the run queue together."""

    def __init__(self, config: LLMConfiguration, settings: EngineSettings):
        self.config = config
        self.settings = settings
        self.queue_service: Optional[RunQueueService] = None
        self.store: Optional[DurableStore] = None
        self.worker: Optional[RunWorker] = None
        self.services = {}

    async def initialize(self) -> None:
        """Initialize persistence, the queue and the generation services."""
        supabase = SupabaseStore()
        if await supabase.connect():
            self.store = supabase
            logger.info("[initialize] Persisting to Supabase")
        else:
            self.store = InMemoryStore()
            logger.warning("[initialize] Supabase not configured; using in-memory store (no durability)")

        redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
        self.queue_service = RunQueueService(redis_url)
        await self.queue_service.connect()
        logger.info(f"[initialize] Connected to Redis at {redis_url}")

        roles = self.config.role_models
        for role, provider, model in (
            ("planner", roles.planner_provider, roles.planner_model),
            ("writer", roles.writer_provider, roles.writer_model),
            ("summarizer", roles.summarizer_provider, roles.summarizer_model),
        ):
            client = create_llm_client(provider, self.config, model)
            self.services[role] = GenerationService(
                client,
                retry=self.settings.retry,
                temperature=self.config.temperature,
            )
            logger.info(f"[initialize] {role} -> {provider.value}/{model}")

    def build_runner(self, job: RunJob, callbacks: RunnerCallbacks) -> Runner:
        return Runner(
            writer=self.services["writer"],
            planner=self.services["planner"],
            summarizer=self.services["summarizer"],
            store=self.store,
            settings=self.settings,
            callbacks=callbacks,
        )

    async def run(self) -> None:
        """Run the worker loop."""
        logger.info(f"[run] Enabled providers: {[p.value for p in self.config.get_enabled_providers()]}")
        self.worker = RunWorker(
            self.queue_service,
            self.build_runner,
            max_concurrent_runs=int(os.getenv("SERIALFORGE_MAX_CONCURRENT_RUNS", "4")),
        )
        await self.worker.start()
        await self.worker.drain()

    async def shutdown(self) -> None:
        """Stop every active runner, then close the queue connection."""
        logger.info("[shutdown] Shutting down orchestrator...")
        if self.worker:
            self.worker.stop()
            await self.worker.drain()
        if self.queue_service:
            await self.queue_service.disconnect()


async def main():
    """Main entry point."""
    config = create_default_config_from_env()
    settings = create_engine_settings_from_env()
    logging.getLogger("serialforge").setLevel(settings.log_level)

    errors = config.validate_role_models()
    if errors:
        logger.error("Configuration errors:")
        for error in errors:
            logger.error(f"  - {error}")
        return

    orchestrator = SerialForgeOrchestrator(config, settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(orchestrator.shutdown()),
        )

    try:
        await orchestrator.initialize()
        await orchestrator.run()
    except KeyboardInterrupt:
        await orchestrator.shutdown()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
