"""
Intake pipeline composition

IntakePipeline owns every stateful collaborator of one process: repository,
HTTP client pool, circuit breakers, enrichment cache, batch processor
semaphore and job runner. The API and the arq worker each build one with
build_pipeline() and close it on shutdown.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from bookstack.adapters.base import EnrichmentProvider
from bookstack.adapters.registry import build_providers
from bookstack.core.circuit_breaker import CircuitBreakerRegistry
from bookstack.core.config import Settings
from bookstack.core.database import Database
from bookstack.core.http_client import HTTPClientPool
from bookstack.core.metadata_cache import MetadataCache
from bookstack.core.retry import RetryPolicy
from bookstack.jobs.runner import PROCESS_BATCH_JOB, ArqJobRunner, InProcessJobRunner, JobRunner
from bookstack.repositories.base import IntakeRepository
from bookstack.repositories.memory import InMemoryIntakeRepository
from bookstack.repositories.sqlalchemy_repo import SqlAlchemyIntakeRepository
from bookstack.services.batch_processor import BatchProcessor
from bookstack.services.batch_status import BatchStatusAggregator
from bookstack.services.capacity_ledger import CapacityLedger
from bookstack.services.enrichment_chain import EnrichmentChain, counts_as_provider_failure
from bookstack.services.image_store import ImageStore, LocalImageStore
from bookstack.services.intake import BatchIntakeCoordinator
from bookstack.services.placement import PlacementEngine

logger = logging.getLogger(__name__)


@dataclass
class IntakePipeline:
    settings: Settings
    repository: IntakeRepository
    http_pool: HTTPClientPool
    chain: EnrichmentChain
    ledger: CapacityLedger
    placement: PlacementEngine
    status: BatchStatusAggregator
    processor: BatchProcessor
    runner: JobRunner
    coordinator: BatchIntakeCoordinator

    async def close(self) -> None:
        """Drain running jobs, then release HTTP clients and storage."""
        await self.runner.shutdown()
        await self.http_pool.close_all()
        await self.repository.close()
        logger.info("[Pipeline] Closed")


async def build_repository(settings: Settings) -> IntakeRepository:
    if settings.REPOSITORY_BACKEND == "memory":
        logger.warning("[Pipeline] Using in-memory repository; nothing survives a restart")
        return InMemoryIntakeRepository()
    database = Database.from_settings(settings)
    if settings.DB_AUTO_CREATE:
        await database.create_all()
    return SqlAlchemyIntakeRepository(database)


def build_runner(settings: Settings) -> JobRunner:
    if settings.JOB_RUNNER == "arq":
        return ArqJobRunner(settings.ARQ_REDIS_URL)
    return InProcessJobRunner()


async def build_pipeline(
    settings: Settings,
    repository: Optional[IntakeRepository] = None,
    providers: Optional[List[EnrichmentProvider]] = None,
    runner: Optional[JobRunner] = None,
    image_store: Optional[ImageStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> IntakePipeline:
    """
    Wire a pipeline from settings. Every argument overrides the collaborator
    settings would otherwise build (tests pass fakes here).
    """
    repository = repository or await build_repository(settings)
    http_pool = HTTPClientPool(timeout=settings.ENRICHMENT_TIMEOUT_SECONDS, transport=transport)
    if providers is None:
        providers = build_providers(settings, http_pool)

    chain = EnrichmentChain(
        providers,
        breakers=CircuitBreakerRegistry(
            error_rate_threshold=settings.CIRCUIT_ERROR_RATE_THRESHOLD,
            minimum_calls=settings.CIRCUIT_MIN_CALLS,
            window_seconds=settings.CIRCUIT_WINDOW_SECONDS,
            reset_timeout=settings.CIRCUIT_RESET_TIMEOUT_SECONDS,
            counts_as_failure=counts_as_provider_failure,
        ),
        retry_policy=RetryPolicy(
            max_attempts=settings.ENRICHMENT_MAX_ATTEMPTS,
            base_delay=settings.ENRICHMENT_BACKOFF_BASE_SECONDS,
            exponential_base=settings.ENRICHMENT_BACKOFF_MULTIPLIER,
            timeout_seconds=settings.ENRICHMENT_TIMEOUT_SECONDS,
        ),
        cache=MetadataCache(
            ttl_seconds=settings.ENRICHMENT_CACHE_TTL_SECONDS,
            max_size=settings.ENRICHMENT_CACHE_MAX_SIZE,
        ),
    )
    ledger = CapacityLedger(
        repository,
        default_capacity=settings.SHELF_DEFAULT_CAPACITY,
        section_width=settings.SECTION_NUMBER_WIDTH,
    )
    placement = PlacementEngine(
        ledger,
        overflow_capacity=settings.OVERFLOW_SHELF_CAPACITY,
        max_attempts=settings.PLACEMENT_MAX_ATTEMPTS,
    )
    status = BatchStatusAggregator(repository, ledger)
    processor = BatchProcessor(chunk_size=settings.BATCH_CHUNK_SIZE, max_concurrency=settings.BATCH_MAX_CONCURRENCY)
    runner = runner or build_runner(settings)

    coordinator = BatchIntakeCoordinator(
        repository=repository,
        chain=chain,
        placement=placement,
        ledger=ledger,
        status=status,
        processor=processor,
        runner=runner,
        image_store=image_store or LocalImageStore(settings.UPLOAD_DIR),
        max_batch_records=settings.MAX_BATCH_RECORDS,
        max_images=settings.MAX_IMAGES_PER_BATCH,
    )
    if isinstance(runner, InProcessJobRunner):
        runner.register(PROCESS_BATCH_JOB, coordinator.run_batch)

    logger.info(
        f"[Pipeline] Ready: repository={type(repository).__name__}, runner={type(runner).__name__}, "
        f"providers={[p.name for p in providers]}"
    )
    return IntakePipeline(
        settings=settings,
        repository=repository,
        http_pool=http_pool,
        chain=chain,
        ledger=ledger,
        placement=placement,
        status=status,
        processor=processor,
        runner=runner,
        coordinator=coordinator,
    )
