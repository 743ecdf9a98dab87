# tbindexer/main.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import text

from tbindexer.sources.timeboost_pipeline.config import settings
from tbindexer.sources.timeboost_pipeline.evm.utils.batch_provider import BatchProvider
from tbindexer.sources.timeboost_pipeline.evm.utils.blocks import BlockTimestampCache, BlockTimestampResolver
from tbindexer.sources.timeboost_pipeline.evm.utils.client import JsonRpcClient
from tbindexer.sources.timeboost_pipeline.evm.utils.rate_limiter import AdaptiveRateLimiter
from tbindexer.sources.timeboost_pipeline.evm.utils.transactions import BoostedTransactionScanner
from tbindexer.sources.timeboost_pipeline.indexing.ongoing_round_indexer import OngoingRoundIndexer
from tbindexer.sources.timeboost_pipeline.indexing.orchestrator import (
    DatabaseIndexingOrchestrator,
    OrchestratorConfig,
    RoundSource,
)
from tbindexer.sources.timeboost_pipeline.indexing.round_indexer import RoundIndexer
from tbindexer.storage.repositories import DatabaseRoundSource, TimeboostRepository
from tbindexer.storage.round_cache import RoundCache
from tbindexer.utils.clock import Clock, SYSTEM_CLOCK
from tbindexer.utils.shortname import ShortNameFilter

log = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="[%(levelname)s] %(shortname)s: %(message)s",
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(ShortNameFilter())
    # one line per HTTP request is too much at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def check_db_connection(engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        log.info("✅ Database connected.")
        return True
    except Exception as e:
        log.error(f"❌ DB connection failed: {e}")
        return False


@dataclass
class IndexerEngine:
    """Every long-lived component of one indexer process, wired together."""
    rate_limiter: AdaptiveRateLimiter
    provider: BatchProvider
    resolver: BlockTimestampResolver
    scanner: BoostedTransactionScanner
    round_indexer: RoundIndexer
    ongoing: OngoingRoundIndexer
    orchestrator: DatabaseIndexingOrchestrator
    repository: TimeboostRepository

    async def start(self) -> None:
        self.rate_limiter.start()
        self.ongoing.start()
        await self.orchestrator.start()

    async def stop(self, wait: bool = True) -> None:
        await self.orchestrator.stop(wait=wait)
        await self.ongoing.stop()
        await self.round_indexer.aclose()
        await self.rate_limiter.aclose()
        await self.provider.aclose()


def build_engine(
    session_factory,
    transport=None,
    round_source: Optional[RoundSource] = None,
    round_cache=None,
    orchestrator_config: Optional[OrchestratorConfig] = None,
    clock: Optional[Clock] = None,
) -> IndexerEngine:
    clock = clock or SYSTEM_CLOCK
    repository = TimeboostRepository(session_factory)

    rate_limiter = AdaptiveRateLimiter(
        initial_concurrency=settings.LIMITER_INITIAL_CONCURRENCY,
        min_concurrency=settings.LIMITER_MIN_CONCURRENCY,
        max_concurrency=settings.LIMITER_MAX_CONCURRENCY,
        increase_ratio=settings.LIMITER_INCREASE_RATIO,
        decrease_ratio=settings.LIMITER_DECREASE_RATIO,
        success_window=settings.LIMITER_SUCCESS_WINDOW_SECONDS,
        adjustment_interval=settings.LIMITER_ADJUSTMENT_INTERVAL_SECONDS,
        target_success_rate=settings.LIMITER_TARGET_SUCCESS_RATE,
        max_backoff=settings.LIMITER_MAX_BACKOFF_SECONDS,
        clock=clock,
    )
    provider = BatchProvider(
        transport or JsonRpcClient(settings.ARBITRUM_RPC_URL),
        rate_limiter,
        batch_size=settings.BATCH_SIZE,
        batch_delay=settings.BATCH_DELAY_SECONDS,
        dynamic_batch_size=settings.DYNAMIC_BATCH_SIZE,
        clock=clock,
    )
    resolver = BlockTimestampResolver(provider, BlockTimestampCache(settings.BLOCK_CACHE_SIZE), clock=clock)
    scanner = BoostedTransactionScanner(
        provider,
        rate_limiter,
        auction_contract=settings.AUCTION_CONTRACT,
        fallback_to_contract=settings.BOOSTED_FALLBACK_TO_CONTRACT,
        clock=clock,
    )
    round_indexer = RoundIndexer(
        resolver,
        scanner,
        rate_limiter,
        round_cache if round_cache is not None else RoundCache(settings.ROUND_CACHE_DIR),
        on_block_range=lambda r, start, end: asyncio.to_thread(repository.rounds.update_block_range, r, start, end),
        clock=clock,
    )
    ongoing = OngoingRoundIndexer(
        round_indexer, resolver, scanner, update_interval=settings.ONGOING_UPDATE_INTERVAL_SECONDS, clock=clock
    )
    config = orchestrator_config or OrchestratorConfig(
        realtime_interval=settings.REALTIME_INTERVAL_SECONDS,
        backfill_interval=settings.BACKFILL_INTERVAL_SECONDS,
        gap_detection_interval=settings.GAP_DETECTION_INTERVAL_SECONDS,
        drain_interval=settings.DRAIN_INTERVAL_SECONDS,
        stale_indexing_after=settings.STALE_INDEXING_SECONDS,
        max_concurrent_indexing=settings.MAX_CONCURRENT_INDEXING,
    )
    orchestrator = DatabaseIndexingOrchestrator(
        round_indexer,
        round_source if round_source is not None else DatabaseRoundSource(repository),
        repository,
        config=config,
        ongoing=ongoing,
        clock=clock,
    )
    return IndexerEngine(
        rate_limiter=rate_limiter,
        provider=provider,
        resolver=resolver,
        scanner=scanner,
        round_indexer=round_indexer,
        ongoing=ongoing,
        orchestrator=orchestrator,
        repository=repository,
    )
