import logging
import time

from celery import shared_task
from redis import Redis
from redlock import Redlock

from tbindexer.sources.timeboost_pipeline.config.settings import DISPATCH_BATCH_LIMIT, REDIS_URL, STALE_INDEXING_SECONDS
from tbindexer.sources.timeboost_pipeline.indexing.orchestrator import find_gaps
from tbindexer.sources.timeboost_pipeline.ingestion.schedule_ingest import index_round
from tbindexer.storage.db import WorkerSessionLocal
from tbindexer.storage.repositories import TimeboostRepository

log = logging.getLogger(__name__)

# only ONE dispatcher may run at a time
LOCKER = Redlock([Redis.from_url(REDIS_URL)])
GLOBAL_LOCK_MS = 5 * 60 * 1000


def collect_backfill_rounds(repo: TimeboostRepository, limit: int = DISPATCH_BATCH_LIMIT, now=None) -> list:
    """Failed, stale and gap rounds first, then the newest unindexed ones; no duplicates."""
    now = time.time() if now is None else now
    picked: dict = {}

    def take(rounds):
        for r in rounds:
            if len(picked) >= limit:
                return
            picked.setdefault(r, None)

    take(repo.statuses.find_failed())
    take(repo.rounds.find_stale_indexing(now - STALE_INDEXING_SECONDS))
    for gap in find_gaps(repo.rounds.find_indexed_round_numbers()):
        take(range(gap.start, gap.end + 1))
    take(repo.rounds.find_unindexed(limit=limit))

    known = set(repo.rounds.find_all_round_numbers())
    return [r for r in picked if r in known]


@shared_task(name="dispatch_backfill", queue="dispatch", bind=True)
def dispatch_backfill(self):
    log.info("🔄  Starting backfill dispatcher…")

    lock = LOCKER.lock("timeboost_backfill_lock", GLOBAL_LOCK_MS)
    if not lock:
        log.info("🔒 Another dispatcher is running; skipping.")
        return

    try:
        repo = TimeboostRepository(WorkerSessionLocal)
        rounds = collect_backfill_rounds(repo)
        for r in rounds:
            index_round.apply_async(kwargs={"round_number": r}, queue="orchestrate")
        log.info(f"🚀 Queued {len(rounds)} rounds")
    finally:
        LOCKER.unlock(lock)
