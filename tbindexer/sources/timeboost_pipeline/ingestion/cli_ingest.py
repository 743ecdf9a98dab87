import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from tbindexer.main import build_engine, check_db_connection, configure_logging
from tbindexer.sources.timeboost_pipeline.auction.events import RoundRegistry, read_events
from tbindexer.sources.timeboost_pipeline.indexing.orchestrator import find_gaps
from tbindexer.storage.db import SessionLocal, engine, init_db
from tbindexer.storage.repositories import TimeboostRepository

log = logging.getLogger(__name__)

app = typer.Typer(help="Index boosted transactions of express-lane auction rounds")


def _load_registry(path: Path) -> RoundRegistry:
    registry = RoundRegistry()
    registry.apply_all(read_events(path))
    return registry


async def _run_engine(duration: Optional[float], round_source=None) -> None:
    indexer = build_engine(SessionLocal, round_source=round_source)
    await indexer.start()
    try:
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        await indexer.stop()


@app.command("run")
def run(
    duration: Optional[float] = typer.Option(None, help="Stop after this many seconds (default: run until interrupted)"),
    events: Optional[Path] = typer.Option(
        None, exists=True, dir_okay=False, help="Take rounds from a JSON-lines file of auction events instead of the database"
    ),
):
    """
    Run the orchestrator: real-time, backfill and gap-detection loops.
    """
    if not check_db_connection(engine):
        raise typer.Exit(code=1)
    init_db()
    round_source = _load_registry(events) if events is not None else None
    try:
        asyncio.run(_run_engine(duration, round_source))
    except KeyboardInterrupt:
        log.info("[cli] Interrupted, shutting down")


@app.command("load-events")
def load_events(
    file: Path = typer.Option(..., "--file", exists=True, dir_okay=False, help="JSON-lines file of decoded auction events"),
):
    """
    Store the rounds described by decoded AuctionResolved / SetExpressLaneController events.
    """
    init_db()
    try:
        registry = RoundRegistry()
        count = registry.apply_all(read_events(file))
    except ValueError as e:
        log.error(f"[cli] Could not read {file}: {e}")
        raise typer.Exit(code=1)
    stored = TimeboostRepository(SessionLocal).rounds.save_auction_data(registry.get_all_rounds())
    typer.echo(f"{count} events, {stored} rounds stored")


async def _index_one(round_number: int, force: bool) -> int:
    indexer = build_engine(SessionLocal)
    repo = indexer.repository
    info = await asyncio.to_thread(repo.rounds.find_by_number, round_number)
    if info is None:
        log.error(f"[cli] Round {round_number} is not in the database")
        await indexer.provider.aclose()
        return 0

    indexer.rate_limiter.start()
    await asyncio.to_thread(repo.statuses.mark_started, round_number)
    try:
        indexed = await indexer.round_indexer.index_round(info, force=force)
    except Exception as e:
        await asyncio.to_thread(repo.statuses.mark_failed, round_number, str(e) or type(e).__name__)
        raise
    finally:
        await indexer.round_indexer.aclose()
        await indexer.rate_limiter.aclose()
        await indexer.provider.aclose()

    if not indexed.final:
        log.info(f"[cli] Round {round_number} is still running; not stored until it ends")
    else:
        await indexer.orchestrator.record_result(indexed)
    return len(indexed.transactions)


@app.command("index-round")
def index_round(
    round_number: int = typer.Option(..., "--round", help="Auction round number"),
    force: bool = typer.Option(False, help="Ignore the cached result and index again"),
):
    """
    Index a single round inline (used by the Celery worker too).
    """
    init_db()
    try:
        count = asyncio.run(_index_one(round_number, force))
        log.info(f"[cli] Round {round_number}: {count} boosted transactions")
    except Exception:
        log.error(f"[cli] Indexing round {round_number} failed", exc_info=True)
        raise typer.Exit(code=1)


@app.command("status")
def status():
    """
    Print database totals and the rounds whose last attempt failed.
    """
    init_db()
    repo = TimeboostRepository(SessionLocal)
    stats = repo.get_stats()
    typer.echo(f"rounds:               {stats.total_rounds}")
    typer.echo(f"indexed rounds:       {stats.indexed_rounds}")
    typer.echo(f"boosted transactions: {stats.total_boosted_transactions}")
    typer.echo(f"failed rounds:        {stats.failed_rounds}")
    typer.echo(f"last indexed round:   {stats.last_indexed_round}")
    typer.echo(f"last indexed block:   {stats.last_indexed_block}")
    failed = repo.statuses.find_failed()
    if failed:
        typer.echo(f"failed: {', '.join(str(r) for r in failed[:20])}{' …' if len(failed) > 20 else ''}")


@app.command("gaps")
def gaps():
    """
    List holes in the sequence of indexed rounds.
    """
    init_db()
    repo = TimeboostRepository(SessionLocal)
    found = find_gaps(repo.rounds.find_indexed_round_numbers())
    if not found:
        typer.echo("no gaps")
        return
    for gap in found:
        typer.echo(f"{gap.start}-{gap.end} ({gap.end - gap.start + 1} rounds)")


def main():
    configure_logging()
    app()


if __name__ == "__main__":
    main()
