"""
Celery-side wrappers that index a single round or load auction events.

They call the same Typer commands the CLI exposes, so a worker
run and `tbindexer index-round --round N` take the same path.
"""
import logging
from pathlib import Path

from celery import shared_task

from tbindexer.sources.timeboost_pipeline.ingestion.cli_ingest import index_round as index_round_command
from tbindexer.sources.timeboost_pipeline.ingestion.cli_ingest import load_events as load_events_command

log = logging.getLogger(__name__)


@shared_task(
    name="index_round",
    queue="orchestrate",
    bind=True,
)
def index_round(self, *, round_number: int, force: bool = False) -> None:
    log.info(f"🔄  Indexing round {round_number}{' (forced)' if force else ''}")
    index_round_command(round_number=round_number, force=force)


@shared_task(
    name="load_round_events",
    queue="orchestrate",
)
def load_round_events(path: str) -> None:
    log.info(f"📥  Loading auction events from {path}")
    load_events_command(file=Path(path))
