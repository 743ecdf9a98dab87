import os
import pathlib
from dotenv import load_dotenv

# project-root .env; variables already set in the environment take precedence
load_dotenv(dotenv_path=pathlib.Path(__file__).resolve().parents[4] / ".env")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


ARBITRUM_RPC_URL = os.getenv("ARBITRUM_RPC_URL", "https://arb1.arbitrum.io/rpc")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./timeboost.db")
ROUND_CACHE_DIR = os.getenv("ROUND_CACHE_DIR", "./cache/rounds")

# ExpressLaneAuction proxy on Arbitrum One
AUCTION_CONTRACT = os.getenv("AUCTION_CONTRACT", "0x5fcb496a31b7ae91e7c9078ec662bd7a55cd3079")

# Recipient match against AUCTION_CONTRACT when a receipt carries no
# `timeboosted` marker. Heuristic: can both miss and over-match.
BOOSTED_FALLBACK_TO_CONTRACT = _flag("BOOSTED_FALLBACK_TO_CONTRACT", "true")

RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "15"))

# ── Batch coalescer ─────────────────────────────────────────
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "100"))
BATCH_DELAY_SECONDS = float(os.getenv("BATCH_DELAY_SECONDS", "0.1"))
DYNAMIC_BATCH_SIZE = _flag("DYNAMIC_BATCH_SIZE", "false")

# ── Adaptive rate limiter ───────────────────────────────────
LIMITER_INITIAL_CONCURRENCY = int(os.getenv("LIMITER_INITIAL_CONCURRENCY", "5"))
LIMITER_MIN_CONCURRENCY = int(os.getenv("LIMITER_MIN_CONCURRENCY", "1"))
LIMITER_MAX_CONCURRENCY = int(os.getenv("LIMITER_MAX_CONCURRENCY", "50"))
LIMITER_INCREASE_RATIO = 1.2
LIMITER_DECREASE_RATIO = 0.5
LIMITER_SUCCESS_WINDOW_SECONDS = 30.0
LIMITER_ADJUSTMENT_INTERVAL_SECONDS = 5.0
LIMITER_TARGET_SUCCESS_RATE = 0.95
LIMITER_MAX_BACKOFF_SECONDS = 60.0

# ── Block timestamp cache ───────────────────────────────────
BLOCK_CACHE_SIZE = int(os.getenv("BLOCK_CACHE_SIZE", "10000"))

# ── Ongoing rounds / orchestrator ───────────────────────────
ONGOING_UPDATE_INTERVAL_SECONDS = float(os.getenv("ONGOING_UPDATE_INTERVAL_SECONDS", "5"))
REALTIME_INTERVAL_SECONDS = float(os.getenv("REALTIME_INTERVAL_SECONDS", "30"))
BACKFILL_INTERVAL_SECONDS = float(os.getenv("BACKFILL_INTERVAL_SECONDS", "60"))
GAP_DETECTION_INTERVAL_SECONDS = float(os.getenv("GAP_DETECTION_INTERVAL_SECONDS", "300"))
DRAIN_INTERVAL_SECONDS = float(os.getenv("DRAIN_INTERVAL_SECONDS", "5"))
STALE_INDEXING_SECONDS = float(os.getenv("STALE_INDEXING_SECONDS", str(30 * 60)))
MAX_CONCURRENT_INDEXING = int(os.getenv("MAX_CONCURRENT_INDEXING", "2"))

# ── Celery dispatcher ───────────────────────────────────────
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
DISPATCH_BATCH_LIMIT = int(os.getenv("DISPATCH_BATCH_LIMIT", "50"))
