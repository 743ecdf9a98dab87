import asyncio
import logging
from typing import Callable, List, Optional

from web3 import Web3

from tbindexer.sources.timeboost_pipeline.evm.utils.batch_provider import BatchProvider
from tbindexer.sources.timeboost_pipeline.evm.utils.errors import MissingChainDataError
from tbindexer.sources.timeboost_pipeline.evm.utils.rate_limiter import AdaptiveRateLimiter
from tbindexer.utils.clock import Clock, SYSTEM_CLOCK
from tbindexer.utils.types import BoostedTransaction, IndexerProgress

log = logging.getLogger(__name__)

BOOSTED_MARKERS = ("timeboosted", "timeBoosted")
MAX_BLOCKS_PER_CHUNK = 10

ProgressCallback = Callable[[IndexerProgress], None]


def _to_int(value) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16) if value.startswith("0x") else int(value)


def _checksum(address: Optional[str]) -> str:
    return Web3.to_checksum_address(address) if address else ""


class BoostedTransactionScanner:
    """Finds boosted transactions in a block range.

    The receipt's `timeboosted` flag is authoritative. Nodes that do not
    expose it can fall back to treating any transaction sent to the auction
    contract as boosted; that match is a heuristic and may be wrong both ways.
    """

    def __init__(
        self,
        provider: BatchProvider,
        rate_limiter: AdaptiveRateLimiter,
        auction_contract: Optional[str] = None,
        fallback_to_contract: bool = True,
        chunk_delay: float = 0.1,
        rate_limited_chunk_delay: float = 1.0,
        max_null_retries: int = 5,
        null_retry_delay: float = 0.5,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.auction_contract = auction_contract.lower() if auction_contract else None
        self.fallback_to_contract = fallback_to_contract
        self.chunk_delay = chunk_delay
        self.rate_limited_chunk_delay = rate_limited_chunk_delay
        self.max_null_retries = max(1, max_null_retries)
        self.null_retry_delay = null_retry_delay
        self.clock = clock or SYSTEM_CLOCK
        self.log = logger or log

    def _chunk_size(self) -> int:
        return max(1, min(self.rate_limiter.concurrency // 2, MAX_BLOCKS_PER_CHUNK))

    def is_boosted(self, receipt: dict) -> bool:
        for marker in BOOSTED_MARKERS:
            if marker in receipt:
                return receipt[marker] is True
        if self.fallback_to_contract and self.auction_contract:
            return (receipt.get("to") or "").lower() == self.auction_contract
        return False

    async def get_boosted_transactions(
        self,
        from_block: int,
        to_block: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[BoostedTransaction]:
        if to_block < from_block:
            return []

        total_blocks = to_block - from_block + 1
        self.log.info(f"🔍 Scanning blocks {from_block}-{to_block} ({total_blocks} blocks)")
        started = self.clock.time()
        found: List[BoostedTransaction] = []

        block = from_block
        while block <= to_block:
            end = min(block + self._chunk_size() - 1, to_block)
            results = await asyncio.gather(*(self._process_block(n) for n in range(block, end + 1)))
            for txs in results:
                found.extend(txs)

            processed = end - from_block + 1
            self.log.debug(f"Processed blocks {block}-{end}, {len(found)} boosted so far")

            if on_progress is not None:
                elapsed = self.clock.time() - started
                eta = None
                if elapsed > 0:
                    eta = round((total_blocks - processed) / (processed / elapsed))
                on_progress(IndexerProgress(
                    current_block=end,
                    total_blocks=total_blocks,
                    processed_blocks=processed,
                    found_transactions=len(found),
                    started_at=started,
                    estimated_seconds_remaining=eta,
                ))

            block = end + 1
            if block <= to_block:
                delay = self.rate_limited_chunk_delay if self.rate_limiter.backoff_delay > 0 else self.chunk_delay
                await self.clock.sleep(delay)

        found.sort(key=lambda tx: (tx.block_number, tx.transaction_index))
        self.log.info(f"✅ Blocks {from_block}-{to_block}: {len(found)} boosted transactions")
        return found

    async def _fetch_block(self, block_number: int) -> dict:
        for attempt in range(1, self.max_null_retries + 1):
            block = await self.provider.get_block_with_transactions(block_number)
            if block is not None:
                return block
            self.log.debug(f"Block {block_number} came back empty (attempt {attempt}/{self.max_null_retries})")
            if attempt < self.max_null_retries:
                await self.clock.sleep(self.null_retry_delay)
        raise MissingChainDataError(f"Block {block_number} unavailable after {self.max_null_retries} attempts")

    async def _fetch_receipts(self, block_number: int, hashes: List[str]) -> List[dict]:
        receipts = await self.provider.get_transaction_receipts(hashes)
        missing = [i for i, receipt in enumerate(receipts) if receipt is None]
        attempt = 1
        while missing:
            if attempt >= self.max_null_retries:
                raise MissingChainDataError(
                    f"{len(missing)} receipts in block {block_number} unavailable after {attempt} attempts"
                )
            self.log.debug(f"Block {block_number}: {len(missing)} receipts missing, retrying")
            await self.clock.sleep(self.null_retry_delay)
            attempt += 1
            refetched = await self.provider.get_transaction_receipts([hashes[i] for i in missing])
            for i, receipt in zip(missing, refetched):
                receipts[i] = receipt
            missing = [i for i in missing if receipts[i] is None]
        return receipts

    async def _process_block(self, block_number: int) -> List[BoostedTransaction]:
        block = await self._fetch_block(block_number)
        if not block.get("transactions"):
            return []

        txs = [tx for tx in block["transactions"] if isinstance(tx, dict)]
        receipts = await self._fetch_receipts(block_number, [tx["hash"] for tx in txs])
        timestamp = _to_int(block["timestamp"])

        boosted = []
        for tx, receipt in zip(txs, receipts):
            if not self.is_boosted(receipt):
                continue
            self.log.debug(f"Boosted tx {tx['hash']} in block {block_number}")
            boosted.append(BoostedTransaction(
                hash=tx["hash"],
                block_number=_to_int(receipt.get("blockNumber") or block["number"]),
                timestamp=timestamp,
                from_address=_checksum(receipt.get("from") or tx.get("from")),
                to_address=_checksum(receipt.get("to") or tx.get("to")),
                value=_to_int(tx.get("value")),
                gas_used=_to_int(receipt.get("gasUsed")),
                effective_gas_price=_to_int(receipt.get("effectiveGasPrice")),
                transaction_index=_to_int(tx.get("transactionIndex") or receipt.get("transactionIndex")),
            ))
        return boosted
