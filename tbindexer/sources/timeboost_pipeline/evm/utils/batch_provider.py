import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Set, Union

from tbindexer.sources.timeboost_pipeline.evm.utils.errors import NoResponseError, classify_rpc_error
from tbindexer.sources.timeboost_pipeline.evm.utils.rate_limiter import AdaptiveRateLimiter
from tbindexer.utils.clock import Clock, SYSTEM_CLOCK

log = logging.getLogger(__name__)

BATCHABLE_METHODS = frozenset({
    "eth_getTransactionReceipt",
    "eth_getBlockByNumber",
    "eth_getBlockByHash",
    "eth_getTransactionByHash",
    "eth_call",
    "eth_getLogs",
    "eth_getBlockReceipts",
})

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000
MAX_BATCH_DELAY = 1.0


class RpcTransport(Protocol):
    async def request(self, method: str, params: list) -> Any: ...

    async def send_batch(self, payload: List[dict]) -> List[dict]: ...

    async def aclose(self) -> None: ...


@dataclass(slots=True)
class _PendingRequest:
    id: int
    method: str
    params: list
    future: asyncio.Future


def _block_param(number_or_tag: Union[int, str]) -> str:
    return hex(number_or_tag) if isinstance(number_or_tag, int) else number_or_tag


class BatchProvider:
    """
    Coalesces cacheable reads into JSON-RPC batches.

    Batchable calls are buffered and flushed as one request once `batch_size`
    calls are waiting or `batch_delay` seconds after the first one arrived,
    whichever comes first; the delay is capped at `MAX_BATCH_DELAY`. Each
    flush goes through the rate limiter. Other methods skip the buffer but
    still pass the limiter.
    """

    def __init__(
        self,
        transport: RpcTransport,
        rate_limiter: AdaptiveRateLimiter,
        batch_size: int = 100,
        batch_delay: float = 0.05,
        dynamic_batch_size: bool = False,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.batch_size = max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, batch_size))
        self.batch_delay = max(0.0, min(MAX_BATCH_DELAY, batch_delay))
        self.dynamic_batch_size = dynamic_batch_size
        self.clock = clock or SYSTEM_CLOCK
        self.log = logger or log

        self._queue: List[_PendingRequest] = []
        self._timer: Optional[asyncio.Task] = None
        self._flushes: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Core send path
    # ------------------------------------------------------------------

    async def send(self, method: str, params: list) -> Any:
        if method in BATCHABLE_METHODS:
            return await self._add_to_batch(method, params)
        return await self.rate_limiter.execute(lambda: self.transport.request(method, params))

    def _current_batch_size(self) -> int:
        if self.dynamic_batch_size:
            return max(MIN_BATCH_SIZE, min(self.batch_size, self.rate_limiter.get_batch_size()))
        return self.batch_size

    async def _add_to_batch(self, method: str, params: list) -> Any:
        fut = asyncio.get_running_loop().create_future()
        self._queue.append(_PendingRequest(next(self._ids), method, params, fut))

        if len(self._queue) >= self._current_batch_size():
            self._start_flush()
        elif self._timer is None:
            self._timer = asyncio.create_task(self._flush_after_delay())
        return await fut

    async def _flush_after_delay(self) -> None:
        await self.clock.sleep(self.batch_delay)
        self._timer = None
        self._start_flush()

    def _start_flush(self) -> None:
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None
        if not self._queue:
            return

        size = self._current_batch_size()
        batch, self._queue = self._queue[:size], self._queue[size:]
        task = asyncio.create_task(self._flush(batch))
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

        if self._queue:
            # leftovers start a fresh delay window
            if len(self._queue) >= size:
                self._start_flush()
            else:
                self._timer = asyncio.create_task(self._flush_after_delay())

    async def _flush(self, batch: List[_PendingRequest]) -> None:
        payload = [
            {"jsonrpc": "2.0", "id": req.id, "method": req.method, "params": req.params}
            for req in batch
        ]
        try:
            responses = await self.rate_limiter.execute(lambda: self.transport.send_batch(payload))
        except Exception as exc:
            self.log.debug(f"Batch of {len(batch)} failed: {exc}")
            for req in batch:
                if not req.future.done():
                    req.future.set_exception(exc)
            return

        by_id: Dict[Any, dict] = {}
        for res in responses or []:
            if isinstance(res, dict) and "id" in res:
                by_id[res["id"]] = res

        for req in batch:
            if req.future.done():
                continue
            res = by_id.get(req.id)
            if res is None:
                req.future.set_exception(NoResponseError(req.id))
            elif res.get("error"):
                req.future.set_exception(classify_rpc_error(res["error"]))
            else:
                req.future.set_result(res.get("result"))

    def update_batch_size(self, new_batch_size: int) -> None:
        self.batch_size = max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, new_batch_size))

    async def send_batch(self, requests: List[dict]) -> List[dict]:
        """Send caller-built requests as one wire batch, gated by the limiter."""
        payload = [
            {"jsonrpc": "2.0", "id": req.get("id", next(self._ids)), "method": req["method"], "params": req.get("params", [])}
            for req in requests
        ]
        return await self.rate_limiter.execute(lambda: self.transport.send_batch(payload))

    # ------------------------------------------------------------------
    # Chain-data reads
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        return int(await self.send("eth_blockNumber", []), 16)

    async def get_block(self, number_or_tag: Union[int, str], full_transactions: bool = False) -> Optional[dict]:
        return await self.send("eth_getBlockByNumber", [_block_param(number_or_tag), full_transactions])

    async def get_block_with_transactions(self, block_number: int) -> Optional[dict]:
        return await self.get_block(block_number, full_transactions=True)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self.send("eth_getTransactionReceipt", [tx_hash])

    async def get_transaction_receipts(self, hashes: List[str]) -> List[Optional[dict]]:
        return list(await asyncio.gather(*(self.get_transaction_receipt(h) for h in hashes)))

    async def aclose(self) -> None:
        if self._queue:
            self._start_flush()
        if self._flushes:
            await asyncio.gather(*list(self._flushes), return_exceptions=True)
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self.transport.aclose()
