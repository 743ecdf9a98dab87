import itertools
import json
import logging
from typing import Any, Dict, List, Optional

import backoff
import httpx

from tbindexer.sources.timeboost_pipeline.config.settings import RPC_TIMEOUT_SECONDS
from tbindexer.sources.timeboost_pipeline.evm.utils.errors import (
    TransportError,
    classify_http_failure,
    classify_rpc_error,
)

logger = logging.getLogger(__name__)

# Cache of JSON-RPC clients per RPC URL
_rpc_clients: Dict[str, "JsonRpcClient"] = {}


class JsonRpcClient:
    """Raw JSON-RPC over HTTP. Every failure leaves here as a typed ChainDataError."""

    def __init__(self, rpc_url: str, timeout: float = RPC_TIMEOUT_SECONDS, client: Optional[httpx.AsyncClient] = None):
        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def _post(self, payload) -> Any:
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
        except httpx.RequestError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}", cause=exc) from exc

        if resp.status_code != 200:
            raise classify_http_failure(resp.status_code, resp.text, resp.headers.get("retry-after"))

        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise TransportError(f"Invalid JSON from {self.rpc_url}", cause=exc, status=resp.status_code) from exc

    async def request(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        data = await self._post(payload)
        if not isinstance(data, dict):
            raise TransportError(f"Unexpected response shape for {method}")
        if data.get("error"):
            raise classify_rpc_error(data["error"])
        return data.get("result")

    async def send_batch(self, payload: List[dict]) -> List[dict]:
        """POST a JSON-RPC batch; per-item errors are left for the caller to match."""
        data = await self._post(payload)
        if isinstance(data, dict):
            # some nodes answer a whole batch with a single error object
            if data.get("error"):
                raise classify_rpc_error(data["error"])
            raise TransportError("Expected a list in reply to a batch request")
        return data

    @backoff.on_exception(backoff.expo, TransportError, max_tries=5, jitter=None)
    async def ping(self) -> int:
        chain_id = int(await self.request("eth_chainId", []), 16)
        logger.info(f"Connected to {self.rpc_url} (chain id {chain_id}) ✅")
        return chain_id

    async def aclose(self) -> None:
        await self._client.aclose()


def get_rpc_client(rpc_url: str) -> JsonRpcClient:
    """Returns a cached or newly created JSON-RPC client for a given RPC URL."""
    if rpc_url not in _rpc_clients:
        logger.info(f"Creating RPC client for: {rpc_url}")
        _rpc_clients[rpc_url] = JsonRpcClient(rpc_url)
    return _rpc_clients[rpc_url]


def drop_rpc_client(rpc_url: str) -> None:
    _rpc_clients.pop(rpc_url, None)
