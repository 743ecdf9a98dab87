from typing import Optional

RATE_LIMIT_MARKERS = ("rate limit", "too many requests")
RATE_LIMIT_RPC_CODES = {429, -32005}


class ChainDataError(Exception):
    """Base class for everything the chain-data layer raises."""


class RateLimitedError(ChainDataError):
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransportError(ChainDataError):
    def __init__(self, message: str, cause: Optional[BaseException] = None, status: Optional[int] = None):
        super().__init__(message)
        self.cause = cause
        self.status = status


class RpcResponseError(TransportError):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class NoResponseError(TransportError):
    def __init__(self, request_id: int):
        super().__init__(f"No response for request {request_id}")
        self.request_id = request_id


class BlockResolutionError(ChainDataError):
    """A round's time window could not be mapped onto blocks."""


class MissingChainDataError(ChainDataError):
    """A block or receipt inside a resolved range kept coming back empty."""


def _mentions_rate_limit(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_http_failure(status: int, body: str, retry_after: Optional[str] = None) -> ChainDataError:
    """Turn a non-2xx HTTP response into a typed error."""
    if status == 429 or _mentions_rate_limit(body):
        return RateLimitedError(body[:200] or "Rate limited", retry_after=_parse_retry_after(retry_after))
    return TransportError(f"HTTP error! status: {status}, body: {body[:200]}", status=status)


def classify_rpc_error(error) -> ChainDataError:
    """Turn a JSON-RPC `error` member into a typed error."""
    if not isinstance(error, dict):
        return RpcResponseError(str(error))
    code = error.get("code")
    message = str(error.get("message", "")) or "RPC error"
    if code in RATE_LIMIT_RPC_CODES or _mentions_rate_limit(message):
        return RateLimitedError(message)
    return RpcResponseError(message, code=code)
