"""
Source Adapter Base

Every external data source implements SourceAdapter. The public screen()
method is the isolation boundary: it applies the per-call deadline and turns
every failure (non-2xx, timeout, malformed payload, missing key) into a
SourceResult with ``error`` set. Nothing raised by _search() crosses it.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from config_manager import SourceConfig
from models import RiskFlag, ScreeningQuery, SourceResult, sort_flags
from monitoring import record_source_call
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

USER_AGENT = "EntityRiskScreening/1.0"

# Per-source risk sub-scores use the same bands as entity screening
SOURCE_LEVELS = (('CRITICAL', 80), ('HIGH', 50), ('MEDIUM', 25))


class SourceUnavailable(Exception):
    """Raised inside an adapter when the source cannot answer (e.g. list not loaded)"""
    pass


def risk_block(score: float, flags: List[RiskFlag]) -> Dict[str, Any]:
    """Serialize an adapter-level risk summary into the payload"""
    score = int(max(0, min(round(score), 100)))
    level = 'LOW'
    for name, threshold in SOURCE_LEVELS:
        if score >= threshold:
            level = name
            break
    return {
        'score': score,
        'level': level,
        'flags': [f.to_dict() for f in sort_flags(flags)],
    }


def empty_risk() -> Dict[str, Any]:
    return {'score': 0, 'level': 'LOW', 'flags': []}


def describe_error(error: BaseException) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}"
    return f"{type(error).__name__}: {error}"


async def gather_lookups(source_id: str, lookups: Mapping[str, Awaitable[Any]],
                         require_one: bool = True,
                         required: Sequence[str] = ()) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """Run the named sub-queries of one source concurrently

    A failing lookup is logged and reported by name instead of raised.

    Args:
        source_id: Adapter id, for log messages
        lookups: {name: awaitable}
        require_one: Raise the first failure when no lookup answered
        required: Lookups whose failure is raised as is

    Returns:
        ({name: result} for lookups that answered, {name: error} for the rest)
    """
    names = list(lookups)
    responses = await asyncio.gather(*lookups.values(), return_exceptions=True)
    results: Dict[str, Any] = {}
    errors: Dict[str, str] = {}
    raised: Dict[str, Exception] = {}
    for name, response in zip(names, responses):
        if isinstance(response, Exception):
            raised[name] = response
            errors[name] = describe_error(response)
            logger.warning(f"⚠ {source_id} lookup {name} failed: {errors[name]}")
        elif isinstance(response, BaseException):
            raise response
        else:
            results[name] = response
    for name in required:
        if name in raised:
            raise raised[name]
    if require_one and raised and not results:
        raise next(iter(raised.values()))
    return results, errors


class BoundedCache:
    """Response cache with a TTL and a size cap (oldest entry evicted first)"""

    def __init__(self, max_size: int = 200, ttl_seconds: float = 3600,
                 clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: 'OrderedDict[str, Tuple[float, Any]]' = OrderedDict()

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (self._clock(), value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SourceAdapter(ABC):
    """One external data source behind the screen(query) -> SourceResult contract"""

    source_id: str = ''

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.base_url = (config.base_url or '').rstrip('/')
        self.timeout = config.timeout
        self.api_key = config.api_key
        self._client = client

    @property
    def configured(self) -> bool:
        """False when the source needs an API key that is not set"""
        return bool(self.api_key) or not self.config.requires_api_key

    @abstractmethod
    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        """Query the source and return a normalized payload

        Payloads carry ``matches`` and ``totalResults`` (or ``actions``) plus
        a ``risk`` block built with risk_block().
        """

    async def screen(self, query: ScreeningQuery) -> SourceResult:
        """Run the source under its deadline; never raises"""
        if not self.configured:
            error = f"{self.config.api_key_env} not configured"
            logger.debug(f"{self.source_id}: skipped, {error}")
            return SourceResult.empty(self.source_id, error=error)

        started = time.perf_counter()
        error: Optional[str] = None
        payload: Optional[Dict[str, Any]] = None
        try:
            payload = await asyncio.wait_for(self._search(query), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = f"timeout after {self.timeout}s"
        except SourceUnavailable as e:
            error = str(e)
            payload = {'matches': [], 'totalResults': 0, 'risk': empty_risk()}
        except httpx.HTTPStatusError as e:
            error = f"HTTP {e.response.status_code}"
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            error = f"malformed payload: {type(e).__name__}: {e}"
        except Exception as e:
            logger.exception(f"✗ {self.source_id}: unexpected adapter failure")
            error = f"{type(e).__name__}: {e}"

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        record_source_call(self.source_id, elapsed_ms, error)

        if error:
            logger.warning(
                "⚠ %s failed for %s: %s",
                self.source_id, sanitize_for_logging(query.subject_text, 50), error
            )
            return SourceResult(self.source_id, payload=payload, error=error, elapsed_ms=elapsed_ms)

        logger.debug(f"{self.source_id}: {payload.get('totalResults', 0)} results in {elapsed_ms}ms")
        return SourceResult(self.source_id, payload=payload, elapsed_ms=elapsed_ms)

    @asynccontextmanager
    async def http(self) -> AsyncIterator[httpx.AsyncClient]:
        """Shared client when one was injected, otherwise a short-lived one"""
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=5.0),
            headers={'User-Agent': USER_AGENT},
        ) as client:
            yield client

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                       headers: Optional[Dict[str, str]] = None) -> Any:
        async with self.http() as client:
            response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
            return response.json()

    async def post_json(self, url: str, body: Dict[str, Any],
                        headers: Optional[Dict[str, str]] = None) -> Any:
        async with self.http() as client:
            response = await client.post(url, json=body, headers=headers)
            response.raise_for_status()
            return response.json()

    async def get_bytes(self, url: str, headers: Optional[Dict[str, str]] = None,
                        params: Optional[Dict[str, Any]] = None) -> bytes:
        async with self.http() as client:
            response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
            return response.content
