"""
Reference List Cache

Keeps large remote reference lists (SDN entries, sanctioned wallet
addresses) in memory with a TTL and single-flight refresh.

Features:
- Explicit cache state: Empty | Loading(task) | Ready(data, loaded_at)
- Single-flight: concurrent callers share one in-flight refresh task
- Ordered fallback URLs, first successful download wins
- Stale-but-available: a failed refresh keeps serving the previous list
- Load-then-swap: readers never observe a partially parsed list
- Injectable fetch function and clock for testing

get() never raises for refresh reasons; failures are logged and reported
through status().
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from models import ReferenceRecord
from monitoring import record_list_refresh
from reference_lists import merge_wallet_records, parse_address_list, parse_sdn_csv

logger = logging.getLogger(__name__)

Fetch = Callable[[str], Awaitable[str]]
Parser = Callable[[str], List[ReferenceRecord]]
# A loader returns the parsed records and a description of where they came from
Loader = Callable[[], Awaitable[Tuple[List[ReferenceRecord], str]]]

USER_AGENT = "EntityRiskScreening/1.0"


class ListLoadError(Exception):
    """Raised by a loader when no URL produced a usable list"""
    pass


# ============================================
# CACHE STATE
# ============================================

@dataclass(frozen=True)
class Empty:
    """Nothing loaded yet (or the first load failed)"""
    pass


@dataclass(frozen=True)
class Ready:
    data: Tuple[ReferenceRecord, ...]
    loaded_at: float
    source: str = ''


@dataclass(frozen=True)
class Loading:
    """A refresh is in flight; ``previous`` is served if it fails"""
    task: 'asyncio.Task'
    previous: Optional[Ready] = None


CacheState = Union[Empty, Loading, Ready]


# ============================================
# LOADERS
# ============================================

def make_http_fetch(timeout: float) -> Fetch:
    """Build the default fetch function: GET with a per-call deadline"""
    async def fetch(url: str) -> str:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={'User-Agent': USER_AGENT},
            follow_redirects=True,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.text
    return fetch


def fallback_loader(urls: Sequence[str], fetch: Fetch, parser: Parser) -> Loader:
    """Try each URL in order and stop at the first one that parses to a non-empty list"""
    async def load() -> Tuple[List[ReferenceRecord], str]:
        errors = []
        for url in urls:
            try:
                text = await fetch(url)
                records = parser(text)
            except (httpx.HTTPError, asyncio.TimeoutError, ValueError, UnicodeDecodeError) as e:
                logger.warning(f"⚠ List download failed from {url}: {type(e).__name__}: {e}")
                errors.append(f"{url}: {type(e).__name__}")
                continue
            if not records:
                logger.warning(f"⚠ List from {url} contained no records")
                errors.append(f"{url}: empty")
                continue
            return records, url
        raise ListLoadError("; ".join(errors) or "no URLs configured")
    return load


def wallet_list_loader(url_template: str, chains: Sequence[str], fetch: Fetch) -> Loader:
    """Download one address list per chain and merge them with the known services table

    Individual chains may fail; the load fails only when every chain failed.
    """
    async def load_chain(chain: str) -> List[ReferenceRecord]:
        text = await fetch(url_template.format(chain=chain))
        return parse_address_list(text, chain)

    async def load() -> Tuple[List[ReferenceRecord], str]:
        results = await asyncio.gather(
            *(load_chain(chain) for chain in chains), return_exceptions=True
        )
        groups = []
        failed = []
        for chain, result in zip(chains, results):
            if isinstance(result, BaseException):
                failed.append(chain)
                logger.warning(f"⚠ Wallet list for {chain} failed: {type(result).__name__}: {result}")
                continue
            groups.append(result)

        if not groups:
            raise ListLoadError(f"all wallet lists failed: {', '.join(failed)}")
        if failed:
            logger.warning(f"⚠ Wallet lists loaded without {', '.join(failed)}")

        return merge_wallet_records(groups), f"{len(groups)}/{len(chains)} chains"
    return load


# ============================================
# CACHE
# ============================================

class ReferenceListCache:
    """TTL cache over one remote reference list"""

    def __init__(self, name: str, loader: Loader, ttl_hours: float,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self._loader = loader
        self._ttl_seconds = ttl_hours * 3600
        self._clock = clock
        self._state: CacheState = Empty()
        self._last_error: Optional[str] = None
        self.refresh_count = 0

    @property
    def state(self) -> CacheState:
        return self._state

    def _is_fresh(self, ready: Ready) -> bool:
        return self._clock() - ready.loaded_at < self._ttl_seconds

    def _ready(self) -> Optional[Ready]:
        state = self._state
        if isinstance(state, Ready):
            return state
        if isinstance(state, Loading):
            return state.previous
        return None

    def peek(self) -> Tuple[ReferenceRecord, ...]:
        """Current data without triggering I/O (possibly stale or empty)"""
        ready = self._ready()
        return ready.data if ready else ()

    async def get(self) -> Tuple[ReferenceRecord, ...]:
        """Return the list, refreshing first if it is missing or stale

        Concurrent callers arriving during a refresh await the same task.
        """
        state = self._state
        if isinstance(state, Ready) and self._is_fresh(state):
            return state.data

        if isinstance(state, Loading):
            task = state.task
        else:
            task = self._start_refresh()

        # shield: a cancelled caller must not cancel the shared refresh
        await asyncio.shield(task)
        return self.peek()

    async def refresh(self) -> Tuple[ReferenceRecord, ...]:
        """Force a refresh (joins one already in flight)"""
        state = self._state
        task = state.task if isinstance(state, Loading) else self._start_refresh()
        await asyncio.shield(task)
        return self.peek()

    def _start_refresh(self) -> 'asyncio.Task':
        previous = self._ready()
        task = asyncio.get_running_loop().create_task(
            self._refresh(previous), name=f"refresh-{self.name}"
        )
        self._state = Loading(task=task, previous=previous)
        return task

    async def _refresh(self, previous: Optional[Ready]) -> None:
        self.refresh_count += 1
        started = time.perf_counter()
        try:
            records, source = await self._loader()
        except ListLoadError as e:
            self._fail(previous, str(e))
            return
        except Exception as e:
            # Loader bugs must not leave the cache stuck in Loading
            logger.exception(f"✗ Unexpected error refreshing {self.name}")
            self._fail(previous, f"{type(e).__name__}: {e}")
            return

        self._state = Ready(data=tuple(records), loaded_at=self._clock(), source=source)
        self._last_error = None
        record_list_refresh(self.name, success=True, record_count=len(records))
        logger.info(
            f"✓ {self.name}: {len(records)} records from {source} "
            f"in {time.perf_counter() - started:.2f}s"
        )

    def _fail(self, previous: Optional[Ready], error: str) -> None:
        self._last_error = error
        self._state = previous if previous is not None else Empty()
        record_list_refresh(self.name, success=False)
        if previous is not None:
            logger.warning(
                f"⚠ {self.name} refresh failed, serving {len(previous.data)} stale records: {error}"
            )
        else:
            logger.error(f"✗ {self.name} not loaded: {error}")

    def status(self) -> Dict[str, object]:
        ready = self._ready()
        now = self._clock()
        return {
            'name': self.name,
            'loaded': ready is not None,
            'record_count': len(ready.data) if ready else 0,
            'loaded_at': (
                datetime.fromtimestamp(ready.loaded_at, tz=timezone.utc).isoformat()
                if ready else None
            ),
            'age_seconds': round(now - ready.loaded_at, 1) if ready else None,
            'stale': ready is not None and not self._is_fresh(ready),
            'loading': isinstance(self._state, Loading),
            'last_error': self._last_error,
            'source': ready.source if ready else None,
        }


# ============================================
# FACTORIES
# ============================================

def build_sdn_cache(config, fetch: Optional[Fetch] = None,
                    clock: Callable[[], float] = time.time) -> ReferenceListCache:
    lists = config.lists
    fetch = fetch or make_http_fetch(lists.sdn_download_timeout)
    return ReferenceListCache(
        'ofac_sdn',
        fallback_loader(lists.sdn_urls, fetch, parse_sdn_csv),
        ttl_hours=lists.sdn_ttl_hours,
        clock=clock,
    )


def build_wallet_cache(config, fetch: Optional[Fetch] = None,
                       clock: Callable[[], float] = time.time) -> ReferenceListCache:
    lists = config.lists
    fetch = fetch or make_http_fetch(lists.wallet_download_timeout)
    return ReferenceListCache(
        'sanctioned_wallets',
        wallet_list_loader(lists.wallet_list_url, lists.wallet_chains, fetch),
        ttl_hours=lists.wallet_ttl_hours,
        clock=clock,
    )
