"""
Fan-out Orchestrator

Runs every registered source adapter for a query concurrently and collects
one SourceResult per source.

Features:
- All adapters start together as asyncio tasks
- Global deadline: unfinished adapters are cancelled and reported as
  'global timeout'
- Adapter contract violations (raised exceptions) become error results
- Result map follows registry order, independent of completion order
- Caller cancellation cancels every in-flight adapter
"""

import asyncio
import logging
import time
from typing import Dict, Mapping, Optional

from models import ScreeningQuery, SourceResult
from sources.base import SourceAdapter
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

GLOBAL_TIMEOUT_ERROR = 'global timeout'


class FanOutOrchestrator:
    """Concurrent adapter execution under a global deadline"""

    def __init__(self, registry: Mapping[str, Mapping[str, SourceAdapter]],
                 global_timeout: float = 45):
        """
        Args:
            registry: {'entity': {source_id: adapter}, 'wallet': {...}} as
                returned by sources.build_registry()
            global_timeout: Seconds before unfinished adapters are cancelled
        """
        self.entity_adapters = dict(registry.get('entity', {}))
        self.wallet_adapters = dict(registry.get('wallet', {}))
        self.global_timeout = global_timeout

    async def screen_entity(self, query: ScreeningQuery) -> Dict[str, SourceResult]:
        return await self.fan_out(self.entity_adapters, query)

    async def screen_wallet(self, query: ScreeningQuery) -> Dict[str, SourceResult]:
        return await self.fan_out(self.wallet_adapters, query)

    async def fan_out(self, adapters: Mapping[str, SourceAdapter],
                      query: ScreeningQuery,
                      global_timeout: Optional[float] = None) -> Dict[str, SourceResult]:
        """Run adapters concurrently and wait for all of them or the deadline"""
        if not adapters:
            return {}

        deadline = self.global_timeout if global_timeout is None else global_timeout
        started = time.perf_counter()
        tasks = {
            source_id: asyncio.create_task(adapter.screen(query), name=f"screen:{source_id}")
            for source_id, adapter in adapters.items()
        }

        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=deadline)
        except asyncio.CancelledError:
            # Caller cancelled: no adapter task outlives this call
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                f"⚠ Global timeout ({deadline}s) for {sanitize_for_logging(query.subject_text, 50)}: "
                f"cancelled {sorted(sid for sid, t in tasks.items() if t in pending)}"
            )

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        results: Dict[str, SourceResult] = {}
        for source_id, task in tasks.items():
            if task in pending:
                results[source_id] = SourceResult.failed(source_id, GLOBAL_TIMEOUT_ERROR, elapsed_ms)
            elif task.cancelled():
                results[source_id] = SourceResult.failed(source_id, 'cancelled', elapsed_ms)
            elif task.exception() is not None:
                error = task.exception()
                logger.error(f"✗ Adapter {source_id} raised {type(error).__name__}: {error}")
                results[source_id] = SourceResult.failed(
                    source_id, f"{type(error).__name__}: {error}", elapsed_ms
                )
            else:
                results[source_id] = task.result()

        failed = [sid for sid, r in results.items() if r.error]
        logger.info(
            f"Fan-out complete: {len(results) - len(failed)}/{len(results)} sources ok "
            f"in {elapsed_ms}ms" + (f", errors: {failed}" if failed else "")
        )
        return results
