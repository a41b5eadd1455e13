"""
OpenSanctions PEP Source Adapter

Searches the OpenSanctions ``default`` and ``peps`` collections and
classifies results as politically exposed persons and/or sanctioned.
Results are re-checked with the name matcher so loose search hits do not
count as matches.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from matcher import NameMatcher
from models import FlagCategory, ReferenceRecord, RiskFlag, ScreeningQuery, Severity
from sources.base import BoundedCache, SourceAdapter, risk_block

logger = logging.getLogger(__name__)

COLLECTIONS = ('default', 'peps')
SEARCH_LIMIT = 50


def is_pep(result: Dict[str, Any]) -> bool:
    datasets = result.get('datasets') or []
    topics = (result.get('properties') or {}).get('topics') or []
    if any('pep' in d for d in datasets):
        return True
    return result.get('schema') == 'Person' and any('role' in t or 'pep' in t for t in topics)


def sanction_datasets(result: Dict[str, Any]) -> List[str]:
    return [
        d for d in (result.get('datasets') or [])
        if 'sanction' in d or 'ofac' in d or 'eu_' in d
    ]


def pep_level(result: Dict[str, Any]) -> Optional[str]:
    """ACTIVE when tagged role.pep, FORMER for other PEP evidence"""
    if not is_pep(result):
        return None
    topics = (result.get('properties') or {}).get('topics') or []
    return 'ACTIVE' if 'role.pep' in topics else 'FORMER'


def normalize_result(result: Dict[str, Any]) -> Dict[str, Any]:
    props = result.get('properties') or {}
    return {
        'id': result['id'],
        'name': (props.get('name') or [None])[0] or result.get('caption') or 'Unknown',
        'aliases': props.get('alias') or [],
        'type': 'individual' if result.get('schema') == 'Person' else 'entity',
        'isPEP': is_pep(result),
        'pepPosition': (props.get('position') or props.get('role') or [None])[0],
        'country': props.get('country') or [],
        'dateOfBirth': (props.get('birthDate') or [None])[0],
        'datasets': result.get('datasets') or [],
        'topics': props.get('topics') or [],
        'pepLevel': pep_level(result),
        'sanctions': sanction_datasets(result),
        'matchScore': result.get('score') or 0,
        'url': f"https://opensanctions.org/entities/{result['id']}/",
        'source': 'opensanctions',
    }


def calculate_pep_risk(matches: List[Dict[str, Any]]) -> Dict[str, Any]:
    score = 0
    flags: List[RiskFlag] = []
    if not matches:
        return risk_block(0, flags)

    peps = [m for m in matches if m['isPEP']]
    if peps:
        active = any(m.get('pepLevel') == 'ACTIVE' for m in peps)
        if active:
            score += 40
            flags.append(RiskFlag(
                Severity.HIGH, FlagCategory.ACTIVE_PEP,
                f"Active Politically Exposed Person ({len(peps)} source(s))",
                points=40, source='pep'
            ))
        else:
            score += 25
            flags.append(RiskFlag(
                Severity.MEDIUM, FlagCategory.FORMER_PEP,
                f"Former Politically Exposed Person ({len(peps)} source(s))",
                points=25, source='pep'
            ))

    lists = sorted({d for m in matches for d in m['sanctions']})
    if lists:
        score += 50
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.SANCTIONS_LIST,
            f"Found on sanctions list(s): {', '.join(lists)}", points=50, source='pep'
        ))

    datasets = {d for m in matches for d in m['datasets']}
    if len(datasets) >= 3:
        score += 10
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.MULTI_SOURCE_CONFIRMATION,
            f"Confirmed across {len(datasets)} sources", points=10, source='pep'
        ))

    return risk_block(score, flags)


class OpenSanctionsPepAdapter(SourceAdapter):
    """Politically exposed person screening via OpenSanctions"""

    source_id = 'pep'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 matcher: Optional[NameMatcher] = None, cache: Optional[BoundedCache] = None):
        super().__init__(config, client)
        self.matcher = matcher or NameMatcher()
        self.cache = cache or BoundedCache(max_size=200, ttl_seconds=3600)

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"ApiKey {self.api_key}"
        return headers

    async def _search_collection(self, collection: str, query: ScreeningQuery) -> List[Dict[str, Any]]:
        params = {'q': query.subject_text, 'limit': SEARCH_LIMIT}
        if query.country:
            params['countries'] = query.country.lower()
        data = await self.get_json(
            f"{self.base_url}/search/{collection}", params=params, headers=self._headers()
        )
        return data.get('results') or []

    def _relevant(self, subject: str, match: Dict[str, Any]) -> bool:
        record = ReferenceRecord(
            id=match['id'], primary_name=match['name'], aliases=tuple(match['aliases'])
        )
        return self.matcher.match(subject, record) is not None

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        cache_key = f"{query.subject_text.lower()}|{query.country or ''}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        responses = await asyncio.gather(
            *(self._search_collection(c, query) for c in COLLECTIONS),
            return_exceptions=True,
        )
        failures = [r for r in responses if isinstance(r, BaseException)]
        if len(failures) == len(responses):
            raise failures[0]
        for failure in failures:
            logger.warning(f"⚠ OpenSanctions collection search failed: {failure}")

        seen = set()
        matches = []
        for response in responses:
            if isinstance(response, BaseException):
                continue
            for result in response:
                if not result.get('id') or result['id'] in seen:
                    continue
                seen.add(result['id'])
                match = normalize_result(result)
                if self._relevant(query.subject_text, match):
                    matches.append(match)

        matches.sort(key=lambda m: (-m['matchScore'], m['id']))
        payload = {
            'matches': matches[:30],
            'totalResults': len(matches),
            'isPEP': any(m['isPEP'] for m in matches),
            'risk': calculate_pep_risk(matches),
        }
        self.cache.set(cache_key, payload)
        return payload
