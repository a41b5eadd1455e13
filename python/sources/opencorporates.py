"""
OpenCorporates Source Adapter

Global corporate registry search (companies and officers). Works without a
key on the free tier; OPENCORPORATES_API_KEY raises the rate limit.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import BoundedCache, SourceAdapter, risk_block

logger = logging.getLogger(__name__)

OFFSHORE_JURISDICTIONS = frozenset({
    'vg', 'ky', 'bm', 'pa', 'sc', 'bs', 'je', 'gg', 'im', 'li', 'mc', 'gi', 'ai', 'tc', 'ws', 'vu', 'mh'
})


def normalize_company(item: Dict[str, Any]) -> Dict[str, Any]:
    co = item.get('company') or item
    return {
        'name': co.get('name') or '',
        'companyNumber': co.get('company_number') or '',
        'jurisdictionCode': co.get('jurisdiction_code') or '',
        'incorporationDate': co.get('incorporation_date') or '',
        'dissolutionDate': co.get('dissolution_date'),
        'companyType': co.get('company_type') or '',
        'status': co.get('current_status') or '',
        'registeredAddress': co.get('registered_address_in_full') or '',
        'previousNames': [
            p.get('company_name') or p.get('name') or '' for p in (co.get('previous_names') or [])
        ],
        'url': co.get('opencorporates_url') or '',
    }


def normalize_officer(item: Dict[str, Any]) -> Dict[str, Any]:
    off = item.get('officer') or item
    company = off.get('company') or {}
    return {
        'name': off.get('name') or '',
        'position': off.get('position') or '',
        'startDate': off.get('start_date') or '',
        'endDate': off.get('end_date'),
        'companyName': company.get('name') or '',
        'companyNumber': company.get('company_number') or '',
        'jurisdictionCode': company.get('jurisdiction_code') or '',
        'url': off.get('opencorporates_url') or '',
    }


def _incorporated_within_year(value: str, today: date) -> bool:
    try:
        incorporated = date.fromisoformat(value[:10])
    except ValueError:
        return False
    try:
        year_ago = today.replace(year=today.year - 1)
    except ValueError:
        # Feb 29
        year_ago = today.replace(year=today.year - 1, day=28)
    return incorporated > year_ago


def calculate_corporate_risk(companies: List[Dict[str, Any]], officers: List[Dict[str, Any]],
                             today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    score = 0
    flags: List[RiskFlag] = []

    dissolved = [c for c in companies if 'dissolv' in c['status'].lower()]
    if dissolved:
        score += 10
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.DISSOLVED_COMPANIES,
            f"{len(dissolved)} dissolved company/ies", points=10, source='corporate'
        ))

    offshore = [c for c in companies if c['jurisdictionCode'].lower() in OFFSHORE_JURISDICTIONS]
    if offshore:
        codes = sorted({c['jurisdictionCode'] for c in offshore})
        score += 20
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.OFFSHORE_JURISDICTION,
            f"{len(offshore)} company/ies in offshore jurisdictions: {', '.join(codes)}",
            points=20, source='corporate'
        ))

    recent = [
        c for c in companies
        if c['incorporationDate'] and _incorporated_within_year(c['incorporationDate'], today)
    ]
    if recent:
        score += 10
        flags.append(RiskFlag(
            Severity.LOW, FlagCategory.RECENT_INCORPORATION,
            f"{len(recent)} company/ies incorporated within last year", points=10, source='corporate'
        ))

    if len(officers) > 10:
        score += 15
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.MANY_DIRECTORSHIPS,
            f"{len(officers)} officer positions found", points=15, source='corporate'
        ))

    renamed = [c for c in companies if c['previousNames']]
    total_changes = sum(len(c['previousNames']) for c in renamed)
    if total_changes > 3:
        score += 10
        flags.append(RiskFlag(
            Severity.LOW, FlagCategory.NAME_CHANGES,
            f"{total_changes} name change(s) across {len(renamed)} company/ies",
            points=10, source='corporate'
        ))

    return risk_block(score, flags)


class OpenCorporatesAdapter(SourceAdapter):
    """Corporate registry screening"""

    source_id = 'corporate'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[BoundedCache] = None,
                 today: Callable[[], date] = date.today):
        super().__init__(config, client)
        self.cache = cache or BoundedCache(max_size=200, ttl_seconds=3600)
        self._today = today

    async def _search_kind(self, kind: str, query: ScreeningQuery) -> Dict[str, Any]:
        params = {'q': query.subject_text, 'order': 'score'}
        if query.jurisdiction:
            params['jurisdiction_code'] = query.jurisdiction.lower()
        if self.api_key:
            params['api_token'] = self.api_key
        data = await self.get_json(
            f"{self.base_url}/{kind}/search", params=params, headers={'Accept': 'application/json'}
        )
        return data.get('results') or {}

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        cache_key = f"{query.subject_text.lower()}|{query.jurisdiction or ''}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        company_data, officer_data = await asyncio.gather(
            self._search_kind('companies', query),
            self._search_kind('officers', query),
            return_exceptions=True,
        )
        if isinstance(company_data, BaseException):
            # Company search is the primary signal
            raise company_data
        officer_error = None
        if isinstance(officer_data, BaseException):
            officer_error = f"{type(officer_data).__name__}: {officer_data}"
            logger.warning(f"⚠ OpenCorporates officer search failed: {officer_error}")
            officer_data = {}

        companies = [normalize_company(c) for c in company_data.get('companies') or []]
        officers = [normalize_officer(o) for o in officer_data.get('officers') or []]

        payload = {
            'matches': companies,
            'officers': officers,
            'totalResults': company_data.get('total_count') or len(companies),
            'totalOfficers': officer_data.get('total_count') or len(officers),
            'officerError': officer_error,
            'risk': calculate_corporate_risk(companies, officers, self._today()),
        }
        self.cache.set(cache_key, payload)
        return payload
