"""
UK Companies House Source Adapter

Looks the subject up in the UK company register and pulls the profile,
officers, persons with significant control (PSC), filings, charges and
insolvency record of the best match. Active officers are checked against
the disqualified-directors register by name plus birth year and month.

Requires COMPANIES_HOUSE_API_KEY (HTTP basic auth, key as user name).
"""

import asyncio
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import BoundedCache, SourceAdapter, empty_risk, risk_block

logger = logging.getLogger(__name__)

BAD_STATUSES = ('dissolved', 'liquidation', 'administration', 'voluntary-arrangement')
HIGH_RISK_PSC_JURISDICTIONS = (
    'british virgin islands', 'cayman islands', 'seychelles', 'panama', 'belize'
)
FORMATION_AGENT_INDICATORS = ('companies house', 'formation', 'registered office', 'virtual office')
MAX_DISQUALIFICATION_CHECKS = 25


def _parse_date(value: Optional[str]) -> Optional[date]:
    try:
        return date.fromisoformat((value or '')[:10])
    except ValueError:
        return None


def _years_before(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # Feb 29
        return today.replace(year=today.year - years, day=28)


def format_company(company: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'companyNumber': company.get('company_number') or '',
        'name': company.get('company_name') or '',
        'status': company.get('company_status') or '',
        'companyType': company.get('type') or '',
        'incorporationDate': company.get('date_of_creation') or '',
        'cessationDate': company.get('date_of_cessation'),
        'jurisdiction': company.get('jurisdiction') or '',
        'registeredOffice': company.get('registered_office_address') or {},
        'sicCodes': company.get('sic_codes') or [],
        'accountsOverdue': bool((company.get('accounts') or {}).get('overdue')),
        'confirmationStatementOverdue': bool(
            (company.get('confirmation_statement') or {}).get('overdue')
        ),
    }


def format_officer(officer: Dict[str, Any], disqualified: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    name = officer.get('name') or ''
    return {
        'name': name,
        'role': officer.get('officer_role') or '',
        'appointedOn': officer.get('appointed_on') or '',
        'resignedOn': officer.get('resigned_on'),
        'nationality': officer.get('nationality') or '',
        'isDisqualified': name in disqualified,
    }


def format_psc(psc: Dict[str, Any]) -> Dict[str, Any]:
    identification = psc.get('identification') or {}
    return {
        'name': psc.get('name') or '',
        'kind': psc.get('kind') or '',
        'notifiedOn': psc.get('notified_on') or '',
        'ceasedOn': psc.get('ceased_on'),
        'countryOfResidence': psc.get('country_of_residence') or '',
        'countryRegistered': identification.get('country_registered') or '',
        'naturesOfControl': psc.get('natures_of_control') or [],
    }


def same_birth_month(officer: Dict[str, Any], record: Dict[str, Any]) -> bool:
    born = officer.get('date_of_birth') or {}
    listed = record.get('date_of_birth')
    if not born or not listed:
        return False
    if isinstance(listed, str):
        parsed = _parse_date(listed)
        if parsed is None:
            return False
        listed = {'year': parsed.year, 'month': parsed.month}
    return born.get('year') == listed.get('year') and born.get('month') == listed.get('month')


def calculate_uk_company_risk(company: Dict[str, Any], officers: List[Dict[str, Any]],
                              pscs: List[Dict[str, Any]], charges: List[Dict[str, Any]],
                              insolvency: Optional[Dict[str, Any]],
                              disqualified: Dict[str, Dict[str, Any]],
                              today: Optional[date] = None) -> Dict[str, Any]:
    """Score a Companies House profile

    Args:
        company: Raw company profile
        officers: Raw officer list
        pscs: Raw PSC list
        charges: Raw charges list
        insolvency: Raw insolvency record, None when the company has none
        disqualified: {officer name: disqualification record}
        today: Reference date for age and turnover checks
    """
    today = today or date.today()
    score = 0
    flags: List[RiskFlag] = []

    def add(points, severity, category, message):
        nonlocal score
        score += points
        flags.append(RiskFlag(severity, category, message, points=points, source='uk_companies'))

    cases = (insolvency or {}).get('cases') or []
    if cases:
        kinds = ', '.join(sorted({c.get('type') or 'unknown' for c in cases}))
        add(50, Severity.CRITICAL, FlagCategory.INSOLVENCY, f"Insolvency proceedings: {kinds}")

    if disqualified:
        add(40, Severity.CRITICAL, FlagCategory.DISQUALIFIED_OFFICER,
            f"Disqualified director(s): {', '.join(sorted(disqualified))}")

    status = company.get('company_status') or ''
    if status in BAD_STATUSES:
        add(35, Severity.HIGH, FlagCategory.COMPANY_STATUS, f"Company status: {status}")

    if (company.get('accounts') or {}).get('overdue'):
        add(20, Severity.HIGH, FlagCategory.ACCOUNTS_OVERDUE, "Annual accounts are overdue")

    if (company.get('confirmation_statement') or {}).get('overdue'):
        add(15, Severity.HIGH, FlagCategory.CONFIRMATION_OVERDUE, "Confirmation statement is overdue")

    active_charges = [c for c in charges if c.get('status') != 'fully-satisfied']
    if active_charges:
        add(10, Severity.MEDIUM, FlagCategory.ACTIVE_CHARGES,
            f"{len(active_charges)} active charge(s) registered")

    corporate = [
        p for p in pscs
        if 'corporate' in (p.get('kind') or '') or (p.get('identification') or {}).get('legal_authority')
    ]
    if corporate:
        add(10, Severity.MEDIUM, FlagCategory.CORPORATE_PSC,
            f"{len(corporate)} corporate PSC(s), ownership may be layered")

    def offshore(psc):
        places = (
            (psc.get('country_of_residence') or '').lower(),
            ((psc.get('identification') or {}).get('country_registered') or '').lower(),
        )
        return any(j in place for j in HIGH_RISK_PSC_JURISDICTIONS for place in places)

    if any(offshore(p) for p in pscs):
        add(15, Severity.MEDIUM, FlagCategory.OFFSHORE_PSC, "PSC registered in high-risk jurisdiction")

    created = _parse_date(company.get('date_of_creation'))
    if created and created > _years_before(today, 2):
        add(10, Severity.MEDIUM, FlagCategory.RECENT_INCORPORATION,
            f"Company incorporated {created.isoformat()}, less than 2 years ago")

    year_ago = _years_before(today, 1)
    resigned = [
        o for o in officers
        if (_parse_date(o.get('resigned_on')) or date.min) > year_ago
    ]
    if len(resigned) >= 3:
        add(10, Severity.LOW, FlagCategory.HIGH_TURNOVER,
            f"{len(resigned)} officers resigned in past year")

    address = ' '.join(
        str(v) for v in (company.get('registered_office_address') or {}).values()
    ).lower()
    if any(i in address for i in FORMATION_AGENT_INDICATORS):
        add(5, Severity.LOW, FlagCategory.FORMATION_AGENT_ADDRESS,
            "Registered address may be a formation agent")

    return risk_block(score, flags)


class UkCompaniesHouseAdapter(SourceAdapter):
    """UK company register screening"""

    source_id = 'uk_companies'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[BoundedCache] = None,
                 today: Callable[[], date] = date.today):
        super().__init__(config, client)
        self.cache = cache or BoundedCache(max_size=200, ttl_seconds=3600)
        self._today = today

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None,
                   missing_ok: bool = False) -> Any:
        async with self.http() as client:
            response = await client.get(
                f"{self.base_url}{path}", params=params,
                auth=(self.api_key or '', ''), headers={'Accept': 'application/json'},
            )
            if missing_ok and response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()

    async def _items(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        data = await self._get(path, params, missing_ok=True)
        return (data or {}).get('items') or []

    async def _disqualified(self, officers: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        active = [o for o in officers if not o.get('resigned_on') and o.get('name')]
        active = active[:MAX_DISQUALIFICATION_CHECKS]
        searches = await asyncio.gather(*(
            self._items('/search/disqualified-officers', {'q': o['name']}) for o in active
        ))
        found = {}
        for officer, records in zip(active, searches):
            match = next((r for r in records if same_birth_month(officer, r)), None)
            if match is not None:
                found[officer['name']] = match
        return found

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        name = query.subject_text.strip()
        cache_key = name.lower()
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        hits = await self._items('/search/companies', {'q': name, 'items_per_page': 10})
        if not hits:
            payload = {'matches': [], 'totalResults': 0, 'risk': empty_risk()}
            self.cache.set(cache_key, payload)
            return payload

        number = hits[0].get('company_number')
        base = f"/company/{number}"
        company, officers, pscs, filings, charges, insolvency = await asyncio.gather(
            self._get(base),
            self._items(f"{base}/officers", {'items_per_page': 100}),
            self._items(f"{base}/persons-with-significant-control", {'items_per_page': 100}),
            self._items(f"{base}/filing-history", {'items_per_page': 20}),
            self._items(f"{base}/charges"),
            self._get(f"{base}/insolvency", missing_ok=True),
        )
        disqualified = await self._disqualified(officers)

        payload = {
            'matches': [format_company(company)],
            'totalResults': len(hits),
            'officers': [format_officer(o, disqualified) for o in officers],
            'pscs': [format_psc(p) for p in pscs],
            'filingHistory': [
                {
                    'date': f.get('date') or '',
                    'category': f.get('category') or '',
                    'type': f.get('type') or '',
                    'description': f.get('description') or '',
                }
                for f in filings
            ],
            'charges': [
                {'status': c.get('status') or '', 'createdOn': c.get('created_on') or ''}
                for c in charges
            ],
            'insolvencyCases': [c.get('type') or '' for c in (insolvency or {}).get('cases') or []],
            'risk': calculate_uk_company_risk(
                company, officers, pscs, charges, insolvency, disqualified, self._today()
            ),
        }
        self.cache.set(cache_key, payload)
        return payload
