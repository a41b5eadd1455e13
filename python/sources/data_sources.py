"""
Public Data Sources Adapter

Three free public datasets screened together:
- ICIJ Offshore Leaks (Panama, Paradise, Pandora papers...)
- SEC EDGAR full-text search: filings (informational) and enforcement
  forms (LR, AAER, AP)
- World Bank debarred firms and individuals
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import BoundedCache, SourceAdapter, gather_lookups, risk_block

logger = logging.getLogger(__name__)

ICIJ_SEARCH_URL = "https://offshoreleaks.icij.org/api/v1/search"
EDGAR_SEARCH_URL = "https://efts.sec.gov/LATEST/search-index"
WORLD_BANK_URL = "https://apigwext.worldbank.org/dvsvc/v1.0/json/APPLICATION/ADOBE_EXPRNC/FIRM_LIST"

ICIJ_CATEGORIES = {
    'entities': 'entity', 'officers': 'officer', 'intermediaries': 'intermediary', 'addresses': 'address',
}
FILING_FORMS = '10-K,10-Q,8-K,DEF 14A,13F-HR,SC 13D,SC 13G,4'
ENFORCEMENT_FORMS = 'LR,AAER,AP'
EDGAR_START = '2019-01-01'
EDGAR_HEADERS = {'User-Agent': 'EntityRiskScreening/1.0 (compliance-screening)'}
WORLD_BANK_TTL = 12 * 3600
MAX_MATCHES = 20

_DATE_FORMATS = ('%Y-%m-%d', '%d-%b-%Y', '%m/%d/%Y', '%d-%m-%Y')


def parse_list_date(value: Optional[str]) -> Optional[date]:
    text = (value or '').strip()
    if not text:
        return None
    token = text.split()[0].split('T')[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(token, fmt).date()
        except ValueError:
            continue
    return None


def icij_matches(data: Dict[str, Any]) -> Dict[str, Any]:
    found = []
    for category, node_type in ICIJ_CATEGORIES.items():
        for item in data.get(category) or []:
            found.append({
                'type': node_type,
                'name': item.get('name') or item.get('entity') or '',
                'jurisdiction': item.get('jurisdiction') or item.get('country') or '',
                'sourceDataset': item.get('source') or item.get('dataset') or '',
                'linkedTo': item.get('linked_to') or item.get('intermediary') or '',
                'nodeId': str(item.get('node_id') or item.get('id') or ''),
            })
    seen = set()
    unique = []
    for m in found:
        key = (m['name'], m['type'])
        if key not in seen:
            seen.add(key)
            unique.append(m)
    return {
        'matches': unique[:MAX_MATCHES],
        'totalResults': len(found),
        'datasetsFound': sorted({m['sourceDataset'] for m in found if m['sourceDataset']}),
    }


def debarment_matches(firms: Any, name: str) -> List[Dict[str, Any]]:
    """World Bank list entries whose firm or individual name contains the query, or the reverse"""
    if not isinstance(firms, list):
        raise ValueError("World Bank firm list is not a list")
    needle = name.lower()
    if not needle:
        return []
    matches = []
    for firm in firms:
        names = [
            (firm.get('FIRM_NAME') or '').lower(),
            (firm.get('INDIVIDUAL_NAME') or '').lower(),
        ]
        if any(n and (needle in n or n in needle) for n in names):
            matches.append({
                'firmName': firm.get('FIRM_NAME'),
                'individualName': firm.get('INDIVIDUAL_NAME'),
                'country': firm.get('COUNTRY') or '',
                'sanctionType': firm.get('SANCTION_TYPE') or '',
                'fromDate': firm.get('FROM_DATE') or '',
                'toDate': firm.get('TO_DATE') or '',
                'grounds': firm.get('GROUNDS') or '',
            })
    return matches


def is_active_debarment(match: Dict[str, Any], today: date) -> bool:
    # No end date, or one that cannot be read, counts as still in force
    ends = parse_list_date(match['toDate'])
    return ends is None or ends > today


def calculate_data_source_risk(icij: Optional[Dict[str, Any]], sec: Optional[Dict[str, Any]],
                               debarments: Optional[List[Dict[str, Any]]],
                               today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    score = 0
    flags: List[RiskFlag] = []

    if icij and icij['matches']:
        score += 20
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.OFFSHORE_LEAKS,
            f"{len(icij['matches'])} ICIJ Offshore Leaks match(es)", points=20, source='data_sources'
        ))
        datasets = icij['datasetsFound']
        if len(datasets) > 1:
            bonus = (len(datasets) - 1) * 5
            score += bonus
            flags.append(RiskFlag(
                Severity.MEDIUM, FlagCategory.MULTIPLE_LEAK_DATASETS,
                f"Appears in {len(datasets)} leak datasets: {', '.join(datasets)}",
                points=bonus, source='data_sources'
            ))

    if sec and sec['enforcement']:
        score += 20
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.SEC_ENFORCEMENT,
            f"{len(sec['enforcement'])} SEC enforcement filing(s)", points=20, source='data_sources'
        ))

    if debarments:
        active = [m for m in debarments if is_active_debarment(m, today)]
        if active:
            score += 20
            flags.append(RiskFlag(
                Severity.HIGH, FlagCategory.DEBARMENT,
                f"{len(active)} active World Bank debarment(s)", points=20, source='data_sources'
            ))
        else:
            score += 10
            flags.append(RiskFlag(
                Severity.LOW, FlagCategory.EXPIRED_DEBARMENT,
                f"{len(debarments)} expired World Bank debarment(s)", points=10, source='data_sources'
            ))

    return risk_block(score, flags)


class PublicDataSourcesAdapter(SourceAdapter):
    """ICIJ Offshore Leaks, SEC EDGAR and World Bank debarment screening"""

    source_id = 'data_sources'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[BoundedCache] = None,
                 today: Callable[[], date] = date.today):
        super().__init__(config, client)
        self.cache = cache or BoundedCache(max_size=200, ttl_seconds=3600)
        self.firm_list_cache = BoundedCache(max_size=1, ttl_seconds=WORLD_BANK_TTL)
        self._today = today

    async def _icij(self, name: str) -> Dict[str, Any]:
        return icij_matches(await self.get_json(ICIJ_SEARCH_URL, params={'q': name}))

    async def _edgar(self, name: str, forms: str, limit: int) -> List[Dict[str, Any]]:
        data = await self.get_json(EDGAR_SEARCH_URL, params={
            'q': f'"{name}"', 'dateRange': 'custom', 'startdt': EDGAR_START,
            'enddt': self._today().isoformat(), 'forms': forms,
        }, headers=EDGAR_HEADERS)
        return [hit.get('_source') or {} for hit in ((data.get('hits') or {}).get('hits') or [])[:limit]]

    async def _sec(self, name: str) -> Dict[str, Any]:
        results, _ = await gather_lookups(self.source_id, {
            'sec_filings': self._edgar(name, FILING_FORMS, 15),
            'sec_enforcement': self._edgar(name, ENFORCEMENT_FORMS, 10),
        })
        filings = [
            {
                'form': s.get('form_type') or s.get('file_type') or '',
                'filingDate': s.get('file_date') or '',
                'companyName': (s.get('display_names') or [''])[0],
                'cik': str((s.get('ciks') or [''])[0]),
            }
            for s in results.get('sec_filings', [])
        ]
        enforcement = [
            {
                'type': s.get('form_type') or 'Enforcement',
                'date': s.get('file_date') or '',
                'description': (s.get('display_names') or [''])[0],
            }
            for s in results.get('sec_enforcement', [])
        ]
        return {'filings': filings, 'enforcement': enforcement, 'totalFilings': len(filings)}

    async def _world_bank(self, name: str) -> List[Dict[str, Any]]:
        firms = self.firm_list_cache.get('firms')
        if firms is None:
            firms = await self.get_json(WORLD_BANK_URL)
            if not isinstance(firms, list):
                raise ValueError("World Bank firm list is not a list")
            self.firm_list_cache.set('firms', firms)
        return debarment_matches(firms, name)

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        name = query.subject_text.strip().replace('"', '')
        cache_key = name.lower()
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        results, errors = await gather_lookups(self.source_id, {
            'icij': self._icij(name),
            'sec': self._sec(name),
            'world_bank': self._world_bank(name),
        })
        icij = results.get('icij')
        sec = results.get('sec')
        debarments = results.get('world_bank')

        matches = (
            [dict(m, dataset='ICIJ Offshore Leaks') for m in (icij or {}).get('matches', [])]
            + [dict(m, dataset='World Bank Debarment') for m in (debarments or [])[:MAX_MATCHES]]
        )
        payload = {
            'matches': matches,
            'totalResults': len(matches),
            'icijDatasets': (icij or {}).get('datasetsFound', []),
            'secFilings': (sec or {}).get('filings', []),
            'secEnforcement': (sec or {}).get('enforcement', []),
            'lookupErrors': errors,
            'risk': calculate_data_source_risk(icij, sec, debarments, self._today()),
        }
        self.cache.set(cache_key, payload)
        return payload
