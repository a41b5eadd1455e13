"""
Financial Registrations Source Adapter

US financial-industry registers and enforcement records:

    Individuals     FINRA BrokerCheck, SEC IAPD (person), NFA BASIC
    Organizations   SEC IAPD (firm), FDIC BankFind financials and failures,
                    NCUA credit unions, OCC and Federal Reserve enforcement
                    (through GDELT)
    Both            SEC EDGAR litigation releases and AAERs

SubjectKind.ANY runs both sets.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity, SubjectKind
from sources.base import BoundedCache, SourceAdapter, gather_lookups, risk_block
from sources.gdelt import search_articles, seen_date
from xml_utils import element_text, secure_parse_html

logger = logging.getLogger(__name__)

BROKERCHECK_URL = "https://api.brokercheck.finra.org/search/individual"
IAPD_PERSON_URL = "https://api.adviserinfo.sec.gov/IAPD/Content/Search/api/Person/Search"
IAPD_FIRM_URL = "https://api.adviserinfo.sec.gov/IAPD/Content/Search/api/Firm/Search"
NFA_URL = "https://www.nfa.futures.org/basicnet/Details.aspx"
FDIC_FINANCIALS_URL = "https://banks.data.fdic.gov/api/financials"
FDIC_FAILURES_URL = "https://banks.data.fdic.gov/api/failures"
NCUA_URL = "https://mapping.ncua.gov/api/NCUAMapping/SearchCreditUnions"
EDGAR_SEARCH_URL = "https://efts.sec.gov/LATEST/search-index"

EDGAR_HEADERS = {'User-Agent': 'EntityRiskScreening/1.0 (compliance-screening)',
                 'Accept': 'application/json'}
JSON_HEADERS = {'Accept': 'application/json'}

NFA_PATTERNS = (
    ('Expulsion', re.compile(r'expul', re.I)),
    ('Suspension', re.compile(r'suspend', re.I)),
    ('Fine', re.compile(r'fine[ds]?\b', re.I)),
    ('Revocation', re.compile(r'revok', re.I)),
    ('Withdrawal', re.compile(r'withdraw', re.I)),
)
NFA_SCORING = {
    'Expulsion': (60, Severity.CRITICAL, FlagCategory.NFA_EXPULSION),
    'Suspension': (40, Severity.HIGH, FlagCategory.NFA_SUSPENSION),
    'Fine': (30, Severity.HIGH, FlagCategory.NFA_FINE),
    'Revocation': (30, Severity.HIGH, FlagCategory.NFA_REVOCATION),
}

INDIVIDUAL_LOOKUPS = ('brokerCheck', 'secAdviser', 'nfa')
ENTITY_LOOKUPS = ('secAdviserFirm', 'fdic', 'fdicFailures', 'ncua', 'occ', 'fed')


def lookups_for(kind: SubjectKind) -> List[str]:
    names: List[str] = []
    if kind in (SubjectKind.INDIVIDUAL, SubjectKind.ANY):
        names.extend(INDIVIDUAL_LOOKUPS)
    if kind in (SubjectKind.ORGANIZATION, SubjectKind.ANY):
        names.extend(ENTITY_LOOKUPS)
    names.append('secEdgar')
    return names


def nfa_actions(content: bytes, name: str) -> List[str]:
    """Action types mentioned on an NFA BASIC page that names the subject"""
    text = element_text(secure_parse_html(content))
    first_word = (name.lower().split() or [''])[0]
    if not first_word or first_word not in text.lower():
        return []
    return [kind for kind, pattern in NFA_PATTERNS if pattern.search(text)]


def calculate_finreg_risk(sources: Dict[str, Any]) -> Dict[str, Any]:
    """Score the answered lookups, keyed by lookup name"""
    score = 0
    flags: List[RiskFlag] = []

    def add(points, severity, category, message):
        nonlocal score
        score += points
        flags.append(RiskFlag(severity, category, message, points=points, source='finreg'))

    brokers = sources.get('brokerCheck') or []
    if brokers:
        top = brokers[0]
        who = f"{top['name']} (CRD #{top['crdNumber']})"
        if top['isBarred']:
            add(60, Severity.CRITICAL, FlagCategory.FINRA_BARRED, f"BARRED by FINRA: {who}")
        count = top['disclosureCount']
        if count > 0:
            add(min(count * 10, 40), Severity.HIGH if count >= 3 else Severity.MEDIUM,
                FlagCategory.FINRA_DISCLOSURES, f"{count} FINRA disclosure(s) for {who}")
        if count >= 3:
            add(25, Severity.HIGH, FlagCategory.FINRA_PATTERN,
                f"Pattern indicator: {count} disclosures on FINRA BrokerCheck")

    advisers = sources.get('secAdviser') or []
    if advisers and advisers[0]['hasDisclosure']:
        top = advisers[0]
        add(25, Severity.MEDIUM, FlagCategory.SEC_IAPD_DISCLOSURE,
            f"SEC adviser disclosure on record: {top['name']} (CRD #{top['crdNumber']})")

    firms = sources.get('secAdviserFirm') or []
    if firms and firms[0]['hasDisclosure']:
        top = firms[0]
        add(25, Severity.MEDIUM, FlagCategory.SEC_IAPD_FIRM_DISCLOSURE,
            f"SEC adviser firm disclosure: {top['firmName']} (CRD #{top['crdNumber']})")

    for action in sources.get('nfa') or []:
        if action in NFA_SCORING:
            points, severity, category = NFA_SCORING[action]
            add(points, severity, category, f"NFA {action.lower()} on record")

    failures = sources.get('fdicFailures') or []
    if failures:
        fail = failures[0]
        add(50, Severity.CRITICAL, FlagCategory.FDIC_BANK_FAILED,
            f"Bank failed: {fail['name'] or 'Unknown'} ({fail['failDate'] or 'date unknown'})")
    banks = sources.get('fdic') or []
    if banks and not banks[0]['active']:
        add(15, Severity.MEDIUM, FlagCategory.FDIC_INACTIVE, "FDIC-insured institution no longer active")

    unions = sources.get('ncua') or []
    if unions and not unions[0]['active']:
        add(20, Severity.MEDIUM, FlagCategory.NCUA_INACTIVE,
            f"Credit union no longer active: {unions[0]['name']}")

    for key, label, category in (('occ', 'OCC', FlagCategory.OCC_ENFORCEMENT),
                                 ('fed', 'Federal Reserve', FlagCategory.FED_ENFORCEMENT)):
        actions = sources.get(key) or []
        if actions:
            add(min(len(actions) * 15, 40), Severity.HIGH, category,
                f"{len(actions)} {label} enforcement mention(s) found")

    total = (sources.get('secEdgar') or {}).get('totalLitigation', 0)
    if total > 0:
        add(min(total * 20, 50), Severity.CRITICAL if total >= 3 else Severity.HIGH,
            FlagCategory.SEC_LITIGATION, f"{total} SEC litigation release(s) / AAER(s) found")

    return risk_block(score, flags)


class FinancialRegistrationsAdapter(SourceAdapter):
    """Broker, adviser, bank and credit-union register screening"""

    source_id = 'finreg'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[BoundedCache] = None):
        super().__init__(config, client)
        self.cache = cache or BoundedCache(max_size=200, ttl_seconds=3600)

    async def _broker_check(self, name: str) -> List[Dict[str, Any]]:
        data = await self.get_json(BROKERCHECK_URL, params={
            'query': name, 'filter': 'active=true,prev=true',
        }, headers=JSON_HEADERS)
        matches = []
        for hit in ((data.get('hits') or {}).get('hits') or [])[:5]:
            s = hit.get('_source') or {}
            matches.append({
                'name': f"{s.get('ind_firstname') or ''} {s.get('ind_lastname') or ''}".strip(),
                'crdNumber': s.get('ind_source_id'),
                'disclosureCount': int(s.get('ind_num_disclosures') or 0),
                'registrationStatus': s.get('ind_ia_reg_status') or s.get('ind_bd_reg_status') or 'Unknown',
                'isBarred': s.get('ind_barred') == 'Y',
            })
        return matches

    async def _sec_adviser(self, name: str) -> List[Dict[str, Any]]:
        data = await self.get_json(IAPD_PERSON_URL, params={
            'SearchValue': name, 'SearchType': 'Name',
        }, headers=JSON_HEADERS)
        return [
            {
                'name': f"{r.get('FirstName') or ''} {r.get('LastName') or ''}".strip(),
                'crdNumber': r.get('IndividualPK'),
                'hasDisclosure': bool(r.get('HasDisclosure')),
                'active': bool(r.get('Active')),
            }
            for r in (data.get('Results') or [])[:5]
        ]

    async def _sec_adviser_firm(self, name: str) -> List[Dict[str, Any]]:
        data = await self.get_json(IAPD_FIRM_URL, params={
            'SearchValue': name, 'SearchType': 'Name',
        }, headers=JSON_HEADERS)
        return [
            {
                'firmName': r.get('FirmName') or '',
                'crdNumber': r.get('FirmPK'),
                'secNumber': r.get('SECNumber') or '',
                'hasDisclosure': bool(r.get('HasDisclosure')),
                'active': bool(r.get('Active')),
            }
            for r in (data.get('Results') or [])[:5]
        ]

    async def _nfa(self, name: str) -> List[str]:
        content = await self.get_bytes(NFA_URL, params={
            'entityType': 'firm', 'entityName': name,
        }, headers={'Accept': 'text/html'})
        return nfa_actions(content, name)

    async def _fdic(self, name: str) -> List[Dict[str, Any]]:
        data = await self.get_json(FDIC_FINANCIALS_URL, params={
            'filters': f'REPNM:"{name}"', 'limit': 5, 'sort_by': 'REPDTE', 'sort_order': 'DESC',
        }, headers=JSON_HEADERS)
        banks = []
        for row in (data.get('data') or [])[:3]:
            b = row.get('data') or {}
            banks.append({
                'name': b.get('REPNM') or name,
                'certNumber': b.get('CERT'),
                'state': b.get('STALP'),
                'active': b.get('ACTIVE') != 0,
                'totalAssets': b.get('ASSET'),
            })
        return banks

    async def _fdic_failures(self, name: str) -> List[Dict[str, Any]]:
        data = await self.get_json(FDIC_FAILURES_URL, params={
            'filters': f'INSTNAME:"{name}"', 'limit': 5,
        }, headers=JSON_HEADERS)
        failures = []
        for row in (data.get('data') or [])[:3]:
            f = row.get('data') or {}
            failures.append({
                'name': f.get('INSTNAME') or name,
                'failDate': f.get('FAILDATE') or '',
                'acquirer': f.get('ACQUIRER') or '',
            })
        return failures

    async def _ncua(self, name: str) -> List[Dict[str, Any]]:
        data = await self.get_json(NCUA_URL, params={'Name': name}, headers=JSON_HEADERS)
        return [
            {
                'name': cu.get('CU_NAME') or '',
                'charterNumber': cu.get('CU_NUMBER'),
                'state': cu.get('STATE'),
                'active': cu.get('CU_STATUS_NAME') == 'Active',
            }
            for cu in (data if isinstance(data, list) else [])[:5]
        ]

    async def _gdelt_enforcement(self, name: str, domain: str, label: str) -> List[Dict[str, Any]]:
        query = f'"{name}" enforcement OR penalty OR fine OR action domain:{domain}'
        return [
            {
                'title': a.get('title') or '',
                'date': seen_date(a.get('seendate')),
                'url': a.get('url') or '',
                'source': label,
            }
            for a in await search_articles(self, query, timespan='5y')
        ]

    async def _sec_edgar(self, name: str) -> Dict[str, Any]:
        data = await self.get_json(EDGAR_SEARCH_URL, params={
            'q': f'"{name}"', 'forms': 'LIT-REL,AAER', 'dateRange': 'custom', 'startdt': '2015-01-01',
        }, headers=EDGAR_HEADERS)
        hits = data.get('hits') or {}
        releases = []
        for hit in (hits.get('hits') or [])[:10]:
            s = hit.get('_source') or {}
            releases.append({
                'title': s.get('file_description') or (s.get('display_names') or [''])[0],
                'date': s.get('file_date') or '',
                'form': s.get('form_type') or '',
                'url': f"https://www.sec.gov{s['file_url']}" if s.get('file_url') else '',
            })
        return {
            'litigationReleases': releases,
            'totalLitigation': int((hits.get('total') or {}).get('value') or 0),
        }

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        name = query.subject_text.strip().replace('"', '')
        selected = lookups_for(query.subject_kind)
        cache_key = f"{name.lower()}|{query.subject_kind.value}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        calls = {
            'brokerCheck': lambda: self._broker_check(name),
            'secAdviser': lambda: self._sec_adviser(name),
            'nfa': lambda: self._nfa(name),
            'secAdviserFirm': lambda: self._sec_adviser_firm(name),
            'fdic': lambda: self._fdic(name),
            'fdicFailures': lambda: self._fdic_failures(name),
            'ncua': lambda: self._ncua(name),
            'occ': lambda: self._gdelt_enforcement(name, 'occ.gov', 'OCC'),
            'fed': lambda: self._gdelt_enforcement(name, 'federalreserve.gov', 'Federal Reserve'),
            'secEdgar': lambda: self._sec_edgar(name),
        }
        results, errors = await gather_lookups(
            self.source_id, {key: calls[key]() for key in selected}
        )

        risk = calculate_finreg_risk(results)
        matches = (
            [dict(m, register='FINRA BrokerCheck') for m in results.get('brokerCheck', [])]
            + [dict(m, register='SEC IAPD') for m in results.get('secAdviser', [])]
            + [dict(m, register='SEC IAPD Firm') for m in results.get('secAdviserFirm', [])]
            + [dict(m, register='FDIC BankFind') for m in results.get('fdic', [])]
            + [dict(m, register='NCUA') for m in results.get('ncua', [])]
        )
        payload = {
            'matches': matches,
            'totalResults': len(matches),
            'sources': results,
            'sourcesChecked': selected,
            'lookupErrors': errors,
            'risk': risk,
        }
        self.cache.set(cache_key, payload)
        return payload
