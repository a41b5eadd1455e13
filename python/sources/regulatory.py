"""
Regulatory Enforcement Source Adapter

Enforcement actions, warnings and press releases from US, UK, EU and
Asia-Pacific regulators.

Agencies with a public JSON search are queried directly, HTML search pages
are parsed with lxml, and the rest go through a GDELT article search
restricted to the agency's domain. An agency whose own search fails (or,
for scraped pages, comes back empty) also falls back to GDELT.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import BoundedCache, SourceAdapter, gather_lookups, risk_block
from sources.gdelt import search_articles, seen_date
from xml_utils import element_text, html_table_rows, secure_parse_html

logger = logging.getLogger(__name__)

MAX_ACTIONS = 50
MAX_AGENCY_ACTIONS = 20

CRIMINAL_TYPES = ('INDICTMENT', 'CRIMINAL_CONVICTION', 'CRIMINAL_CHARGE')
WARNING_TYPES = (
    'SANCTIONS', 'FCA_WARNING', 'REGULATORY_WARNING', 'BAN',
    'LICENCE_CANCELLATION', 'INVESTIGATION',
)
SETTLEMENT_TYPES = ('SETTLEMENT', 'FORFEITURE', 'PENALTY')

# Errors from an agency's own search that send it to the GDELT fallback
SEARCH_ERRORS = (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError)

_DAY_MONTH_YEAR = re.compile(r'(\d{1,2}\s+\w+\s+\d{4})')


@dataclass(frozen=True)
class Agency:
    """One regulator and how to search it"""
    code: str
    label: str
    domain: str
    search_url: str = ''
    query_param: str = ''
    extra_params: Tuple[Tuple[str, str], ...] = ()
    # doj, cfpb, ftc, fca (JSON) / table, articles, results (HTML) / '' for GDELT only
    parser: str = ''
    quoted: bool = True
    fallback_on_empty: bool = False


AGENCIES: Tuple[Agency, ...] = (
    Agency('doj', 'DOJ', 'justice.gov', 'https://www.justice.gov/api/v1/press-releases.json',
           'keyword', (('sort', 'date'), ('direction', 'DESC'), ('pagesize', '10')), 'doj'),
    Agency('cfpb', 'CFPB', 'consumerfinance.gov',
           'https://www.consumerfinance.gov/data-research/consumer-complaints/search/api/v1/',
           'search_term', (('size', '10'), ('sort', 'created_date_desc')), 'cfpb', quoted=False),
    Agency('ftc', 'FTC', 'ftc.gov', 'https://www.ftc.gov/api/v1/enforcement.json',
           'keyword', (('sort', 'date'), ('direction', 'DESC'), ('pagesize', '10')), 'ftc'),
    Agency('cftc', 'CFTC', 'cftc.gov'),
    Agency('federal_reserve', 'Federal Reserve', 'federalreserve.gov',
           'https://www.federalreserve.gov/supervisionreg/enforcement-actions-search.htm',
           'searchText', (), 'table'),
    Agency('fdic', 'FDIC', 'fdic.gov', 'https://efr.fdic.gov/fcxweb/efr/index.html',
           'name', (('searchAction', 'searchByName'),), 'table'),
    Agency('occ', 'OCC', 'occ.gov'),
    Agency('fca', 'FCA', 'fca.org.uk', 'https://register.fca.org.uk/services/V0.1/Warnings',
           'q', (), 'fca', quoted=False),
    Agency('eu_competition', 'EU Competition', 'ec.europa.eu',
           'https://ec.europa.eu/competition/elojade/isef/index.cfm',
           'case_title', (('fuseaction', 'dsp_result'), ('policy_area_id', '1,2,3')), 'table'),
    Agency('fincen', 'FinCEN', 'fincen.gov', 'https://www.fincen.gov/news-room/enforcement-actions',
           'field_news_title_value', (), 'table', fallback_on_empty=True),
    Agency('sfo', 'SFO', 'sfo.gov.uk', 'https://www.sfo.gov.uk/',
           's', (), 'articles', fallback_on_empty=True),
    Agency('bafin', 'BaFin', 'bafin.de',
           'https://www.bafin.de/SiteGlobals/Forms/Suche/Servicesuche_Formular.html',
           'queryString', (('cl2Categories_Typ', 'Sanktionen'),), 'table', fallback_on_empty=True),
    Agency('mas', 'MAS', 'mas.gov.sg', 'https://www.mas.gov.sg/search',
           'q', (('Content', 'enforcement'),), 'table', fallback_on_empty=True),
    Agency('hkma', 'HKMA', 'hkma.gov.hk', 'https://www.hkma.gov.hk/eng/search-result/',
           'q', (), 'table', fallback_on_empty=True),
    Agency('asic', 'ASIC', 'asic.gov.au', 'https://asic.gov.au/search/',
           'q', (('collection', 'asic-meta'), ('profile', '_default')), 'results',
           fallback_on_empty=True),
)


def make_action(agency: Agency, title: str, date: str, action_type: str, **extra) -> Dict[str, Any]:
    action = {
        'agency': agency.label,
        'title': title,
        'date': date,
        'type': action_type,
        'source': agency.code,
    }
    action.update(extra)
    return action


def classify_doj_action(title: str) -> str:
    t = title.lower()
    if 'indictment' in t or 'indicted' in t:
        return 'INDICTMENT'
    if 'guilty' in t or 'conviction' in t or 'sentenced' in t:
        return 'CRIMINAL_CONVICTION'
    if 'charged' in t:
        return 'CRIMINAL_CHARGE'
    if 'settlement' in t or 'agrees to pay' in t:
        return 'SETTLEMENT'
    if 'forfeiture' in t or 'seizure' in t:
        return 'FORFEITURE'
    if 'sanction' in t:
        return 'SANCTIONS'
    return 'ENFORCEMENT_ACTION'


def classify_sfo_action(title: str) -> str:
    t = title.lower()
    if 'conviction' in t:
        return 'CRIMINAL_CONVICTION'
    if 'charged' in t:
        return 'CRIMINAL_CHARGE'
    if 'investigation' in t:
        return 'INVESTIGATION'
    return 'ENFORCEMENT_ACTION'


def classify_asic_action(title: str) -> str:
    t = title.lower()
    if 'banned' in t:
        return 'BAN'
    if 'penalty' in t or 'infringement' in t:
        return 'PENALTY'
    if 'cancel' in t:
        return 'LICENCE_CANCELLATION'
    if 'court' in t or 'charged' in t:
        return 'CRIMINAL_CHARGE'
    return 'ENFORCEMENT_ACTION'


# ============================================
# JSON SEARCH RESULTS
# ============================================

def doj_actions(data: Dict[str, Any], agency: Agency) -> List[Dict[str, Any]]:
    actions = []
    for r in data.get('results') or []:
        title = r.get('title') or ''
        actions.append(make_action(
            agency, title, r.get('date') or r.get('created') or '', classify_doj_action(title),
            url=f"https://www.justice.gov{r['url']}" if r.get('url') else '',
            summary=r.get('teaser') or (r.get('body') or '')[:300],
        ))
    return actions


def cfpb_actions(data: Dict[str, Any], agency: Agency) -> List[Dict[str, Any]]:
    actions = []
    for hit in (data.get('hits') or {}).get('hits') or []:
        s = hit.get('_source') or {}
        actions.append(make_action(
            agency, f"Complaint: {s.get('product') or 'Unknown product'}",
            s.get('date_received') or '', 'COMPLAINT',
            companyResponse=s.get('company_response') or '',
            issue=s.get('issue') or '',
        ))
    return actions


def ftc_actions(data: Dict[str, Any], agency: Agency) -> List[Dict[str, Any]]:
    return [
        make_action(
            agency, r.get('title') or '', r.get('date') or r.get('created') or '', 'FTC_ACTION',
            url=f"https://www.ftc.gov{r['url']}" if r.get('url') else '',
            summary=r.get('teaser') or '',
        )
        for r in data.get('results') or []
    ]


def fca_actions(data: Dict[str, Any], agency: Agency) -> List[Dict[str, Any]]:
    return [
        make_action(agency, f"Warning: {w.get('Name') or ''}".strip(), w.get('Date') or '',
                    'FCA_WARNING', detail=w.get('Detail') or '')
        for w in data.get('Data') or []
    ]


JSON_PARSERS = {
    'doj': doj_actions,
    'cfpb': cfpb_actions,
    'ftc': ftc_actions,
    'fca': fca_actions,
}


# ============================================
# HTML SEARCH PAGES
# ============================================

def table_actions(content: bytes, agency: Agency) -> List[Dict[str, Any]]:
    """Enforcement tables: first cell is the title, second the date"""
    actions = []
    for cells in html_table_rows(content):
        if len(cells) >= 2 and any(len(c) > 3 for c in cells):
            actions.append(make_action(
                agency, cells[0], cells[1], 'ENFORCEMENT_ACTION', detail=' | '.join(cells[2:])
            ))
    return actions


def article_actions(content: bytes, agency: Agency, name: str) -> List[Dict[str, Any]]:
    """<article> search results whose title names the subject"""
    first_word = (name.lower().split() or [''])[0]
    actions = []
    for article in secure_parse_html(content).iter('article'):
        link = next((a for a in article.iter('a') if a.get('href')), None)
        if link is None:
            continue
        title = element_text(link)
        if first_word not in title.lower():
            continue
        stamp = next(article.iter('time'), None)
        actions.append(make_action(
            agency, title, element_text(stamp), classify_sfo_action(title),
            url=urljoin(agency.search_url, link.get('href')),
        ))
    return actions


def result_list_actions(content: bytes, agency: Agency, name: str) -> List[Dict[str, Any]]:
    """<li class="search-result"> entries that read as enforcement or name the subject"""
    first_word = (name.lower().split() or [''])[0]
    actions = []
    doc = secure_parse_html(content)
    for item in doc.xpath('//li[contains(@class, "search-result")]'):
        link = next((a for a in item.iter('a') if a.get('href')), None)
        if link is None:
            continue
        title = element_text(link)
        t = title.lower()
        enforcement = any(w in t for w in (
            'banned', 'cancel', 'penalty', 'court', 'charged', 'enforceable', 'infringement'
        ))
        if not enforcement and first_word not in t:
            continue
        date = _DAY_MONTH_YEAR.search(element_text(item))
        actions.append(make_action(
            agency, title, date.group(1) if date else '', classify_asic_action(title),
            url=urljoin(agency.search_url, link.get('href')),
        ))
    return actions


def calculate_regulatory_risk(actions: List[Dict[str, Any]]) -> Dict[str, Any]:
    score = 0
    flags: List[RiskFlag] = []

    criminal = [a for a in actions if a['type'] in CRIMINAL_TYPES]
    if criminal:
        score += 50
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.CRIMINAL_ACTION,
            f"{len(criminal)} criminal action(s) found", points=50, source='regulatory'
        ))

    warnings = [a for a in actions if a['type'] in WARNING_TYPES]
    if warnings:
        score += 30
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.REGULATORY_WARNING,
            f"{len(warnings)} regulatory warning(s)/sanctions", points=30, source='regulatory'
        ))

    settlements = [a for a in actions if a['type'] in SETTLEMENT_TYPES]
    if settlements:
        score += 20
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.SETTLEMENT,
            f"{len(settlements)} settlement(s)/forfeiture(s)", points=20, source='regulatory'
        ))

    agencies = list(dict.fromkeys(a['agency'] for a in actions))
    if len(agencies) >= 3:
        score += 15
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.MULTI_AGENCY,
            f"Enforcement actions from {len(agencies)} agencies: {', '.join(agencies)}",
            points=15, source='regulatory'
        ))

    if len(actions) >= 5:
        score += 10
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.HIGH_ACTION_VOLUME,
            f"{len(actions)} total enforcement actions", points=10, source='regulatory'
        ))

    return risk_block(score, flags)


class RegulatoryEnforcementAdapter(SourceAdapter):
    """Regulator enforcement search across fifteen agencies"""

    source_id = 'regulatory'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[BoundedCache] = None,
                 agencies: Sequence[Agency] = AGENCIES):
        super().__init__(config, client)
        self.cache = cache or BoundedCache(max_size=200, ttl_seconds=3600)
        self.agencies = tuple(agencies)

    async def _direct_search(self, agency: Agency, name: str) -> List[Dict[str, Any]]:
        params = {agency.query_param: f'"{name}"' if agency.quoted else name}
        params.update(agency.extra_params)
        if agency.parser in JSON_PARSERS:
            data = await self.get_json(agency.search_url, params=params,
                                       headers={'Accept': 'application/json'})
            return JSON_PARSERS[agency.parser](data, agency)
        content = await self.get_bytes(agency.search_url, params=params)
        if agency.parser == 'articles':
            return article_actions(content, agency, name)
        if agency.parser == 'results':
            return result_list_actions(content, agency, name)
        return table_actions(content, agency)

    async def _gdelt_actions(self, agency: Agency, name: str) -> List[Dict[str, Any]]:
        articles = await search_articles(self, f'"{name}" domain:{agency.domain}', timespan='5y')
        return [
            make_action(agency, a.get('title') or '', seen_date(a.get('seendate')),
                        'PRESS_RELEASE', url=a.get('url') or '')
            for a in articles
        ]

    async def _agency_actions(self, agency: Agency, name: str) -> List[Dict[str, Any]]:
        if agency.search_url:
            try:
                actions = await self._direct_search(agency, name)
            except SEARCH_ERRORS as e:
                logger.debug(f"{agency.label} search failed, using GDELT: {type(e).__name__}: {e}")
            else:
                if actions or not agency.fallback_on_empty:
                    return actions[:MAX_AGENCY_ACTIONS]
        return (await self._gdelt_actions(agency, name))[:MAX_AGENCY_ACTIONS]

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        name = query.subject_text.strip().replace('"', '')
        cache_key = name.lower()
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        results, errors = await gather_lookups(
            self.source_id, {a.code: self._agency_actions(a, name) for a in self.agencies}
        )
        actions = [action for a in self.agencies for action in results.get(a.code, [])]

        payload = {
            'matches': actions[:MAX_ACTIONS],
            'totalResults': len(actions),
            'agencies': {
                a.code: {'count': len(results.get(a.code, [])), 'error': errors.get(a.code)}
                for a in self.agencies
            },
            'risk': calculate_regulatory_risk(actions),
        }
        self.cache.set(cache_key, payload)
        return payload
