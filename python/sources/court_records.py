"""
CourtListener Source Adapter

Federal docket and case-law search through the CourtListener v4 REST API.
Requires COURTLISTENER_API_KEY; without it the adapter returns a neutral
result and makes no call.

Features:
- Docket discovery by party and case name
- Party role from the case caption ("X v. Y")
- Case type from the docket number (-cr-, -bk-, -cv-)
- Opinion snippet analysis for convictions, fraud and adverse judgments
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import SourceAdapter, risk_block

logger = logging.getLogger(__name__)

MAX_DOCKETS = 25
MAX_OPINIONS = 15

_CAPTION_SPLIT = re.compile(r'\s+vs?\.?\s+', re.IGNORECASE)
_TAGS = re.compile(r'<[^>]+>')

GOVERNMENT_PLAINTIFFS = (
    'united states v', 'sec v', 'securities and exchange', 'federal trade commission',
    'commodity futures trading', 'people of the state',
)

SEVERITY_RANK = {'critical': 0, 'high': 1, 'medium': 2, 'low': 3}


def strip_html(text: str) -> str:
    return _TAGS.sub('', text or '').strip()


def party_role(case_name: str, name: str) -> str:
    caption = (case_name or '').lower()
    name = name.lower()
    parts = _CAPTION_SPLIT.split(caption, maxsplit=1)
    if len(parts) == 2:
        if name in parts[1]:
            return 'defendant'
        if name in parts[0]:
            return 'plaintiff'
    if caption.startswith(GOVERNMENT_PLAINTIFFS) and name in caption:
        return 'defendant'
    return 'unknown'


def case_type(docket_number: str, suit_nature: str) -> str:
    number = (docket_number or '').lower()
    nature = (suit_nature or '').lower()
    if '-cr-' in number or '-mj-' in number:
        return 'criminal'
    if '-bk-' in number or '-br-' in number:
        return 'bankruptcy'
    if '-cv-' in number or '-mc-' in number:
        return 'civil'
    if '-ap-' in number:
        return 'appellate'
    if 'criminal' in nature:
        return 'criminal'
    if 'bankruptcy' in nature:
        return 'bankruptcy'
    return 'civil'


def case_severity(case_name: str, suit_nature: str, role: str, kind: str) -> str:
    caption = (case_name or '').lower()
    nature = (suit_nature or '').lower()
    if kind == 'criminal' and role == 'defendant':
        return 'critical'
    if role == 'defendant':
        if caption.startswith('united states v'):
            return 'high'
        if any(agency in caption for agency in (
                'securities and exchange', 'federal trade commission', 'commodity futures trading')):
            return 'high'
        if 'fraud' in nature or 'rico' in nature or 'racketeering' in nature:
            return 'high'
        if kind == 'civil':
            return 'medium'
    return 'low'


def opinion_indicators(text: str, name: str) -> List[str]:
    t = (text or '').lower()
    name = name.lower()
    indicators = []
    if f"defendant {name}" in t or f"{name}, defendant" in t:
        indicators.append('named_defendant')
    if 'convicted' in t or 'guilty' in t:
        indicators.append('conviction_mentioned')
    if 'fraud' in t:
        indicators.append('fraud_mentioned')
    if 'money laundering' in t:
        indicators.append('money_laundering_mentioned')
    if f"judgment against {name}" in t:
        indicators.append('judgment_against')
    if 'liable' in t or 'liability' in t:
        indicators.append('liability_mentioned')
    if 'sanction' in t or 'ofac' in t:
        indicators.append('sanctions_mentioned')
    return indicators


def process_docket(result: Dict[str, Any], name: str) -> Dict[str, Any]:
    caption = result.get('caseName') or result.get('case_name') or ''
    number = result.get('docketNumber') or result.get('docket_number') or ''
    nature = result.get('suitNature') or result.get('nature_of_suit') or ''
    role = party_role(caption, name)
    kind = case_type(number, nature)
    terminated = result.get('dateTerminated') or result.get('date_terminated')
    docket_id = result.get('docket_id') or result.get('id')
    return {
        'id': docket_id,
        'caseNumber': number,
        'caseName': caption,
        'court': result.get('court') or (result.get('court_id') or 'unknown').upper(),
        'caseType': kind,
        'partyRole': role,
        'dateFiled': result.get('dateFiled') or result.get('date_filed'),
        'status': 'closed' if terminated else 'open',
        'suitNature': nature,
        'riskSeverity': case_severity(caption, nature, role, kind),
        'snippet': strip_html(result.get('snippet') or ''),
        'url': (f"https://www.courtlistener.com{result['absolute_url']}"
                if result.get('absolute_url')
                else f"https://www.courtlistener.com/docket/{docket_id}/"),
    }


def process_opinion(result: Dict[str, Any], name: str) -> Dict[str, Any]:
    opinions = result.get('opinions') or [{}]
    snippet = strip_html(opinions[0].get('snippet') or result.get('snippet') or '')
    return {
        'clusterId': result.get('cluster_id') or result.get('id'),
        'caseName': result.get('caseName') or result.get('case_name') or '',
        'court': result.get('court') or '',
        'dateFiled': result.get('dateFiled') or result.get('date_filed'),
        'snippet': snippet,
        'indicators': opinion_indicators(snippet, name),
    }


def calculate_court_risk(cases: List[Dict[str, Any]], opinions: List[Dict[str, Any]]) -> Dict[str, Any]:
    score = 0
    flags: List[RiskFlag] = []
    counts = {level: 0 for level in SEVERITY_RANK}
    for case in cases:
        counts[case['riskSeverity']] += 1

    if counts['critical']:
        points = 40 + (counts['critical'] - 1) * 15
        score += points
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.CRIMINAL_DEFENDANT,
            f"Defendant in {counts['critical']} federal criminal case(s)",
            points=points, source='court_records'
        ))
    if counts['high']:
        points = 20 + (counts['high'] - 1) * 10
        score += points
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.GOVERNMENT_ENFORCEMENT,
            f"Defendant in {counts['high']} government enforcement case(s)",
            points=points, source='court_records'
        ))
    if counts['medium']:
        points = 10 + (counts['medium'] - 1) * 3
        score += points
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.CIVIL_DEFENDANT,
            f"Defendant in {counts['medium']} civil case(s)",
            points=points, source='court_records'
        ))

    open_criminal = [c for c in cases if c['caseType'] == 'criminal' and c['status'] == 'open']
    if open_criminal:
        score += 15
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.OPEN_CRIMINAL_CASE,
            f"{len(open_criminal)} open federal criminal case(s)", points=15, source='court_records'
        ))

    convictions = [o for o in opinions if 'conviction_mentioned' in o['indicators']]
    if convictions:
        score += 25
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.CONVICTION_IN_CASELAW,
            f"Conviction referenced in {len(convictions)} court opinion(s)",
            points=25, source='court_records'
        ))
    fraud = [o for o in opinions
             if {'fraud_mentioned', 'money_laundering_mentioned'} & set(o['indicators'])]
    if fraud:
        score += 15
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.FRAUD_IN_CASELAW,
            f"Fraud/financial crime mentioned in {len(fraud)} court opinion(s)",
            points=15, source='court_records'
        ))
    judgments = [o for o in opinions
                 if {'judgment_against', 'liability_mentioned'} & set(o['indicators'])]
    if judgments:
        score += 10
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.ADVERSE_JUDGMENT,
            f"Judgment/liability found in {len(judgments)} court opinion(s)",
            points=10, source='court_records'
        ))

    block = risk_block(score, flags)
    block['severityCounts'] = counts
    return block


class CourtListenerAdapter(SourceAdapter):
    """Federal litigation screening"""

    source_id = 'court_records'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, client)

    async def _run_search(self, q: str, search_type: str, order_by: str) -> List[Dict[str, Any]]:
        data = await self.get_json(
            f"{self.base_url}/search/",
            params={'q': q, 'type': search_type, 'order_by': order_by},
            headers={'Authorization': f"Token {self.api_key}"},
        )
        return data.get('results') or []

    async def _gather_unique(self, calls, key: str) -> List[Dict[str, Any]]:
        responses = await asyncio.gather(*calls, return_exceptions=True)
        failures = [r for r in responses if isinstance(r, BaseException)]
        if failures and len(failures) == len(responses):
            raise failures[0]
        seen = set()
        unique = []
        for response in responses:
            if isinstance(response, BaseException):
                logger.warning(f"⚠ CourtListener query failed: {response}")
                continue
            for item in response:
                item_id = item.get(key) or item.get('id')
                if item_id in seen:
                    continue
                seen.add(item_id)
                unique.append(item)
        return unique

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        name = query.subject_text.strip()
        quoted = name.replace('"', '')
        dockets, opinions = await asyncio.gather(
            self._gather_unique([
                self._run_search(f'party:"{quoted}"', 'r', 'dateFiled desc'),
                self._run_search(f'caseName:"{quoted}"', 'r', 'dateFiled desc'),
            ], 'docket_id'),
            self._gather_unique([
                self._run_search(f'caseName:"{quoted}"', 'o', 'score desc'),
            ], 'cluster_id'),
        )

        cases = [process_docket(d, name) for d in dockets[:MAX_DOCKETS]]
        cases.sort(key=lambda c: SEVERITY_RANK[c['riskSeverity']])
        caselaw = [process_opinion(o, name) for o in opinions[:MAX_OPINIONS]]

        return {
            'matches': cases,
            'caselaw': caselaw,
            'totalResults': len(cases),
            'summary': {
                'totalCases': len(cases),
                'asDefendant': sum(1 for c in cases if c['partyRole'] == 'defendant'),
                'asPlaintiff': sum(1 for c in cases if c['partyRole'] == 'plaintiff'),
                'criminalCases': sum(1 for c in cases if c['caseType'] == 'criminal'),
                'civilCases': sum(1 for c in cases if c['caseType'] == 'civil'),
            },
            'risk': calculate_court_risk(cases, caselaw),
        }
