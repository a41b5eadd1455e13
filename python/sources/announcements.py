"""
Sanctions Announcement Source Adapter

Checks official announcements for mentions of the subject:
- OFAC recent-actions RSS feed (designations appear here before the SDN
  list download is updated)
- OpenSanctions match API
- EU Council / Commission / EEAS and UK government press, through GDELT

The OFAC feed is required. The other lookups are reported in
``lookupErrors`` when they fail.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import BoundedCache, SourceAdapter, gather_lookups, risk_block
from sources.gdelt import domain_filter, search_articles, seen_date
from xml_utils import parse_rss_items, rss_date

logger = logging.getLogger(__name__)

FEED_CACHE_KEY = 'ofac-rss'
FEED_TTL_SECONDS = 30 * 60

OPENSANCTIONS_MATCH_URL = "https://api.opensanctions.org/match/default"
OPENSANCTIONS_MIN_SCORE = 0.5
EU_DOMAINS = ('consilium.europa.eu', 'ec.europa.eu', 'eeas.europa.eu')
GDELT_VARIANTS = 2

SANCTIONS_KEYWORDS = (
    'sanctioned', 'designated', 'blocked', 'frozen', 'prohibited',
    'restricted', 'specially designated', 'sdn', 'ofac', 'asset freeze',
    'travel ban', 'arms embargo', 'executive order', 'listed',
    'sanctions evasion', 'sectoral sanctions', 'secondary sanctions',
)
EU_KEYWORDS = SANCTIONS_KEYWORDS + ('restrictive measures',)


def name_variants(name: str) -> List[str]:
    """Subject spellings as they appear in press text ("Last, First" and "First Last")"""
    name = name.strip()
    variants = [name]
    if ',' in name:
        parts = [p.strip() for p in name.split(',')]
        if len(parts) == 2 and all(parts):
            variants.append(f"{parts[1]} {parts[0]}")
            if len(parts[0]) > 4:
                variants.append(parts[0])
    else:
        parts = name.split()
        if len(parts) >= 2:
            last, first = parts[-1], ' '.join(parts[:-1])
            variants.append(f"{last}, {first}")
            if len(last) > 4:
                variants.append(last)
    return variants


def match_items(items: List[Dict[str, Optional[str]]], variants: List[str]) -> List[Dict[str, Any]]:
    lowered = [v.lower() for v in variants]
    findings = []
    for item in items:
        text = f"{item.get('title') or ''} {item.get('description') or ''}".lower()
        if not any(v in text for v in lowered):
            continue
        keyword = any(kw in text for kw in SANCTIONS_KEYWORDS)
        findings.append({
            'source': 'OFAC Recent Actions',
            'title': item.get('title') or '',
            'url': item.get('link') or '',
            'date': rss_date(item.get('published')),
            'confidence': 0.95 if keyword else 0.75,
            'severity': 'CRITICAL' if keyword else 'HIGH',
        })
    return findings


def opensanctions_findings(data: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
    findings = []
    for response in (data.get('responses') or {}).values():
        for r in response.get('results') or []:
            score = float(r.get('score') or 0)
            if score < OPENSANCTIONS_MIN_SCORE:
                continue
            datasets = r.get('datasets') or []
            topics = (r.get('properties') or {}).get('topics') or []
            sanctioned = (
                any('sanction' in d.lower() for d in datasets)
                or any('sanction' in t for t in topics)
            )
            if score >= 0.9 and sanctioned:
                severity = 'CRITICAL'
            elif score >= 0.7:
                severity = 'HIGH'
            else:
                severity = 'MEDIUM'
            findings.append({
                'source': 'OpenSanctions',
                'title': r.get('caption') or name,
                'url': f"https://opensanctions.org/entities/{r.get('id')}/",
                'date': '',
                'confidence': score,
                'severity': severity,
                'details': f"Datasets: {', '.join(datasets)}. Topics: {', '.join(topics)}",
                'sanctioned': sanctioned,
            })
    return findings


def dedupe_findings(findings: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for f in findings:
        key = f['url'] or f['title']
        if key in seen:
            continue
        seen.add(key)
        unique.append(f)
    return unique


def calculate_announcement_risk(findings: List[Dict[str, Any]]) -> Dict[str, Any]:
    score = 0
    flags: List[RiskFlag] = []
    critical = [f for f in findings if f['severity'] == 'CRITICAL']
    high = [f for f in findings if f['severity'] == 'HIGH']

    if critical:
        score += 80
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.SANCTIONS_ANNOUNCEMENT,
            f"Sanctions announcement detected: {critical[0]['title'][:100]}",
            points=80, source='announcements'
        ))
    if high:
        points = min(len(high) * 15, 30)
        score += points
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.SANCTIONS_MENTIONS,
            f"{len(high)} sanctions-related mention(s) in official announcements",
            points=points, source='announcements'
        ))

    listed = next((
        f for f in findings
        if f['source'] == 'OpenSanctions' and f.get('sanctioned') and f['confidence'] >= 0.8
    ), None)
    if listed:
        score = max(score, 90)
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.OPENSANCTIONS_MATCH,
            f"OpenSanctions match ({listed['confidence'] * 100:.0f}%): {listed['title']}, {listed['details']}",
            source='announcements'
        ))
    return risk_block(score, flags)


class SanctionsAnnouncementAdapter(SourceAdapter):
    """OFAC recent actions feed plus OpenSanctions, EU and UK announcements"""

    source_id = 'announcements'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[BoundedCache] = None):
        super().__init__(config, client)
        self.cache = cache or BoundedCache(max_size=4, ttl_seconds=FEED_TTL_SECONDS)

    async def _feed_items(self) -> List[Dict[str, Optional[str]]]:
        items = self.cache.get(FEED_CACHE_KEY)
        if items is None:
            content = await self.get_bytes(self.base_url)
            items = parse_rss_items(content)
            self.cache.set(FEED_CACHE_KEY, items)
            logger.debug(f"Fetched {len(items)} OFAC recent actions")
        return items

    async def _opensanctions(self, name: str, variants: List[str]) -> List[Dict[str, Any]]:
        headers = {'Accept': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"ApiKey {self.api_key}"
        body = {
            'queries': {
                'subject': {
                    'schema': 'Person',
                    'properties': {'name': [name] + variants[1:4]},
                },
            },
        }
        async with self.http() as client:
            response = await client.post(
                OPENSANCTIONS_MATCH_URL, params={'algorithm': 'best', 'limit': 5},
                json=body, headers=headers,
            )
            response.raise_for_status()
            return opensanctions_findings(response.json(), name)

    async def _eu_council(self, variants: List[str]) -> List[Dict[str, Any]]:
        findings = []
        for variant in variants[:GDELT_VARIANTS]:
            query = f'"{variant}" ({domain_filter(EU_DOMAINS)})'
            for a in await search_articles(self, query, max_records=5, timespan='2y'):
                title = (a.get('title') or '').lower()
                keyword = any(kw in title for kw in EU_KEYWORDS)
                findings.append({
                    'source': 'EU Council/Commission',
                    'title': a.get('title') or '',
                    'url': a.get('url') or '',
                    'date': seen_date(a.get('seendate')),
                    'confidence': 0.85 if keyword else 0.6,
                    'severity': 'HIGH' if keyword else 'MEDIUM',
                    'details': f"EU source: {a.get('domain') or ''}",
                })
        return findings

    async def _uk_ofsi(self, variants: List[str]) -> List[Dict[str, Any]]:
        findings = []
        for variant in variants[:GDELT_VARIANTS]:
            query = f'"{variant}" (domain:gov.uk) sanctions OR designated OR frozen'
            for a in await search_articles(self, query, max_records=5, timespan='2y'):
                findings.append({
                    'source': 'UK Government',
                    'title': a.get('title') or '',
                    'url': a.get('url') or '',
                    'date': seen_date(a.get('seendate')),
                    'confidence': 0.8,
                    'severity': 'HIGH',
                    'details': f"UK government source: {a.get('domain') or ''}",
                })
        return findings

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        name = query.subject_text.strip().replace('"', '')
        variants = name_variants(name)
        results, errors = await gather_lookups(self.source_id, {
            'ofac_recent_actions': self._feed_items(),
            'opensanctions': self._opensanctions(name, variants),
            'eu_council': self._eu_council(variants),
            'uk_ofsi': self._uk_ofsi(variants),
        }, require_one=False, required=('ofac_recent_actions',))

        items = results['ofac_recent_actions']
        findings = dedupe_findings(
            match_items(items, variants)
            + results.get('opensanctions', [])
            + results.get('eu_council', [])
            + results.get('uk_ofsi', [])
        )
        findings.sort(key=lambda f: (Severity(f['severity']).rank, -f['confidence']))
        return {
            'actions': findings[:30],
            'matches': [],
            'totalResults': len(findings),
            'feedSize': len(items),
            'hasSanctionsAnnouncement': any(
                f['severity'] == 'CRITICAL' or f['confidence'] >= 0.9 for f in findings
            ),
            'lookupErrors': errors,
            'checkedAt': datetime.now(timezone.utc).isoformat(),
            'risk': calculate_announcement_risk(findings),
        }
