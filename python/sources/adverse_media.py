"""
Adverse Media Source Adapter

News screening through GDELT, Google News RSS and a GDELT search restricted
to US enforcement domains.

Articles are deduplicated by headline and then categorized by keywords
(sanctions evasion, money laundering, fraud, corruption, financial crime).
Relevance depends on whether the headline names the subject in an adverse
context.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import BoundedCache, SourceAdapter, gather_lookups, risk_block
from sources.gdelt import domain_filter, search_articles, seen_date
from xml_utils import parse_rss_items, rss_date

logger = logging.getLogger(__name__)

GOOGLE_NEWS_RSS = "https://news.google.com/rss/search"

COMPLIANCE_TERMS = ('sanctions', 'fraud', 'money laundering', 'corruption')
SEARCH_TERMS_USED = 3
GOVERNMENT_DOMAINS = ('sec.gov', 'justice.gov', 'treasury.gov', 'fincen.gov')
MAX_ARTICLES = 20

HIGH_CREDIBILITY = (
    'reuters', 'associated press', 'ap news', 'bbc', 'financial times', 'ft.com',
    'wall street journal', 'wsj', 'new york times', 'nytimes', 'bloomberg',
    'washington post', 'the guardian', 'sec.gov', 'justice.gov', 'treasury.gov',
    'fincen.gov', 'ofac', 'economist', 'politico',
)
LOW_CREDIBILITY = ('blog', 'wordpress', 'medium.com', 'substack', 'reddit', 'twitter', 'x.com')

# Most serious first; the first matching category wins
CATEGORY_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ('SANCTIONS_EVASION', ('sanctions evasion', 'evade sanctions', 'evading sanctions',
                           'sanctions violation', 'violated sanctions', 'sanctions busting')),
    ('MONEY_LAUNDERING', ('money laundering', 'laundered', 'laundering')),
    ('FRAUD', ('fraud', 'ponzi', 'embezzle', 'scam')),
    ('CORRUPTION', ('corruption', 'bribery', 'bribe', 'kickback')),
    ('FINANCIAL_CRIME', ('indicted', 'indictment', 'charged', 'convicted', 'pleaded guilty',
                         'insider trading', 'tax evasion', 'market manipulation')),
)
CATEGORIES = tuple(c for c, _ in CATEGORY_KEYWORDS) + ('OTHER',)
SEVERE_CATEGORIES = ('SANCTIONS_EVASION', 'MONEY_LAUNDERING')
SERIOUS_CATEGORIES = ('FINANCIAL_CRIME', 'FRAUD', 'CORRUPTION')

RELEVANCE_POINTS = {'HIGH': 25, 'MEDIUM': 10, 'LOW': 3}

_NON_ALNUM = re.compile(r'[^a-z0-9]')


def search_terms(name: str) -> List[str]:
    base = f'"{name}"'
    return [base] + [f"{base} {term}" for term in COMPLIANCE_TERMS]


def source_credibility(source: str) -> str:
    s = (source or '').lower()
    if any(h in s for h in HIGH_CREDIBILITY):
        return 'HIGH'
    if any(l in s for l in LOW_CREDIBILITY):
        return 'LOW'
    return 'MEDIUM'


def categorize(text: str) -> str:
    t = (text or '').lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in t for k in keywords):
            return category
    return 'OTHER'


def assess(article: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Fill in category and relevance from the headline and summary"""
    text = f"{article['headline']} {article['summary']}"
    named = name.lower() in text.lower()
    article['category'] = categorize(text)
    if article['rawSource'] == 'Government' or (named and article['category'] != 'OTHER'):
        article['relevance'] = 'HIGH'
    elif named:
        article['relevance'] = 'MEDIUM'
    else:
        article['relevance'] = 'LOW'
    return article


def dedupe_articles(articles: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for article in articles:
        key = _NON_ALNUM.sub('', article['headline'].lower())[:80]
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(article)
    return unique


def calculate_media_risk(articles: List[Dict[str, Any]]) -> Dict[str, Any]:
    score = 0
    counts = {'HIGH': 0, 'MEDIUM': 0, 'LOW': 0}
    categories = {c: 0 for c in CATEGORIES}
    for article in articles:
        relevance = article['relevance']
        counts[relevance] += 1
        categories[article['category']] += 1
        score += RELEVANCE_POINTS[relevance]
        if article['category'] in SEVERE_CATEGORIES:
            score += 15
        elif article['category'] in SERIOUS_CATEGORIES:
            score += 10
        if article['sourceCredibility'] == 'HIGH':
            score += 5

    flags: List[RiskFlag] = []
    if articles:
        severity = Severity.HIGH if counts['HIGH'] else (
            Severity.MEDIUM if counts['MEDIUM'] else Severity.LOW
        )
        flags.append(RiskFlag(
            severity, FlagCategory.ADVERSE_MEDIA,
            f"{len(articles)} media article(s), {counts['HIGH']} of high relevance",
            points=min(score, 100), source='adverse_media'
        ))
    found = [c for c in CATEGORIES if c != 'OTHER' and categories[c]]
    if found:
        severe = any(c in SEVERE_CATEGORIES for c in found)
        flags.append(RiskFlag(
            Severity.HIGH if severe else Severity.MEDIUM, FlagCategory.FINANCIAL_CRIME_MEDIA,
            "Coverage of " + ', '.join(
                f"{c.lower().replace('_', ' ')} ({categories[c]})" for c in found
            ),
            source='adverse_media'
        ))

    block = risk_block(score, flags)
    block['severityCounts'] = counts
    return block


class AdverseMediaAdapter(SourceAdapter):
    """Negative news screening"""

    source_id = 'adverse_media'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[BoundedCache] = None):
        super().__init__(config, client)
        self.cache = cache or BoundedCache(max_size=200, ttl_seconds=15 * 60)

    async def _gdelt(self, term: str) -> List[Dict[str, Any]]:
        return [
            {
                'headline': a.get('title') or '',
                'source': a.get('domain') or 'Unknown',
                'sourceCredibility': source_credibility(a.get('domain') or ''),
                'date': seen_date(a.get('seendate')),
                'summary': a.get('title') or '',
                'url': a.get('url') or '',
                'rawSource': 'GDELT',
            }
            for a in await search_articles(self, term, timespan='2y')
        ]

    async def _google_news(self, term: str) -> List[Dict[str, Any]]:
        content = await self.get_bytes(GOOGLE_NEWS_RSS, params={
            'q': term, 'hl': 'en-US', 'gl': 'US', 'ceid': 'US:en',
        })
        return [
            {
                'headline': item['title'],
                'source': item.get('source') or 'Google News',
                'sourceCredibility': source_credibility(item.get('source') or ''),
                'date': rss_date(item.get('published')),
                'summary': item.get('description') or item['title'],
                'url': item.get('link') or '',
                'rawSource': 'Google News',
            }
            for item in parse_rss_items(content)
        ]

    async def _government(self, name: str) -> List[Dict[str, Any]]:
        query = f'"{name}" ({domain_filter(GOVERNMENT_DOMAINS)})'
        return [
            {
                'headline': a.get('title') or '',
                'source': a.get('domain') or 'Government',
                'sourceCredibility': 'HIGH',
                'date': seen_date(a.get('seendate')),
                'summary': a.get('title') or '',
                'url': a.get('url') or '',
                'rawSource': 'Government',
            }
            for a in await search_articles(self, query, timespan='5y')
        ]

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        name = query.subject_text.strip().replace('"', '')
        cache_key = name.lower()
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        terms = search_terms(name)[:SEARCH_TERMS_USED]
        lookups = {}
        for i, term in enumerate(terms):
            lookups[f"gdelt:{i}"] = self._gdelt(term)
            lookups[f"google_news:{i}"] = self._google_news(term)
        lookups['government'] = self._government(name)
        results, errors = await gather_lookups(self.source_id, lookups)

        collected = [article for key in lookups for article in results.get(key, [])]
        articles = [assess(a, name) for a in dedupe_articles(collected)]
        risk = calculate_media_risk(articles)

        payload = {
            'matches': articles[:MAX_ARTICLES],
            'totalResults': len(articles),
            'status': 'FINDINGS' if any(
                a['relevance'] == 'HIGH' or a['category'] != 'OTHER' for a in articles
            ) else 'CLEAR',
            'categories': {c: sum(1 for a in articles if a['category'] == c) for c in CATEGORIES},
            'searchTerms': terms,
            'lookupErrors': errors,
            'risk': risk,
        }
        self.cache.set(cache_key, payload)
        return payload
