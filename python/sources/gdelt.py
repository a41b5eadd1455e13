"""
GDELT DOC API helpers

Article search restricted to official domains. Used by sources whose own
search endpoint is missing or unreliable.
"""

from typing import Any, Dict, Iterable, List, Optional

GDELT_DOC_URL = "https://api.gdeltproject.org/api/v2/doc/doc"


def seen_date(value: Optional[str]) -> str:
    """GDELT seendate (20240131T120000Z) as an ISO date"""
    digits = (value or '')[:8]
    if len(digits) != 8 or not digits.isdigit():
        return ''
    return f"{digits[:4]}-{digits[4:6]}-{digits[6:]}"


def domain_filter(domains: Iterable[str]) -> str:
    return ' OR '.join(f"domain:{d}" for d in domains)


async def search_articles(adapter, query: str, max_records: int = 10,
                          timespan: str = '2y') -> List[Dict[str, Any]]:
    """Run an ArtList query through the adapter's HTTP client

    Args:
        adapter: SourceAdapter whose client and error boundary are used
        query: GDELT query string, e.g. '"Acme" domain:justice.gov'
        max_records: GDELT maxrecords
        timespan: GDELT timespan (1y, 5y...)
    """
    data = await adapter.get_json(GDELT_DOC_URL, params={
        'query': query,
        'mode': 'ArtList',
        'maxrecords': max_records,
        'format': 'json',
        'timespan': timespan,
    })
    return data.get('articles') or []
