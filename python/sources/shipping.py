"""
Shipping and Trade Source Adapter

Maritime and trade compliance screening:
- UN Comtrade bilateral trade preview (falls back to a GDELT search of
  US trade enforcement domains when Comtrade is unavailable)
- ITU MARS ship registry
- MarineTraffic vessel data when MARINETRAFFIC_API_KEY is set

Vessels are scored on their flag state, trade records on the partner
country, and enforcement articles by count.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import BoundedCache, SourceAdapter, gather_lookups, risk_block
from sources.gdelt import domain_filter, search_articles, seen_date

logger = logging.getLogger(__name__)

COMTRADE_PREVIEW_URL = "https://comtradeapi.un.org/public/v1/preview/C/A/HS"
ITU_MARS_URL = "https://webapp.itu.int/MARS/api/ship"
MARINETRAFFIC_URL = "https://services.marinetraffic.com/api/exportvessel/v:5"

TRADE_DOMAINS = ('treasury.gov', 'commerce.gov', 'bis.doc.gov', 'trade.gov')

# Flag states: full names match by containment, ISO codes match exactly
SANCTIONED_FLAG_NAMES = ('north korea', 'dprk', 'iran', 'syria', 'cuba', 'crimea')
SANCTIONED_FLAG_CODES = frozenset({'kp', 'ir', 'sy', 'cu'})
CONVENIENCE_FLAG_NAMES = (
    'panama', 'liberia', 'marshall islands', 'bahamas', 'malta', 'cyprus', 'bermuda',
    'antigua', 'st kitts', 'vanuatu', 'comoros', 'togo', 'mongolia', 'tanzania', 'palau',
    'sierra leone', 'cameroon', 'bolivia',
)
CONVENIENCE_FLAG_CODES = frozenset({
    'pa', 'lr', 'mh', 'bs', 'mt', 'cy', 'bm', 'ag', 'kn', 'vu', 'km', 'tg', 'mn', 'tz', 'pw',
    'sl', 'cm', 'bo',
})
EMBARGOED_COUNTRIES = (
    'north korea', 'iran', 'syria', 'cuba', 'crimea', 'russia', 'belarus', 'myanmar', 'venezuela'
)
MAX_RECORDS = 20


def flag_in(flag: str, names, codes) -> bool:
    f = (flag or '').strip().lower()
    if not f:
        return False
    if len(f) <= 3:
        return f in codes
    return any(n in f for n in names)


def trade_name_match(name: str, record: Dict[str, Any]) -> bool:
    """Reporter or partner description contains the name, or the reverse"""
    needle = name.lower()
    for field in ('reporterDesc', 'partnerDesc'):
        value = (record.get(field) or '').lower()
        if value and (needle in value or value in needle):
            return True
    return False


def normalize_ship(ship: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'name': ship.get('shipName') or ship.get('name') or '',
        'mmsi': str(ship.get('mmsi') or ''),
        'imo': str(ship.get('imo') or ''),
        'callSign': ship.get('callSign') or '',
        'flag': ship.get('flag') or ship.get('flagState') or '',
        'shipType': ship.get('shipType') or ship.get('type') or '',
        'owner': ship.get('owner') or ship.get('shipOwner') or '',
        'source': 'itu_mars',
    }


def normalize_marinetraffic(vessel: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'name': vessel.get('SHIPNAME') or '',
        'mmsi': str(vessel.get('MMSI') or ''),
        'imo': str(vessel.get('IMO') or ''),
        'flag': vessel.get('FLAG') or '',
        'shipType': str(vessel.get('SHIPTYPE') or ''),
        'status': str(vessel.get('STATUS') or ''),
        'destination': vessel.get('DESTINATION') or '',
        'lastPort': vessel.get('LAST_PORT') or '',
        'source': 'marinetraffic',
    }


def calculate_shipping_risk(vessels: List[Dict[str, Any]], trade: List[Dict[str, Any]],
                            enforcement: List[Dict[str, Any]]) -> Dict[str, Any]:
    score = 0
    flags: List[RiskFlag] = []

    sanctioned = [
        v for v in vessels if flag_in(v['flag'], SANCTIONED_FLAG_NAMES, SANCTIONED_FLAG_CODES)
    ]
    if sanctioned:
        score += 50
        states = ', '.join(sorted({v['flag'] for v in sanctioned}))
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.SANCTIONED_FLAG,
            f"{len(sanctioned)} vessel(s) flagged to sanctioned state(s): {states}",
            points=50, source='shipping'
        ))

    convenience = [
        v for v in vessels if flag_in(v['flag'], CONVENIENCE_FLAG_NAMES, CONVENIENCE_FLAG_CODES)
    ]
    if convenience:
        score += 10
        flags.append(RiskFlag(
            Severity.LOW, FlagCategory.FLAG_OF_CONVENIENCE,
            f"{len(convenience)} vessel(s) with flag(s) of convenience", points=10, source='shipping'
        ))

    embargo = [
        t for t in trade
        if any(c in (t.get('partner') or '').lower() for c in EMBARGOED_COUNTRIES)
    ]
    if embargo:
        score += 40
        partners = ', '.join(sorted({t['partner'] for t in embargo}))
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.EMBARGO_TRADE,
            f"Trade records with embargoed countries: {partners}", points=40, source='shipping'
        ))

    if enforcement:
        score += 20
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.TRADE_ENFORCEMENT,
            f"{len(enforcement)} trade-related enforcement action(s)", points=20, source='shipping'
        ))

    return risk_block(score, flags)


class ShippingTradeAdapter(SourceAdapter):
    """Vessel registry and trade data screening"""

    source_id = 'shipping'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[BoundedCache] = None):
        super().__init__(config, client)
        self.cache = cache or BoundedCache(max_size=200, ttl_seconds=3600)

    async def _trade_enforcement(self, name: str) -> Dict[str, List[Dict[str, Any]]]:
        query = (f'"{name}" (sanctions OR embargo OR trade OR export OR import) '
                 f'({domain_filter(TRADE_DOMAINS)})')
        articles = await search_articles(self, query, timespan='3y')
        return {
            'tradeRecords': [],
            'enforcementActions': [
                {
                    'title': a.get('title') or '',
                    'url': a.get('url') or '',
                    'date': seen_date(a.get('seendate')),
                    'source': 'trade_enforcement',
                }
                for a in articles
            ],
        }

    async def _comtrade(self, name: str) -> Dict[str, List[Dict[str, Any]]]:
        try:
            data = await self.get_json(COMTRADE_PREVIEW_URL, params={
                'period': 2023, 'cmdCode': 'TOTAL', 'flowCode': 'M,X',
                'customsCode': 'C00', 'motCode': 0,
            })
            records = data.get('data') or []
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.info(f"UN Comtrade unavailable ({type(e).__name__}), using trade enforcement search")
            return await self._trade_enforcement(name)

        trade = [
            {
                'reporter': r.get('reporterDesc') or '',
                'partner': r.get('partnerDesc') or '',
                'year': r.get('period'),
                'flow': r.get('flowDesc') or '',
                'tradeValue': r.get('primaryValue'),
                'commodity': r.get('cmdDesc') or 'Total',
                'source': 'un_comtrade',
            }
            for r in records if trade_name_match(name, r)
        ]
        return {'tradeRecords': trade[:MAX_RECORDS], 'enforcementActions': []}

    async def _itu_mars(self, query: ScreeningQuery) -> List[Dict[str, Any]]:
        data = await self.get_json(
            ITU_MARS_URL, params={'shipName': query.subject_text},
            headers={'Accept': 'application/json'},
        )
        ships = data if isinstance(data, list) else (data.get('ships') or data.get('results') or [])
        return [normalize_ship(s) for s in ships[:MAX_RECORDS]]

    async def _marinetraffic(self, query: ScreeningQuery) -> List[Dict[str, Any]]:
        url = f"{MARINETRAFFIC_URL}/{self.api_key}/shipname:{query.subject_text}/protocol:jsono"
        data = await self.get_json(url)
        return [normalize_marinetraffic(v) for v in (data if isinstance(data, list) else [data])]

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        name = query.subject_text.strip().replace('"', '')
        cache_key = name.lower()
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        lookups = {'un_comtrade': self._comtrade(name), 'itu_mars': self._itu_mars(query)}
        if self.api_key:
            lookups['marinetraffic'] = self._marinetraffic(query)
        results, errors = await gather_lookups(self.source_id, lookups)

        trade_data = results.get('un_comtrade') or {'tradeRecords': [], 'enforcementActions': []}
        vessels = results.get('itu_mars', []) + results.get('marinetraffic', [])
        trade = trade_data['tradeRecords']
        enforcement = trade_data['enforcementActions']

        payload = {
            'matches': vessels,
            'tradeRecords': trade,
            'enforcementActions': enforcement,
            'totalResults': len(vessels) + len(trade) + len(enforcement),
            'lookupErrors': errors,
            'risk': calculate_shipping_risk(vessels, trade, enforcement),
        }
        self.cache.set(cache_key, payload)
        return payload
