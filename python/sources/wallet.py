"""
Crypto Wallet Source Adapters

- SanctionedWalletAdapter: published sanctioned-address lists, the known
  sanctioned services table and (with a key) the OpenSanctions match API
- OfacWalletAdapter: digital currency addresses listed in SDN remarks

Wallet matching is exact only. Partial address similarity is not evidence.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from list_cache import ReferenceListCache
from matcher import NameMatcher
from models import FlagCategory, MatchType, RiskFlag, ScreeningQuery, Severity
from reference_lists import KNOWN_SANCTIONED_SERVICES
from sources.base import SourceAdapter, SourceUnavailable, empty_risk, risk_block

logger = logging.getLogger(__name__)

OPENSANCTIONS_MIN_SCORE = 0.7

# Prefixed formats are checked before the generic base58 (SOL) pattern
CHAIN_PATTERNS = (
    ('ETH', re.compile(r'^0x[a-fA-F0-9]{40}$')),
    ('XBT', re.compile(r'^bc1[a-zA-HJ-NP-Z0-9]{25,90}$')),
    ('XBT', re.compile(r'^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$')),
    ('TRX', re.compile(r'^T[a-zA-Z0-9]{33}$')),
    ('XRP', re.compile(r'^r[0-9a-zA-Z]{24,34}$')),
    ('LTC', re.compile(r'^L[a-km-zA-HJ-NP-Z1-9]{26,33}$')),
    ('DASH', re.compile(r'^X[1-9A-HJ-NP-Za-km-z]{33}$')),
    ('ZEC', re.compile(r'^t1[a-km-zA-HJ-NP-Z1-9]{33}$')),
    ('XMR', re.compile(r'^4[0-9AB][1-9A-HJ-NP-Za-km-z]{93}$')),
    ('SOL', re.compile(r'^[1-9A-HJ-NP-Za-km-z]{32,44}$')),
)


def detect_chain(address: str) -> Optional[str]:
    """Identify the blockchain an address belongs to, or None"""
    candidate = (address or '').strip()
    for chain, pattern in CHAIN_PATTERNS:
        if pattern.match(candidate):
            return chain
    return None


def is_wallet_address(text: str) -> bool:
    return detect_chain(text) is not None


class SanctionedWalletAdapter(SourceAdapter):
    """Exact lookup in the sanctioned wallet lists"""

    source_id = 'wallet'

    def __init__(self, config: SourceConfig, cache: ReferenceListCache,
                 matcher: Optional[NameMatcher] = None,
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, client)
        self.cache = cache
        self.matcher = matcher or NameMatcher()

    async def _opensanctions_match(self, address: str, chain: str) -> List[Dict[str, Any]]:
        body = {
            'queries': {
                'wallet': {
                    'schema': 'CryptoWallet',
                    'properties': {'publicKey': [address], 'currency': [chain]},
                }
            }
        }
        data = await self.post_json(
            f"{self.base_url}/match/default?algorithm=best&limit=3",
            body,
            headers={'Authorization': f"ApiKey {self.api_key}", 'Accept': 'application/json'},
        )
        hits = []
        for response in (data.get('responses') or {}).values():
            for result in response.get('results') or []:
                score = float(result.get('score') or 0)
                if score >= OPENSANCTIONS_MIN_SCORE:
                    hits.append({
                        'entity': result.get('caption') or result.get('name'),
                        'datasets': result.get('datasets') or [],
                        'score': score,
                        'url': f"https://opensanctions.org/entities/{result.get('id')}/",
                    })
        return hits

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        address = query.subject_text.strip()
        chain = detect_chain(address)
        if chain is None:
            return {
                'status': 'INVALID',
                'address': address,
                'matches': [],
                'totalResults': 0,
                'error': 'Not a recognized wallet address format',
                'risk': empty_risk(),
            }

        records = await self.cache.get()
        matches: List[Dict[str, Any]] = []
        for candidate, record in self.matcher.search_wallet(address, records):
            if candidate.match_type != MatchType.ADDRESS_EXACT:
                continue
            matches.append({
                **candidate.to_dict(),
                'chain': next(iter(record.addresses)).currency if record.addresses else chain,
                'program': ', '.join(sorted(record.programs)) or None,
                'service': record.primary_name if record.source == 'KNOWN_SERVICE' else None,
                'source': record.source,
            })

        # Known services are checked even when the downloaded lists are unavailable
        service = KNOWN_SANCTIONED_SERVICES.get(address.lower())
        if service and not any(m['source'] == 'KNOWN_SERVICE' for m in matches):
            name, service_chain, program, designated = service
            matches.append({
                'record_id': f"{service_chain}:{address.lower()}",
                'match_type': MatchType.ADDRESS_EXACT.value,
                'confidence': 1.0,
                'matched_name': name,
                'chain': service_chain,
                'program': program,
                'service': name,
                'designationDate': designated,
                'source': 'KNOWN_SERVICE',
            })

        open_sanctions: List[Dict[str, Any]] = []
        open_sanctions_error = None
        if self.api_key:
            try:
                open_sanctions = await self._opensanctions_match(address, chain)
            except (httpx.HTTPError, ValueError) as e:
                # The list lookup still stands on its own
                open_sanctions_error = f"{type(e).__name__}: {e}"
                logger.warning(f"⚠ OpenSanctions wallet check failed: {open_sanctions_error}")

        if not records and not matches:
            raise SourceUnavailable("sanctioned wallet list not loaded")

        blocked = bool(matches) or bool(open_sanctions)
        flags = []
        if matches:
            top = matches[0]
            label = top['service'] or 'OFAC sanctioned address list'
            flags.append(RiskFlag(
                Severity.CRITICAL, FlagCategory.SANCTIONED_WALLET,
                f"Address {address} is sanctioned ({label}, program {top['program'] or 'see SDN entry'})",
                points=100, source=self.source_id
            ))
        if open_sanctions:
            flags.append(RiskFlag(
                Severity.CRITICAL, FlagCategory.OPENSANCTIONS_WALLET,
                f"OpenSanctions wallet match: {open_sanctions[0]['entity']}",
                points=100, source=self.source_id
            ))

        return {
            'status': 'BLOCKED' if blocked else 'NO_MATCH',
            'address': address,
            'chain': chain,
            'matches': matches,
            'totalResults': len(matches) + len(open_sanctions),
            'openSanctions': open_sanctions,
            'openSanctionsError': open_sanctions_error,
            'listSize': len(records),
            'risk': risk_block(100 if blocked else 0, flags),
        }


class OfacWalletAdapter(SourceAdapter):
    """Digital currency addresses published in SDN remarks"""

    source_id = 'ofac_wallet'

    def __init__(self, config: SourceConfig, cache: ReferenceListCache,
                 matcher: Optional[NameMatcher] = None):
        super().__init__(config)
        self.cache = cache
        self.matcher = matcher or NameMatcher()

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        records = await self.cache.get()
        if not records:
            raise SourceUnavailable("SDN list not loaded")

        address = query.subject_text.strip()
        hits = self.matcher.search_wallet(address, records)
        matches = [
            {**candidate.to_dict(), 'entity': record.to_dict()}
            for candidate, record in hits
        ]
        top_confidence = hits[0][0].confidence if hits else 0.0
        is_sanctioned = top_confidence >= 0.95

        flags = []
        score = 0
        if hits:
            candidate, record = hits[0]
            exact = candidate.match_type == MatchType.ADDRESS_EXACT
            score = 100 if exact else 80
            flags.append(RiskFlag(
                Severity.CRITICAL, FlagCategory.OFAC_CRYPTO_MATCH,
                (f"Exact cryptocurrency address match on OFAC SDN list: {record.primary_name}"
                 if exact else
                 f"Address mentioned in OFAC SDN remarks: {record.primary_name}"),
                points=score, source=self.source_id
            ))

        return {
            'matches': matches,
            'totalResults': len(matches),
            'isSanctioned': is_sanctioned,
            'listSize': len(records),
            'risk': risk_block(score, flags),
        }
