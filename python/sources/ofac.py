"""
OFAC SDN Source Adapter

Screens names against the cached OFAC SDN list. No network call happens
here; the list cache handles downloading and refresh.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from config_manager import SourceConfig
from list_cache import ReferenceListCache
from matcher import NameMatcher
from models import (
    EntityKind, FlagCategory, MatchCandidate, ReferenceRecord, RiskFlag,
    ScreeningQuery, Severity, SubjectKind,
)
from sources.base import SourceAdapter, SourceUnavailable, empty_risk, risk_block

logger = logging.getLogger(__name__)

CRITICAL_PROGRAMS = (
    'SDGT', 'CYBER2', 'DPRK', 'IRAN', 'SYRIA', 'UKRAINE-EO13661', 'RUSSIA-EO14024'
)

_KINDS_FOR_SUBJECT = {
    SubjectKind.INDIVIDUAL: {EntityKind.INDIVIDUAL, EntityKind.UNKNOWN},
    SubjectKind.ORGANIZATION: {
        EntityKind.ORGANIZATION, EntityKind.VESSEL, EntityKind.AIRCRAFT, EntityKind.UNKNOWN
    },
}


def calculate_ofac_risk(hits: List[Tuple[MatchCandidate, ReferenceRecord]]) -> Dict[str, Any]:
    """Score SDN name hits (best first)"""
    if not hits:
        return empty_risk()

    score = 0
    flags: List[RiskFlag] = []
    top, top_record = hits[0]
    pct = f"{top.confidence * 100:.0f}%"

    if top.confidence >= 0.95:
        score += 80
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.OFAC_SDN_MATCH,
            f'High-confidence match on OFAC SDN list: "{top_record.primary_name}" ({pct} confidence)',
            points=80, source='ofac'
        ))
    elif top.confidence >= 0.85:
        score += 50
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.OFAC_SDN_POSSIBLE_MATCH,
            f'Possible match on OFAC SDN list: "{top_record.primary_name}" ({pct} confidence)',
            points=50, source='ofac'
        ))
    else:
        score += 25
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.OFAC_SDN_PARTIAL_MATCH,
            f'Partial name match on OFAC SDN list: "{top_record.primary_name}" ({pct} confidence)',
            points=25, source='ofac'
        ))

    if len(hits) >= 3:
        score += 10
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.MULTIPLE_SDN_MATCHES,
            f"{len(hits)} potential matches found on SDN list", points=10, source='ofac'
        ))

    matched_programs = sorted({
        program
        for _, record in hits
        for program in record.programs
        if any(critical in program for critical in CRITICAL_PROGRAMS)
    })
    if matched_programs:
        score += 10
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.CRITICAL_PROGRAM,
            f"Associated with critical sanctions program(s): {', '.join(matched_programs)}",
            points=10, source='ofac'
        ))

    return risk_block(score, flags)


class OfacSdnAdapter(SourceAdapter):
    """Name screening against the in-memory SDN list"""

    source_id = 'ofac'

    def __init__(self, config: SourceConfig, cache: ReferenceListCache,
                 matcher: Optional[NameMatcher] = None):
        super().__init__(config)
        self.cache = cache
        self.matcher = matcher or NameMatcher()

    def _filter_kind(self, records, subject_kind: SubjectKind):
        kinds = _KINDS_FOR_SUBJECT.get(subject_kind)
        if kinds is None:
            return [r for r in records if r.entity_kind != EntityKind.WALLET]
        return [r for r in records if r.entity_kind in kinds]

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        records = await self.cache.get()
        if not records:
            raise SourceUnavailable("SDN list not loaded")

        candidates = self._filter_kind(records, query.subject_kind)
        # Matching a full list is CPU bound; keep the event loop free
        hits = await asyncio.to_thread(self.matcher.search, query.subject_text, candidates)

        status = self.cache.status()
        return {
            'matches': [
                {**candidate.to_dict(), 'entity': record.to_dict()}
                for candidate, record in hits
            ],
            'totalResults': len(hits),
            'listSize': len(records),
            'lastUpdated': status['loaded_at'],
            'stale': status['stale'],
            'risk': calculate_ofac_risk(hits),
        }
