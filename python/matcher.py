"""
Name and Wallet Matching Engine

Scores a free-text subject against reference records.

Features:
- Unicode-aware normalization (accents stripped, punctuation folded)
- Name-order variants ("Last, First" <-> "First Last")
- Tiered confidence: exact, variant, alias, substring, edit distance
- Surname-only comparison for comma-formatted records (discounted)
- Address-exact and remarks-mention wallet matching, never fuzzy

Confidence is the maximum over all tiers. On equal confidence the stronger
tier wins, so an exact match always reports EXACT with confidence 1.0.
"""

import logging
import re
import unicodedata
from functools import lru_cache
from typing import Iterable, List, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from config_manager import MatchingConfig
from models import MatchCandidate, MatchType, ReferenceRecord

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s,]", re.UNICODE)
_UNDERSCORE = re.compile(r"_+")
_COMMA = re.compile(r"\s*,\s*")
_WHITESPACE = re.compile(r"\s+")


@lru_cache(maxsize=65536)
def normalize_name(text: str) -> str:
    """Normalize a name for comparison

    NFKD decomposition with combining marks dropped, lowercase, punctuation
    other than commas replaced by spaces, whitespace collapsed.
    """
    if not text:
        return ''
    decomposed = unicodedata.normalize('NFKD', text)
    stripped = ''.join(c for c in decomposed if not unicodedata.combining(c))
    lowered = stripped.lower()
    lowered = _PUNCTUATION.sub(' ', lowered)
    lowered = _UNDERSCORE.sub(' ', lowered)
    lowered = _COMMA.sub(', ', lowered)
    lowered = _WHITESPACE.sub(' ', lowered).strip(' ,')
    return lowered


@lru_cache(maxsize=65536)
def name_variants(normalized: str) -> Tuple[str, ...]:
    """Generate name-order variants of an already normalized name

    "deripaska, oleg" -> ("deripaska, oleg", "oleg deripaska")
    "oleg deripaska"  -> ("oleg deripaska", "deripaska, oleg")
    """
    if not normalized:
        return ()
    variants = [normalized]
    if ',' in normalized:
        last, _, first = normalized.partition(',')
        last, first = last.strip(), first.strip(' ,')
        if last and first:
            variants.append(f"{first} {last}")
    else:
        tokens = normalized.split()
        if len(tokens) == 2:
            variants.append(f"{tokens[1]}, {tokens[0]}")
    return tuple(variants)


def similarity(a: str, b: str) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b))"""
    if not a or not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def _contains(haystack: str, needle: str, min_length: int) -> bool:
    needle = needle.replace(',', '')
    if not needle or len(needle) < min_length:
        return False
    return needle in haystack.replace(',', '')


def _substring_hit(a_variants: Iterable[str], b_variants: Iterable[str],
                   min_length: int = 0) -> Optional[str]:
    """Plain containment in either direction, commas ignored"""
    b_list = list(b_variants)
    for a in a_variants:
        for b in b_list:
            if _contains(b, a, min_length) or _contains(a, b, min_length):
                return b
    return None


class NameMatcher:
    """Matches subjects against reference records using the configured tiers"""

    def __init__(self, config: Optional[MatchingConfig] = None):
        self.config = config or MatchingConfig()

    def match(self, subject_text: str, record: ReferenceRecord) -> Optional[MatchCandidate]:
        """Score one record against the subject

        Returns:
            MatchCandidate at or above the name floor, else None
        """
        subject = normalize_name(subject_text)
        if not subject:
            return None

        record_name = normalize_name(record.primary_name)
        subject_variants = name_variants(subject)
        record_variants = name_variants(record_name)
        alias_variants: List[Tuple[str, str]] = []
        for alias in record.aliases:
            for variant in name_variants(normalize_name(alias)):
                alias_variants.append((variant, alias))

        cfg = self.config
        best_confidence = 0.0
        best_type: Optional[MatchType] = None
        best_name = ''

        def consider(confidence: float, match_type: MatchType, matched: str) -> None:
            nonlocal best_confidence, best_type, best_name
            # Strictly greater: earlier (stronger) tiers keep ties
            if confidence > best_confidence:
                best_confidence, best_type, best_name = confidence, match_type, matched

        # 1-2. exact on primary name or any name-order variant
        if subject == record_name or set(subject_variants) & set(record_variants):
            consider(1.0, MatchType.EXACT, record.primary_name)

        # 3. exact alias
        subject_set = set(subject_variants)
        for variant, alias in alias_variants:
            if variant in subject_set:
                consider(cfg.alias_exact, MatchType.ALIAS, alias)
                break

        # 4. substring containment, name then alias
        min_length = cfg.min_substring_length
        if _substring_hit(subject_variants, record_variants, min_length):
            consider(cfg.name_substring, MatchType.SUBSTRING, record.primary_name)
        for variant, alias in alias_variants:
            if _substring_hit(subject_variants, (variant,), min_length):
                consider(cfg.alias_substring, MatchType.SUBSTRING, alias)
                break

        # 5. edit distance over all variant pairs
        for sv in subject_variants:
            for rv in record_variants:
                consider(similarity(sv, rv), MatchType.FUZZY, record.primary_name)
            for variant, alias in alias_variants:
                consider(similarity(sv, variant) * cfg.alias_exact, MatchType.FUZZY, alias)

        # surname-only collisions are weaker evidence
        if ',' in record_name:
            surname = record_name.split(',', 1)[0].strip()
            consider(similarity(subject, surname) * cfg.surname_discount,
                     MatchType.FUZZY, record.primary_name)

        if best_type is None or best_confidence < cfg.name_floor:
            return None

        confidence = 1.0 if best_type == MatchType.EXACT else round(min(best_confidence, 1.0), 4)
        return MatchCandidate(
            record_id=record.id,
            match_type=best_type,
            confidence=confidence,
            matched_name=best_name,
        )

    def match_wallet(self, address: str, record: ReferenceRecord) -> Optional[MatchCandidate]:
        """Exact (case-insensitive) address match, or a mention in remarks"""
        needle = (address or '').strip().lower()
        if not needle:
            return None

        for listed in record.addresses:
            if listed.address.lower() == needle:
                return MatchCandidate(
                    record_id=record.id,
                    match_type=MatchType.ADDRESS_EXACT,
                    confidence=1.0,
                    matched_name=record.primary_name,
                )

        if record.remarks and needle in record.remarks.lower():
            return MatchCandidate(
                record_id=record.id,
                match_type=MatchType.REMARKS_MENTION,
                confidence=self.config.remarks_mention,
                matched_name=record.primary_name,
            )
        return None

    def search(self, subject_text: str, records: Iterable[ReferenceRecord],
               limit: Optional[int] = None) -> List[Tuple[MatchCandidate, ReferenceRecord]]:
        """Match every record and return the best candidates

        Sorted by confidence descending, then record id for stable output.
        """
        limit = limit if limit is not None else self.config.max_candidates
        if not normalize_name(subject_text):
            return []

        hits = []
        for record in records:
            candidate = self.match(subject_text, record)
            if candidate is not None:
                hits.append((candidate, record))

        hits.sort(key=lambda hit: (-hit[0].confidence, hit[0].record_id))
        return hits[:limit]

    def search_wallet(self, address: str, records: Iterable[ReferenceRecord],
                      limit: Optional[int] = None) -> List[Tuple[MatchCandidate, ReferenceRecord]]:
        limit = limit if limit is not None else self.config.max_candidates
        hits = []
        for record in records:
            candidate = self.match_wallet(address, record)
            if candidate is not None:
                hits.append((candidate, record))
        hits.sort(key=lambda hit: (-hit[0].confidence, hit[0].record_id))
        return hits[:limit]
