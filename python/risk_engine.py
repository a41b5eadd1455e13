"""
Risk Aggregation Engine

Combines per-source results and match candidates into one RiskAssessment.
aggregate() is a pure function of its inputs: the same results always give
the same score, level and flag order.

Features:
- Fixed rule table routed by source id (rule order, not completion order)
- Additive pass with per-category caps: score = max(score, min(score + x, cap))
- On-chain activity above a threshold lifts the wallet score to its own value
- Floor overrides (sanctioned wallet, direct sanctions announcement) applied
  after the additive pass, clamp to [0, 100] last
- Stable CRITICAL -> LOW flag ordering with duplicate removal
- Separate level thresholds for entity and wallet screening
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from config_manager import ScoringConfig
from models import (
    FlagCategory, MatchCandidate, MatchType, RiskAssessment, RiskFlag, RiskLevel,
    Severity, SourceResult, SubjectKind, sort_flags,
)

logger = logging.getLogger(__name__)

LEVEL_ORDER = (RiskLevel.CRITICAL, RiskLevel.HIGH, RiskLevel.MEDIUM)


def level_for(score: float, thresholds: Mapping[str, float]) -> RiskLevel:
    """Map a score onto CRITICAL/HIGH/MEDIUM/LOW using descending thresholds"""
    for level in LEVEL_ORDER:
        if score >= thresholds[level.value]:
            return level
    return RiskLevel.LOW


def flag_from_dict(data: Dict[str, Any], source: str) -> Optional[RiskFlag]:
    """Rebuild an adapter risk flag, tagged with the source that produced it"""
    try:
        return RiskFlag(
            severity=Severity(data['severity']),
            category=FlagCategory(data['type']),
            message=data['message'],
            points=data.get('points'),
            source=source,
        )
    except (KeyError, ValueError) as e:
        logger.warning(f"⚠ Dropping malformed flag from {source}: {e}")
        return None


class _Tally:
    """Running score for one aggregation"""

    def __init__(self):
        self.score = 0.0
        self.floor: Optional[float] = None
        self.flags: List[RiskFlag] = []

    def add(self, contribution: float, cap: float) -> None:
        self.score = max(self.score, min(self.score + contribution, cap))

    def lift(self, value: float) -> None:
        self.score = max(self.score, value)

    def raise_floor(self, value: float) -> None:
        self.floor = value if self.floor is None else max(self.floor, value)

    def flag(self, severity: Severity, category: FlagCategory, message: str,
             source: str, points: Optional[int] = None) -> None:
        self.flags.append(RiskFlag(severity, category, message, points=points, source=source))

    def pass_through(self, payload: Dict[str, Any], source: str) -> None:
        for data in (payload.get('risk') or {}).get('flags') or []:
            flag = flag_from_dict(data, source)
            if flag is not None:
                self.flags.append(flag)


def _source_score(payload: Dict[str, Any]) -> float:
    return float((payload.get('risk') or {}).get('score') or 0)


class RiskEngine:
    """Deterministic aggregation of source results into a RiskAssessment"""

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()
        self._entity_rules: Tuple[Tuple[str, Callable], ...] = (
            ('ofac', self._ofac_rule),
            ('announcements', self._announcement_rule),
            ('pep', self._pep_rule),
            ('court_records', self._weighted_rule),
            ('aleph', self._weighted_rule),
            ('corporate', self._weighted_rule),
            ('uk_companies', self._weighted_rule),
            ('regulatory', self._weighted_rule),
            ('adverse_media', self._weighted_rule),
            ('shipping', self._weighted_rule),
            ('finreg', self._weighted_rule),
            ('data_sources', self._weighted_rule),
        )
        self._wallet_rules: Tuple[Tuple[str, Callable], ...] = (
            ('wallet', self._wallet_list_rule),
            ('ofac_wallet', self._ofac_wallet_rule),
            ('blockchain', self._blockchain_rule),
        )

    # ============================================
    # PUBLIC API
    # ============================================

    def aggregate(self, source_results: Mapping[str, SourceResult],
                  match_candidates: Sequence[MatchCandidate] = (),
                  kind: SubjectKind = SubjectKind.ANY) -> RiskAssessment:
        """Score one screening

        Args:
            source_results: {source_id: SourceResult} from the orchestrator
            match_candidates: Reference list candidates (SDN names or wallet
                addresses) produced by the matching engine
            kind: WALLET selects the wallet rules and thresholds

        Returns:
            RiskAssessment with clamped score, level, sorted flags and
            per-source diagnostics
        """
        wallet = kind == SubjectKind.WALLET
        rules = self._wallet_rules if wallet else self._entity_rules
        thresholds = self.config.wallet_levels if wallet else self.config.entity_levels

        tally = _Tally()
        for source_id, rule in rules:
            result = source_results.get(source_id)
            payload = result.payload if result is not None else None
            rule(tally, source_id, payload or {}, match_candidates)

        score = tally.score
        overridden = False
        if tally.floor is not None and tally.floor > score:
            score = tally.floor
            overridden = True
        score = int(max(0, min(round(score), 100)))

        flags = self._dedupe(sort_flags(tally.flags))
        if score > 0 and not flags:
            flags.append(RiskFlag(
                Severity.LOW, FlagCategory.UNATTRIBUTED_RISK,
                f"Risk score {score} without an attributed finding", source='risk_engine'
            ))

        return RiskAssessment(
            score=score,
            level=level_for(score, thresholds),
            flags=tuple(flags),
            diagnostics={sid: r.error for sid, r in source_results.items()},
            overridden=overridden,
        )

    @staticmethod
    def _dedupe(flags: List[RiskFlag]) -> List[RiskFlag]:
        seen = set()
        unique = []
        for flag in flags:
            key = (flag.category, flag.message)
            if key in seen:
                continue
            seen.add(key)
            unique.append(flag)
        return unique

    # ============================================
    # ENTITY RULES
    # ============================================

    def _ofac_rule(self, tally: _Tally, source_id: str, payload: Dict[str, Any],
                   candidates: Sequence[MatchCandidate]) -> None:
        matches = payload.get('matches') or []
        name_candidates = [c for c in candidates if c.match_type != MatchType.ADDRESS_EXACT]
        if not name_candidates:
            name_candidates = [MatchCandidate.from_dict(m) for m in matches]
        if not name_candidates:
            return

        # Stable: first of equal confidence wins
        top = max(name_candidates, key=lambda c: c.confidence)
        programs = []
        for match in matches:
            if str(match.get('record_id')) == top.record_id:
                programs = (match.get('entity') or {}).get('programs') or []
                break

        rules = self.config.ofac
        pct = f"{top.confidence * 100:.0f}%"
        if top.confidence >= rules['match_confidence']:
            tally.add(rules['match_points'], rules['cap'])
            message = f'OFAC SDN match: "{top.matched_name}" ({pct})'
            if programs:
                message += f" - Programs: {', '.join(programs)}"
            tally.flag(Severity.CRITICAL, FlagCategory.OFAC_SDN_MATCH, message,
                       source_id, int(rules['match_points']))
        elif top.confidence >= rules['possible_confidence']:
            tally.add(rules['possible_points'], rules['cap'])
            tally.flag(Severity.HIGH, FlagCategory.OFAC_SDN_POSSIBLE,
                       f'Possible OFAC match: "{top.matched_name}" ({pct})',
                       source_id, int(rules['possible_points']))

    def _announcement_rule(self, tally: _Tally, source_id: str, payload: Dict[str, Any],
                           candidates: Sequence[MatchCandidate]) -> None:
        findings = int(payload.get('totalResults') or 0)
        if payload.get('hasSanctionsAnnouncement'):
            tally.raise_floor(self.config.announcement_direct_points)
            actions = payload.get('actions') or []
            detail = actions[0]['title'][:100] if actions else f"{findings} findings"
            tally.flag(Severity.CRITICAL, FlagCategory.SANCTIONS_ANNOUNCEMENT,
                       f"Sanctions announcement found: {detail}",
                       source_id, self.config.announcement_direct_points)
        elif findings > 0:
            points = findings * self.config.announcement_points
            tally.add(points, self.config.caps['announcements'])
            tally.flag(Severity.HIGH, FlagCategory.SANCTIONS_MENTIONS,
                       f"{findings} sanctions-related mention(s) found", source_id, points)

    def _pep_rule(self, tally: _Tally, source_id: str, payload: Dict[str, Any],
                  candidates: Sequence[MatchCandidate]) -> None:
        rules = self.config.pep
        if payload.get('isPEP'):
            tally.add(rules['match_points'], rules['match_cap'])
            pep = next((m for m in payload.get('matches') or [] if m.get('isPEP')), {})
            detail = pep.get('name') or 'PEP confirmed'
            if pep.get('pepPosition'):
                detail += f" ({pep['pepPosition']})"
            tally.flag(Severity.HIGH, FlagCategory.PEP_MATCH,
                       f"Politically Exposed Person: {detail}",
                       source_id, int(rules['match_points']))
        elif _source_score(payload) > 0:
            tally.add(rules['possible_points'], rules['possible_cap'])
            tally.flag(Severity.MEDIUM, FlagCategory.PEP_POSSIBLE,
                       "Possible PEP/sanctions exposure in OpenSanctions",
                       source_id, int(rules['possible_points']))
            tally.pass_through(payload, source_id)

    def _weighted_rule(self, tally: _Tally, source_id: str, payload: Dict[str, Any],
                       candidates: Sequence[MatchCandidate]) -> None:
        source_score = _source_score(payload)
        if source_score <= 0:
            return
        tally.add(round(source_score * self.config.weights[source_id]), self.config.caps[source_id])
        tally.pass_through(payload, source_id)

    # ============================================
    # WALLET RULES
    # ============================================

    def _wallet_list_rule(self, tally: _Tally, source_id: str, payload: Dict[str, Any],
                          candidates: Sequence[MatchCandidate]) -> None:
        # SDN remarks addresses are scored by the ofac_wallet rule
        exact = [c for c in candidates
                 if c.match_type == MatchType.ADDRESS_EXACT and c.origin == source_id]
        if payload.get('status') != 'BLOCKED' and not exact:
            return
        tally.raise_floor(100)
        matches = payload.get('matches') or []
        if matches:
            top = matches[0]
            label = top.get('service') or top.get('source') or 'sanctioned address list'
            message = f"Wallet blocked: {label}"
            if top.get('program'):
                message += f" ({top['program']})"
        elif payload.get('openSanctions'):
            message = f"Wallet blocked: OpenSanctions match {payload['openSanctions'][0].get('entity')}"
        else:
            message = f"Wallet blocked: exact address match {exact[0].matched_name}"
        tally.flag(Severity.CRITICAL, FlagCategory.SANCTIONED_WALLET, message, source_id, 100)

    def _ofac_wallet_rule(self, tally: _Tally, source_id: str, payload: Dict[str, Any],
                          candidates: Sequence[MatchCandidate]) -> None:
        if not payload.get('isSanctioned'):
            return
        tally.raise_floor(100)
        entity = ((payload.get('matches') or [{}])[0].get('entity') or {}).get('name')
        message = "OFAC SDN crypto address match"
        if entity:
            message += f": {entity}"
        tally.flag(Severity.CRITICAL, FlagCategory.OFAC_SDN_WALLET, message, source_id, 100)

    def _blockchain_rule(self, tally: _Tally, source_id: str, payload: Dict[str, Any],
                         candidates: Sequence[MatchCandidate]) -> None:
        # On-chain activity only counts once it is high on its own
        source_score = _source_score(payload)
        if source_score <= self.config.blockchain_floor_above:
            return
        tally.lift(source_score)
        tally.pass_through(payload, source_id)
