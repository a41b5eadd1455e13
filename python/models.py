"""
Screening Data Model

Dataclasses and enums shared by the list cache, matcher, source adapters,
risk engine and change-stream watcher.

Features:
- Immutable reference records (replaced wholesale on list refresh)
- Closed enums for severity, flag category, match type and event type
- Uniform SourceResult envelope returned by every adapter
- to_dict() on every type for API and audit serialization
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class EntityKind(str, Enum):
    INDIVIDUAL = 'individual'
    ORGANIZATION = 'organization'
    VESSEL = 'vessel'
    AIRCRAFT = 'aircraft'
    WALLET = 'wallet'
    UNKNOWN = 'unknown'


class SubjectKind(str, Enum):
    INDIVIDUAL = 'individual'
    ORGANIZATION = 'organization'
    WALLET = 'wallet'
    ANY = 'any'


class MatchType(str, Enum):
    EXACT = 'exact'
    ALIAS = 'alias'
    SUBSTRING = 'substring'
    FUZZY = 'fuzzy'
    ADDRESS_EXACT = 'address_exact'
    REMARKS_MENTION = 'remarks_mention'


class Severity(str, Enum):
    CRITICAL = 'CRITICAL'
    HIGH = 'HIGH'
    MEDIUM = 'MEDIUM'
    LOW = 'LOW'

    @property
    def rank(self) -> int:
        """Sort key: CRITICAL first"""
        return SEVERITY_ORDER[self]


SEVERITY_ORDER = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


class RiskLevel(str, Enum):
    CRITICAL = 'CRITICAL'
    HIGH = 'HIGH'
    MEDIUM = 'MEDIUM'
    LOW = 'LOW'


class FlagCategory(str, Enum):
    # Aggregated screening flags
    OFAC_SDN_MATCH = 'OFAC_SDN_MATCH'
    OFAC_SDN_POSSIBLE = 'OFAC_SDN_POSSIBLE'
    PEP_MATCH = 'PEP_MATCH'
    PEP_POSSIBLE = 'PEP_POSSIBLE'
    SANCTIONS_ANNOUNCEMENT = 'SANCTIONS_ANNOUNCEMENT'
    SANCTIONS_MENTIONS = 'SANCTIONS_MENTIONS'
    OPENSANCTIONS_MATCH = 'OPENSANCTIONS_MATCH'
    SANCTIONED_WALLET = 'SANCTIONED_WALLET'
    OFAC_SDN_WALLET = 'OFAC_SDN_WALLET'
    UNATTRIBUTED_RISK = 'UNATTRIBUTED_RISK'

    # Per-source findings
    OFAC_SDN_POSSIBLE_MATCH = 'OFAC_SDN_POSSIBLE_MATCH'
    OFAC_SDN_PARTIAL_MATCH = 'OFAC_SDN_PARTIAL_MATCH'
    MULTIPLE_SDN_MATCHES = 'MULTIPLE_SDN_MATCHES'
    CRITICAL_PROGRAM = 'CRITICAL_PROGRAM'
    OFAC_CRYPTO_MATCH = 'OFAC_CRYPTO_MATCH'
    ACTIVE_PEP = 'ACTIVE_PEP'
    FORMER_PEP = 'FORMER_PEP'
    SANCTIONS_LIST = 'SANCTIONS_LIST'
    MULTI_SOURCE_CONFIRMATION = 'MULTI_SOURCE_CONFIRMATION'
    CRIMINAL_DEFENDANT = 'CRIMINAL_DEFENDANT'
    GOVERNMENT_ENFORCEMENT = 'GOVERNMENT_ENFORCEMENT'
    CIVIL_DEFENDANT = 'CIVIL_DEFENDANT'
    OPEN_CRIMINAL_CASE = 'OPEN_CRIMINAL_CASE'
    CONVICTION_IN_CASELAW = 'CONVICTION_IN_CASELAW'
    FRAUD_IN_CASELAW = 'FRAUD_IN_CASELAW'
    ADVERSE_JUDGMENT = 'ADVERSE_JUDGMENT'
    ENTITY_MATCH = 'ENTITY_MATCH'
    LEAK_DATABASE_MATCH = 'LEAK_DATABASE_MATCH'
    SANCTIONS_DATABASE = 'SANCTIONS_DATABASE'
    DEBARMENT = 'DEBARMENT'
    HIGH_DOCUMENT_VOLUME = 'HIGH_DOCUMENT_VOLUME'
    DOCUMENT_MENTIONS = 'DOCUMENT_MENTIONS'
    OFFSHORE_ENTITIES = 'OFFSHORE_ENTITIES'
    DISSOLVED_COMPANIES = 'DISSOLVED_COMPANIES'
    OFFSHORE_JURISDICTION = 'OFFSHORE_JURISDICTION'
    RECENT_INCORPORATION = 'RECENT_INCORPORATION'
    NAME_CHANGES = 'NAME_CHANGES'
    MANY_DIRECTORSHIPS = 'MANY_DIRECTORSHIPS'
    OPENSANCTIONS_WALLET = 'OPENSANCTIONS_WALLET'

    # Regulatory enforcement
    CRIMINAL_ACTION = 'CRIMINAL_ACTION'
    REGULATORY_WARNING = 'REGULATORY_WARNING'
    SETTLEMENT = 'SETTLEMENT'
    MULTI_AGENCY = 'MULTI_AGENCY'
    HIGH_ACTION_VOLUME = 'HIGH_ACTION_VOLUME'

    # Adverse media
    ADVERSE_MEDIA = 'ADVERSE_MEDIA'
    FINANCIAL_CRIME_MEDIA = 'FINANCIAL_CRIME_MEDIA'

    # UK Companies House
    INSOLVENCY = 'INSOLVENCY'
    DISQUALIFIED_OFFICER = 'DISQUALIFIED_OFFICER'
    COMPANY_STATUS = 'COMPANY_STATUS'
    ACCOUNTS_OVERDUE = 'ACCOUNTS_OVERDUE'
    CONFIRMATION_OVERDUE = 'CONFIRMATION_OVERDUE'
    ACTIVE_CHARGES = 'ACTIVE_CHARGES'
    CORPORATE_PSC = 'CORPORATE_PSC'
    OFFSHORE_PSC = 'OFFSHORE_PSC'
    HIGH_TURNOVER = 'HIGH_TURNOVER'
    FORMATION_AGENT_ADDRESS = 'FORMATION_AGENT_ADDRESS'

    # Shipping and trade
    SANCTIONED_FLAG = 'SANCTIONED_FLAG'
    FLAG_OF_CONVENIENCE = 'FLAG_OF_CONVENIENCE'
    EMBARGO_TRADE = 'EMBARGO_TRADE'
    TRADE_ENFORCEMENT = 'TRADE_ENFORCEMENT'

    # Financial registrations
    FINRA_BARRED = 'FINRA_BARRED'
    FINRA_DISCLOSURES = 'FINRA_DISCLOSURES'
    FINRA_PATTERN = 'FINRA_PATTERN'
    SEC_IAPD_DISCLOSURE = 'SEC_IAPD_DISCLOSURE'
    SEC_IAPD_FIRM_DISCLOSURE = 'SEC_IAPD_FIRM_DISCLOSURE'
    NFA_EXPULSION = 'NFA_EXPULSION'
    NFA_SUSPENSION = 'NFA_SUSPENSION'
    NFA_FINE = 'NFA_FINE'
    NFA_REVOCATION = 'NFA_REVOCATION'
    FDIC_BANK_FAILED = 'FDIC_BANK_FAILED'
    FDIC_INACTIVE = 'FDIC_INACTIVE'
    NCUA_INACTIVE = 'NCUA_INACTIVE'
    OCC_ENFORCEMENT = 'OCC_ENFORCEMENT'
    FED_ENFORCEMENT = 'FED_ENFORCEMENT'
    SEC_LITIGATION = 'SEC_LITIGATION'

    # ICIJ, SEC and World Bank
    OFFSHORE_LEAKS = 'OFFSHORE_LEAKS'
    MULTIPLE_LEAK_DATASETS = 'MULTIPLE_LEAK_DATASETS'
    SEC_ENFORCEMENT = 'SEC_ENFORCEMENT'
    EXPIRED_DEBARMENT = 'EXPIRED_DEBARMENT'

    # Blockchain explorers
    HIGH_TX_VOLUME = 'HIGH_TX_VOLUME'
    NEW_HIGH_ACTIVITY = 'NEW_HIGH_ACTIVITY'
    CONTRACT_ADDRESS = 'CONTRACT_ADDRESS'
    MANY_TOKENS = 'MANY_TOKENS'


class EventType(str, Enum):
    STATUS_CHANGE = 'STATUS_CHANGE'
    ADDRESS_CHANGE = 'ADDRESS_CHANGE'
    NAME_CHANGE = 'NAME_CHANGE'
    COMPANY_UPDATE = 'COMPANY_UPDATE'
    COMPANY_EVENT = 'COMPANY_EVENT'
    OFFICER_RESIGNED = 'OFFICER_RESIGNED'
    OFFICER_APPOINTED = 'OFFICER_APPOINTED'
    OFFICER_CHANGE = 'OFFICER_CHANGE'
    PSC_NOTIFIED = 'PSC_NOTIFIED'
    PSC_CEASED = 'PSC_CEASED'
    PSC_CHANGE = 'PSC_CHANGE'
    OFFICER_DISQUALIFIED = 'OFFICER_DISQUALIFIED'
    LIQUIDATION = 'LIQUIDATION'
    ADMINISTRATION = 'ADMINISTRATION'
    CVA = 'CVA'
    INSOLVENCY_EVENT = 'INSOLVENCY_EVENT'
    CHARGE_CREATED = 'CHARGE_CREATED'
    CHARGE_SATISFIED = 'CHARGE_SATISFIED'
    ACCOUNTS_FILED = 'ACCOUNTS_FILED'
    CONFIRMATION_STATEMENT = 'CONFIRMATION_STATEMENT'
    RESOLUTION_FILED = 'RESOLUTION_FILED'
    FILING_RECEIVED = 'FILING_RECEIVED'
    UNKNOWN = 'UNKNOWN'


class AlertStatus(str, Enum):
    NEW = 'new'
    ACKNOWLEDGED = 'acknowledged'
    RESOLVED = 'resolved'


# ============================================
# REFERENCE DATA
# ============================================

@dataclass(frozen=True)
class CryptoAddress:
    """Digital currency address listed against a reference record"""
    currency: str
    address: str

    def to_dict(self) -> Dict[str, str]:
        return {'currency': self.currency, 'address': self.address}


@dataclass(frozen=True)
class ReferenceRecord:
    """Sanctioned or watchlisted entity or address

    Owned by the reference list cache and never mutated after parsing.
    """
    id: str
    primary_name: str
    aliases: Tuple[str, ...] = ()
    entity_kind: EntityKind = EntityKind.UNKNOWN
    programs: FrozenSet[str] = frozenset()
    remarks: str = ''
    date_of_birth: Optional[str] = None
    nationality: Optional[str] = None
    citizenship: Optional[str] = None
    addresses: Tuple[CryptoAddress, ...] = ()
    source: str = 'OFAC'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.primary_name,
            'aliases': list(self.aliases),
            'type': self.entity_kind.value,
            'programs': sorted(self.programs),
            'remarks': self.remarks,
            'dateOfBirth': self.date_of_birth,
            'nationality': self.nationality,
            'citizenship': self.citizenship,
            'addresses': [a.to_dict() for a in self.addresses],
            'origin': self.source,
        }


# ============================================
# QUERY / RESULT ENVELOPES
# ============================================

@dataclass
class ScreeningQuery:
    """Caller input for a single screening"""
    subject_text: str
    subject_kind: SubjectKind = SubjectKind.ANY
    country: Optional[str] = None
    jurisdiction: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subject': self.subject_text,
            'subject_kind': self.subject_kind.value,
            'country': self.country,
            'jurisdiction': self.jurisdiction,
        }


@dataclass
class SourceResult:
    """Outcome of one source adapter call

    Always produced. ``error`` is set when the source failed or was skipped;
    ``payload`` is then None or an empty-results payload.
    """
    source_id: str
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.payload is not None

    @classmethod
    def empty(cls, source_id: str, error: Optional[str] = None) -> 'SourceResult':
        """Neutral result: no matches, optional reason"""
        return cls(source_id=source_id, payload={'matches': [], 'totalResults': 0}, error=error)

    @classmethod
    def failed(cls, source_id: str, error: str, elapsed_ms: int = 0) -> 'SourceResult':
        return cls(source_id=source_id, payload=None, error=error, elapsed_ms=elapsed_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source_id,
            'data': self.payload,
            'error': self.error,
            'elapsed_ms': self.elapsed_ms,
        }


@dataclass(frozen=True)
class MatchCandidate:
    """One reference record matched against a query"""
    record_id: str
    match_type: MatchType
    confidence: float
    matched_name: str = ''
    # Source id whose list produced the candidate
    origin: str = ''

    def __post_init__(self):
        if self.match_type in (MatchType.EXACT, MatchType.ADDRESS_EXACT) and self.confidence != 1.0:
            raise ValueError(f"{self.match_type.value} match must have confidence 1.0")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence out of range: {self.confidence}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MatchCandidate':
        return cls(
            record_id=str(data['record_id']),
            match_type=MatchType(data['match_type']),
            confidence=float(data['confidence']),
            matched_name=data.get('matched_name', ''),
            origin=data.get('origin', ''),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'record_id': self.record_id,
            'match_type': self.match_type.value,
            'confidence': round(self.confidence, 4),
            'matched_name': self.matched_name,
            'origin': self.origin,
        }


# ============================================
# RISK
# ============================================

@dataclass(frozen=True)
class RiskFlag:
    severity: Severity
    category: FlagCategory
    message: str
    points: Optional[int] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'severity': self.severity.value,
            'type': self.category.value,
            'message': self.message,
            'points': self.points,
            'source': self.source,
        }


def sort_flags(flags: List[RiskFlag]) -> List[RiskFlag]:
    """Stable severity sort, CRITICAL first, discovery order kept within a level"""
    return sorted(flags, key=lambda f: f.severity.rank)


@dataclass(frozen=True)
class RiskAssessment:
    """Final screening result, a pure function of its inputs"""
    score: int
    level: RiskLevel
    flags: Tuple[RiskFlag, ...] = ()
    diagnostics: Dict[str, Optional[str]] = field(default_factory=dict)
    overridden: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.score,
            'level': self.level.value,
            'flags': [f.to_dict() for f in self.flags],
            'diagnostics': dict(self.diagnostics),
            'overridden': self.overridden,
        }


# ============================================
# WATCHER
# ============================================

@dataclass
class Alert:
    """Watchlist alert; only ``status`` may change after creation"""
    subject_key: str
    event_type: EventType
    severity: Severity
    summary: str
    stream: str = ''
    company_name: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: AlertStatus = AlertStatus.NEW
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'subject_key': self.subject_key,
            'event_type': self.event_type.value,
            'severity': self.severity.value,
            'summary': self.summary,
            'stream': self.stream,
            'company_name': self.company_name,
            'timestamp': self.timestamp.isoformat(),
            'status': self.status.value,
        }
