"""
Entity Risk Screener

Outbound facade: validates input, fans the query out to every configured
source, and aggregates the results into a single RiskAssessment.

Features:
- Name screening (individual / organization / any) across all entity sources
- Wallet screening with automatic chain detection
- Wallet auto-detection when the subject kind is 'any'
- Input validation with field/code/suggestion errors
- Audit log entry and Prometheus metrics for every screening
- CLI for ad-hoc screening

SECURITY: subject text is validated (length, blocked characters, control
characters) before it reaches any source, and sanitized before logging.
"""

import argparse
import asyncio
import json
import logging
import sys
import time
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from config_manager import ConfigManager, configure_logging, get_config
from list_cache import ReferenceListCache, build_sdn_cache, build_wallet_cache
from matcher import NameMatcher
from models import MatchCandidate, RiskAssessment, ScreeningQuery, SourceResult, SubjectKind
from monitoring import record_screening
from orchestrator import FanOutOrchestrator
from risk_engine import RiskEngine
from security_logger import AuditLogger, get_audit_logger
from sources import build_registry, detect_chain, is_wallet_address
from sources.base import USER_AGENT
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Sources whose payload matches are reference-list match candidates
CANDIDATE_SOURCES = ('ofac', 'wallet', 'ofac_wallet')


class InputValidationError(ValueError):
    """Raised when input validation fails

    Attributes:
        field: The field that failed validation
        code: Error code for programmatic handling
        suggestion: Optional suggestion for fixing the error
    """
    def __init__(self, message: str, field: str = "unknown", code: str = "VALIDATION_ERROR", suggestion: str = ""):
        self.field = field
        self.code = code
        self.suggestion = suggestion
        super().__init__(message)

    def to_dict(self) -> Dict[str, str]:
        return {
            'error': str(self),
            'code': self.code,
            'field': self.field,
            'suggestion': self.suggestion,
        }


def parse_subject_kind(value: Union[str, SubjectKind, None]) -> SubjectKind:
    if value is None or value == '':
        return SubjectKind.ANY
    if isinstance(value, SubjectKind):
        return value
    try:
        return SubjectKind(str(value).strip().lower())
    except ValueError:
        raise InputValidationError(
            f"Unknown subject kind '{sanitize_for_logging(str(value), 30)}'",
            field="subject_kind",
            code="INVALID_SUBJECT_KIND",
            suggestion=f"Use one of: {', '.join(k.value for k in SubjectKind)}"
        )


def validate_screening_input(subject_text: Optional[str], subject_kind: Union[str, SubjectKind, None] = None,
                             config: Optional[ConfigManager] = None) -> Tuple[str, SubjectKind]:
    """Validate a screening request

    Supports international names (any Unicode script). Rejects characters
    that could indicate injection attempts.

    Returns:
        (stripped subject text, parsed subject kind)

    Raises:
        InputValidationError: If validation fails with detailed error info
    """
    if config is None:
        config = get_config()
    iv_config = config.input_validation

    kind = parse_subject_kind(subject_kind)
    text = subject_text or ""
    stripped = text.strip()

    if not stripped:
        raise InputValidationError(
            "Subject is required",
            field="subject",
            code="SUBJECT_REQUIRED",
            suggestion="Provide a person name, organization name or wallet address"
        )

    if kind == SubjectKind.WALLET:
        if len(stripped) > iv_config.address_max_length:
            raise InputValidationError(
                f"Address too long ({len(stripped)} chars, maximum {iv_config.address_max_length})",
                field="address",
                code="ADDRESS_TOO_LONG",
                suggestion="Provide a single wallet address"
            )
        if detect_chain(stripped) is None:
            raise InputValidationError(
                "Not a recognized wallet address format",
                field="address",
                code="INVALID_WALLET_ADDRESS",
                suggestion="Supported: ETH, XBT, TRX, XRP, LTC, DASH, ZEC, XMR, SOL"
            )
        return stripped, kind

    if len(stripped) < iv_config.name_min_length:
        raise InputValidationError(
            f"Subject too short ({len(stripped)} chars, minimum {iv_config.name_min_length}). Example: 'Li'",
            field="subject",
            code="NAME_TOO_SHORT",
            suggestion=f"Provide a name with at least {iv_config.name_min_length} characters"
        )

    if len(text) > iv_config.name_max_length:
        raise InputValidationError(
            f"Subject too long ({len(text)} chars, maximum {iv_config.name_max_length})",
            field="subject",
            code="NAME_TOO_LONG",
            suggestion=f"Shorten the name to {iv_config.name_max_length} characters or less"
        )

    found_blocked = [c for c in text if c in iv_config.blocked_characters]
    if found_blocked:
        logger.warning("SECURITY: Blocked characters detected in subject: %s", sanitize_for_logging(text))
        raise InputValidationError(
            f"Subject contains blocked characters: {found_blocked}",
            field="subject",
            code="BLOCKED_CHARACTERS",
            suggestion="Remove special characters like < > { } [ ] | \\ ; ` $"
        )

    for char in text:
        if unicodedata.category(char).startswith('C'):
            logger.warning("SECURITY: Control character detected in subject: %s", sanitize_for_logging(text))
            raise InputValidationError(
                f"Subject contains invalid control character (code: {ord(char)})",
                field="subject",
                code="CONTROL_CHARACTER",
                suggestion="Remove invisible or control characters from the name"
            )

    return stripped, kind


@dataclass
class ScreeningOptions:
    """Optional screening parameters"""
    country: Optional[str] = None
    jurisdiction: Optional[str] = None

    @classmethod
    def from_value(cls, value: Union['ScreeningOptions', Dict[str, Any], None]) -> 'ScreeningOptions':
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls(country=value.get('country'), jurisdiction=value.get('jurisdiction'))


@dataclass
class ScreeningReport:
    """Assessment plus the per-source results it was computed from"""
    query: ScreeningQuery
    assessment: RiskAssessment
    results: Dict[str, SourceResult] = field(default_factory=dict)
    candidates: List[MatchCandidate] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query': self.query.to_dict(),
            'risk': self.assessment.to_dict(),
            'matches': [c.to_dict() for c in self.candidates],
            'sources': {sid: r.to_dict() for sid, r in self.results.items()},
            'duration_ms': self.duration_ms,
        }


def collect_candidates(results: Dict[str, SourceResult]) -> List[MatchCandidate]:
    """Reference-list match candidates reported by the list-backed sources"""
    candidates: List[MatchCandidate] = []
    for source_id in CANDIDATE_SOURCES:
        result = results.get(source_id)
        if result is None or not result.payload:
            continue
        for match in result.payload.get('matches') or []:
            if 'record_id' not in match:
                continue
            try:
                candidates.append(replace(MatchCandidate.from_dict(match), origin=source_id))
            except (KeyError, ValueError) as e:
                logger.warning(f"⚠ Ignoring malformed {source_id} match: {e}")
    return candidates


class EntityScreener:
    """Screens names and wallet addresses against all configured sources"""

    def __init__(self, config: Optional[ConfigManager] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 sdn_cache: Optional[ReferenceListCache] = None,
                 wallet_cache: Optional[ReferenceListCache] = None,
                 registry: Optional[Dict[str, Dict[str, Any]]] = None,
                 audit: Optional[AuditLogger] = None):
        """
        Args:
            config: Configuration (global instance when None)
            client: Shared HTTP client for source adapters
            sdn_cache / wallet_cache: Reference list caches (built from
                config when None)
            registry: Pre-built adapter registry (built from config when None)
            audit: Audit logger (global instance when None)
        """
        self.config = config or get_config()
        self._owns_client = client is None and registry is None
        self.client = client
        if self._owns_client:
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=5.0),
                headers={'User-Agent': USER_AGENT},
                follow_redirects=True,
            )
        self.matcher = NameMatcher(self.config.matching)
        self.sdn_cache = sdn_cache or build_sdn_cache(self.config)
        self.wallet_cache = wallet_cache or build_wallet_cache(self.config)
        self.registry = registry or build_registry(
            self.config, self.sdn_cache, self.wallet_cache, client=self.client, matcher=self.matcher
        )
        self.orchestrator = FanOutOrchestrator(self.registry, self.config.fanout.global_timeout_seconds)
        self.engine = RiskEngine(self.config.scoring)
        self.audit = audit or get_audit_logger(self.config.logging.security_log_dir)

    # ============================================
    # SCREENING
    # ============================================

    async def screen(self, subject_text: str,
                     subject_kind: Union[str, SubjectKind, None] = SubjectKind.ANY,
                     options: Union[ScreeningOptions, Dict[str, Any], None] = None) -> RiskAssessment:
        """Screen a name (or a wallet address) and return its risk assessment

        Raises:
            InputValidationError: Invalid subject or subject kind
        """
        report = await self.screen_report(subject_text, subject_kind, options)
        return report.assessment

    async def screen_wallet(self, address: str) -> RiskAssessment:
        """Screen a wallet address; exact sanctioned matches score 100"""
        report = await self.screen_report(address, SubjectKind.WALLET)
        return report.assessment

    async def screen_report(self, subject_text: str,
                            subject_kind: Union[str, SubjectKind, None] = SubjectKind.ANY,
                            options: Union[ScreeningOptions, Dict[str, Any], None] = None) -> ScreeningReport:
        """Screen and return the assessment with per-source detail"""
        try:
            text, kind = validate_screening_input(subject_text, subject_kind, self.config)
        except InputValidationError as e:
            self.audit.log_validation_failure(e.field, e.code, subject_text or "", source="screener")
            raise

        if kind == SubjectKind.ANY and is_wallet_address(text):
            kind = SubjectKind.WALLET
        opts = ScreeningOptions.from_value(options)
        query = ScreeningQuery(
            subject_text=text, subject_kind=kind,
            country=opts.country, jurisdiction=opts.jurisdiction,
        )

        started = time.perf_counter()
        logger.info(f"Screening {kind.value}: {sanitize_for_logging(text, 50)}")
        if kind == SubjectKind.WALLET:
            results = await self.orchestrator.screen_wallet(query)
        else:
            results = await self.orchestrator.screen_entity(query)

        candidates = collect_candidates(results)
        assessment = self.engine.aggregate(results, candidates, kind)
        duration = time.perf_counter() - started
        duration_ms = int(duration * 1000)

        record_screening(kind.value, assessment.level.value, duration)
        self.audit.log_screening(
            text, kind.value, assessment.score, assessment.level.value,
            assessment.diagnostics, duration_ms,
        )
        marker = "✗" if assessment.level.value == 'CRITICAL' else "✓"
        logger.info(
            f"{marker} {sanitize_for_logging(text, 50)}: score {assessment.score} "
            f"({assessment.level.value}), {len(assessment.flags)} flag(s), {duration_ms}ms"
        )
        return ScreeningReport(query, assessment, results, candidates, duration_ms)

    # ============================================
    # LISTS / LIFECYCLE
    # ============================================

    async def warm_up(self) -> Dict[str, Dict[str, object]]:
        """Load both reference lists; failures are reported in the returned status"""
        await asyncio.gather(self.sdn_cache.refresh(), self.wallet_cache.refresh())
        return self.list_status()

    def list_status(self) -> Dict[str, Dict[str, object]]:
        return {
            self.sdn_cache.name: self.sdn_cache.status(),
            self.wallet_cache.name: self.wallet_cache.status(),
        }

    async def close(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Screen a name or wallet address")
    parser.add_argument("subject", help="Person/organization name or wallet address")
    parser.add_argument("--kind", default="any", choices=[k.value for k in SubjectKind])
    parser.add_argument("--country", help="ISO country filter for PEP search")
    parser.add_argument("--jurisdiction", help="Jurisdiction code for corporate search")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--json", action="store_true", help="Print the full report as JSON")
    args = parser.parse_args()

    config = ConfigManager.get_instance(args.config)
    configure_logging(config)

    async def run() -> ScreeningReport:
        screener = EntityScreener(config)
        try:
            return await screener.screen_report(
                args.subject, args.kind,
                ScreeningOptions(country=args.country, jurisdiction=args.jurisdiction),
            )
        finally:
            await screener.close()

    try:
        report = asyncio.run(run())
    except InputValidationError as e:
        print(f"Invalid input ({e.code}): {e}", file=sys.stderr)
        if e.suggestion:
            print(f"  {e.suggestion}", file=sys.stderr)
        sys.exit(2)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
        return

    risk = report.assessment
    print(f"\n=== {report.query.subject_text} ({report.query.subject_kind.value}) ===")
    print(f"Risk: {risk.score}/100 {risk.level.value}")
    for flag in risk.flags:
        print(f"  [{flag.severity.value}] {flag.category.value}: {flag.message}")
    for source_id, error in risk.diagnostics.items():
        if error:
            print(f"  ⚠ {source_id}: {error}")


if __name__ == "__main__":
    main()
