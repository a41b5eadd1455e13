"""
Screening Audit Logging Module

Structured, JSON-per-line audit trail for screening decisions and
compliance-relevant actions:
- Input validation failures
- Completed screenings (score, level, failed sources)
- Sanctions hits (CRITICAL results)
- Watchlist and alert changes

SECURITY: subject text is sanitized and truncated before it is written.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from xml_utils import sanitize_for_logging


@dataclass
class AuditEvent:
    """One audit log line"""
    event_type: str  # e.g. VALIDATION_FAILED, SCREENING_COMPLETED, SANCTIONS_HIT
    severity: str  # INFO, WARNING, ERROR, CRITICAL
    subject: str = ""  # sanitized, first 50 chars
    subject_hash: str = ""
    field_name: str = ""
    error_code: str = ""
    source: str = ""
    request_id: str = ""
    source_ip: str = ""
    context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'subject': self.subject,
            'subject_hash': self.subject_hash,
            'field': self.field_name,
            'error_code': self.error_code,
            'source': self.source,
            'request_id': self.request_id,
            'source_ip': self.source_ip,
            'context': self.context,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def subject_fingerprint(text: str) -> str:
    """Stable short hash so repeated screenings of a subject can be correlated"""
    return hashlib.sha256((text or '').strip().lower().encode('utf-8')).hexdigest()[:16]


class AuditLogger:
    """Writes audit events to audit.log under the configured directory

    Features:
    - Dedicated 'audit' logger, independent of the application log
    - JSON-formatted events for ingestion by log pipelines
    - Request ID correlation set per API request
    """

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.INFO,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """
        Args:
            log_dir: Directory for audit.log
            log_level: Minimum level to record
            enable_console: Also emit to stderr
            enable_file: Write audit.log
        """
        self.log_dir = Path(log_dir)
        self.logger = logging.getLogger('audit')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()
        self.logger.propagate = False

        formatter = logging.Formatter('%(asctime)s - AUDIT - %(levelname)s - %(message)s')

        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_dir / "audit.log", encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        self._request_id = ""
        self._source_ip = ""

    def set_request_context(self, request_id: Optional[str] = None, source_ip: str = "") -> str:
        """Set the correlation context for the current request

        Returns:
            The request ID in use (generated when not given)
        """
        self._request_id = request_id or f"REQ-{uuid.uuid4().hex[:8]}"
        self._source_ip = source_ip
        return self._request_id

    def clear_request_context(self) -> None:
        self._request_id = ""
        self._source_ip = ""

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Sanitize string values (recursively) so they cannot break the JSON line"""
        if not context:
            return {}
        clean: Dict[str, Any] = {}
        for key, value in context.items():
            key = sanitize_for_logging(str(key), 100)
            if value is None or isinstance(value, (bool, int, float)):
                clean[key] = value
            elif isinstance(value, dict):
                clean[key] = self._sanitize_context(value)
            elif isinstance(value, (list, tuple)):
                clean[key] = [
                    item if isinstance(item, (bool, int, float, type(None)))
                    else sanitize_for_logging(str(item), 200)
                    for item in value
                ]
            else:
                clean[key] = sanitize_for_logging(str(value), 200)
        return clean

    def _emit(self, event: AuditEvent) -> None:
        level = getattr(logging, event.severity, logging.INFO)
        self.logger.log(level, event.to_json())

    def _event(self, event_type: str, severity: str, subject: str = "",
               context: Optional[Dict[str, Any]] = None, **kwargs) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            severity=severity,
            subject=sanitize_for_logging(subject, 50) if subject else "",
            subject_hash=subject_fingerprint(subject) if subject else "",
            request_id=self._request_id,
            source_ip=self._source_ip,
            context=self._sanitize_context(context),
            **kwargs
        )

    def log_validation_failure(self, field: str, error_code: str, input_value: str,
                               source: str = "",
                               additional_context: Optional[Dict[str, Any]] = None) -> None:
        self._emit(self._event(
            "VALIDATION_FAILED", "WARNING", input_value, additional_context,
            field_name=field, error_code=error_code, source=source,
        ))

    def log_screening(self, subject: str, kind: str, score: int, level: str,
                      failed_sources: Dict[str, Optional[str]], duration_ms: int) -> None:
        """Record a completed screening; CRITICAL results also log SANCTIONS_HIT"""
        context = {
            'kind': kind,
            'score': score,
            'level': level,
            'failed_sources': {k: v for k, v in failed_sources.items() if v},
            'duration_ms': duration_ms,
        }
        self._emit(self._event("SCREENING_COMPLETED", "INFO", subject, context, source="screener"))
        if level == 'CRITICAL':
            self._emit(self._event("SANCTIONS_HIT", "CRITICAL", subject, context, source="screener"))

    def log_watchlist_change(self, action: str, subject_key: str, name: str = "") -> None:
        self._emit(self._event(
            f"WATCHLIST_{action.upper()}", "INFO", subject_key, {'name': name}, source="watcher",
        ))

    def log_alert_status(self, alert_id: str, status: str, actor: str = "") -> None:
        self._emit(self._event(
            "ALERT_STATUS_CHANGED", "INFO", context={'alert_id': alert_id, 'status': status,
                                                       'actor': actor},
            source="api",
        ))


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger(log_dir: str = "logs", enable_console: bool = False,
                     enable_file: bool = True) -> AuditLogger:
    """Get or create the global audit logger"""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(log_dir=log_dir, enable_console=enable_console,
                                    enable_file=enable_file)
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)"""
    global _audit_logger
    _audit_logger = None
