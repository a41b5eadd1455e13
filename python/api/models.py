"""
Pydantic request/response schemas for the Screening API

Transforms the engine's dataclasses (RiskAssessment, Alert, watcher status)
into Pydantic models for API validation and documentation.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ============================================
# SCREENING
# ============================================

class ScreeningRequest(BaseModel):
    """Request schema for entity screening.

    Length, character and kind checks are done by the screener so callers
    get the same error codes from the API and the library.
    """
    subject: str = Field(..., description="Person/organization name or wallet address")
    subject_kind: Optional[str] = Field(
        default="any",
        description="individual, organization, wallet or any"
    )
    country: Optional[str] = Field(
        default=None,
        max_length=2,
        description="ISO 3166-1 alpha-2 country filter for PEP search"
    )
    jurisdiction: Optional[str] = Field(
        default=None,
        max_length=10,
        description="Jurisdiction code for corporate registry search (e.g. gb, us_de)"
    )

    @field_validator('country', 'jurisdiction')
    @classmethod
    def lowercase_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        return v or None


class WalletScreeningRequest(BaseModel):
    """Request schema for wallet screening."""
    address: str = Field(..., description="Crypto wallet address")


class RiskFlagResponse(BaseModel):
    severity: str
    type: str
    message: str
    points: Optional[int] = None
    source: Optional[str] = None


class MatchCandidateResponse(BaseModel):
    record_id: str
    match_type: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    matched_name: str = ""


class ScreeningResponse(BaseModel):
    """Response schema for screening endpoints."""
    screening_id: str = Field(..., description="Unique screening identifier (UUID)")
    screening_date: str = Field(..., description="Screening timestamp (ISO 8601)")
    subject: str
    subject_kind: str
    score: int = Field(..., ge=0, le=100, description="Aggregated risk score")
    level: str = Field(..., description="CRITICAL, HIGH, MEDIUM or LOW")
    flags: List[RiskFlagResponse] = Field(default_factory=list)
    matches: List[MatchCandidateResponse] = Field(
        default_factory=list,
        description="Reference list match candidates"
    )
    diagnostics: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Per-source error, null when the source succeeded"
    )
    overridden: bool = Field(default=False, description="A floor override set the score")
    processing_time_ms: int = Field(..., ge=0)


# ============================================
# ALERTS / WATCHLIST
# ============================================

class AlertResponse(BaseModel):
    id: str
    subject_key: str
    event_type: str
    severity: str
    summary: str
    stream: str = ""
    company_name: Optional[str] = None
    timestamp: str
    status: str


class AlertListResponse(BaseModel):
    alerts: List[AlertResponse] = Field(default_factory=list)
    counts: Dict[str, int] = Field(default_factory=dict, description="Alerts per severity plus total")
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=0)


class AcknowledgeRequest(BaseModel):
    status: str = Field(default="acknowledged", description="acknowledged or resolved")


class WatchlistRequest(BaseModel):
    subject_key: str = Field(..., min_length=1, max_length=32, description="Company number")
    name: str = Field(default="", max_length=500, description="Display name")


class WatchlistResponse(BaseModel):
    subject_key: str
    watched: bool
    watchlist_size: int


class StreamStatusResponse(BaseModel):
    state: str
    connectAttempts: int = 0
    eventsReceived: int = 0
    lastError: Optional[str] = None
    lastEventAt: Optional[str] = None


class WatchlistStatusResponse(BaseModel):
    configured: bool
    subscriptionStates: Dict[str, StreamStatusResponse] = Field(default_factory=dict)
    watchlistSize: int = 0
    alertCount: int = 0
    disqualifiedOfficersTracked: int = 0


# ============================================
# HEALTH / ERRORS
# ============================================

class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    lists: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Reference list cache status"
    )
    sources: Dict[str, Any] = Field(default_factory=dict, description="Per-source call statistics")
    watcher_configured: bool = False
    database_ok: Optional[bool] = None
    memory_usage_mb: Optional[float] = Field(
        default=None,
        description="Current memory usage in MB"
    )
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )
    error_message: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: str = Field(..., description="Human-readable error message")
    code: str = Field(..., description="Error code for programmatic handling")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
