"""
Pydantic v2 Schemas - Report Values and API Data Transfer Objects
=================================================================
ReportData is the value a scanner produces and the store persists; the
response schemas are what the read-only report API serves.
"""

import enum
from datetime import datetime, timezone
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class Severity(str, enum.Enum):
    """Vulnerability severity, normalized across scanners."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def normalize(cls, value: str | None) -> "Severity":
        """Map scanner-specific labels ("high", "negligible", ...) onto the enum."""
        if not value:
            return cls.UNKNOWN
        value = value.strip().upper()
        if value == "NEGLIGIBLE":
            return cls.LOW
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# =============================================================================
# REPORT VALUES
# =============================================================================

class Finding(BaseModel):
    """A single vulnerability found in one package of an image."""

    model_config = ConfigDict(frozen=True)

    vulnerability_id: Annotated[str, Field(min_length=1, max_length=128)]
    severity: Severity = Severity.UNKNOWN
    package_name: str
    installed_version: str = ""
    fixed_version: str | None = None
    title: str = ""
    primary_link: str | None = None

    @field_validator("fixed_version")
    @classmethod
    def blank_fix_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v

    @property
    def is_fixable(self) -> bool:
        return self.fixed_version is not None


class ScannerInfo(BaseModel):
    """Identity of the scanner that produced a report."""

    model_config = ConfigDict(frozen=True)

    name: str
    vendor: str
    version: str


class SeveritySummary(BaseModel):
    """Finding counts per severity."""

    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    unknown: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low + self.unknown

    @classmethod
    def from_findings(cls, findings: list[Finding]) -> "SeveritySummary":
        counts = {s: 0 for s in Severity}
        for finding in findings:
            counts[finding.severity] += 1
        return cls(
            critical=counts[Severity.CRITICAL],
            high=counts[Severity.HIGH],
            medium=counts[Severity.MEDIUM],
            low=counts[Severity.LOW],
            unknown=counts[Severity.UNKNOWN],
        )


class ReportData(BaseModel):
    """
    Scan result for one container image, as written to the report store.

    Findings keep the scanner's order.
    """

    model_config = ConfigDict(frozen=True)

    scanner: ScannerInfo
    image: str
    image_hash: str
    generated_at: datetime = Field(default_factory=_utc_now)
    findings: list[Finding] = Field(default_factory=list)

    @computed_field
    @property
    def summary(self) -> SeveritySummary:
        return SeveritySummary.from_findings(self.findings)


# =============================================================================
# API RESPONSE SCHEMAS
# =============================================================================

class ReportSummaryResponse(BaseModel):
    """Report list item (no findings)."""

    model_config = ConfigDict(from_attributes=True)

    namespace: str
    workload_name: str
    container_name: str
    image: str
    image_hash: str
    scanner_name: str
    scanner_version: str
    critical_count: int
    high_count: int
    medium_count: int
    low_count: int
    unknown_count: int
    total_count: int
    generated_at: datetime
    updated_at: datetime | None = None


class ReportDetailResponse(ReportSummaryResponse):
    """Report with its findings."""

    scanner_vendor: str
    findings: list[Finding]


class ReportListResponse(BaseModel):
    items: list[ReportSummaryResponse]
    total: int


class ScanConditionResponse(BaseModel):
    """Observable per-target scan failure state."""

    model_config = ConfigDict(from_attributes=True)

    namespace: str
    workload_name: str
    container_name: str
    image_hash: str
    reason: str
    message: str
    attempts: int
    terminal: bool
    last_transition_at: datetime


class HealthCheckResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime = Field(default_factory=_utc_now)
    database: dict | None = None
