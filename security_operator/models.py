"""
SQLAlchemy ORM Models - Report Store Schema
===========================================
1. ONE CURRENT REPORT PER TARGET:
   - Unique (namespace, workload_name, container_name)
   - A new image overwrites the row; reports are never merged

2. HYBRID STORAGE:
   - JSON column (JSONB on PostgreSQL) holding the ordered findings
   - Scalar severity counts for cheap filtering

3. OPTIMISTIC CONCURRENCY:
   - version_id_col turns every UPDATE into a conditional update
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from security_operator.database import Base
from security_operator.schemas import Finding, ReportData, ScannerInfo

JSON_VARIANT = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# CORE MODEL: VulnerabilityReport
# =============================================================================

class VulnerabilityReport(Base):
    """
    Current vulnerability report for one (workload, container).

    ``image_hash`` records which image the findings belong to; a live
    container whose image hash differs makes the report stale.
    """

    __tablename__ = "vulnerability_reports"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # ==========================================================================
    # TARGET IDENTIFICATION
    # ==========================================================================

    namespace: Mapped[str] = mapped_column(String(253), nullable=False)
    workload_name: Mapped[str] = mapped_column(String(253), nullable=False)
    workload_uid: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    container_name: Mapped[str] = mapped_column(String(253), nullable=False)

    image: Mapped[str] = mapped_column(String(1024), nullable=False)
    image_hash: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
        comment="Digest (or reference hash) of the scanned image",
    )

    # ==========================================================================
    # SCANNER
    # ==========================================================================

    scanner_name: Mapped[str] = mapped_column(String(64), nullable=False)
    scanner_vendor: Mapped[str] = mapped_column(String(64), nullable=False)
    scanner_version: Mapped[str] = mapped_column(String(64), nullable=False)

    # ==========================================================================
    # FINDINGS
    # ==========================================================================

    findings: Mapped[list] = mapped_column(JSON_VARIANT, nullable=False, default=list)

    critical_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    high_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    medium_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    low_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unknown_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)

    # ==========================================================================
    # TIMESTAMPS & CONCURRENCY
    # ==========================================================================

    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the scanner produced the findings",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id, "eager_defaults": True}

    __table_args__ = (
        UniqueConstraint(
            "namespace",
            "workload_name",
            "container_name",
            name="uq_report_target",
        ),
        Index("ix_reports_workload", "namespace", "workload_name"),
        CheckConstraint(
            "critical_count >= 0 AND high_count >= 0 AND medium_count >= 0 "
            "AND low_count >= 0 AND unknown_count >= 0",
            name="ck_report_counts_positive",
        ),
        {"comment": "Current vulnerability report per workload container"},
    )

    # ==========================================================================
    # INSTANCE METHODS
    # ==========================================================================

    def apply(self, report: ReportData, workload_uid: str) -> None:
        """Overwrite every derived column with a new scan result."""
        summary = report.summary
        self.workload_uid = workload_uid
        self.image = report.image
        self.image_hash = report.image_hash
        self.scanner_name = report.scanner.name
        self.scanner_vendor = report.scanner.vendor
        self.scanner_version = report.scanner.version
        self.findings = [f.model_dump(mode="json") for f in report.findings]
        self.critical_count = summary.critical
        self.high_count = summary.high
        self.medium_count = summary.medium
        self.low_count = summary.low
        self.unknown_count = summary.unknown
        self.total_count = summary.total
        self.generated_at = report.generated_at

    def to_report_data(self) -> ReportData:
        generated_at = self.generated_at
        if generated_at.tzinfo is None:
            generated_at = generated_at.replace(tzinfo=timezone.utc)
        return ReportData(
            scanner=ScannerInfo(
                name=self.scanner_name,
                vendor=self.scanner_vendor,
                version=self.scanner_version,
            ),
            image=self.image,
            image_hash=self.image_hash,
            generated_at=generated_at,
            findings=[Finding.model_validate(f) for f in self.findings or []],
        )

    def __repr__(self) -> str:
        return (
            f"<VulnerabilityReport("
            f"target={self.namespace}/{self.workload_name}/{self.container_name}, "
            f"image_hash={self.image_hash}, "
            f"total={self.total_count}"
            f")>"
        )


# =============================================================================
# SUPPORTING MODEL: ScanCondition
# =============================================================================

class ScanCondition(Base):
    """
    Failure state of one scan target.

    A row exists only while the latest scan attempts for the target are
    failing. ``terminal`` rows block automatic retries until the container
    runs a different image.
    """

    __tablename__ = "scan_conditions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    namespace: Mapped[str] = mapped_column(String(253), nullable=False)
    workload_name: Mapped[str] = mapped_column(String(253), nullable=False)
    container_name: Mapped[str] = mapped_column(String(253), nullable=False)
    image_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    reason: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Machine-readable error code (e.g., 'SCAN_TIMEOUT', 'INVALID_IMAGE')",
    )
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_job: Mapped[str | None] = mapped_column(
        String(253),
        nullable=True,
        comment="Last scan job counted in attempts",
    )
    terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    last_transition_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint(
            "namespace",
            "workload_name",
            "container_name",
            name="uq_condition_target",
        ),
        CheckConstraint("attempts >= 0", name="ck_condition_attempts_positive"),
    )

    def blocks(self, image_hash: str) -> bool:
        """True if this condition forbids scanning the given image again."""
        return self.terminal and self.image_hash == image_hash
