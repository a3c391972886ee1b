"""
Report Store - Data Access Layer
================================
Persists one current vulnerability report per (workload, container) and the
scan conditions that make persistent failures observable.

Write semantics:
- upsert is an unconditional overwrite, last writer wins
- concurrent writers are detected by the version counter (StaleDataError)
  or the unique constraint (IntegrityError) and the write is retried as a
  plain overwrite
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncGenerator, Sequence

from sqlalchemy import and_, delete, desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from security_operator.exceptions import DatabaseTransactionException
from security_operator.models import ScanCondition, VulnerabilityReport
from security_operator.resources import ScanJobRef, WorkloadRef
from security_operator.schemas import ReportData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportKey:
    """Identity of one report: a container of a workload."""

    namespace: str
    workload_name: str
    container_name: str

    @classmethod
    def for_container(cls, workload: WorkloadRef, container_name: str) -> "ReportKey":
        return cls(workload.namespace, workload.name, container_name)

    @classmethod
    def for_job(cls, job: ScanJobRef) -> "ReportKey":
        return cls(job.workload_namespace, job.workload_name, job.container_name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.workload_name}/{self.container_name}"


def _target_filter(model, key: ReportKey):
    return and_(
        model.namespace == key.namespace,
        model.workload_name == key.workload_name,
        model.container_name == key.container_name,
    )


# =============================================================================
# REPOSITORIES - Session-scoped queries
# =============================================================================

class ReportRepository:
    """
    Queries over VulnerabilityReport.

    Bound to a caller-owned session; used by the store and by the API routes.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: ReportKey) -> VulnerabilityReport | None:
        stmt = select(VulnerabilityReport).where(_target_filter(VulnerabilityReport, key))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def exists(self, key: ReportKey, image_hash: str) -> bool:
        stmt = select(func.count(VulnerabilityReport.id)).where(
            _target_filter(VulnerabilityReport, key),
            VulnerabilityReport.image_hash == image_hash,
        )
        result = await self.session.execute(stmt)
        return (result.scalar() or 0) > 0

    async def list_reports(
        self,
        namespace: str | None = None,
        workload_name: str | None = None,
        page: int = 1,
        page_size: int | None = None,
        vulnerable_only: bool = False,
    ) -> tuple[Sequence[VulnerabilityReport], int]:
        """
        List reports with filtering and pagination.

        Returns:
            Tuple of (reports list, total count)
        """
        query = select(VulnerabilityReport)
        count_query = select(func.count(VulnerabilityReport.id))

        filters = []
        if namespace:
            filters.append(VulnerabilityReport.namespace == namespace)
        if workload_name:
            filters.append(VulnerabilityReport.workload_name == workload_name)
        if vulnerable_only:
            filters.append(VulnerabilityReport.total_count > 0)

        if filters:
            query = query.where(and_(*filters))
            count_query = count_query.where(and_(*filters))

        count_result = await self.session.execute(count_query)
        total = count_result.scalar() or 0

        query = query.order_by(
            VulnerabilityReport.namespace,
            VulnerabilityReport.workload_name,
            VulnerabilityReport.container_name,
        )
        if page_size is not None:
            query = query.offset((page - 1) * page_size).limit(page_size)

        result = await self.session.execute(query)
        return result.scalars().all(), total

    async def delete_for_workload(self, namespace: str, workload_name: str) -> int:
        stmt = delete(VulnerabilityReport).where(
            VulnerabilityReport.namespace == namespace,
            VulnerabilityReport.workload_name == workload_name,
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def workloads(self) -> set[tuple[str, str]]:
        stmt = select(VulnerabilityReport.namespace, VulnerabilityReport.workload_name).distinct()
        result = await self.session.execute(stmt)
        return {(row.namespace, row.workload_name) for row in result.all()}


class ConditionRepository:
    """Queries over ScanCondition."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: ReportKey) -> ScanCondition | None:
        stmt = select(ScanCondition).where(_target_filter(ScanCondition, key))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_conditions(
        self,
        namespace: str | None = None,
        terminal_only: bool = False,
    ) -> Sequence[ScanCondition]:
        query = select(ScanCondition)
        if namespace:
            query = query.where(ScanCondition.namespace == namespace)
        if terminal_only:
            query = query.where(ScanCondition.terminal.is_(True))
        query = query.order_by(desc(ScanCondition.last_transition_at))
        result = await self.session.execute(query)
        return result.scalars().all()

    async def delete(self, key: ReportKey) -> bool:
        stmt = delete(ScanCondition).where(_target_filter(ScanCondition, key))
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def delete_for_workload(self, namespace: str, workload_name: str) -> int:
        stmt = delete(ScanCondition).where(
            ScanCondition.namespace == namespace,
            ScanCondition.workload_name == workload_name,
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def workloads(self) -> set[tuple[str, str]]:
        stmt = select(ScanCondition.namespace, ScanCondition.workload_name).distinct()
        result = await self.session.execute(stmt)
        return {(row.namespace, row.workload_name) for row in result.all()}


# =============================================================================
# REPORT STORE
# =============================================================================

class ReportStore:
    """
    Transactional report store used by the reconcilers.

    Every operation runs in its own short transaction so that a report is
    durable as soon as ``upsert`` returns.

    Args:
        session_factory: async session factory bound to the store database
        max_write_attempts: attempts before a conflicting write gives up
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_write_attempts: int = 5,
    ):
        self.session_factory = session_factory
        self.max_write_attempts = max_write_attempts

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    # =========================================================================
    # REPORTS
    # =========================================================================

    async def get(self, key: ReportKey) -> VulnerabilityReport | None:
        async with self._session() as session:
            return await ReportRepository(session).get(key)

    async def exists(self, key: ReportKey, image_hash: str) -> bool:
        """True if the stored report for ``key`` was produced for ``image_hash``."""
        async with self._session() as session:
            return await ReportRepository(session).exists(key, image_hash)

    async def upsert(self, key: ReportKey, report: ReportData, workload_uid: str = "") -> None:
        """
        Replace the report for ``key``.

        Raises:
            DatabaseTransactionException: if the write keeps conflicting
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_write_attempts + 1):
            try:
                async with self._session() as session:
                    row = await ReportRepository(session).get(key)
                    if row is None:
                        row = VulnerabilityReport(
                            namespace=key.namespace,
                            workload_name=key.workload_name,
                            container_name=key.container_name,
                        )
                        session.add(row)
                    row.apply(report, workload_uid)
                    await session.flush()
                logger.info(
                    f"Stored report for {key}: image_hash={report.image_hash}, "
                    f"findings={report.summary.total}"
                )
                return
            except (StaleDataError, IntegrityError) as e:
                # another writer got there first; re-read and overwrite
                last_error = e
                logger.info(f"Concurrent write on report {key} (attempt {attempt}), retrying")

        raise DatabaseTransactionException("upsert", f"{key}: {last_error}")

    async def delete_for_workload(self, namespace: str, workload_name: str) -> int:
        """Delete every report and condition of a workload; returns reports deleted."""
        async with self._session() as session:
            deleted = await ReportRepository(session).delete_for_workload(namespace, workload_name)
            await ConditionRepository(session).delete_for_workload(namespace, workload_name)
        if deleted:
            logger.info(f"Deleted {deleted} report(s) of {namespace}/{workload_name}")
        return deleted

    async def list_reports(
        self,
        namespace: str | None = None,
        workload_name: str | None = None,
    ) -> Sequence[VulnerabilityReport]:
        async with self._session() as session:
            reports, _ = await ReportRepository(session).list_reports(namespace, workload_name)
            return reports

    async def list_workloads(self) -> list[tuple[str, str]]:
        """(namespace, name) of every workload with a report or condition."""
        async with self._session() as session:
            workloads = await ReportRepository(session).workloads()
            workloads |= await ConditionRepository(session).workloads()
        return sorted(workloads)

    # =========================================================================
    # SCAN CONDITIONS
    # =========================================================================

    async def get_condition(self, key: ReportKey) -> ScanCondition | None:
        async with self._session() as session:
            return await ConditionRepository(session).get(key)

    async def record_failure(
        self,
        key: ReportKey,
        image_hash: str,
        reason: str,
        message: str,
        terminal: bool = False,
        retry_limit: int | None = None,
        count_attempt: bool = True,
        job_name: str | None = None,
    ) -> ScanCondition:
        """
        Record a failed scan for ``key``.

        Attempts reset when the image hash changes. The condition becomes
        terminal when ``terminal`` is set or the attempts reach ``retry_limit``.

        With ``count_attempt`` unset only the reason and message are updated,
        so transient failures never use up the retry budget. A ``job_name``
        is counted once; recording the same job again leaves the row as is.
        """
        last_error: Exception | None = None
        for _ in range(self.max_write_attempts):
            try:
                async with self._session() as session:
                    condition = await ConditionRepository(session).get(key)
                    if condition is None:
                        condition = ScanCondition(
                            namespace=key.namespace,
                            workload_name=key.workload_name,
                            container_name=key.container_name,
                            image_hash=image_hash,
                            attempts=0,
                            terminal=False,
                        )
                        session.add(condition)
                    elif condition.image_hash != image_hash:
                        condition.image_hash = image_hash
                        condition.attempts = 0
                        condition.failed_job = None
                        condition.terminal = False
                    elif job_name is not None and condition.failed_job == job_name:
                        return condition

                    if count_attempt:
                        condition.attempts += 1
                    if job_name is not None:
                        condition.failed_job = job_name
                    condition.reason = reason
                    condition.message = message
                    condition.terminal = (
                        condition.terminal
                        or terminal
                        or (retry_limit is not None and condition.attempts >= retry_limit)
                    )
                    condition.last_transition_at = datetime.now(timezone.utc)
                    await session.flush()
                return condition
            except IntegrityError as e:
                last_error = e

        raise DatabaseTransactionException("record_failure", f"{key}: {last_error}")

    async def clear_condition(self, key: ReportKey) -> bool:
        async with self._session() as session:
            return await ConditionRepository(session).delete(key)

    async def list_conditions(
        self,
        namespace: str | None = None,
        terminal_only: bool = False,
    ) -> Sequence[ScanCondition]:
        async with self._session() as session:
            return await ConditionRepository(session).list_conditions(namespace, terminal_only)
