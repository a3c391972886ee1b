"""
Scan-Job Reconciler
===================
Finishes scans started by an AsyncScanner. Only terminal jobs are acted on:

    Succeeded -> retrieve results, upsert report, clear condition, delete job
    Failed    -> count the attempt once per job (terminal at the retry limit),
                 delete job

The report is written before the job is deleted, and an already stored
report for the job's image hash is never written again, so a crash between
the two steps still ends with exactly one report write.
"""

import logging
from typing import Any, Mapping

from security_operator.cluster import ClusterClient
from security_operator.controller import ReconcileResult
from security_operator.exceptions import (
    ClusterException,
    FatalScanException,
    RequeueException,
    TransientScanException,
)
from security_operator.inspector import WorkloadInspector
from security_operator.logs import ReconcileLogAdapter
from security_operator.reconcilers.workload import EVENT_REASON_SCAN_FAILED
from security_operator.resources import ScanJobPhase, ScanJobRef, split_key
from security_operator.scanners import AsyncScanner, Scanner
from security_operator.store import ReportKey, ReportStore

logger = logging.getLogger(__name__)


class ScanJobReconciler:
    """
    Reconciles scan jobs, keyed by ``namespace/name``.

    Args:
        cluster: cluster client
        store: report store
        scanner: the configured scanner; only an AsyncScanner can finish jobs
        retry_limit: failed jobs per image before the target is blocked
        inspector: pod helper (one over ``cluster`` when omitted)
    """

    def __init__(
        self,
        cluster: ClusterClient,
        store: ReportStore,
        scanner: Scanner,
        retry_limit: int = 3,
        inspector: WorkloadInspector | None = None,
    ):
        self.cluster = cluster
        self.store = store
        self.scanner = scanner
        self.retry_limit = retry_limit
        self.inspector = inspector or WorkloadInspector(cluster)

    async def reconcile(self, key: str) -> ReconcileResult:
        namespace, name = split_key(key)
        log = ReconcileLogAdapter(logger, {"key": key})

        job = await self.cluster.get_job(namespace, name)
        if job is None:
            return ReconcileResult()
        if not job.phase.is_terminal:
            log.debug(f"Scan job is {job.phase.value}")
            return ReconcileResult()

        pod = await self.cluster.get_pod(job.workload_namespace, job.workload_name)
        if pod is None or (pod.get("metadata") or {}).get("uid") != job.workload_uid:
            log.info(f"Workload {job.workload_key} is gone, deleting orphaned scan job")
            await self._delete(job, log)
            return ReconcileResult()

        if not isinstance(self.scanner, AsyncScanner) or (job.scanner and job.scanner != self.scanner.name):
            log.info(f"Scan job was created by scanner '{job.scanner}', which is not active; deleting it")
            await self._delete(job, log)
            return ReconcileResult()

        report_key = ReportKey.for_job(job)
        if job.phase is ScanJobPhase.SUCCEEDED:
            await self._succeeded(job, pod, report_key, log)
        else:
            await self._failed(
                job,
                report_key,
                "SCAN_JOB_FAILED",
                f"scan job {job.name} failed: {job.message or 'no reason reported'}",
                log,
            )
        return ReconcileResult()

    async def _succeeded(
        self,
        job: ScanJobRef,
        pod: Mapping[str, Any],
        report_key: ReportKey,
        log: logging.LoggerAdapter,
    ) -> None:
        if await self.store.exists(report_key, job.image_hash):
            log.info("Report already stored, deleting scan job")
            await self._delete(job, log)
            return

        live = self.inspector.snapshot(pod).find_container(job.container_name)
        if live is None or live.image_hash != job.image_hash:
            log.info(f"Container {job.container_name} no longer runs {job.image}, discarding results")
            await self._delete(job, log)
            return

        try:
            report = await self.scanner.retrieve_results(job)
        except TransientScanException as e:
            raise RequeueException(job.key, [e]) from e
        except FatalScanException as e:
            await self._failed(job, report_key, e.error_code, e.message, log)
            return

        await self.store.upsert(report_key, report, job.workload_uid)
        await self.store.clear_condition(report_key)
        await self._delete(job, log)

    async def _failed(
        self,
        job: ScanJobRef,
        report_key: ReportKey,
        reason: str,
        message: str,
        log: logging.LoggerAdapter,
    ) -> None:
        counted = await self.store.get_condition(report_key)
        if counted is not None and counted.image_hash == job.image_hash and counted.failed_job == job.name:
            log.info("Failure already recorded, deleting scan job")
            await self._delete(job, log)
            return

        condition = await self.store.record_failure(
            report_key,
            job.image_hash,
            reason,
            message,
            retry_limit=self.retry_limit,
            job_name=job.name,
        )
        if condition.terminal:
            log.error(f"Giving up on {report_key} after {condition.attempts} failed scan(s): {message}")
            await self.cluster.record_event(
                job.workload_namespace,
                job.workload_name,
                job.workload_uid,
                EVENT_REASON_SCAN_FAILED,
                f"container {job.container_name}: {message}",
            )
        else:
            log.warning(f"Scan attempt {condition.attempts}/{self.retry_limit} failed: {message}")
        await self._delete(job, log)

    async def _delete(self, job: ScanJobRef, log: logging.LoggerAdapter) -> None:
        try:
            await self.cluster.delete_job(job.namespace, job.name)
        except ClusterException as e:
            log.warning(f"Could not delete scan job: {e.message}")
            raise RequeueException(job.key, [e]) from e
