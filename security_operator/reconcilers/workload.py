"""
Workload Reconciler
===================
Drives the report of every container of a pod towards the image the
container currently runs. Per container, the state is re-derived from the
live pod on every call:

    UpToDate   stored report has the container's image hash
    Blocked    terminal scan condition for the same image hash
    Scanning   a scan job for the same image hash is still to be processed
    NeedsScan  anything else -> start a scan

Transient failures of any container requeue the whole key once every
container has been looked at; fatal failures block the container until its
image changes.
"""

import logging
from typing import Any, Iterable, Mapping

from security_operator.cluster import ClusterClient
from security_operator.controller import ReconcileResult
from security_operator.exceptions import (
    ClusterException,
    DatabaseTransactionException,
    FatalScanException,
    RequeueException,
    TransientScanException,
)
from security_operator.inspector import WorkloadInspector
from security_operator.logs import ReconcileLogAdapter
from security_operator.resources import ScanJobRef, WorkloadRef, is_managed, split_key, target_id
from security_operator.scanners import ScanOutcome, Scanner
from security_operator.store import ReportKey, ReportStore

logger = logging.getLogger(__name__)

EVENT_REASON_SCAN_FAILED = "VulnerabilityScanFailed"


class WorkloadReconciler:
    """
    Reconciles pods, keyed by ``namespace/name``.

    Args:
        cluster: cluster client (pods, jobs, events)
        store: report store
        scanner: the configured scanner
        operator_namespace: namespace scan jobs run in, never scanned itself
        target_namespace: only this namespace is scanned; empty for all
        excluded_namespaces: namespaces never scanned
        inspector: pod helper (one over ``cluster`` when omitted)
    """

    def __init__(
        self,
        cluster: ClusterClient,
        store: ReportStore,
        scanner: Scanner,
        operator_namespace: str,
        target_namespace: str = "",
        excluded_namespaces: Iterable[str] = (),
        inspector: WorkloadInspector | None = None,
    ):
        self.cluster = cluster
        self.store = store
        self.scanner = scanner
        self.operator_namespace = operator_namespace
        self.target_namespace = target_namespace
        self.excluded_namespaces = frozenset(excluded_namespaces)
        self.inspector = inspector or WorkloadInspector(cluster)

    def is_excluded(self, pod: Mapping[str, Any]) -> bool:
        metadata = pod.get("metadata") or {}
        namespace = metadata.get("namespace", "")
        if namespace == self.operator_namespace or namespace in self.excluded_namespaces:
            return True
        if self.target_namespace and namespace != self.target_namespace:
            return True
        # pods of our own scan jobs
        return is_managed(metadata)

    async def reconcile(self, key: str) -> ReconcileResult:
        namespace, name = split_key(key)
        log = ReconcileLogAdapter(logger, {"key": key})

        pod = await self.cluster.get_pod(namespace, name)
        if pod is None:
            log.info("Workload is gone, cleaning up")
            await self.cleanup(namespace, name)
            return ReconcileResult()

        if self.is_excluded(pod):
            log.debug("Workload excluded from scanning")
            return ReconcileResult()

        if not self.inspector.is_ready_for_scanning(pod):
            log.debug("Workload not ready for scanning yet")
            return ReconcileResult()

        workload = self.inspector.snapshot(pod)
        await self._forget_previous_instance(workload, log)

        errors: list[Exception] = []
        for index, container in enumerate(workload.containers):
            try:
                await self.reconcile_container(workload, index, log)
            except FatalScanException as e:
                await self._block(workload, container.name, container.image_hash, e, log)
            except TransientScanException as e:
                log.warning(f"Container {container.name}: {e.message}")
                await self.store.record_failure(
                    ReportKey.for_container(workload, container.name),
                    container.image_hash,
                    e.error_code,
                    e.message,
                    count_attempt=False,
                )
                errors.append(e)
            except (ClusterException, DatabaseTransactionException) as e:
                log.warning(f"Container {container.name}: {e.message}")
                errors.append(e)

        if errors:
            raise RequeueException(key, errors)
        return ReconcileResult()

    async def reconcile_container(
        self,
        workload: WorkloadRef,
        index: int,
        log: logging.LoggerAdapter,
    ) -> None:
        container = workload.container(index)
        report_key = ReportKey.for_container(workload, container.name)

        if await self.store.exists(report_key, container.image_hash):
            log.debug(f"Container {container.name}: report up to date")
            return

        condition = await self.store.get_condition(report_key)
        if condition is not None and condition.blocks(container.image_hash):
            log.debug(f"Container {container.name}: blocked ({condition.reason})")
            return

        jobs = await self.cluster.list_jobs(
            self.operator_namespace,
            target=target_id(workload.namespace, workload.name, container.name),
        )
        in_flight = [
            job for job in jobs
            if job.image_hash == container.image_hash and job.workload_uid == workload.uid
        ]
        for job in jobs:
            if job not in in_flight:
                log.info(f"Container {container.name}: deleting superseded scan job {job.key}")
                await self.cluster.delete_job(job.namespace, job.name)
        if in_flight:
            log.debug(f"Container {container.name}: scan in progress ({in_flight[0].key})")
            return

        # a job may have finished since the first check
        if await self.store.exists(report_key, container.image_hash):
            log.debug(f"Container {container.name}: report up to date")
            return

        log.info(f"Container {container.name}: scanning {container.image}")
        outcome = await self.scanner.start(workload, index)
        if isinstance(outcome, ScanOutcome):
            await self.store.upsert(report_key, outcome.report, workload.uid)
            await self.store.clear_condition(report_key)
        else:
            log.info(f"Container {container.name}: waiting for scan job {outcome.key}")

    async def _block(
        self,
        workload: WorkloadRef,
        container_name: str,
        image_hash: str,
        error: FatalScanException,
        log: logging.LoggerAdapter,
    ) -> None:
        log.error(f"Container {container_name}: {error.message}")
        await self.store.record_failure(
            ReportKey.for_container(workload, container_name),
            image_hash,
            error.error_code,
            error.message,
            terminal=True,
        )
        await self.cluster.record_event(
            workload.namespace,
            workload.name,
            workload.uid,
            EVENT_REASON_SCAN_FAILED,
            f"container {container_name}: {error.message}",
        )

    async def _forget_previous_instance(self, workload: WorkloadRef, log: logging.LoggerAdapter) -> None:
        """Drop state left by an earlier pod that had the same name."""
        reports = await self.store.list_reports(workload.namespace, workload.name)
        if any(r.workload_uid and r.workload_uid != workload.uid for r in reports):
            log.info("Workload was recreated, discarding reports of the previous instance")
            await self.store.delete_for_workload(workload.namespace, workload.name)

    # =========================================================================
    # CLEANUP
    # =========================================================================

    async def _workload_jobs(self, namespace: str, name: str) -> list[ScanJobRef]:
        jobs = await self.cluster.list_jobs(self.operator_namespace)
        return [
            job for job in jobs
            if job.workload_namespace == namespace and job.workload_name == name
        ]

    async def cleanup(self, namespace: str, name: str) -> None:
        """Delete reports, conditions and scan jobs of a workload."""
        await self.store.delete_for_workload(namespace, name)
        for job in await self._workload_jobs(namespace, name):
            await self.cluster.delete_job(job.namespace, job.name)

    async def collect_garbage(self) -> int:
        """
        Remove state of workloads deleted while the operator was down.

        Returns the number of workloads cleaned up.
        """
        removed = 0
        for namespace, name in await self.store.list_workloads():
            if not await self.inspector.exists(namespace, name):
                await self.cleanup(namespace, name)
                removed += 1

        for job in await self.cluster.list_jobs(self.operator_namespace):
            if not await self.inspector.exists(job.workload_namespace, job.workload_name, job.workload_uid):
                logger.info(f"Deleting orphaned scan job {job.key}")
                await self.cluster.delete_job(job.namespace, job.name)

        if removed:
            logger.info(f"Garbage collection removed state of {removed} workload(s)")
        return removed
