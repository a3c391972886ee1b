"""
Operator Bootstrap & Event Routing
==================================
Startup order:

    Settings -> ResourceRegistry -> ReportStore -> Scanner (validated)
             -> reconcilers -> controllers

The scanner is built before anything else that does work, so a
configuration with zero or several scanners fails before a single
reconcile runs.

Watch events only carry keys into the controllers' work queues; the
reconcilers always read the live state themselves.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from security_operator.cluster import ClusterClient
from security_operator.config import Settings
from security_operator.controller import Controller
from security_operator.inspector import WorkloadInspector
from security_operator.queue import ExponentialBackoff, WorkQueue
from security_operator.reconcilers import ScanJobReconciler, WorkloadReconciler
from security_operator.resources import (
    EventKind,
    ResourceRegistry,
    ScanJobEvent,
    WorkloadEvent,
    build_registry,
)
from security_operator.scanners import NameGenerator, Scanner, build_scanner
from security_operator.store import ReportStore

logger = logging.getLogger(__name__)


class Operator:
    """
    Wires the two control loops together.

    Args:
        settings: validated settings
        cluster: cluster client
        store: report store
        scanner: the scanner selected at startup
        registry: resource registry shared by all components
    """

    def __init__(
        self,
        settings: Settings,
        cluster: ClusterClient,
        store: ReportStore,
        scanner: Scanner,
        registry: ResourceRegistry,
    ):
        self.settings = settings
        self.cluster = cluster
        self.store = store
        self.scanner = scanner
        self.registry = registry
        self.inspector = WorkloadInspector(cluster)

        self.workload_reconciler = WorkloadReconciler(
            cluster,
            store,
            scanner,
            operator_namespace=settings.operator_namespace,
            target_namespace=settings.target_namespace,
            excluded_namespaces=settings.excluded_namespaces,
            inspector=self.inspector,
        )
        self.scan_job_reconciler = ScanJobReconciler(
            cluster,
            store,
            scanner,
            retry_limit=settings.scan_job_retry_limit,
            inspector=self.inspector,
        )

        self.workload_controller = self._controller("workload", self.workload_reconciler)
        self.scan_job_controller = self._controller("scan-job", self.scan_job_reconciler)
        self._resync_task: asyncio.Task | None = None

    def _controller(self, name: str, reconciler) -> Controller:
        backoff = ExponentialBackoff(
            self.settings.requeue_base_delay_seconds,
            self.settings.requeue_max_delay_seconds,
        )
        return Controller(
            name,
            reconciler,
            queue=WorkQueue(backoff, name=name),
            workers=self.settings.worker_concurrency,
            reconcile_timeout=self.settings.reconcile_timeout_seconds,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cluster: ClusterClient,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ResourceRegistry | None = None,
        name_generator: NameGenerator | None = None,
    ) -> "Operator":
        """
        Build a fully wired operator.

        Raises:
            ConfigurationException: if the scanner configuration is invalid
        """
        registry = registry or build_registry()
        store = ReportStore(session_factory)
        scanner = build_scanner(settings, cluster, registry, name_generator=name_generator)
        logger.info(f"Using {scanner.info.name} {scanner.info.version} ({scanner.mode.value} scanner)")
        return cls(settings, cluster, store, scanner, registry)

    # =========================================================================
    # EVENT ROUTING
    # =========================================================================

    def handle_workload_event(self, event: WorkloadEvent) -> None:
        self.workload_controller.enqueue(event.key)

    def handle_scan_job_event(self, event: ScanJobEvent) -> None:
        if event.kind is EventKind.DELETED:
            # a finished or abandoned scan frees the target for the next one
            self.workload_controller.enqueue(event.job.workload_key)
        else:
            self.scan_job_controller.enqueue(event.job.key)

    async def resync(self) -> None:
        """Enqueue every pod and scan job, as a watch's initial list would."""
        pods = await self.cluster.list_pods(self.settings.target_namespace or None)
        for pod in pods:
            self.handle_workload_event(WorkloadEvent(EventKind.MODIFIED, pod))
        for job in await self.cluster.list_jobs(self.settings.operator_namespace):
            self.handle_scan_job_event(ScanJobEvent(EventKind.MODIFIED, job))
        logger.debug(f"Resync queued {len(pods)} pod(s)")

    async def _resync_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.resync()
            except Exception as e:
                logger.exception(f"Resync failed: {e}")

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        await self.workload_reconciler.collect_garbage()
        self.workload_controller.start()
        self.scan_job_controller.start()
        await self.resync()
        if self.settings.resync_interval_seconds > 0:
            self._resync_task = asyncio.create_task(
                self._resync_forever(self.settings.resync_interval_seconds),
                name="resync",
            )
        logger.info("Operator started")

    async def stop(self) -> None:
        if self._resync_task is not None:
            self._resync_task.cancel()
            await asyncio.gather(self._resync_task, return_exceptions=True)
            self._resync_task = None
        await self.workload_controller.stop()
        await self.scan_job_controller.stop()
        logger.info("Operator stopped")

    async def wait_idle(self) -> None:
        """Wait until both controllers have nothing queued or in progress."""
        while True:
            await self.workload_controller.wait_idle()
            await self.scan_job_controller.wait_idle()
            if self.workload_controller.queue.idle and self.scan_job_controller.queue.idle:
                return
