"""
Scanner Abstraction
===================
A scanner turns one container of a workload into a vulnerability report.

    SyncScanner.start  -> ScanOutcome   (report available immediately)
    AsyncScanner.start -> ScanJobRef    (report retrieved once the job ends)

Failures are raised, never returned: TransientScanException is retried with
backoff, FatalScanException blocks the target until its image changes.
"""

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from security_operator.cluster import ClusterClient
from security_operator.exceptions import (
    ClusterException,
    FatalScanException,
    TransientScanException,
)
from security_operator.resources import (
    LABEL_MANAGED_BY,
    LABEL_TARGET,
    MANAGED_BY_VALUE,
    ContainerImage,
    ResourceRegistry,
    ScanJobRef,
    WorkloadRef,
)
from security_operator.scanners.names import NameGenerator, RandomNameGenerator, job_name
from security_operator.schemas import ReportData, ScannerInfo

logger = logging.getLogger(__name__)


class ScanMode(str, enum.Enum):
    SYNC = "sync"
    ASYNC = "async"


@dataclass(frozen=True)
class ScanOutcome:
    """Result of a scan that completed inside ``start``."""

    report: ReportData


class Scanner(ABC):
    """Common interface of every scanner backend."""

    name: str = "scanner"
    mode: ScanMode

    @property
    @abstractmethod
    def info(self) -> ScannerInfo:
        """Scanner identity recorded on reports."""

    @abstractmethod
    async def start(self, workload: WorkloadRef, container_index: int) -> ScanOutcome | ScanJobRef:
        """
        Begin scanning ``workload.containers[container_index]``.

        Raises:
            TransientScanException: retry later
            FatalScanException: this image cannot be scanned
        """


class SyncScanner(Scanner):
    """Scanner that finishes the whole scan before ``start`` returns."""

    mode = ScanMode.SYNC

    async def start(self, workload: WorkloadRef, container_index: int) -> ScanOutcome:
        container = workload.container(container_index)
        report = await self.scan(workload, container)
        return ScanOutcome(report=report)

    @abstractmethod
    async def scan(self, workload: WorkloadRef, container: ContainerImage) -> ReportData:
        ...


class AsyncScanner(Scanner):
    """
    Scanner that runs each scan as a Kubernetes Job.

    Subclasses provide the scanner container(s), the preconditions and the
    parsing of the scanner output; job naming, the Job envelope and result
    retrieval are shared.

    Args:
        cluster: execution substrate the jobs are created on
        registry: resource registry (Job API coordinates)
        namespace: namespace the jobs run in
        scan_timeout_seconds: activeDeadlineSeconds of every job
        name_generator: job name suffix source
    """

    mode = ScanMode.ASYNC

    # container whose log carries the scan result
    result_container = "scanner"

    def __init__(
        self,
        cluster: ClusterClient,
        registry: ResourceRegistry,
        namespace: str,
        scan_timeout_seconds: int,
        name_generator: NameGenerator | None = None,
    ):
        self.cluster = cluster
        self.registry = registry
        self.namespace = namespace
        self.scan_timeout_seconds = scan_timeout_seconds
        self.name_generator = name_generator or RandomNameGenerator()

    async def start(self, workload: WorkloadRef, container_index: int) -> ScanJobRef:
        container = workload.container(container_index)
        await self.check_preconditions(workload, container)

        job = ScanJobRef(
            name=job_name(workload.name, container.name, self.name_generator.suffix()),
            namespace=self.namespace,
            workload_namespace=workload.namespace,
            workload_name=workload.name,
            workload_uid=workload.uid,
            container_name=container.name,
            image=container.image,
            image_hash=container.image_hash,
            scanner=self.name,
        )
        try:
            await self.cluster.create_job(job, self.job_manifest(job, container))
        except ClusterException as e:
            raise TransientScanException(container.image, str(e), error_code="JOB_CREATE_FAILED") from e

        logger.info(f"Created scan job {job.key} for {workload.key}/{container.name} ({container.image})")
        return job

    def job_manifest(self, job: ScanJobRef, container: ContainerImage) -> dict[str, Any]:
        job_kind = self.registry.get("job")
        return {
            "apiVersion": job_kind.api_version,
            "kind": job_kind.kind,
            "metadata": {
                "name": job.name,
                "namespace": job.namespace,
                "labels": job.labels(),
                "annotations": job.annotations(),
            },
            "spec": {
                "backoffLimit": 0,
                "activeDeadlineSeconds": self.scan_timeout_seconds,
                "template": {
                    "metadata": {
                        # scan pods carry the managed-by label so they are never scanned
                        "labels": {
                            LABEL_MANAGED_BY: MANAGED_BY_VALUE,
                            LABEL_TARGET: job.target,
                        },
                    },
                    "spec": {
                        "restartPolicy": "Never",
                        "containers": self.job_containers(job, container),
                    },
                },
            },
        }

    async def retrieve_results(self, job: ScanJobRef) -> ReportData:
        """
        Read and parse the output of a succeeded job.

        Raises:
            TransientScanException: the log could not be read right now
            FatalScanException: the output is gone or cannot be parsed
        """
        try:
            output = await self.cluster.read_job_logs(job, self.result_container)
        except ClusterException as e:
            if e.status == 404:
                raise FatalScanException(
                    job.image,
                    f"output of scan job {job.key} is no longer available",
                    error_code="SCAN_RESULTS_UNAVAILABLE",
                ) from e
            raise TransientScanException(job.image, str(e), error_code="SCAN_RESULTS_UNREADABLE") from e
        return self.parse_results(job, output)

    @abstractmethod
    async def check_preconditions(self, workload: WorkloadRef, container: ContainerImage) -> None:
        ...

    @abstractmethod
    def job_containers(self, job: ScanJobRef, container: ContainerImage) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    def parse_results(self, job: ScanJobRef, output: str) -> ReportData:
        ...
