"""
Cluster Execution Substrate
===========================
The narrow set of Kubernetes operations the reconcilers need. All mutating
calls are idempotent: create is create-if-absent, delete is
delete-if-present.

KubernetesClusterClient wraps the synchronous ``kubernetes`` client and runs
each call in a worker thread so a slow API server only blocks the reconcile
that is waiting on it.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from security_operator.exceptions import ClusterException
from security_operator.resources import (
    LABEL_MANAGED_BY,
    LABEL_TARGET,
    MANAGED_BY_VALUE,
    ResourceRegistry,
    ScanJobRef,
    scan_job_from_manifest,
)

logger = logging.getLogger(__name__)


class ClusterClient(ABC):
    """Operations on pods, scan jobs and events."""

    @abstractmethod
    async def get_pod(self, namespace: str, name: str) -> dict[str, Any] | None:
        """Current pod manifest, or None if it does not exist."""

    @abstractmethod
    async def list_pods(self, namespace: str | None = None) -> list[dict[str, Any]]:
        """Pods in a namespace, or in all namespaces when None."""

    @abstractmethod
    async def create_job(self, job: ScanJobRef, manifest: dict[str, Any]) -> bool:
        """Create a scan job; False if a job with that name already exists."""

    @abstractmethod
    async def get_job(self, namespace: str, name: str) -> ScanJobRef | None:
        """Observed scan job, or None if absent or not managed by us."""

    @abstractmethod
    async def list_jobs(
        self,
        namespace: str,
        target: str | None = None,
    ) -> list[ScanJobRef]:
        """Managed scan jobs, optionally only those of one scan target."""

    @abstractmethod
    async def delete_job(self, namespace: str, name: str) -> bool:
        """Delete a scan job and its pods; False if it was already gone."""

    @abstractmethod
    async def read_job_logs(self, job: ScanJobRef, container: str) -> str:
        """Log output of the given container of the job's pod."""

    @abstractmethod
    async def record_event(
        self,
        namespace: str,
        name: str,
        uid: str,
        reason: str,
        message: str,
        event_type: str = "Warning",
    ) -> None:
        """Attach a Kubernetes event to a pod."""


class KubernetesClusterClient(ClusterClient):
    """
    ClusterClient backed by the official kubernetes Python client.

    Args:
        api_client: configured ApiClient (authentication is the caller's job)
        registry: resource registry providing API coordinates
        component: event source component name
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        registry: ResourceRegistry,
        component: str = MANAGED_BY_VALUE,
    ):
        self.api_client = api_client
        self.registry = registry
        self.component = component
        self.core_v1 = client.CoreV1Api(api_client)
        self.batch_v1 = client.BatchV1Api(api_client)

    def _serialize(self, obj: Any) -> dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    async def _call(self, operation: str, fn, *args, ignore: tuple[int, ...] = (), **kwargs):
        """
        Run a blocking API call in a thread.

        Returns None for statuses listed in ``ignore``; other API errors
        become ClusterException.
        """
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            if e.status in ignore:
                return None
            raise ClusterException(operation, e.reason or str(e), status=e.status) from e

    # =========================================================================
    # PODS
    # =========================================================================

    async def get_pod(self, namespace: str, name: str) -> dict[str, Any] | None:
        pod = await self._call(
            "read_pod", self.core_v1.read_namespaced_pod, name, namespace, ignore=(404,)
        )
        return self._serialize(pod) if pod is not None else None

    async def list_pods(self, namespace: str | None = None) -> list[dict[str, Any]]:
        if namespace:
            pods = await self._call("list_pods", self.core_v1.list_namespaced_pod, namespace)
        else:
            pods = await self._call("list_pods", self.core_v1.list_pod_for_all_namespaces)
        return [self._serialize(p) for p in pods.items]

    # =========================================================================
    # JOBS
    # =========================================================================

    async def create_job(self, job: ScanJobRef, manifest: dict[str, Any]) -> bool:
        created = await self._call(
            "create_job",
            self.batch_v1.create_namespaced_job,
            job.namespace,
            manifest,
            ignore=(409,),
        )
        if created is None:
            logger.info(f"Scan job {job.key} already exists")
            return False
        return True

    async def get_job(self, namespace: str, name: str) -> ScanJobRef | None:
        job = await self._call(
            "read_job", self.batch_v1.read_namespaced_job, name, namespace, ignore=(404,)
        )
        if job is None:
            return None
        return scan_job_from_manifest(self._serialize(job))

    async def list_jobs(self, namespace: str, target: str | None = None) -> list[ScanJobRef]:
        selector = f"{LABEL_MANAGED_BY}={MANAGED_BY_VALUE}"
        if target:
            selector += f",{LABEL_TARGET}={target}"
        jobs = await self._call(
            "list_jobs",
            self.batch_v1.list_namespaced_job,
            namespace,
            label_selector=selector,
        )
        refs = [scan_job_from_manifest(self._serialize(j)) for j in jobs.items]
        return [ref for ref in refs if ref is not None]

    async def delete_job(self, namespace: str, name: str) -> bool:
        deleted = await self._call(
            "delete_job",
            self.batch_v1.delete_namespaced_job,
            name,
            namespace,
            propagation_policy="Background",
            ignore=(404,),
        )
        return deleted is not None

    async def read_job_logs(self, job: ScanJobRef, container: str) -> str:
        pods = await self._call(
            "list_job_pods",
            self.core_v1.list_namespaced_pod,
            job.namespace,
            label_selector=f"job-name={job.name}",
        )
        if not pods.items:
            raise ClusterException("read_job_logs", f"no pods found for job {job.key}", status=404)

        # newest pod holds the final attempt
        pod = max(pods.items, key=lambda p: p.metadata.creation_timestamp or datetime.min.replace(tzinfo=timezone.utc))
        return await self._call(
            "read_pod_log",
            self.core_v1.read_namespaced_pod_log,
            pod.metadata.name,
            job.namespace,
            container=container,
        )

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def record_event(
        self,
        namespace: str,
        name: str,
        uid: str,
        reason: str,
        message: str,
        event_type: str = "Warning",
    ) -> None:
        pod_kind = self.registry.get("pod")
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                name=f"{name}.{uuid.uuid4().hex[:16]}",
                namespace=namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=pod_kind.api_version,
                kind=pod_kind.kind,
                name=name,
                namespace=namespace,
                uid=uid,
            ),
            reason=reason,
            message=message[:1024],
            type=event_type,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            source=client.V1EventSource(component=self.component),
        )
        try:
            await self._call("create_event", self.core_v1.create_namespaced_event, namespace, event)
        except ClusterException as e:
            # events are informational; the scan condition row is authoritative
            logger.warning(f"Could not record event {reason} on {namespace}/{name}: {e}")
