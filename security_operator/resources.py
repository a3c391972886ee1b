"""
Resource Model - Workloads, Scan Jobs and Observation Events
============================================================
Immutable snapshots of the cluster objects the reconcilers work on.

A WorkloadRef is taken from a pod every time it is reconciled and is never
persisted. A ScanJobRef is serialized onto its Kubernetes Job as labels and
annotations, so it can be rebuilt from any later observation of the Job,
including after an operator restart.
"""

import enum
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

# =============================================================================
# LABELS & ANNOTATIONS
# =============================================================================

DOMAIN = "security-operator.io"

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "security-operator"
LABEL_TARGET = f"{DOMAIN}/target"
LABEL_WORKLOAD_UID = f"{DOMAIN}/workload-uid"

ANNOTATION_WORKLOAD_NAMESPACE = f"{DOMAIN}/workload-namespace"
ANNOTATION_WORKLOAD_NAME = f"{DOMAIN}/workload-name"
ANNOTATION_CONTAINER = f"{DOMAIN}/container-name"
ANNOTATION_IMAGE = f"{DOMAIN}/image"
ANNOTATION_IMAGE_HASH = f"{DOMAIN}/image-hash"
ANNOTATION_SCANNER = f"{DOMAIN}/scanner"


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` queue key."""
    namespace, _, name = key.partition("/")
    if not name:
        raise ValueError(f"invalid key '{key}', expected namespace/name")
    return namespace, name


def target_id(namespace: str, workload_name: str, container_name: str) -> str:
    """
    Stable label value identifying one (workload, container) scan target.

    Pod names can be longer than a label value may be, so the identity is
    hashed; the readable parts live in annotations.
    """
    source = f"{namespace}/{workload_name}/{container_name}"
    return hashlib.sha256(source.encode()).hexdigest()[:40]


# =============================================================================
# ENUMS
# =============================================================================

class EventKind(str, enum.Enum):
    """Observation event types delivered by the watch transport."""
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class ScanJobPhase(str, enum.Enum):
    """
    Scan job lifecycle, driven by the cluster, only observed here.

        PENDING -> RUNNING -> SUCCEEDED
                          \\-> FAILED
    """
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanJobPhase.SUCCEEDED, ScanJobPhase.FAILED)


# =============================================================================
# WORKLOADS
# =============================================================================

@dataclass(frozen=True)
class ContainerImage:
    """One container of a workload and the image it runs."""

    name: str
    image: str
    image_hash: str
    image_id: str | None = None
    pull_policy: str | None = None


@dataclass(frozen=True)
class WorkloadRef:
    """Read-only snapshot of a pod, in container spec order."""

    namespace: str
    name: str
    uid: str
    containers: tuple[ContainerImage, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def container(self, index: int) -> ContainerImage:
        return self.containers[index]

    def find_container(self, name: str) -> ContainerImage | None:
        for container in self.containers:
            if container.name == name:
                return container
        return None


# =============================================================================
# SCAN JOBS
# =============================================================================

@dataclass(frozen=True)
class ScanJobRef:
    """Identity and observed state of one scan-execution unit."""

    name: str
    namespace: str
    workload_namespace: str
    workload_name: str
    workload_uid: str
    container_name: str
    image: str
    image_hash: str
    phase: ScanJobPhase = ScanJobPhase.PENDING
    message: str | None = None
    scanner: str | None = None
    created_at: datetime | None = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def workload_key(self) -> str:
        return f"{self.workload_namespace}/{self.workload_name}"

    @property
    def target(self) -> str:
        return target_id(self.workload_namespace, self.workload_name, self.container_name)

    def labels(self) -> dict[str, str]:
        return {
            LABEL_MANAGED_BY: MANAGED_BY_VALUE,
            LABEL_TARGET: self.target,
            LABEL_WORKLOAD_UID: self.workload_uid,
        }

    def annotations(self) -> dict[str, str]:
        annotations = {
            ANNOTATION_WORKLOAD_NAMESPACE: self.workload_namespace,
            ANNOTATION_WORKLOAD_NAME: self.workload_name,
            ANNOTATION_CONTAINER: self.container_name,
            ANNOTATION_IMAGE: self.image,
            ANNOTATION_IMAGE_HASH: self.image_hash,
        }
        if self.scanner:
            annotations[ANNOTATION_SCANNER] = self.scanner
        return annotations


def is_managed(metadata: Mapping[str, Any] | None) -> bool:
    """True if an object's metadata marks it as created by this operator."""
    labels = (metadata or {}).get("labels") or {}
    return labels.get(LABEL_MANAGED_BY) == MANAGED_BY_VALUE


def job_phase(status: Mapping[str, Any] | None) -> tuple[ScanJobPhase, str | None]:
    """Derive the scan phase (and failure message) from a Job status."""
    status = status or {}
    for condition in status.get("conditions") or []:
        if condition.get("status") != "True":
            continue
        if condition.get("type") == "Complete":
            return ScanJobPhase.SUCCEEDED, None
        if condition.get("type") == "Failed":
            return ScanJobPhase.FAILED, condition.get("message") or condition.get("reason")

    if (status.get("succeeded") or 0) > 0:
        return ScanJobPhase.SUCCEEDED, None
    if (status.get("failed") or 0) > 0:
        return ScanJobPhase.FAILED, None
    if (status.get("active") or 0) > 0:
        return ScanJobPhase.RUNNING, None
    return ScanJobPhase.PENDING, None


def scan_job_from_manifest(manifest: Mapping[str, Any]) -> ScanJobRef | None:
    """
    Rebuild a ScanJobRef from a Job manifest (camelCase dict).

    Returns None for jobs this operator did not create or whose
    annotations were tampered with.
    """
    metadata = manifest.get("metadata") or {}
    if not is_managed(metadata):
        return None

    labels = metadata.get("labels") or {}
    annotations = metadata.get("annotations") or {}
    try:
        workload_namespace = annotations[ANNOTATION_WORKLOAD_NAMESPACE]
        workload_name = annotations[ANNOTATION_WORKLOAD_NAME]
        container_name = annotations[ANNOTATION_CONTAINER]
        image = annotations[ANNOTATION_IMAGE]
        image_hash = annotations[ANNOTATION_IMAGE_HASH]
    except KeyError:
        return None

    phase, message = job_phase(manifest.get("status"))

    created_at = metadata.get("creationTimestamp")
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))

    return ScanJobRef(
        name=metadata["name"],
        namespace=metadata.get("namespace", ""),
        workload_namespace=workload_namespace,
        workload_name=workload_name,
        workload_uid=labels.get(LABEL_WORKLOAD_UID, ""),
        container_name=container_name,
        image=image,
        image_hash=image_hash,
        phase=phase,
        message=message,
        scanner=annotations.get(ANNOTATION_SCANNER),
        created_at=created_at,
    )


# =============================================================================
# OBSERVATION EVENTS
# =============================================================================

@dataclass(frozen=True)
class WorkloadEvent:
    """A pod was added, modified or deleted."""

    kind: EventKind
    pod: Mapping[str, Any]

    @property
    def key(self) -> str:
        metadata = self.pod.get("metadata") or {}
        return f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"


@dataclass(frozen=True)
class ScanJobEvent:
    """A scan job was added, modified or deleted."""

    kind: EventKind
    job: ScanJobRef


# =============================================================================
# RESOURCE REGISTRY
# =============================================================================

@dataclass(frozen=True)
class ResourceKind:
    """API coordinates of one resource kind the operator touches."""

    name: str
    api_version: str
    kind: str
    plural: str
    namespaced: bool = True


class ResourceRegistry:
    """
    Known resource kinds, built once at startup and passed to every
    component that needs API coordinates.
    """

    def __init__(self, kinds: list[ResourceKind] | None = None):
        self._kinds: dict[str, ResourceKind] = {}
        for kind in kinds or []:
            self.register(kind)

    def register(self, kind: ResourceKind) -> None:
        if kind.name in self._kinds:
            raise ValueError(f"resource kind '{kind.name}' already registered")
        self._kinds[kind.name] = kind

    def get(self, name: str) -> ResourceKind:
        try:
            return self._kinds[name]
        except KeyError:
            raise KeyError(f"unknown resource kind '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self._kinds

    def names(self) -> list[str]:
        return sorted(self._kinds)


POD = ResourceKind(name="pod", api_version="v1", kind="Pod", plural="pods")
JOB = ResourceKind(name="job", api_version="batch/v1", kind="Job", plural="jobs")
EVENT = ResourceKind(name="event", api_version="v1", kind="Event", plural="events")


def build_registry() -> ResourceRegistry:
    """Registry with every kind the reconcilers read or write."""
    return ResourceRegistry([POD, JOB, EVENT])
