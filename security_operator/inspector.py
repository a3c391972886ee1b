"""
Workload Inspector - Read-only Pod Helpers
==========================================
Extracts container/image identity from pod manifests and answers the
lifecycle questions the reconcilers ask (exists, ready, container statuses).

Pods arrive either as camelCase dicts (watch payloads) or as
kubernetes.client.V1Pod objects; both are accepted.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Any, Mapping

from kubernetes import client

from security_operator.exceptions import InvalidImageException
from security_operator.resources import ContainerImage, WorkloadRef

DEFAULT_REGISTRY = "docker.io"

# name components: lowercase alnum separated by '.', '_', '__' or '-'
_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REFERENCE_RE = re.compile(
    r"^(?:(?P<registry>(?:[a-zA-Z0-9-]+\.)*[a-zA-Z0-9-]+(?::[0-9]+)?)/)?"
    rf"(?P<repository>{_COMPONENT}(?:/{_COMPONENT})*)"
    r"(?::(?P<tag>[\w][\w.-]{0,127}))?"
    r"(?:@(?P<algorithm>[a-z0-9]+):(?P<digest>[A-Za-z0-9]+))?$"
)
_DIGEST_RE = re.compile(r"@?sha256:(?P<digest>[A-Za-z0-9]+)$")


@dataclass(frozen=True)
class ImageReference:
    """Parsed container image reference."""

    registry: str
    repository: str
    tag: str | None
    digest: str | None

    @property
    def name(self) -> str:
        if self.registry == DEFAULT_REGISTRY:
            return self.repository
        return f"{self.registry}/{self.repository}"


@dataclass(frozen=True)
class ContainerStatus:
    """Observed state of one container."""

    name: str
    image: str
    image_id: str | None
    ready: bool
    state: str


def parse_image_reference(image: str) -> ImageReference:
    """
    Split an image reference into registry, repository, tag and digest.

    Handles the usual forms:
    - "nginx" -> ("docker.io", "nginx", None, None)
    - "gcr.io/project/image:v1" -> ("gcr.io", "project/image", "v1", None)
    - "img@sha256:AAA" -> ("docker.io", "img", None, "AAA")

    Raises:
        InvalidImageException: if the reference is empty or malformed
    """
    if not image or image != image.strip():
        raise InvalidImageException(image, "empty or padded image reference")

    match = _REFERENCE_RE.match(image)
    if not match:
        raise InvalidImageException(image, "malformed image reference")

    registry = match.group("registry")
    repository = match.group("repository")
    # "library/nginx" style references have no registry: the first part
    # only names a registry if it looks like a host
    if registry and not ("." in registry or ":" in registry or registry == "localhost"):
        repository = f"{registry}/{repository}"
        registry = None

    return ImageReference(
        registry=registry or DEFAULT_REGISTRY,
        repository=repository,
        tag=match.group("tag"),
        digest=match.group("digest"),
    )


def image_hash(image: str, image_id: str | None = None) -> str:
    """
    Identity of the image a container runs, used for report staleness.

    Priority: digest pinned in the reference, digest reported by the
    kubelet in the container status, hash of the reference itself.
    """
    match = _DIGEST_RE.search(image or "")
    if match:
        return match.group("digest")
    if image_id:
        match = _DIGEST_RE.search(image_id)
        if match:
            return match.group("digest")
    return hashlib.sha256((image or "").encode()).hexdigest()


def _as_manifest(pod: Any) -> Mapping[str, Any]:
    if isinstance(pod, Mapping):
        return pod
    return client.ApiClient().sanitize_for_serialization(pod)


class WorkloadInspector:
    """
    Pure read helper over pod manifests.

    Only ``exists`` talks to the cluster; everything else works on the
    manifest it is handed.
    """

    def __init__(self, cluster=None):
        self.cluster = cluster

    def container_statuses(self, pod: Any) -> list[ContainerStatus]:
        manifest = _as_manifest(pod)
        statuses = []
        for status in (manifest.get("status") or {}).get("containerStatuses") or []:
            state = status.get("state") or {}
            statuses.append(
                ContainerStatus(
                    name=status.get("name", ""),
                    image=status.get("image", ""),
                    image_id=status.get("imageID") or None,
                    ready=bool(status.get("ready")),
                    state=next(iter(state), "unknown"),
                )
            )
        return statuses

    def containers(self, pod: Any) -> list[ContainerImage]:
        """Ordered (container, image) pairs of the pod's regular containers."""
        manifest = _as_manifest(pod)
        image_ids = {s.name: s.image_id for s in self.container_statuses(manifest)}

        containers = []
        for container in (manifest.get("spec") or {}).get("containers") or []:
            name = container.get("name", "")
            image = container.get("image", "")
            image_id = image_ids.get(name)
            containers.append(
                ContainerImage(
                    name=name,
                    image=image,
                    image_hash=image_hash(image, image_id),
                    image_id=image_id,
                    pull_policy=container.get("imagePullPolicy"),
                )
            )
        return containers

    def snapshot(self, pod: Any) -> WorkloadRef:
        manifest = _as_manifest(pod)
        metadata = manifest.get("metadata") or {}
        return WorkloadRef(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            uid=metadata.get("uid", ""),
            containers=tuple(self.containers(manifest)),
            labels=dict(metadata.get("labels") or {}),
        )

    def is_ready_for_scanning(self, pod: Any) -> bool:
        """
        True once every container's image has been pulled.

        Terminated and terminating pods are never scanned.
        """
        manifest = _as_manifest(pod)
        metadata = manifest.get("metadata") or {}
        if metadata.get("deletionTimestamp"):
            return False
        if (manifest.get("status") or {}).get("phase") in ("Succeeded", "Failed"):
            return False

        spec_names = [
            c.get("name") for c in (manifest.get("spec") or {}).get("containers") or []
        ]
        if not spec_names:
            return False
        pulled = {s.name for s in self.container_statuses(manifest) if s.image_id}
        return all(name in pulled for name in spec_names)

    async def exists(self, namespace: str, name: str, uid: str | None = None) -> bool:
        """True if the pod exists (and, when given, still has the same uid)."""
        if self.cluster is None:
            raise RuntimeError("WorkloadInspector.exists needs a cluster client")
        pod = await self.cluster.get_pod(namespace, name)
        if pod is None:
            return False
        if uid is None:
            return True
        return (pod.get("metadata") or {}).get("uid") == uid
