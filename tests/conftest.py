"""
Pytest Configuration and Shared Fixtures
========================================
In-memory cluster, scanners and a throwaway SQLite report store.
"""

import copy
import hashlib
import json

import httpx
import pytest
from sqlalchemy.pool import NullPool

from security_operator.cluster import ClusterClient
from security_operator.config import Settings
from security_operator.database import create_db_engine, create_session_factory, init_db
from security_operator.exceptions import ClusterException
from security_operator.resources import (
    LABEL_MANAGED_BY,
    LABEL_TARGET,
    MANAGED_BY_VALUE,
    ScanJobRef,
    build_registry,
    scan_job_from_manifest,
)
from security_operator.scanners import AquaScanner, RandomNameGenerator, SyncScanner
from security_operator.schemas import Finding, ReportData, ScannerInfo, Severity
from security_operator.store import ReportStore


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio as the async backend."""
    return "asyncio"


# =============================================================================
# POD MANIFESTS
# =============================================================================

def image_id_for(image: str) -> str:
    """imageID the kubelet would report once ``image`` is pulled."""
    if "@sha256:" in image:
        return f"docker-pullable://{image}"
    return f"docker-pullable://{image}@sha256:{hashlib.sha256(image.encode()).hexdigest()}"


def make_pod(
    name: str = "web-1",
    namespace: str = "ns",
    uid: str = "uid-1",
    containers: list[tuple[str, str]] | None = None,
    ready: bool = True,
    labels: dict | None = None,
    pull_policy: str = "IfNotPresent",
) -> dict:
    containers = containers or [("app", "img@sha256:AAA")]
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": uid,
            "labels": labels or {"app": name},
        },
        "spec": {
            "containers": [
                {"name": c, "image": image, "imagePullPolicy": pull_policy}
                for c, image in containers
            ],
        },
        "status": {
            "phase": "Running" if ready else "Pending",
            "containerStatuses": [
                {
                    "name": c,
                    "image": image,
                    "imageID": image_id_for(image) if ready else "",
                    "ready": ready,
                    "state": {"running": {}} if ready else {"waiting": {"reason": "ContainerCreating"}},
                }
                for c, image in containers
            ],
        },
    }


# =============================================================================
# FAKE CLUSTER
# =============================================================================

class FakeCluster(ClusterClient):
    """Dict-backed ClusterClient recording every mutation."""

    def __init__(self):
        self.pods: dict[tuple[str, str], dict] = {}
        self.jobs: dict[tuple[str, str], dict] = {}
        self.logs: dict[str, str] = {}
        self.events: list[dict] = []
        self.created_jobs: list[str] = []
        self.deleted_jobs: list[str] = []
        self.fail_deletes = False

    # helpers -----------------------------------------------------------------

    def add_pod(self, pod: dict) -> dict:
        metadata = pod["metadata"]
        self.pods[(metadata["namespace"], metadata["name"])] = pod
        return pod

    def remove_pod(self, namespace: str, name: str) -> None:
        self.pods.pop((namespace, name), None)

    def job_refs(self) -> list[ScanJobRef]:
        return [scan_job_from_manifest(m) for m in self.jobs.values()]

    def finish_job(self, name: str, succeeded: bool = True, output: str = "", message: str = "") -> ScanJobRef:
        for (namespace, job_name), manifest in self.jobs.items():
            if job_name == name:
                if succeeded:
                    manifest["status"] = {
                        "succeeded": 1,
                        "conditions": [{"type": "Complete", "status": "True"}],
                    }
                    self.logs[name] = output
                else:
                    manifest["status"] = {
                        "failed": 1,
                        "conditions": [
                            {"type": "Failed", "status": "True", "reason": "BackoffLimitExceeded", "message": message},
                        ],
                    }
                return scan_job_from_manifest(manifest)
        raise KeyError(name)

    # ClusterClient -------------------------------------------------------------

    async def get_pod(self, namespace, name):
        pod = self.pods.get((namespace, name))
        return copy.deepcopy(pod) if pod is not None else None

    async def list_pods(self, namespace=None):
        return [
            copy.deepcopy(pod)
            for (ns, _), pod in sorted(self.pods.items())
            if namespace is None or ns == namespace
        ]

    async def create_job(self, job, manifest):
        key = (job.namespace, job.name)
        if key in self.jobs:
            return False
        manifest = copy.deepcopy(manifest)
        manifest["status"] = {}
        self.jobs[key] = manifest
        self.created_jobs.append(job.name)
        return True

    async def get_job(self, namespace, name):
        manifest = self.jobs.get((namespace, name))
        return scan_job_from_manifest(manifest) if manifest is not None else None

    async def list_jobs(self, namespace, target=None):
        refs = []
        for (ns, _), manifest in sorted(self.jobs.items()):
            labels = manifest["metadata"].get("labels") or {}
            if ns != namespace or labels.get(LABEL_MANAGED_BY) != MANAGED_BY_VALUE:
                continue
            if target and labels.get(LABEL_TARGET) != target:
                continue
            refs.append(scan_job_from_manifest(manifest))
        return refs

    async def delete_job(self, namespace, name):
        if self.fail_deletes:
            raise ClusterException("delete_job", "connection refused")
        if self.jobs.pop((namespace, name), None) is None:
            return False
        self.deleted_jobs.append(name)
        return True

    async def read_job_logs(self, job, container):
        if job.name not in self.logs:
            raise ClusterException("read_job_logs", f"no pods found for job {job.key}", status=404)
        return self.logs[job.name]

    async def record_event(self, namespace, name, uid, reason, message, event_type="Warning"):
        self.events.append(
            {
                "namespace": namespace,
                "name": name,
                "uid": uid,
                "reason": reason,
                "message": message,
                "type": event_type,
            }
        )


# =============================================================================
# SCANNERS
# =============================================================================

SCANNER_INFO = ScannerInfo(name="Fake", vendor="Tests", version="0.0.1")


def findings(count: int, severity: Severity = Severity.HIGH) -> list[Finding]:
    return [
        Finding(
            vulnerability_id=f"CVE-2024-{i:04d}",
            severity=severity,
            package_name=f"pkg-{i}",
            installed_version="1.0",
            fixed_version="1.1" if i % 2 else None,
        )
        for i in range(count)
    ]


class FakeSyncScanner(SyncScanner):
    """
    Returns ``findings_by_image[image]`` (3 findings by default) or raises
    ``errors[image]``.
    """

    name = "fake"

    def __init__(self):
        self.findings_by_image: dict[str, list[Finding]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []

    @property
    def info(self) -> ScannerInfo:
        return SCANNER_INFO

    async def scan(self, workload, container):
        self.calls.append((workload.key, container.name))
        if container.image in self.errors:
            raise self.errors[container.image]
        return ReportData(
            scanner=SCANNER_INFO,
            image=container.image,
            image_hash=container.image_hash,
            findings=self.findings_by_image.get(container.image, findings(3)),
        )


def scannercli_output(image: str, count: int = 3) -> str:
    """scannercli log with ``count`` vulnerabilities, preceded by a progress line."""
    return "Scanning image...\n" + json.dumps(
        {
            "image": image,
            "resources": [
                {
                    "resource": {"name": f"pkg-{i}", "version": "1.0"},
                    "vulnerabilities": [
                        {
                            "name": f"CVE-2024-{i:04d}",
                            "aqua_severity": "high",
                            "fix_version": "1.1",
                            "nvd_url": f"https://nvd.nist.gov/vuln/detail/CVE-2024-{i:04d}",
                            "description": "buffer overflow",
                        }
                    ],
                }
                for i in range(count)
            ],
        }
    )


def aqua_transport(status_code: int = 200) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status_code, json={}))


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        operator_namespace="security-operator",
        scanner_aqua_enabled=True,
        aqua_server_url="http://aqua.test",
        aqua_username="scanner",
        aqua_password="secret",
        scan_job_retry_limit=3,
        requeue_base_delay_seconds=0.01,
        requeue_max_delay_seconds=0.05,
        resync_interval_seconds=0,
        worker_concurrency=2,
        reconcile_timeout_seconds=5,
    )


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_db_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'reports.db'}",
        echo=False,
        pool_class=NullPool,
    )
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return ReportStore(session_factory)


@pytest.fixture
def sync_scanner():
    return FakeSyncScanner()


@pytest.fixture
def aqua_scanner(cluster, registry):
    return AquaScanner(
        cluster,
        registry,
        namespace="security-operator",
        server_url="http://aqua.test",
        username="scanner",
        password="secret",
        version="5.0",
        scan_timeout_seconds=600,
        name_generator=RandomNameGenerator(seed=42),
        transport=aqua_transport(),
    )
