"""
Aqua CSP Scanner - Asynchronous Job-based Scanning
==================================================
Each scan runs ``scannercli`` in a Kubernetes Job against the Aqua console.
The scanner prints its JSON report to stdout; the Scan-Job Reconciler reads
it back from the container log once the job has succeeded.

scannercli output (abridged):
{
    "image": "nginx:1.19",
    "resources": [
        {
            "resource": {"name": "openssl", "version": "1.1.1d"},
            "vulnerabilities": [
                {
                    "name": "CVE-2020-1967",
                    "aqua_severity": "high",
                    "fix_version": "1.1.1g",
                    "nvd_url": "https://nvd.nist.gov/vuln/detail/CVE-2020-1967",
                    "description": "..."
                }
            ]
        }
    ]
}
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import ValidationError

from security_operator.cluster import ClusterClient
from security_operator.exceptions import (
    ResultParseException,
    ScannerUnreachableException,
    UnsupportedImageException,
)
from security_operator.inspector import parse_image_reference
from security_operator.resources import ContainerImage, ResourceRegistry, ScanJobRef, WorkloadRef
from security_operator.scanners.base import AsyncScanner
from security_operator.scanners.names import NameGenerator
from security_operator.schemas import Finding, ReportData, ScannerInfo, Severity

logger = logging.getLogger(__name__)

AQUA_VENDOR = "Aqua Security"
SCANNERCLI = "/opt/aquasec/scannercli"


def parse_scannercli_output(image: str, output: str) -> list[Finding]:
    """
    Extract findings from a scannercli log.

    The log may carry progress lines before the report; parsing starts at
    the first ``{``.
    """
    start = output.find("{")
    if start < 0:
        raise ResultParseException(image, "no JSON report in scanner output")
    try:
        report = json.loads(output[start:])
    except json.JSONDecodeError as e:
        raise ResultParseException(image, f"invalid scannercli JSON: {e}") from e

    findings = []
    try:
        for resource in report.get("resources") or []:
            package = resource.get("resource") or {}
            for vuln in resource.get("vulnerabilities") or []:
                findings.append(
                    Finding(
                        vulnerability_id=vuln["name"],
                        severity=Severity.normalize(vuln.get("aqua_severity") or vuln.get("severity")),
                        package_name=package.get("name", "unknown"),
                        installed_version=package.get("version", ""),
                        fixed_version=vuln.get("fix_version") or None,
                        title=vuln.get("description", ""),
                        primary_link=vuln.get("nvd_url") or None,
                    )
                )
    except (AttributeError, KeyError, TypeError, ValidationError) as e:
        raise ResultParseException(image, f"unexpected scannercli output structure: {e}") from e
    return findings


class AquaScanner(AsyncScanner):
    """
    Aqua CSP scanner.

    Args:
        server_url: Aqua console URL
        username / password: console credentials passed to scannercli
        version: console version, also the scanner image tag
        scanner_image: scanner image repository
        aqua_registry: Aqua registry name images are pulled through
        reachability_timeout: timeout of the console probe in seconds
        transport: optional httpx transport (tests)
    """

    name = "aqua"

    def __init__(
        self,
        cluster: ClusterClient,
        registry: ResourceRegistry,
        namespace: str,
        server_url: str,
        username: str,
        password: str,
        version: str,
        scanner_image: str = "aquasec/scanner",
        aqua_registry: str = "Docker Hub",
        scan_timeout_seconds: int = 600,
        reachability_timeout: float = 5.0,
        name_generator: NameGenerator | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            cluster,
            registry,
            namespace,
            scan_timeout_seconds,
            name_generator=name_generator,
        )
        self.server_url = server_url.rstrip("/")
        self.username = username
        self.password = password
        self.version = version
        self.scanner_image = scanner_image
        self.aqua_registry = aqua_registry
        self.reachability_timeout = reachability_timeout
        self.transport = transport

    @classmethod
    def from_settings(
        cls,
        settings,
        cluster: ClusterClient,
        registry: ResourceRegistry,
        name_generator: NameGenerator | None = None,
    ) -> "AquaScanner":
        return cls(
            cluster,
            registry,
            namespace=settings.operator_namespace,
            server_url=settings.aqua_server_url,
            username=settings.aqua_username,
            password=settings.aqua_password,
            version=settings.scanner_aqua_version,
            scanner_image=settings.aqua_scanner_image,
            aqua_registry=settings.aqua_registry,
            scan_timeout_seconds=settings.scan_timeout_seconds,
            reachability_timeout=settings.aqua_reachability_timeout_seconds,
            name_generator=name_generator,
        )

    @property
    def info(self) -> ScannerInfo:
        return ScannerInfo(name="Aqua CSP", vendor=AQUA_VENDOR, version=self.version)

    # =========================================================================
    # PRECONDITIONS
    # =========================================================================

    async def check_preconditions(self, workload: WorkloadRef, container: ContainerImage) -> None:
        if container.pull_policy == "Never":
            raise UnsupportedImageException(
                container.image,
                "imagePullPolicy Never: the scanner cannot pull a node-local image",
            )
        parse_image_reference(container.image)
        await self.check_server()

    async def check_server(self) -> None:
        """
        Probe the console API.

        Any HTTP answer below 500 counts as reachable; authentication is
        scannercli's business.
        """
        url = f"{self.server_url}/api"
        try:
            async with httpx.AsyncClient(
                timeout=self.reachability_timeout,
                transport=self.transport,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise ScannerUnreachableException(self.server_url, str(e) or type(e).__name__) from e

        if response.status_code >= 500:
            raise ScannerUnreachableException(self.server_url, f"HTTP {response.status_code}")

    # =========================================================================
    # JOB
    # =========================================================================

    def job_containers(self, job: ScanJobRef, container: ContainerImage) -> list[dict[str, Any]]:
        return [
            {
                "name": self.result_container,
                "image": f"{self.scanner_image}:{self.version}",
                "imagePullPolicy": "IfNotPresent",
                "command": [SCANNERCLI],
                "args": [
                    "scan",
                    "--host", self.server_url,
                    "--user", "$(AQUA_USERNAME)",
                    "--password", "$(AQUA_PASSWORD)",
                    "--registry", self.aqua_registry,
                    "--no-verify",
                    "--text=false",
                    container.image,
                ],
                "env": [
                    {"name": "AQUA_USERNAME", "value": self.username},
                    {"name": "AQUA_PASSWORD", "value": self.password},
                ],
                "resources": {
                    "requests": {"cpu": "100m", "memory": "128Mi"},
                    "limits": {"cpu": "500m", "memory": "512Mi"},
                },
            }
        ]

    def parse_results(self, job: ScanJobRef, output: str) -> ReportData:
        findings = parse_scannercli_output(job.image, output)
        logger.info(f"Scan job {job.key}: {len(findings)} vulnerabilities in {job.image}")
        return ReportData(
            scanner=self.info,
            image=job.image,
            image_hash=job.image_hash,
            generated_at=datetime.now(timezone.utc),
            findings=findings,
        )
