"""
Trivy Scanner - Synchronous In-process Scanning
===============================================
1. SUBPROCESS SAFETY:
   - Hard timeout on Trivy execution
   - Explicit process termination on timeout (zombie prevention)
   - shell=False execution (no injection risk)

2. ERROR CLASSIFICATION (from stderr):
   - image not found, unauthorized, invalid reference -> fatal
   - rate limit, timeout, any other non-zero exit -> transient

3. PARSING:
   - Results[].Vulnerabilities[] flattened into findings, order preserved
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from security_operator.exceptions import (
    FatalScanException,
    ImageNotFoundException,
    InvalidImageException,
    ResultParseException,
    ScanExecutionException,
    ScanTimeoutException,
    TransientScanException,
)
from security_operator.inspector import parse_image_reference
from security_operator.logs import ReconcileLogAdapter
from security_operator.resources import ContainerImage, WorkloadRef
from security_operator.scanners.base import SyncScanner
from security_operator.schemas import Finding, ReportData, ScannerInfo, Severity

logger = logging.getLogger(__name__)

TRIVY_VENDOR = "Aqua Security"


# =============================================================================
# TRIVY EXECUTION
# =============================================================================

async def stop_process(process: asyncio.subprocess.Process, log: logging.LoggerAdapter) -> None:
    """Terminate a running child, escalating to SIGKILL after 5 seconds."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=5)
    except asyncio.TimeoutError:
        log.warning("Process did not terminate gracefully, sending SIGKILL")
        process.kill()
        await process.wait()


async def run_trivy_scan(
    image_reference: str,
    output_path: Path,
    binary: str,
    cache_dir: str,
    timeout_seconds: int,
    log: logging.LoggerAdapter,
) -> dict:
    """
    Execute a Trivy image scan and return its parsed JSON output.

    Raises:
        ScanTimeoutException: if the scan exceeds ``timeout_seconds``
        ImageNotFoundException / InvalidImageException / FatalScanException:
            the image can never be scanned as referenced
        TransientScanException: rate limited by the registry
        ScanExecutionException: any other abnormal exit
        ResultParseException: output is not valid JSON
    """
    cmd = [
        binary,
        "image",
        "--format", "json",
        "--output", str(output_path),
        "--timeout", f"{timeout_seconds}s",
        "--scanners", "vuln",
        "--cache-dir", cache_dir,
        "--quiet",
        image_reference,
    ]

    log.info(f"Executing Trivy: {' '.join(cmd)}")

    env = os.environ.copy()
    env["TRIVY_CACHE_DIR"] = cache_dir
    env["NO_COLOR"] = "1"

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as e:
        raise ScanExecutionException(image_reference, f"cannot execute {binary}: {e}") from e

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        log.error(f"Trivy scan timed out after {timeout_seconds}s - killing process")
        await stop_process(process, log)
        raise ScanTimeoutException(image_reference, timeout_seconds)
    except asyncio.CancelledError:
        log.warning("Trivy scan cancelled - killing process")
        await stop_process(process, log)
        raise

    if process.returncode != 0:
        raise classify_trivy_error(
            image_reference,
            stderr.decode("utf-8", errors="replace").strip(),
            process.returncode,
        )

    if not output_path.exists():
        raise ScanExecutionException(
            image_reference,
            "Trivy did not produce output file",
            exit_code=process.returncode,
        )

    try:
        with open(output_path, "r") as f:
            result = json.load(f)
    except json.JSONDecodeError as e:
        raise ResultParseException(image_reference, f"invalid Trivy JSON output: {e}") from e

    log.info("Trivy scan completed successfully")
    return result


def classify_trivy_error(image: str, stderr_text: str, exit_code: int | None) -> Exception:
    """Map a failed Trivy run onto the scan error taxonomy."""
    lowered = stderr_text.lower()
    if "could not find image" in lowered or "manifest unknown" in lowered:
        return ImageNotFoundException(image)
    if "invalid reference" in lowered or "could not parse reference" in lowered:
        return InvalidImageException(image, stderr_text)
    if "unauthorized" in lowered or "denied" in lowered:
        return FatalScanException(
            image,
            "authentication failed - check registry credentials",
            error_code="AUTH_FAILED",
        )
    if "rate limit" in lowered or "too many requests" in lowered:
        return TransientScanException(image, "registry rate limit exceeded", error_code="RATE_LIMITED")
    return ScanExecutionException(image, stderr_text or f"exit code {exit_code}", exit_code=exit_code)


# =============================================================================
# OUTPUT PARSING
# =============================================================================

def parse_trivy_findings(image: str, trivy_output: dict) -> list[Finding]:
    """
    Flatten Trivy's per-target results into findings.

    Trivy Output Structure:
    {
        "Results": [
            {
                "Target": "nginx:latest (debian 11.6)",
                "Vulnerabilities": [
                    {
                        "VulnerabilityID": "CVE-2024-1234",
                        "PkgName": "openssl",
                        "InstalledVersion": "1.1.1",
                        "FixedVersion": "1.1.2",
                        "Severity": "CRITICAL",
                        "Title": "...",
                        "PrimaryURL": "https://avd.aquasec.com/nvd/cve-2024-1234"
                    }
                ]
            }
        ]
    }
    """
    if not isinstance(trivy_output, dict):
        raise ResultParseException(image, "Trivy output is not a JSON object")

    findings = []
    try:
        for result in trivy_output.get("Results") or []:
            for vuln in result.get("Vulnerabilities") or []:
                vulnerability_id = vuln.get("VulnerabilityID")
                if not vulnerability_id:
                    logger.debug(f"Skipping Trivy entry without VulnerabilityID in {image}")
                    continue
                findings.append(
                    Finding(
                        vulnerability_id=vulnerability_id,
                        severity=Severity.normalize(vuln.get("Severity")),
                        package_name=vuln.get("PkgName", "unknown"),
                        installed_version=vuln.get("InstalledVersion", ""),
                        fixed_version=vuln.get("FixedVersion") or None,
                        title=vuln.get("Title", ""),
                        primary_link=vuln.get("PrimaryURL"),
                    )
                )
    except (AttributeError, TypeError, ValidationError) as e:
        raise ResultParseException(image, f"unexpected Trivy output structure: {e}") from e
    return findings


# =============================================================================
# SCANNER
# =============================================================================

class TrivyScanner(SyncScanner):
    """Scans images inline by running the Trivy CLI."""

    name = "trivy"

    def __init__(
        self,
        version: str,
        binary: str = "trivy",
        cache_dir: str = "/tmp/trivy-cache",
        timeout_seconds: int = 600,
    ):
        self.version = version
        self.binary = binary
        self.cache_dir = cache_dir
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings) -> "TrivyScanner":
        return cls(
            version=settings.scanner_trivy_version,
            binary=settings.trivy_binary_path,
            cache_dir=settings.trivy_cache_dir,
            timeout_seconds=settings.scan_timeout_seconds,
        )

    @property
    def info(self) -> ScannerInfo:
        return ScannerInfo(name="Trivy", vendor=TRIVY_VENDOR, version=self.version)

    async def scan(self, workload: WorkloadRef, container: ContainerImage) -> ReportData:
        log = ReconcileLogAdapter(logger, {"key": f"{workload.key}/{container.name}"})
        parse_image_reference(container.image)

        with tempfile.TemporaryDirectory(prefix="trivy-") as tmp:
            output = await run_trivy_scan(
                container.image,
                Path(tmp) / "report.json",
                self.binary,
                self.cache_dir,
                self.timeout_seconds,
                log,
            )

        findings = parse_trivy_findings(container.image, output)
        version = (output.get("Trivy") or {}).get("Version") or self.version
        log.info(f"Found {len(findings)} vulnerabilities in {container.image}")
        return ReportData(
            scanner=ScannerInfo(name="Trivy", vendor=TRIVY_VENDOR, version=version),
            image=container.image,
            image_hash=container.image_hash,
            generated_at=datetime.now(timezone.utc),
            findings=findings,
        )
