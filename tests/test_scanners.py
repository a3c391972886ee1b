"""
Scanner Tests
=============
Trivy output parsing and error classification, Aqua job construction,
preconditions and result retrieval.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from security_operator.exceptions import (
    FatalScanException,
    ImageNotFoundException,
    InvalidImageException,
    ResultParseException,
    ScanExecutionException,
    ScannerUnreachableException,
    ScanTimeoutException,
    TransientScanException,
    UnsupportedImageException,
)
from security_operator.inspector import WorkloadInspector
from security_operator.resources import LABEL_MANAGED_BY, ScanJobRef
from security_operator.scanners import AquaScanner, RandomNameGenerator, ScanOutcome, TrivyScanner
from security_operator.scanners.aqua import parse_scannercli_output
from security_operator.scanners.names import MAX_NAME_LENGTH, job_name
from security_operator.scanners.trivy import (
    classify_trivy_error,
    parse_trivy_findings,
    run_trivy_scan,
    stop_process,
)
from security_operator.schemas import Severity
from tests.conftest import aqua_transport, make_pod, scannercli_output


# =============================================================================
# FIXTURES - Sample Trivy Output
# =============================================================================

@pytest.fixture
def sample_trivy_output():
    """Sample Trivy output with two targets."""
    return {
        "SchemaVersion": 2,
        "Trivy": {"Version": "0.50.4"},
        "Results": [
            {
                "Target": "nginx:latest (debian 11.6)",
                "Class": "os-pkgs",
                "Vulnerabilities": [
                    {
                        "VulnerabilityID": "CVE-2024-0001",
                        "PkgName": "openssl",
                        "InstalledVersion": "1.1.1",
                        "FixedVersion": "1.1.2",
                        "Severity": "CRITICAL",
                        "Title": "openssl: buffer overflow",
                        "PrimaryURL": "https://avd.aquasec.com/nvd/cve-2024-0001",
                    },
                    {
                        "VulnerabilityID": "CVE-2024-0002",
                        "PkgName": "libxml2",
                        "InstalledVersion": "2.9.4",
                        "FixedVersion": "",
                        "Severity": "NEGLIGIBLE",
                    },
                ],
            },
            {
                "Target": "app/requirements.txt",
                "Class": "lang-pkgs",
                "Vulnerabilities": [
                    {
                        "VulnerabilityID": "GHSA-xxxx-yyyy",
                        "PkgName": "requests",
                        "InstalledVersion": "2.0.0",
                        "Severity": "medium",
                    },
                ],
            },
            {"Target": "clean layer", "Vulnerabilities": None},
        ],
    }


@pytest.fixture
def workload():
    return WorkloadInspector().snapshot(make_pod())


# =============================================================================
# JOB NAMES
# =============================================================================

class TestJobNames:

    def test_format(self):
        assert job_name("web-1", "app", "x7k2q") == "scan-web-1-app-x7k2q"

    def test_long_names_are_truncated_keeping_suffix(self):
        name = job_name("w" * 100, "c" * 100, "x7k2q")
        assert len(name) <= MAX_NAME_LENGTH
        assert name.startswith("scan-www")
        assert name.endswith("-x7k2q")

    def test_invalid_characters_are_replaced(self):
        assert job_name("Web.1", "app_main", "abcde") == "scan-web-1-app-main-abcde"

    def test_seeded_generator_is_reproducible(self):
        assert RandomNameGenerator(seed=7).suffix() == RandomNameGenerator(seed=7).suffix()
        assert len(RandomNameGenerator(length=8).suffix()) == 8


# =============================================================================
# TRIVY
# =============================================================================

class TestParseTrivyFindings:

    def test_findings_in_order(self, sample_trivy_output):
        found = parse_trivy_findings("nginx:latest", sample_trivy_output)

        assert [f.vulnerability_id for f in found] == ["CVE-2024-0001", "CVE-2024-0002", "GHSA-xxxx-yyyy"]
        assert [f.severity for f in found] == [Severity.CRITICAL, Severity.LOW, Severity.MEDIUM]
        assert found[0].fixed_version == "1.1.2"
        assert found[0].primary_link == "https://avd.aquasec.com/nvd/cve-2024-0001"
        assert not found[1].is_fixable

    def test_empty_results(self):
        assert parse_trivy_findings("alpine", {"Results": []}) == []

    def test_missing_results_key(self):
        assert parse_trivy_findings("alpine", {"SchemaVersion": 2}) == []

    def test_malformed_structure(self):
        with pytest.raises(ResultParseException):
            parse_trivy_findings("alpine", {"Results": ["not-a-dict"]})

    def test_not_an_object(self):
        with pytest.raises(ResultParseException):
            parse_trivy_findings("alpine", ["Results"])


class TestClassifyTrivyError:

    @pytest.mark.parametrize(
        "stderr, expected",
        [
            ("FATAL could not find image nginx:nope", ImageNotFoundException),
            ("MANIFEST_UNKNOWN: manifest unknown", ImageNotFoundException),
            ("could not parse reference: Nginx!", InvalidImageException),
            ("UNAUTHORIZED: authentication required", FatalScanException),
            ("toomanyrequests: rate limit exceeded", TransientScanException),
            ("unexpected EOF", ScanExecutionException),
        ],
    )
    def test_classification(self, stderr, expected):
        error = classify_trivy_error("nginx", stderr, 1)
        assert isinstance(error, expected)

    def test_fatal_and_transient(self):
        assert not classify_trivy_error("nginx", "manifest unknown", 1).retryable
        assert classify_trivy_error("nginx", "connection reset", 1).retryable
        assert classify_trivy_error("nginx", "unauthorized", 1).error_code == "AUTH_FAILED"


def fake_process(returncode: int = 0, stderr: bytes = b""):
    process = AsyncMock()
    process.returncode = returncode
    process.communicate.return_value = (b"", stderr)
    return process


def hanging_process():
    """A Trivy child that never exits on its own."""

    async def hang():
        await asyncio.sleep(10)

    process = fake_process()
    process.returncode = None
    process.communicate = hang
    process.terminate = MagicMock()
    process.kill = MagicMock()
    return process


class TestTrivyScanner:

    @pytest.mark.asyncio
    async def test_scan_produces_report(self, workload, sample_trivy_output):
        scanner = TrivyScanner(version="0.50.1", binary="trivy")

        async def run(image, output_path, *args):
            return sample_trivy_output

        with patch("security_operator.scanners.trivy.run_trivy_scan", side_effect=run) as mock_run:
            outcome = await scanner.start(workload, 0)

        assert isinstance(outcome, ScanOutcome)
        assert outcome.report.image_hash == "AAA"
        assert outcome.report.scanner.version == "0.50.4"
        assert outcome.report.summary.total == 3
        assert mock_run.call_args.args[0] == "img@sha256:AAA"

    @pytest.mark.asyncio
    async def test_invalid_image_fails_before_running_trivy(self):
        workload = WorkloadInspector().snapshot(make_pod(containers=[("app", "Not A Ref")]))
        scanner = TrivyScanner(version="0.50.1")

        with patch("security_operator.scanners.trivy.run_trivy_scan") as mock_run:
            with pytest.raises(InvalidImageException):
                await scanner.start(workload, 0)
        mock_run.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_reads_output_file(self, tmp_path, sample_trivy_output):
        output_path = tmp_path / "report.json"
        output_path.write_text(json.dumps(sample_trivy_output))
        log = MagicMock()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process())) as mock_exec:
            result = await run_trivy_scan("nginx", output_path, "trivy", "/tmp/cache", 60, log)

        assert result["Trivy"]["Version"] == "0.50.4"
        cmd = mock_exec.call_args.args
        assert cmd[:2] == ("trivy", "image")
        assert "--scanners" in cmd and "vuln" in cmd
        assert cmd[-1] == "nginx"

    @pytest.mark.asyncio
    async def test_run_nonzero_exit(self, tmp_path):
        process = fake_process(returncode=1, stderr=b"could not find image")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ImageNotFoundException):
                await run_trivy_scan("nginx:nope", tmp_path / "r.json", "trivy", "/tmp/cache", 60, MagicMock())

    @pytest.mark.asyncio
    async def test_run_missing_output(self, tmp_path):
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process())):
            with pytest.raises(ScanExecutionException):
                await run_trivy_scan("nginx", tmp_path / "missing.json", "trivy", "/tmp/cache", 60, MagicMock())

    @pytest.mark.asyncio
    async def test_run_timeout_kills_process(self, tmp_path):
        process = hanging_process()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ScanTimeoutException) as exc:
                await run_trivy_scan("nginx", tmp_path / "r.json", "trivy", "/tmp/cache", 0.05, MagicMock())

        assert exc.value.retryable
        process.terminate.assert_called_once()
        process.wait.assert_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_scan_kills_process(self, tmp_path):
        process = hanging_process()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(asyncio.TimeoutError):
                # deadline of the surrounding reconcile
                await asyncio.wait_for(
                    run_trivy_scan("nginx", tmp_path / "r.json", "trivy", "/tmp/cache", 600, MagicMock()),
                    timeout=0.05,
                )

        process.terminate.assert_called_once()
        process.wait.assert_awaited()

    @pytest.mark.asyncio
    async def test_finished_process_is_not_signalled(self):
        process = fake_process()
        process.terminate = MagicMock()

        await stop_process(process, MagicMock())

        process.terminate.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_binary_is_execution_error(self, tmp_path):
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("trivy"))):
            with pytest.raises(ScanExecutionException):
                await run_trivy_scan("nginx", tmp_path / "r.json", "trivy", "/tmp/cache", 60, MagicMock())


# =============================================================================
# AQUA
# =============================================================================

class TestAquaScanner:

    @pytest.mark.asyncio
    async def test_start_creates_job(self, aqua_scanner, cluster, workload):
        job = await aqua_scanner.start(workload, 0)

        assert isinstance(job, ScanJobRef)
        assert job.name.startswith("scan-web-1-app-")
        assert len(job.name) == len("scan-web-1-app-") + 5
        assert job.namespace == "security-operator"
        assert job.image_hash == "AAA"
        assert job.workload_uid == "uid-1"
        assert cluster.created_jobs == [job.name]

    @pytest.mark.asyncio
    async def test_job_manifest(self, aqua_scanner, cluster, workload):
        job = await aqua_scanner.start(workload, 0)
        manifest = cluster.jobs[("security-operator", job.name)]

        assert manifest["apiVersion"] == "batch/v1"
        assert manifest["kind"] == "Job"
        spec = manifest["spec"]
        assert spec["backoffLimit"] == 0
        assert spec["activeDeadlineSeconds"] == 600
        pod_spec = spec["template"]["spec"]
        assert pod_spec["restartPolicy"] == "Never"
        assert spec["template"]["metadata"]["labels"][LABEL_MANAGED_BY] == "security-operator"

        container = pod_spec["containers"][0]
        assert container["name"] == "scanner"
        assert container["image"] == "aquasec/scanner:5.0"
        assert container["args"][-1] == "img@sha256:AAA"
        assert "--host" in container["args"]
        assert "secret" not in container["args"]

    @pytest.mark.asyncio
    async def test_seeded_names_are_reproducible(self, cluster, registry, workload):
        def scanner():
            return AquaScanner(
                cluster,
                registry,
                namespace="security-operator",
                server_url="http://aqua.test",
                username="u",
                password="p",
                version="5.0",
                name_generator=RandomNameGenerator(seed=1),
                transport=aqua_transport(),
            )

        first = await scanner().start(workload, 0)
        cluster.jobs.clear()
        second = await scanner().start(workload, 0)
        assert first.name == second.name

    @pytest.mark.asyncio
    async def test_pull_policy_never_is_unsupported(self, aqua_scanner, cluster):
        workload = WorkloadInspector().snapshot(make_pod(pull_policy="Never"))
        with pytest.raises(UnsupportedImageException) as exc:
            await aqua_scanner.start(workload, 0)
        assert not exc.value.retryable
        assert cluster.created_jobs == []

    @pytest.mark.asyncio
    async def test_malformed_image_is_fatal(self, aqua_scanner):
        workload = WorkloadInspector().snapshot(make_pod(containers=[("app", "nginx:")]))
        with pytest.raises(InvalidImageException):
            await aqua_scanner.start(workload, 0)

    @pytest.mark.asyncio
    async def test_unreachable_server_is_transient(self, aqua_scanner, cluster, workload):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        aqua_scanner.transport = httpx.MockTransport(refuse)
        with pytest.raises(ScannerUnreachableException) as exc:
            await aqua_scanner.start(workload, 0)
        assert exc.value.retryable
        assert exc.value.error_code == "SCANNER_UNREACHABLE"
        assert cluster.created_jobs == []

    @pytest.mark.asyncio
    async def test_server_error_is_unreachable(self, aqua_scanner, workload):
        aqua_scanner.transport = aqua_transport(503)
        with pytest.raises(ScannerUnreachableException):
            await aqua_scanner.start(workload, 0)

    @pytest.mark.asyncio
    async def test_auth_challenge_counts_as_reachable(self, aqua_scanner, workload):
        aqua_scanner.transport = aqua_transport(401)
        assert isinstance(await aqua_scanner.start(workload, 0), ScanJobRef)

    @pytest.mark.asyncio
    async def test_retrieve_results(self, aqua_scanner, cluster, workload):
        job = await aqua_scanner.start(workload, 0)
        cluster.finish_job(job.name, output=scannercli_output(job.image, count=3))

        report = await aqua_scanner.retrieve_results(job)
        assert report.image_hash == "AAA"
        assert report.scanner.name == "Aqua CSP"
        assert report.summary.high == 3
        assert report.findings[0].package_name == "pkg-0"
        assert report.findings[0].fixed_version == "1.1"

    @pytest.mark.asyncio
    async def test_retrieve_without_logs_is_fatal(self, aqua_scanner, workload):
        job = await aqua_scanner.start(workload, 0)
        with pytest.raises(FatalScanException) as exc:
            await aqua_scanner.retrieve_results(job)
        assert exc.value.error_code == "SCAN_RESULTS_UNAVAILABLE"


class TestParseScannercliOutput:

    def test_no_json(self):
        with pytest.raises(ResultParseException):
            parse_scannercli_output("nginx", "scanner crashed")

    def test_invalid_json(self):
        with pytest.raises(ResultParseException):
            parse_scannercli_output("nginx", "{not json")

    def test_vulnerability_without_name(self):
        output = json.dumps({"resources": [{"resource": {"name": "x"}, "vulnerabilities": [{}]}]})
        with pytest.raises(ResultParseException):
            parse_scannercli_output("nginx", output)

    def test_clean_image(self):
        assert parse_scannercli_output("nginx", json.dumps({"resources": []})) == []
