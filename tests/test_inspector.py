"""
Workload Inspector Tests
========================
"""

import hashlib

import pytest
from kubernetes import client

from security_operator.exceptions import InvalidImageException
from security_operator.inspector import (
    WorkloadInspector,
    image_hash,
    parse_image_reference,
)
from tests.conftest import FakeCluster, make_pod


class TestParseImageReference:

    def test_bare_name(self):
        ref = parse_image_reference("nginx")
        assert (ref.registry, ref.repository, ref.tag, ref.digest) == ("docker.io", "nginx", None, None)

    def test_registry_with_path_and_tag(self):
        ref = parse_image_reference("gcr.io/project/image:v1")
        assert ref.registry == "gcr.io"
        assert ref.repository == "project/image"
        assert ref.tag == "v1"
        assert ref.name == "gcr.io/project/image"

    def test_namespace_is_not_a_registry(self):
        ref = parse_image_reference("library/nginx:1.25")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/nginx"

    def test_registry_with_port(self):
        ref = parse_image_reference("localhost:5000/app:dev")
        assert ref.registry == "localhost:5000"
        assert ref.tag == "dev"

    def test_digest(self):
        ref = parse_image_reference("img@sha256:AAA")
        assert ref.repository == "img"
        assert ref.digest == "AAA"

    @pytest.mark.parametrize("image", ["", " nginx", "UPPER/Case", "nginx:", "a//b"])
    def test_malformed_references_are_fatal(self, image):
        with pytest.raises(InvalidImageException) as exc:
            parse_image_reference(image)
        assert exc.value.error_code == "INVALID_IMAGE"
        assert not exc.value.retryable


class TestImageHash:

    def test_digest_from_reference(self):
        assert image_hash("img@sha256:AAA") == "AAA"

    def test_digest_from_reference_wins_over_image_id(self):
        assert image_hash("img@sha256:AAA", "docker-pullable://img@sha256:BBB") == "AAA"

    def test_digest_from_image_id(self):
        assert image_hash("nginx:1.25", "docker-pullable://nginx@sha256:abc123") == "abc123"

    def test_falls_back_to_reference_hash(self):
        assert image_hash("nginx:1.25") == hashlib.sha256(b"nginx:1.25").hexdigest()

    def test_tag_change_changes_hash(self):
        assert image_hash("nginx:1.25") != image_hash("nginx:1.26")


class TestWorkloadInspector:

    def test_snapshot_keeps_container_order(self):
        pod = make_pod(containers=[("app", "img@sha256:AAA"), ("sidecar", "proxy@sha256:CCC")])
        workload = WorkloadInspector().snapshot(pod)

        assert workload.key == "ns/web-1"
        assert workload.uid == "uid-1"
        assert [c.name for c in workload.containers] == ["app", "sidecar"]
        assert [c.image_hash for c in workload.containers] == ["AAA", "CCC"]
        assert workload.containers[0].pull_policy == "IfNotPresent"

    def test_snapshot_of_v1_pod(self):
        pod = client.V1Pod(
            metadata=client.V1ObjectMeta(name="web-1", namespace="ns", uid="uid-1"),
            spec=client.V1PodSpec(containers=[client.V1Container(name="app", image="img@sha256:AAA")]),
        )
        workload = WorkloadInspector().snapshot(pod)
        assert workload.key == "ns/web-1"
        assert workload.container(0).image_hash == "AAA"

    def test_find_container(self):
        workload = WorkloadInspector().snapshot(make_pod())
        assert workload.find_container("app").image == "img@sha256:AAA"
        assert workload.find_container("missing") is None

    def test_ready_once_all_images_pulled(self):
        assert WorkloadInspector().is_ready_for_scanning(make_pod())

    def test_not_ready_while_pulling(self):
        assert not WorkloadInspector().is_ready_for_scanning(make_pod(ready=False))

    def test_partially_pulled_pod_is_not_ready(self):
        pod = make_pod(containers=[("app", "img@sha256:AAA"), ("sidecar", "proxy:1")])
        pod["status"]["containerStatuses"][1]["imageID"] = ""
        assert not WorkloadInspector().is_ready_for_scanning(pod)

    def test_terminating_pod_is_not_ready(self):
        pod = make_pod()
        pod["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        assert not WorkloadInspector().is_ready_for_scanning(pod)

    def test_completed_pod_is_not_ready(self):
        pod = make_pod()
        pod["status"]["phase"] = "Succeeded"
        assert not WorkloadInspector().is_ready_for_scanning(pod)

    def test_container_statuses(self):
        statuses = WorkloadInspector().container_statuses(make_pod())
        assert len(statuses) == 1
        assert statuses[0].name == "app"
        assert statuses[0].ready
        assert statuses[0].state == "running"

    @pytest.mark.asyncio
    async def test_exists_checks_uid(self):
        cluster = FakeCluster()
        cluster.add_pod(make_pod())
        inspector = WorkloadInspector(cluster)

        assert await inspector.exists("ns", "web-1")
        assert await inspector.exists("ns", "web-1", "uid-1")
        assert not await inspector.exists("ns", "web-1", "uid-2")
        assert not await inspector.exists("ns", "web-2")
