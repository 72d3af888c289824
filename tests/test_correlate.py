"""Tests for ResourceCorrelator."""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from localvolume_e2e.config import HarnessConfig
from localvolume_e2e.correlate import ResourceCorrelator, expected_path_name, round_down
from localvolume_e2e.errors import AssertionFailure, TimeoutExceeded
from localvolume_e2e.models import Disk, Kind, Node, PersistentVolume
from tests.mock import FakeClock


def pv(name, path, hostname="ip-node-a", annotation="local-volume-provisioner-node-a-aaaa", sc="test-local-sc"):
    return PersistentVolume(
        name=name,
        uid=f"{name}-uid",
        capacity="10Gi",
        volume_mode="Filesystem",
        storage_class=sc,
        phase="Available",
        local_path=path,
        labels={"kubernetes.io/hostname": hostname} if hostname else {},
        annotations={"pv.kubernetes.io/provisioned-by": annotation} if annotation else {},
    )


def pv_object(name, sc="test-local-sc"):
    return {
        "kind": "PersistentVolume",
        "metadata": {"name": name, "uid": f"{name}-uid"},
        "spec": {"storageClassName": sc, "local": {"path": f"/mnt/local-storage/{sc}/{name}"}},
        "status": {"phase": "Available"},
    }


def pod_object(name, created):
    return {"kind": "Pod", "metadata": {"name": name, "creationTimestamp": created}}


NODES = [
    Node("node-a", "aaaa", {"kubernetes.io/hostname": "ip-node-a"}),
    Node("node-b", "bbbb", {"kubernetes.io/hostname": "ip-node-b"}),
]


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def correlator(client):
    return ResourceCorrelator(client, HarnessConfig(), clock=FakeClock())


class TestRoundDown:
    """Tests for round_down."""

    def test_minute(self):
        moment = datetime(2024, 1, 1, 12, 3, 59, 999, tzinfo=timezone.utc)

        assert round_down(moment, 60) == datetime(2024, 1, 1, 12, 3, tzinfo=timezone.utc)

    def test_second(self):
        moment = datetime(2024, 1, 1, 12, 3, 59, 999, tzinfo=timezone.utc)

        assert round_down(moment, 1) == datetime(2024, 1, 1, 12, 3, 59, tzinfo=timezone.utc)


class TestDevicePaths:
    """Tests for path correlation."""

    def test_stable_id_wins(self):
        assert expected_path_name(Disk(size=10, id="nvme-vol1", name="xvdf")) == "nvme-vol1"
        assert expected_path_name(Disk(size=10, name="xvdf")) == "xvdf"

    def test_matching_paths(self, correlator):
        disks = [Disk(size=10, id="nvme-vol1", name="xvdf"), Disk(size=20, name="xvdg")]
        pvs = [pv("a", "/mnt/local-storage/test-local-sc/nvme-vol1"), pv("b", "/mnt/local-storage/test-local-sc/xvdg")]

        correlator.verify_device_paths(pvs, disks)

    def test_display_name_rejected_when_id_present(self, correlator):
        disks = [Disk(size=10, id="nvme-vol1", name="xvdf")]

        with pytest.raises(AssertionFailure, match="does not end in"):
            correlator.verify_device_paths([pv("a", "/mnt/local-storage/test-local-sc/xvdf")], disks)

    def test_two_pvs_same_disk(self, correlator):
        disks = [Disk(size=10, name="xvdf")]
        pvs = [pv("a", "/mnt/x/xvdf"), pv("b", "/mnt/y/xvdf")]

        with pytest.raises(AssertionFailure, match="More than one PV"):
            correlator.verify_device_paths(pvs, disks)


class TestProvisionerAnnotation:
    """Tests for node and annotation correlation."""

    def test_annotation_matches_node(self, correlator):
        pvs = [pv("a", "/p/a"), pv("b", "/p/b", hostname="ip-node-b", annotation="local-volume-provisioner-node-b-bbbb")]

        correlator.verify_provisioner_annotation(pvs, NODES)

    def test_wrong_uid(self, correlator):
        with pytest.raises(AssertionFailure, match="expected 'local-volume-provisioner-node-a-aaaa'"):
            correlator.verify_provisioner_annotation(
                [pv("a", "/p/a", annotation="local-volume-provisioner-node-a-old")], NODES,
            )

    def test_missing_annotation(self, correlator):
        with pytest.raises(AssertionFailure, match="expected to find annotation"):
            correlator.verify_provisioner_annotation([pv("a", "/p/a", annotation=None)], NODES)

    def test_missing_hostname_label(self, correlator):
        with pytest.raises(AssertionFailure, match="label on PV a"):
            correlator.node_for(pv("a", "/p/a", hostname=None), NODES)

    def test_no_matching_node(self, correlator):
        with pytest.raises(AssertionFailure, match="did not find a node"):
            correlator.node_for(pv("a", "/p/a", hostname="ip-node-z"), NODES)

    def test_node_without_hostname_label(self, correlator):
        nodes = [Node("bare", "1", {})]

        with pytest.raises(AssertionFailure, match="label on node bare"):
            correlator.node_for(pv("a", "/p/a"), nodes)


class TestFindPVs:
    """Tests for find_pvs."""

    def test_filters_by_storage_class(self, client, correlator):
        client.list.return_value = [pv_object("a"), pv_object("b", sc="other")]

        pvs = correlator.find_pvs("test-local-sc", 1)

        assert [p.name for p in pvs] == ["a"]
        client.list.assert_called_with(Kind.PERSISTENT_VOLUME)

    def test_waits_for_expected_count(self, client, correlator):
        client.list.side_effect = [[], [pv_object("a")], [pv_object("a"), pv_object("b")]]

        pvs = correlator.find_pvs("test-local-sc", 2)

        assert len(pvs) == 2
        assert correlator.clock.sleeps == [2.0, 2.0]

    def test_too_many_never_matches(self, client, correlator):
        client.list.return_value = [pv_object("a"), pv_object("b")]

        with pytest.raises(TimeoutExceeded):
            correlator.find_pvs("test-local-sc", 1, timeout=10)


class TestFindFreshPod:
    """Tests for creation-time filtering of consumer pods."""

    def test_start_marker_rounds_to_minute(self, correlator):
        # FakeClock starts at 12:00:30.
        assert correlator.start_marker() == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_skips_pods_from_earlier_runs(self, client, correlator):
        started = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        client.list.return_value = [
            pod_object("old", "2024-01-01T11:58:10Z"),
            pod_object("boundary", "2024-01-01T12:00:00Z"),
            pod_object("fresh", "2024-01-01T12:00:04Z"),
        ]

        pod = correlator.find_fresh_pod({"app": "pv-consumer", "pv-name": "a"}, started)

        assert pod["metadata"]["name"] == "fresh"
        client.list.assert_called_with(
            Kind.POD, namespace="local-storage", labels={"app": "pv-consumer", "pv-name": "a"},
        )

    def test_waits_for_fresh_pod(self, client, correlator):
        started = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        client.list.side_effect = [
            [pod_object("old", "2024-01-01T11:58:10Z")],
            [pod_object("old", "2024-01-01T11:58:10Z"), pod_object("new", "2024-01-01T12:00:40Z")],
        ]

        pod = correlator.find_fresh_pod({"app": "pv-consumer"}, started)

        assert pod["metadata"]["name"] == "new"

    def test_only_old_pods_times_out(self, client, correlator):
        started = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        client.list.return_value = [pod_object("old", "2024-01-01T11:58:10Z")]

        with pytest.raises(TimeoutExceeded):
            correlator.find_fresh_pod({"app": "pv-consumer"}, started, timeout=6)
