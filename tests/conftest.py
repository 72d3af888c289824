"""Shared pytest fixtures for harness tests."""
import sys
import os

# Add repo root to path for local testing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from localvolume_e2e.config import HarnessConfig
from localvolume_e2e.orchestrator import LocalVolumeScenario
from tests.mock import FakeClock, FakeControlPlane, FakeDiskProvisioner
from tests.mock.control_plane import node_object


class Colors:
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    NC = '\033[0m'


@pytest.fixture
def colors():
    return Colors


@pytest.fixture
def config():
    return HarnessConfig()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def nodes():
    return [
        node_object("node-a", "aaaa"),
        node_object("node-b", "bbbb"),
        node_object("node-c", "cccc"),
    ]


@pytest.fixture
def cluster(config, nodes, clock):
    """Fake cluster reconciling every time the clock sleeps."""
    cluster = FakeControlPlane(config, nodes, clock)
    clock.on_sleep = cluster.reconcile
    return cluster


@pytest.fixture
def disks(config, cluster):
    return FakeDiskProvisioner(config, cluster)


@pytest.fixture
def scenario(cluster, config, disks, clock):
    return LocalVolumeScenario(cluster, config, provisioner_factory=lambda node: disks, clock=clock)
