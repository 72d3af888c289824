"""In-memory stand-ins for the cluster, the cloud and the clock."""
from .clock import FakeClock
from .control_plane import FakeControlPlane
from .disks import FakeDiskProvisioner

__all__ = ["FakeClock", "FakeControlPlane", "FakeDiskProvisioner"]
