"""
End-to-end verification harness for the LocalVolume controller.

This package drives a LocalVolume through its whole lifecycle against a live
cluster and verifies what the controller derives from it:
- Poll: bounded polling with transient/permanent error classification
- Assertions: eventually / consistently combinators
- Cleanup: LIFO teardown registry drained exactly once
- Correlate: ties PersistentVolumes back to their node, disk and consumer pod
- Orchestrator: the staged LocalVolume scenario
"""

__version__ = "0.1.0"
