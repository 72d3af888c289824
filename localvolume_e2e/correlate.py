"""
Correlate - tie observed objects back to what produced them.

PersistentVolumes are matched to the disk they were carved from (by path) and
to the node that provisioned them (by hostname label and provisioner
annotation). Consumer pods are matched to the job run that created them by
creation time, since the label selector also matches pods left over from
earlier runs.
"""

import logging
import posixpath
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .assertions import eventually
from .clock import SYSTEM_CLOCK
from .config import HarnessConfig
from .errors import AssertionFailure
from .kube import ControlPlane
from .models import Disk, Kind, Node, PersistentVolume, meta, parse_timestamp

logger = logging.getLogger("localvolume-e2e.correlate")


def round_down(moment: datetime, granularity: int) -> datetime:
    """Truncate moment to a whole multiple of granularity seconds."""
    if granularity <= 1:
        return moment.replace(microsecond=0)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = int((moment - midnight).total_seconds())
    return midnight + timedelta(seconds=elapsed - elapsed % granularity)


def expected_path_name(disk: Disk) -> str:
    """Final path segment a PV for disk must carry.

    The stable id wins over the display name: only the id survives
    re-attachment unchanged.
    """
    return disk.id if disk.id else disk.name


class ResourceCorrelator:

    def __init__(self, client: ControlPlane, config: HarnessConfig, clock=None):
        self.client = client
        self.config = config
        self.clock = clock or SYSTEM_CLOCK

    def list_pvs(self, storage_class: str) -> List[PersistentVolume]:
        # PVs cannot be field-selected by class, filter client side.
        pvs = [PersistentVolume.from_object(o) for o in self.client.list(Kind.PERSISTENT_VOLUME)]
        return [pv for pv in pvs if pv.storage_class == storage_class]

    def find_pvs(self, storage_class: str, expected_count: int, timeout: Optional[float] = None) -> List[PersistentVolume]:
        """Wait until exactly expected_count PVs of storage_class exist."""

        def probe():
            pvs = self.list_pvs(storage_class)
            logger.info(f"Found {len(pvs)} PV(s) of class {storage_class}, want {expected_count}")
            return pvs

        return eventually(
            probe,
            timeout if timeout is not None else self.config.eventually_timeout,
            self.config.eventually_interval,
            matcher=lambda pvs: len(pvs) == expected_count,
            description=f"finding {expected_count} PV(s) of class {storage_class}",
            clock=self.clock,
        )

    def verify_device_paths(self, pvs: Sequence[PersistentVolume], disks: Sequence[Disk]) -> None:
        """Each PV's path must end in the stable name of a distinct requested disk."""
        expected = {expected_path_name(d) for d in disks}
        seen = set()
        for pv in pvs:
            base = posixpath.basename(pv.local_path.rstrip("/"))
            if base not in expected:
                raise AssertionFailure(
                    f"PV {pv.name} path {pv.local_path!r} does not end in any of {sorted(expected)}",
                    observed=pv,
                )
            if base in seen:
                raise AssertionFailure(f"More than one PV points at {base}", observed=pvs)
            seen.add(base)
        logger.info(f"PV paths match disks: {sorted(seen)}")

    def node_for(self, pv: PersistentVolume, nodes: Sequence[Node]) -> Node:
        label = self.config.hostname_label
        hostname = pv.labels.get(label)
        if hostname is None:
            raise AssertionFailure(f"expected to find {label!r} label on PV {pv.name}", observed=pv)
        for node in nodes:
            node_hostname = node.labels.get(label)
            if node_hostname is None:
                raise AssertionFailure(f"expected to find {label!r} label on node {node.name}", observed=node)
            if node_hostname == hostname:
                return node
        raise AssertionFailure(
            f"did not find a node matching PV {pv.name} (hostname {hostname!r}) "
            f"among {[n.name for n in nodes]}",
            observed=pv,
        )

    def verify_provisioner_annotation(self, pvs: Sequence[PersistentVolume], nodes: Sequence[Node]) -> None:
        """Every PV must name its node in the provisioned-by annotation."""
        key = self.config.provisioned_by_annotation
        logger.info(f"Looking for {key!r} annotation on {len(pvs)} PV(s)")
        for pv in pvs:
            node = self.node_for(pv, nodes)
            want = self.config.provisioned_by(node.name, node.uid)
            got = pv.annotations.get(key)
            if got is None:
                raise AssertionFailure(f"expected to find annotation {key!r} on PV {pv.name}", observed=pv)
            if got != want:
                raise AssertionFailure(
                    f"PV {pv.name} annotation {key!r} is {got!r}, expected {want!r}",
                    observed=pv,
                )

    def start_marker(self) -> datetime:
        """Now, rounded down to the pod timestamp granularity."""
        return round_down(self.clock.now(), self.config.pod_timestamp_granularity)

    def find_fresh_pod(
        self,
        labels: Mapping[str, str],
        started: datetime,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Wait for a pod matching labels created strictly after started."""

        def probe():
            pods = self.client.list(Kind.POD, namespace=self.config.namespace, labels=labels)
            names = []
            for pod in pods:
                m = meta(pod)
                names.append(m.get("name"))
                created = parse_timestamp(m.get("creationTimestamp"))
                if created is not None and created > started:
                    return pod
                logger.info(f"pod is old: {m.get('name')!r} created at {created} before {started}, skipping")
            logger.info(f"could not find pod created by this run in pod list: {names}")
            return None

        return eventually(
            probe,
            timeout if timeout is not None else self.config.eventually_timeout,
            self.config.eventually_interval,
            matcher=lambda pod: pod is not None,
            description=f"finding consumer pod for {dict(labels)}",
            clock=self.clock,
        )
