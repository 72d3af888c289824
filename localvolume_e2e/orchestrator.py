"""
Orchestrator - the LocalVolume lifecycle scenario.

Stages run strictly in order; the first failing stage ends the run with a
StageFailure and the cleanup registry is drained no matter how the run ended.

    ProvisionExternal -> CreateManaged -> AwaitReady -> Correlate ->
    ConsumeAll -> VerifyBound -> ReleaseAll -> VerifyReclaimed ->
    ConsumePartial -> RequestDelete -> VerifyFinalizerHeld ->
    ReleaseRemaining -> VerifyTerminal

Nothing observed in one poll is assumed to still hold in the next: objects
are re-fetched for every check and re-matched by name or creation time.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .assertions import consistently, eventually
from .cleanup import CleanupRegistry
from .clock import SYSTEM_CLOCK
from .config import HarnessConfig
from .correlate import ResourceCorrelator
from .disks import DiskProvisioner, EC2DiskProvisioner
from .errors import (
    AssertionFailure,
    CleanupError,
    ControlPlaneError,
    HarnessError,
    StageFailure,
    TimeoutExceeded,
    is_already_exists,
    is_gone,
    is_not_found,
)
from .kube import AgentFleet, ControlPlane
from .models import (
    CONDITION_AVAILABLE,
    PHASE_AVAILABLE,
    PHASE_BOUND,
    PROPAGATION_BACKGROUND,
    Condition,
    Disk,
    Kind,
    LocalVolumeState,
    Node,
    NodeDisks,
    ObjectRef,
    PersistentVolume,
    StorageClassDevices,
    local_volume_manifest,
    meta,
)
from .poll import poll_immediate_until, poll_until
from .workloads import consumer_claim_manifest, consumer_job_manifest, symlink_cleanup_job_manifest

logger = logging.getLogger("localvolume-e2e.orchestrator")


class Stage(Enum):
    PROVISION_EXTERNAL = "ProvisionExternal"
    CREATE_MANAGED = "CreateManaged"
    AWAIT_READY = "AwaitReady"
    CORRELATE = "Correlate"
    CONSUME_ALL = "ConsumeAll"
    VERIFY_BOUND = "VerifyBound"
    RELEASE_ALL = "ReleaseAll"
    VERIFY_RECLAIMED = "VerifyReclaimed"
    CONSUME_PARTIAL = "ConsumePartial"
    REQUEST_DELETE = "RequestDelete"
    VERIFY_FINALIZER_HELD = "VerifyFinalizerHeld"
    RELEASE_REMAINING = "ReleaseRemaining"
    VERIFY_TERMINAL = "VerifyTerminal"


@dataclass
class ConsumingWorkload:
    """A claim bound to one PV, the job using it and the pod that ran."""

    pv_name: str
    claim: ObjectRef
    job: ObjectRef
    pod: ObjectRef

    def refs(self) -> List[ObjectRef]:
        # Job first so its pods are not recreated while we delete them.
        return [self.job, self.claim, self.pod]


ProvisionerFactory = Callable[[Node], DiskProvisioner]

_RELEASE_ORDER = {Kind.JOB: 0, Kind.PERSISTENT_VOLUME_CLAIM: 1, Kind.POD: 2}


def is_zero_time(moment) -> bool:
    # An unset metav1.Time serialises as null or as year 1.
    return moment is None or moment.year <= 1


class LocalVolumeScenario:
    """
    Drive one LocalVolume through provision, consume, release and delete.

    Args:
        client: Control plane access
        config: Harness configuration
        provisioner_factory: Builds the disk provisioner for the first disk
            node (defaults to EBS in the node's region)
        clock: Time source for every wait
    """

    def __init__(
        self,
        client: ControlPlane,
        config: HarnessConfig,
        provisioner_factory: Optional[ProvisionerFactory] = None,
        clock=None,
    ):
        self.client = client
        self.config = config
        self.clock = clock or SYSTEM_CLOCK
        self.provisioner_factory = provisioner_factory or (
            lambda node: EC2DiskProvisioner.for_node(node, config)
        )
        self.cleanup = CleanupRegistry()
        self.correlator = ResourceCorrelator(client, config, clock=self.clock)
        self.fleet = AgentFleet(client, config.diskmaker_daemonset, config.namespace)

        self.stage: Optional[Stage] = None
        self.completed: List[Stage] = []
        self.nodes: List[Node] = []
        self.layout: List[NodeDisks] = []
        self.provisioner: Optional[DiskProvisioner] = None
        self.selected_node: Optional[Node] = None
        self.selected_disk: Optional[Disk] = None
        self.local_volume: Optional[Dict[str, Any]] = None
        self.pvs: List[PersistentVolume] = []
        self.consumers: List[ConsumingWorkload] = []
        # Every consumer object created and not yet released.
        self._consumer_refs: List[ObjectRef] = []
        self._consumer_cleanup_registered = False

    @property
    def local_volume_ref(self) -> ObjectRef:
        return ObjectRef(Kind.LOCAL_VOLUME, self.config.local_volume_name, self.config.namespace)

    @property
    def storage_class(self) -> str:
        return self.config.storage_class_name

    def stages(self):
        return [
            (Stage.PROVISION_EXTERNAL, self.provision_external),
            (Stage.CREATE_MANAGED, self.create_managed),
            (Stage.AWAIT_READY, self.await_ready),
            (Stage.CORRELATE, self.correlate),
            (Stage.CONSUME_ALL, self.consume_all),
            (Stage.VERIFY_BOUND, self.verify_bound),
            (Stage.RELEASE_ALL, self.release_all),
            (Stage.VERIFY_RECLAIMED, self.verify_reclaimed),
            (Stage.CONSUME_PARTIAL, self.consume_partial),
            (Stage.REQUEST_DELETE, self.request_delete),
            (Stage.VERIFY_FINALIZER_HELD, self.verify_finalizer_held),
            (Stage.RELEASE_REMAINING, self.release_remaining),
            (Stage.VERIFY_TERMINAL, self.verify_terminal),
        ]

    def run(self) -> List[Stage]:
        """Run every stage, then drain cleanup.

        Returns:
            The completed stages, in order

        Raises:
            StageFailure: The first stage that failed, with the cause chained
            CleanupError: If the scenario passed but cleanup did not
        """
        try:
            self._run_stages()
        except BaseException:
            self._drain_cleanup(scenario_failed=True)
            raise
        self._drain_cleanup(scenario_failed=False)
        return list(self.completed)

    def _run_stages(self):
        for stage, step in self.stages():
            self.stage = stage
            logger.info(f"Stage {stage.value}")
            try:
                step()
            except HarnessError as e:
                if isinstance(e, TimeoutExceeded):
                    logger.error(f"Stage {stage.value} timed out: {e}")
                else:
                    logger.error(f"Stage {stage.value} failed: {e}")
                raise StageFailure(stage, e) from e
            self.completed.append(stage)
        logger.info("LocalVolume scenario passed")

    def _drain_cleanup(self, scenario_failed: bool):
        try:
            self.cleanup.run_all()
        except CleanupError as e:
            if not scenario_failed:
                raise
            logger.error(f"Cleanup after failed scenario: {e}")

    # Stages

    def provision_external(self):
        self.nodes = self.list_worker_nodes()
        if len(self.nodes) < self.config.min_nodes:
            raise AssertionFailure(
                f"expected to have at least {self.config.min_nodes} nodes, found {len(self.nodes)}",
                observed=[n.name for n in self.nodes],
            )

        self.layout = [
            NodeDisks(node=node, disks=[Disk(size=size) for size in self.config.disk_sizes])
            for node in self.nodes[:self.config.disk_nodes]
        ]
        self.selected_node = self.layout[0].node
        self.provisioner = self.provisioner_factory(self.selected_node)

        self.cleanup.register("cleanupSymlinkDir", self.cleanup_symlink_dirs)
        self.cleanup.register("cleanupDisks", self.provisioner.cleanup)

        logger.info("Creating and attaching disks")
        self.provisioner.create_and_attach(self.layout)

        self.selected_disk = self.layout[0].disks[0]
        if not self.selected_disk.path:
            raise AssertionFailure("device path should not be empty", observed=self.selected_disk)

    def create_managed(self):
        self.local_volume = local_volume_manifest(
            self.config,
            self.selected_node.name,
            [StorageClassDevices(self.storage_class, (self.selected_disk.path,))],
        )
        self.eventually_create(self.local_volume, "localvolume")
        self.cleanup.register("cleanupLVResources", self.cleanup_local_volume_resources)

    def await_ready(self):
        self.wait_for_daemonset(expected=self.expected_agents())
        self.verify_daemonset_tolerations()
        self.verify_local_volume_finalizers()
        eventually(
            self.available_condition,
            self.config.timeout,
            self.config.retry_interval,
            matcher=self.condition_ready,
            description="LocalVolume Available condition",
            clock=self.clock,
        )
        logger.info("LocalVolume status verification successful")

    def correlate(self):
        expected = len(self._device_paths())
        pvs = self.correlator.find_pvs(self.storage_class, expected)
        self.correlator.verify_device_paths(pvs, [self.selected_disk])
        self.correlator.verify_provisioner_annotation(pvs, self.nodes)

        # Deleted PVs must be provisioned again for the same disks.
        self.eventually_delete(*[ObjectRef(Kind.PERSISTENT_VOLUME, pv.name) for pv in pvs])
        pvs = self.correlator.find_pvs(self.storage_class, expected, timeout=self.config.replacement_timeout)
        self.correlator.verify_device_paths(pvs, [self.selected_disk])
        self.correlator.verify_provisioner_annotation(pvs, self.nodes)
        self.pvs = pvs

    def consume_all(self):
        self.consumers = [self.consume(pv) for pv in self.pvs]

    def verify_bound(self):
        names = {c.pv_name for c in self.consumers}

        def phases():
            return {pv.name: pv.phase for pv in self.correlator.list_pvs(self.storage_class) if pv.name in names}

        eventually(
            phases,
            self.config.timeout,
            self.config.retry_interval,
            matcher=lambda seen: set(seen) == names and all(p == PHASE_BOUND for p in seen.values()),
            description="consumed PVs reaching phase Bound",
            clock=self.clock,
        )

    def release_all(self):
        self.release(self.consumers)
        self.consumers = []

    def verify_reclaimed(self):
        eventually(
            self.pv_phases,
            self.config.reclaim_timeout,
            self.config.reclaim_interval,
            matcher=self.all_available,
            description="waiting for PVs to become available again",
            clock=self.clock,
        )

    def consume_partial(self):
        self.consumers = [self.consume(pv) for pv in self.pvs[:1]]

    def request_delete(self):
        ref = self.local_volume_ref

        def delete():
            logger.info(f"deleting LocalVolume {ref.name!r}")
            try:
                self.client.delete(ref, propagation=PROPAGATION_BACKGROUND)
            except ControlPlaneError as e:
                if is_not_found(e) or is_gone(e):
                    raise AssertionFailure(f"LocalVolume {ref.name} vanished before deletion was requested")
                raise
            return True

        eventually(
            delete,
            self.config.delete_request_timeout,
            self.config.delete_request_interval,
            description=f"deleting LocalVolume {ref.name!r}",
            clock=self.clock,
        )

    def verify_finalizer_held(self):
        ref = self.local_volume_ref

        def finalizers_present():
            logger.info("verifying finalizer still exists")
            try:
                obj = self.client.get(ref)
            except ControlPlaneError as e:
                if is_not_found(e) or is_gone(e):
                    raise AssertionFailure("LocalVolume deleted with bound PVs")
                logger.info(f"error getting LocalVolume: {e}")
                return False
            return len(LocalVolumeState.from_object(obj).finalizers) > 0

        consistently(
            finalizers_present,
            self.config.finalizer_window,
            self.config.finalizer_interval,
            description="checking finalizer exists with bound PVs",
            clock=self.clock,
        )

    def release_remaining(self):
        logger.info("releasing pvs")
        self.release(self.consumers)
        self.consumers = []

    def verify_terminal(self):
        ref = self.local_volume_ref

        def deleted():
            logger.info("verifying LocalVolume deletion")
            try:
                obj = self.client.get(ref)
            except ControlPlaneError as e:
                if is_not_found(e) or is_gone(e):
                    logger.info(f"LocalVolume deleted: {e}")
                    return True
                logger.info(f"error getting LocalVolume: {e}")
                return False
            state = LocalVolumeState.from_object(obj)
            logger.info(f"LocalVolume found: {state.name!r} with finalizers: {state.finalizers}")
            return False

        eventually(
            deleted,
            self.config.terminal_timeout,
            self.config.terminal_interval,
            description=f"verifying LocalVolume {ref.name!r} has been deleted",
            clock=self.clock,
        )
        eventually(
            lambda: self.correlator.list_pvs(self.storage_class),
            self.config.terminal_timeout,
            self.config.terminal_interval,
            matcher=lambda pvs: len(pvs) == 0,
            description=f"PVs of class {self.storage_class} removed",
            clock=self.clock,
        )

    # Building blocks

    def _device_paths(self) -> List[str]:
        devices = self.local_volume["spec"]["storageClassDevices"]
        return [path for d in devices for path in d["devicePaths"]]

    def expected_agents(self) -> int:
        """Diskmaker pods the LocalVolume's node selector asks for."""
        terms = self.local_volume["spec"]["nodeSelector"]["nodeSelectorTerms"]
        return len({v for term in terms for match in term.get("matchFields", []) for v in match["values"]})

    def list_worker_nodes(self) -> List[Node]:
        """Worker nodes, falling back to every schedulable node."""
        found: List[Dict[str, Any]] = []

        def list_nodes(**selectors):
            def condition():
                found[:] = self.client.list(Kind.NODE, **selectors)
                return True
            return condition

        poll_immediate_until(
            list_nodes(has_labels=[self.config.worker_role_label]),
            self.config.retry_interval,
            self.config.timeout,
            description="listing worker nodes",
            clock=self.clock,
        )
        if not found:
            logger.info("No worker-labelled nodes, listing schedulable nodes")
            poll_immediate_until(
                list_nodes(fields={"spec.unschedulable": "false"}),
                self.config.retry_interval,
                self.config.timeout,
                description="listing schedulable nodes",
                clock=self.clock,
            )
        return [Node.from_object(o) for o in found]

    def wait_for_daemonset(self, expected: int):
        name = self.config.diskmaker_daemonset

        def ready():
            try:
                count = self.fleet.ready_count()
            except ControlPlaneError as e:
                if is_not_found(e):
                    logger.info(f"Waiting for availability of {name} daemonset")
                    return False
                raise
            if count == expected:
                return True
            logger.info(f"Waiting for full availability of {name} daemonset ({count}/{expected})")
            return False

        poll_until(ready, self.config.retry_interval, self.config.timeout,
                   description=f"{name} daemonset", clock=self.clock)
        logger.info(f"Daemonset available ({expected}/{expected})")

    def verify_daemonset_tolerations(self):
        found: List[Dict[str, Any]] = []

        def read():
            try:
                found[:] = self.fleet.tolerations()
            except ControlPlaneError as e:
                if is_not_found(e):
                    logger.info(f"Waiting for {self.config.diskmaker_daemonset} daemonset")
                    return False
                raise
            return True

        poll_immediate_until(read, self.config.retry_interval, self.config.timeout,
                             description="daemonset tolerations", clock=self.clock)
        for toleration in self.config.tolerations:
            wanted = toleration.to_dict()
            if not any(all(t.get(k) == v for k, v in wanted.items()) for t in found):
                raise AssertionFailure(
                    f"toleration mismatch between daemonset and localvolume: {found}, {wanted}",
                    observed=found,
                )

    def verify_local_volume_finalizers(self):
        def has_finalizers():
            obj = self.client.get(self.local_volume_ref)
            return len(LocalVolumeState.from_object(obj).finalizers) > 0

        poll_immediate_until(has_finalizers, self.config.retry_interval, self.config.timeout,
                             description="LocalVolume finalizers", clock=self.clock)
        logger.info("Local volume verification successful")

    def available_condition(self) -> Optional[Condition]:
        state = LocalVolumeState.from_object(self.client.get(self.local_volume_ref))
        condition = state.condition(CONDITION_AVAILABLE)
        if condition is None:
            logger.info(f"expected available condition, got {[c.type for c in state.conditions]}")
        return condition

    def condition_ready(self, condition: Optional[Condition]) -> bool:
        if condition is None:
            return False
        if not condition.is_true:
            logger.info(f"Available condition is {condition.status}: {condition.message}")
            return False
        if is_zero_time(condition.last_transition_time):
            logger.info("Available condition has no last transition time yet")
            return False
        return True

    def pv_phases(self) -> Dict[str, Optional[str]]:
        """Current phase of every PV seen in Correlate, None when it is missing."""
        current = {pv.name: pv.phase for pv in self.correlator.list_pvs(self.storage_class)}
        return {pv.name: current.get(pv.name) for pv in self.pvs}

    def all_available(self, phases: Dict[str, Optional[str]]) -> bool:
        for name, phase in phases.items():
            if phase is None:
                logger.info(f"PV {name} not found")
                return False
            if phase != PHASE_AVAILABLE:
                logger.info(f"PV is in phase {phase!r}, waiting for it to be in phase {PHASE_AVAILABLE!r}")
                return False
        return True

    def eventually_create(self, manifest: Dict[str, Any], description: str) -> None:
        name = manifest["metadata"]["name"]

        def create():
            logger.info(f"creating {description}: {name!r}")
            try:
                self.client.create(manifest)
            except ControlPlaneError as e:
                if is_already_exists(e):
                    logger.info(f"{description} {name!r} already exists")
                    return True
                raise
            return True

        eventually(create, self.config.create_timeout, self.config.create_interval,
                   description=f"creating {description}", clock=self.clock)

    def eventually_delete(self, *refs: ObjectRef) -> None:
        """Delete each object and wait until it is gone or was re-created."""
        for ref in refs:
            uid: List[str] = []

            def request(ref=ref, uid=uid):
                try:
                    uid[:] = [meta(self.client.get(ref)).get("uid", "")]
                    self.client.delete(ref, propagation=PROPAGATION_BACKGROUND)
                except ControlPlaneError as e:
                    if is_not_found(e) or is_gone(e):
                        return True
                    raise
                return True

            def gone(ref=ref, uid=uid):
                try:
                    obj = self.client.get(ref)
                except ControlPlaneError as e:
                    if is_not_found(e) or is_gone(e):
                        return True
                    raise
                return bool(uid) and meta(obj).get("uid") != uid[0]

            eventually(request, self.config.delete_timeout, self.config.delete_interval,
                       description=f"deleting {ref}", clock=self.clock)
            eventually(gone, self.config.delete_timeout, self.config.delete_interval,
                       description=f"{ref} to disappear", clock=self.clock)

    def _track(self, ref: ObjectRef):
        if not self._consumer_cleanup_registered:
            self.cleanup.register("pv-consumer", self.release_tracked_consumers)
            self._consumer_cleanup_registered = True
        self._consumer_refs.append(ref)

    def release_tracked_consumers(self):
        # A claim stays protected while a pod of its job still exists.
        refs = sorted(self._consumer_refs, key=lambda r: _RELEASE_ORDER.get(r.kind, len(_RELEASE_ORDER)))
        self.eventually_delete(*refs)
        self._consumer_refs = []

    def consume(self, pv: PersistentVolume) -> ConsumingWorkload:
        """Bind pv with a claim and prove it is writable with a job."""
        claim = consumer_claim_manifest(self.config, pv)
        job = consumer_job_manifest(self.config, pv)
        claim_ref = ObjectRef.from_object(claim)
        job_ref = ObjectRef.from_object(job)

        self._track(claim_ref)
        self.eventually_create(claim, "pvc")

        started = self.correlator.start_marker()
        self._track(job_ref)
        self.eventually_create(job, "job")

        def succeeded():
            logger.info("waiting for job to complete")
            try:
                status = self.client.get(job_ref).get("status") or {}
            except ControlPlaneError as e:
                logger.info(f"error fetching job: {e}")
                return 0
            if status.get("failed", 0) > 0 and not status.get("succeeded"):
                raise AssertionFailure(f"consumer job {job_ref.name} failed", observed=status)
            logger.info(f"job completions: {status.get('succeeded', 0)}")
            return status.get("succeeded", 0)

        eventually(succeeded, self.config.job_timeout, self.config.job_interval,
                   matcher=lambda n: n >= 1, description="waiting for job to complete", clock=self.clock)

        # Pods must be deleted too before the PV is released.
        logger.info("looking for the completed pod")
        pod = self.correlator.find_fresh_pod(self.config.consumer_labels(pv.name), started)
        pod_ref = ObjectRef(Kind.POD, meta(pod)["name"], self.config.namespace)
        self._track(pod_ref)
        return ConsumingWorkload(pv.name, claim_ref, job_ref, pod_ref)

    def release(self, consumers: List[ConsumingWorkload]):
        refs = [ref for c in consumers for ref in c.refs()]
        self.eventually_delete(*refs)
        self._consumer_refs = [r for r in self._consumer_refs if r not in refs]

    # Cleanup actions

    def cleanup_symlink_dirs(self):
        for entry in self.layout:
            job = symlink_cleanup_job_manifest(self.config, entry.node)
            ref = ObjectRef.from_object(job)
            self.eventually_create(job, "symlink cleanup job")
            eventually(
                lambda: (self.client.get(ref).get("status") or {}).get("succeeded", 0),
                self.config.job_timeout,
                self.config.job_interval,
                matcher=lambda n: n >= 1,
                description=f"symlink cleanup on {entry.node.name}",
                clock=self.clock,
            )
            self.eventually_delete(ref)

    def cleanup_local_volume_resources(self):
        self.eventually_delete(self.local_volume_ref)
        self.eventually_delete(ObjectRef(Kind.STORAGE_CLASS, self.storage_class))

        def delete_pvs():
            pvs = self.correlator.list_pvs(self.storage_class)
            logger.info(f"Deleting {len(pvs)} PVs")
            self.eventually_delete(*[ObjectRef(Kind.PERSISTENT_VOLUME, pv.name) for pv in pvs])
            return True

        eventually(delete_pvs, self.config.delete_timeout, self.config.delete_interval,
                   description=f"cleaning up pvs for lv: {self.config.local_volume_name!r}", clock=self.clock)
