"""
Cloud disks for the scenario.

DiskProvisioner is the contract the orchestrator consumes; EC2DiskProvisioner
implements it with boto3 against EBS. Every volume it creates is tagged with
the run id so cleanup() can find and remove them even if the scenario died
half way.
"""

import abc
import logging
import os
import re
import uuid
from typing import Callable, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError, WaiterError

from .config import HarnessConfig
from .errors import DiskProvisioningError
from .models import Disk, Node, NodeDisks

logger = logging.getLogger("localvolume-e2e.disks")

RUN_TAG_KEY = "localvolume-e2e/run"
NITRO_ID_PREFIX = "nvme-Amazon_Elastic_Block_Store_"
BY_ID_DIR = "/dev/disk/by-id"

# Device letters EC2 accepts for extra EBS volumes (/dev/sdf - /dev/sdp).
_DEVICE_LETTERS = "fghijklmnop"

_IGNORED_CODES = {"InvalidVolume.NotFound", "IncorrectState", "InvalidAttachment.NotFound"}


def is_nitro_instance(node: Node, config: HarnessConfig) -> bool:
    instance_type = node.labels.get(config.instance_type_label, "")
    return bool(instance_type) and re.search(config.nitro_instance_regex, instance_type) is not None


def parse_provider_id(provider_id: str) -> Tuple[str, str, str]:
    """Split an AWS providerID into (instance id, region, zone).

    Example:
        parse_provider_id("aws:///us-east-1a/i-0123") -> ("i-0123", "us-east-1", "us-east-1a")
    """
    if not provider_id.startswith("aws://"):
        raise DiskProvisioningError(f"Not an AWS providerID: {provider_id!r}")
    parts = [p for p in provider_id[len("aws://"):].split("/") if p]
    if len(parts) != 2:
        raise DiskProvisioningError(f"Malformed AWS providerID: {provider_id!r}")
    zone, instance_id = parts
    return instance_id, zone[:-1], zone


class DiskProvisioner(abc.ABC):
    """Creates, attaches and removes disks on nodes. All calls are idempotent."""

    @abc.abstractmethod
    def create(self, node: Node, size: int) -> Disk:
        """Create an unattached disk of size GiB in the node's zone."""

    @abc.abstractmethod
    def attach(self, node: Node, disk: Disk) -> Disk:
        """Attach disk to node and fill in its path, id and name."""

    @abc.abstractmethod
    def detach(self, disk: Disk) -> None:
        pass

    @abc.abstractmethod
    def delete(self, disk: Disk) -> None:
        pass

    @abc.abstractmethod
    def cleanup(self) -> None:
        """Detach and delete every disk this provisioner created."""

    def create_and_attach(self, layout: List[NodeDisks]) -> List[NodeDisks]:
        for entry in layout:
            for i, disk in enumerate(entry.disks):
                created = self.create(entry.node, disk.size)
                entry.disks[i] = self.attach(entry.node, created)
                logger.info(
                    f"Attached {entry.disks[i].volume_id} ({disk.size}GiB) to {entry.node.name} "
                    f"at {entry.disks[i].path}"
                )
        return layout


class EC2DiskProvisioner(DiskProvisioner):
    """EBS volumes through a boto3 EC2 client.

    Args:
        ec2: boto3 EC2 client for the nodes' region
        config: Harness config (instance type label and nitro regex)
        run_id: Tag value identifying this run's volumes
    """

    def __init__(self, ec2, config: HarnessConfig, run_id: Optional[str] = None):
        self.ec2 = ec2
        self.config = config
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._used_devices: Dict[str, List[str]] = {}

    @classmethod
    def for_node(cls, node: Node, config: HarnessConfig, run_id: Optional[str] = None) -> "EC2DiskProvisioner":
        _, region, _ = parse_provider_id(node.provider_id)
        logger.info(f"Using EC2 region {region} from node {node.name}")
        return cls(boto3.client("ec2", region_name=region), config, run_id=run_id)

    def create(self, node, size):
        _, _, zone = parse_provider_id(node.provider_id)
        name = f"localvolume-e2e-{self.run_id}-{node.name}-{size}"
        try:
            volume = self.ec2.create_volume(
                AvailabilityZone=zone,
                Size=size,
                VolumeType="gp2",
                TagSpecifications=[{
                    "ResourceType": "volume",
                    "Tags": [
                        {"Key": RUN_TAG_KEY, "Value": self.run_id},
                        {"Key": "Name", "Value": name},
                    ],
                }],
            )
            volume_id = volume["VolumeId"]
            self.ec2.get_waiter("volume_available").wait(VolumeIds=[volume_id])
        except (ClientError, WaiterError) as e:
            raise DiskProvisioningError(f"Failed to create {size}GiB volume in {zone}: {e}")
        return Disk(size=size, volume_id=volume_id)

    def _next_device(self, instance_id: str) -> str:
        used = self._used_devices.setdefault(instance_id, [])
        for letter in _DEVICE_LETTERS:
            if letter not in used:
                used.append(letter)
                return letter
        raise DiskProvisioningError(f"No free device names left on {instance_id}")

    def attach(self, node, disk):
        instance_id, _, _ = parse_provider_id(node.provider_id)
        letter = self._next_device(instance_id)
        try:
            self.ec2.attach_volume(
                Device=f"/dev/sd{letter}",
                InstanceId=instance_id,
                VolumeId=disk.volume_id,
            )
            self.ec2.get_waiter("volume_in_use").wait(VolumeIds=[disk.volume_id])
        except (ClientError, WaiterError) as e:
            raise DiskProvisioningError(f"Failed to attach {disk.volume_id} to {instance_id}: {e}")

        # The kernel names the device xvdX; nitro instances also expose a
        # stable by-id link built from the volume id.
        disk.name = f"xvd{letter}"
        if is_nitro_instance(node, self.config):
            disk.id = NITRO_ID_PREFIX + disk.volume_id.replace("-", "")
            disk.path = f"{BY_ID_DIR}/{disk.id}"
        else:
            disk.id = ""
            disk.path = f"/dev/{disk.name}"
        return disk

    def detach(self, disk):
        try:
            self.ec2.detach_volume(VolumeId=disk.volume_id, Force=True)
            self.ec2.get_waiter("volume_available").wait(VolumeIds=[disk.volume_id])
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") not in _IGNORED_CODES:
                raise DiskProvisioningError(f"Failed to detach {disk.volume_id}: {e}")
        except WaiterError as e:
            raise DiskProvisioningError(f"Timed out detaching {disk.volume_id}: {e}")

    def delete(self, disk):
        try:
            self.ec2.delete_volume(VolumeId=disk.volume_id)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "InvalidVolume.NotFound":
                raise DiskProvisioningError(f"Failed to delete {disk.volume_id}: {e}")

    def cleanup(self):
        try:
            response = self.ec2.describe_volumes(
                Filters=[{"Name": f"tag:{RUN_TAG_KEY}", "Values": [self.run_id]}]
            )
        except ClientError as e:
            raise DiskProvisioningError(f"Failed to list volumes for run {self.run_id}: {e}")

        volumes = response.get("Volumes", [])
        logger.info(f"Deleting {len(volumes)} volume(s) tagged {RUN_TAG_KEY}={self.run_id}")
        for volume in volumes:
            disk = Disk(size=volume.get("Size", 0), volume_id=volume["VolumeId"])
            if volume.get("Attachments"):
                self.detach(disk)
            self.delete(disk)


class DiskSelector:
    """Chooses the device path of a disk already present on a node.

    Standalone helper for clusters whose nodes come with pre-attached disks;
    the lifecycle scenario provisions its own disks and never calls it.
    Nitro instances are resolved by an injected policy; other instances fall
    back to the TEST_LOCAL_DISK environment variable.
    """

    def __init__(
        self,
        config: HarnessConfig,
        nitro_resolver: Optional[Callable[[Node], str]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.config = config
        self.nitro_resolver = nitro_resolver
        self.env = os.environ if env is None else env

    def select(self, node: Node) -> str:
        if is_nitro_instance(node, self.config):
            if self.nitro_resolver is None:
                raise DiskProvisioningError(
                    f"Node {node.name} is a nitro instance but no nitro disk resolver is configured"
                )
            return self.nitro_resolver(node)

        local_disk = self.env.get("TEST_LOCAL_DISK", "")
        if local_disk:
            return local_disk
        raise DiskProvisioningError("can not find a suitable disk")
