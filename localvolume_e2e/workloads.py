"""Manifests for the workloads the scenario runs on the cluster."""

from typing import Any, Dict

from .config import HarnessConfig
from .models import Node, PersistentVolume

# Writes a random block, copies it onto the volume and fails if the copy's
# checksum differs from the original.
CONSUMER_SCRIPT = "; ".join([
    "dd if=/dev/urandom of=/tmp/random.img bs=512 count=1",
    "md5VAR1=$(md5sum /tmp/random.img | awk '{ print $1 }')",
    "cp /tmp/random.img /data/random.img",
    "md5VAR2=$(md5sum /data/random.img | awk '{ print $1 }')",
    'if [ "$md5VAR1" != "$md5VAR2" ]; then exit 1; fi',
])


def consumer_name(pv: PersistentVolume) -> str:
    return f"{pv.name}-consumer"


def consumer_claim_manifest(config: HarnessConfig, pv: PersistentVolume) -> Dict[str, Any]:
    """PVC that can only bind to pv: same class, mode and capacity."""
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": consumer_name(pv),
            "namespace": config.namespace,
        },
        "spec": {
            "volumeMode": pv.volume_mode,
            "storageClassName": pv.storage_class,
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": pv.capacity}},
        },
    }


def consumer_job_manifest(config: HarnessConfig, pv: PersistentVolume) -> Dict[str, Any]:
    labels = config.consumer_labels(pv.name)
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": consumer_name(pv),
            "namespace": config.namespace,
            "labels": dict(labels),
        },
        "spec": {
            "backoffLimit": 0,
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {
                    "restartPolicy": "Never",
                    "containers": [{
                        "name": "busybox",
                        "image": config.consumer_image,
                        "command": ["/bin/sh", "-c"],
                        "args": [CONSUMER_SCRIPT],
                        "volumeMounts": [{"mountPath": "/data", "name": "volume-to-debug"}],
                    }],
                    "volumes": [{
                        "name": "volume-to-debug",
                        "persistentVolumeClaim": {"claimName": consumer_name(pv)},
                    }],
                },
            },
        },
    }


def symlink_cleanup_job_manifest(config: HarnessConfig, node: Node) -> Dict[str, Any]:
    """Job pinned to node that removes the storage class symlink dir."""
    hostname = node.labels.get(config.hostname_label, node.name)
    target = f"{config.symlink_root}/{config.storage_class_name}"
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": f"cleanup-symlinks-{node.name}"[:63].rstrip("-."),
            "namespace": config.namespace,
            "labels": {"app": "localvolume-e2e-cleanup"},
        },
        "spec": {
            "backoffLimit": 2,
            "template": {
                "spec": {
                    "restartPolicy": "Never",
                    "nodeSelector": {config.hostname_label: hostname},
                    "tolerations": [t.to_dict() for t in config.tolerations],
                    "containers": [{
                        "name": "cleanup",
                        "image": config.cleanup_image,
                        "command": ["/bin/sh", "-c"],
                        "args": [f"rm -rf {target}"],
                        "securityContext": {"privileged": True},
                        "volumeMounts": [{"mountPath": config.symlink_root, "name": "symlinks"}],
                    }],
                    "volumes": [{
                        "name": "symlinks",
                        "hostPath": {"path": config.symlink_root},
                    }],
                },
            },
        },
    }
