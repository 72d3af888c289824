"""
Control plane access through kubectl.

Every call shells out to ``kubectl ... -o json`` and parses the result; a
failed call is turned into a TransientControlPlaneError or
PermanentControlPlaneError from the status reason kubectl prints
(``Error from server (NotFound): ...``).
"""

import abc
import json
import logging
import re
import subprocess
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ControlPlaneError, PermanentControlPlaneError, control_plane_error
from .models import Kind, ObjectRef

logger = logging.getLogger("localvolume-e2e.kube")

_SERVER_ERROR_RE = re.compile(r"Error from server \((\w+)\)")


class ControlPlane(abc.ABC):
    """What the harness needs from the cluster API."""

    @abc.abstractmethod
    def get(self, ref: ObjectRef) -> Dict[str, Any]:
        """Fetch one object. Raises ControlPlaneError (reason NotFound if absent)."""

    @abc.abstractmethod
    def list(
        self,
        kind: Kind,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
        fields: Optional[Mapping[str, str]] = None,
        has_labels: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """List objects matching every given selector."""

    @abc.abstractmethod
    def create(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Create an object and return it as stored."""

    @abc.abstractmethod
    def delete(self, ref: ObjectRef, propagation: Optional[str] = None) -> None:
        """Request deletion without waiting for it to finish."""


def selector(labels: Optional[Mapping[str, str]] = None, has_labels: Optional[List[str]] = None) -> str:
    parts = [f"{k}={v}" for k, v in (labels or {}).items()]
    parts.extend(has_labels or [])
    return ",".join(parts)


def parse_kubectl_error(stderr: str, returncode: int) -> ControlPlaneError:
    """Map kubectl stderr onto the harness error taxonomy."""
    message = stderr.strip() or f"kubectl exited with status {returncode}"
    match = _SERVER_ERROR_RE.search(message)
    # Dial failures carry no status reason; the message decides retryability.
    reason = match.group(1) if match else ""
    return control_plane_error(message, reason=reason)


class KubectlClient(ControlPlane):
    """ControlPlane backed by the kubectl binary.

    Args:
        kubectl: Binary to run
        kubeconfig: Optional --kubeconfig path
        context: Optional --context name
        request_timeout: Optional --request-timeout value (e.g. "30s")
    """

    def __init__(
        self,
        kubectl: str = "kubectl",
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        request_timeout: Optional[str] = None,
    ):
        self.kubectl = kubectl
        self.kubeconfig = kubeconfig
        self.context = context
        self.request_timeout = request_timeout

    def run(self, args: List[str], stdin: Optional[str] = None) -> str:
        """Run kubectl with args and return stdout.

        Raises:
            ControlPlaneError: On a non-zero exit
        """
        cmd = [self.kubectl]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        if self.context:
            cmd += ["--context", self.context]
        if self.request_timeout:
            cmd += ["--request-timeout", self.request_timeout]
        cmd += args

        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, input=stdin, capture_output=True, text=True)
        except FileNotFoundError:
            raise PermanentControlPlaneError(f"kubectl binary not found: {self.kubectl}")

        if result.returncode != 0:
            raise parse_kubectl_error(result.stderr, result.returncode)
        return result.stdout

    def _scope(self, kind: Kind, namespace: Optional[str]) -> List[str]:
        if not kind.namespaced:
            return []
        if namespace:
            return ["-n", namespace]
        return ["--all-namespaces"]

    def get(self, ref: ObjectRef) -> Dict[str, Any]:
        out = self.run(["get", ref.kind.value, ref.name] + self._scope(ref.kind, ref.namespace) + ["-o", "json"])
        return json.loads(out)

    def list(self, kind, namespace=None, labels=None, fields=None, has_labels=None):
        args = ["get", kind.value] + self._scope(kind, namespace)
        label_selector = selector(labels, has_labels)
        if label_selector:
            args += ["-l", label_selector]
        if fields:
            args += ["--field-selector", selector(fields)]
        out = self.run(args + ["-o", "json"])
        return json.loads(out).get("items", [])

    def create(self, manifest):
        out = self.run(["create", "-f", "-", "-o", "json"], stdin=yaml.safe_dump(manifest))
        return json.loads(out)

    def delete(self, ref, propagation=None):
        args = ["delete", ref.kind.value, ref.name] + self._scope(ref.kind, ref.namespace)
        if propagation:
            args.append(f"--cascade={propagation}")
        self.run(args + ["--wait=false"])
        logger.info(f"Requested deletion of {ref}")


class AgentFleet:
    """Read-only view of the per-node diskmaker daemonset."""

    def __init__(self, client: ControlPlane, name: str, namespace: str):
        self.client = client
        self.ref = ObjectRef(Kind.DAEMON_SET, name, namespace)

    def ready_count(self) -> int:
        daemonset = self.client.get(self.ref)
        return int((daemonset.get("status") or {}).get("numberReady", 0))

    def tolerations(self) -> List[Dict[str, Any]]:
        daemonset = self.client.get(self.ref)
        pod_spec = daemonset.get("spec", {}).get("template", {}).get("spec", {})
        return list(pod_spec.get("tolerations") or [])
