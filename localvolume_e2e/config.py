"""
Harness configuration.

Everything the scenario needs to know about the cluster (namespace, label and
annotation keys, images) and every wait's timing lives on one HarnessConfig
value passed into the orchestrator.

Sources, later ones winning:
    1. Defaults below
    2. A YAML file (HarnessConfig.from_yaml)
    3. LV_E2E_* environment variables, optionally from a .env file
       (HarnessConfig.from_env)
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

ENV_PREFIX = "LV_E2E_"


@dataclass(frozen=True)
class Toleration:
    key: str
    value: str
    operator: str = "Equal"

    def to_dict(self) -> Dict[str, str]:
        return {"key": self.key, "value": self.value, "operator": self.operator}


@dataclass(frozen=True)
class HarnessConfig:
    namespace: str = "local-storage"

    # LocalVolume under test
    local_volume_name: str = "test-local-disk"
    local_volume_api_version: str = "local.storage.openshift.io/v1"
    storage_class_name: str = "test-local-sc"
    tolerations: Tuple[Toleration, ...] = (Toleration("localstorage", "testvalue", "Equal"),)
    diskmaker_daemonset: str = "diskmaker-manager"
    symlink_root: str = "/mnt/local-storage"

    # Label and annotation keys
    hostname_label: str = "kubernetes.io/hostname"
    instance_type_label: str = "beta.kubernetes.io/instance-type"
    worker_role_label: str = "node-role.kubernetes.io/worker"
    provisioned_by_annotation: str = "pv.kubernetes.io/provisioned-by"
    provisioner_prefix: str = "local-volume-provisioner"
    consumer_app_label: str = "app"
    consumer_app_value: str = "pv-consumer"
    consumer_pv_label: str = "pv-name"

    # Disk layout
    min_nodes: int = 3
    disk_nodes: int = 2
    disk_sizes: Tuple[int, ...] = (10, 20)
    nitro_instance_regex: str = r"^[cmr]5.*|t3|z1d"

    # Images
    consumer_image: str = "gcr.io/google_containers/busybox"
    cleanup_image: str = "gcr.io/google_containers/busybox"

    # Rounding applied to the job start time before comparing pod
    # creation timestamps. Creation timestamps have second resolution.
    pod_timestamp_granularity: int = 60

    # Timing, in seconds
    retry_interval: float = 5.0
    timeout: float = 300.0
    eventually_timeout: float = 600.0
    eventually_interval: float = 2.0
    create_timeout: float = 60.0
    create_interval: float = 2.0
    job_timeout: float = 300.0
    job_interval: float = 2.0
    delete_timeout: float = 180.0
    delete_interval: float = 2.0
    replacement_timeout: float = 300.0
    reclaim_timeout: float = 300.0
    reclaim_interval: float = 5.0
    delete_request_timeout: float = 300.0
    delete_request_interval: float = 5.0
    finalizer_window: float = 30.0
    finalizer_interval: float = 5.0
    terminal_timeout: float = 300.0
    terminal_interval: float = 2.0

    def provisioned_by(self, node_name: str, node_uid: str) -> str:
        """Value the provisioner stamps on every PV it creates on a node."""
        return f"{self.provisioner_prefix}-{node_name}-{node_uid}"

    def consumer_labels(self, pv_name: str) -> Dict[str, str]:
        return {self.consumer_app_label: self.consumer_app_value, self.consumer_pv_label: pv_name}

    def with_overrides(self, overrides: Dict[str, Any]) -> "HarnessConfig":
        """Return a copy with overrides applied, coercing to each field's type."""
        known = {f.name: f for f in fields(self)}
        changes = {}
        for key, raw in overrides.items():
            if key not in known:
                raise ValueError(f"Unknown config key: {key}")
            changes[key] = _coerce(key, raw, getattr(self, key))
        return replace(self, **changes)

    @classmethod
    def from_yaml(cls, path: str, base: Optional["HarnessConfig"] = None) -> "HarnessConfig":
        """Load overrides from a YAML mapping."""
        config_path = Path(path)
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ValueError(f"Config file not found: {path}")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}")

        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")
        return (base or cls()).with_overrides(data)

    @classmethod
    def from_env(
        cls,
        env: Optional[Dict[str, str]] = None,
        dotenv_path: Optional[str] = None,
        base: Optional["HarnessConfig"] = None,
    ) -> "HarnessConfig":
        """Read LV_E2E_<FIELD> variables.

        LV_E2E_CONFIG names a YAML file applied before the variables.
        """
        if env is None:
            if dotenv_path is None or Path(dotenv_path).exists():
                load_dotenv(dotenv_path)
            env = dict(os.environ)

        config = base or cls()
        yaml_path = env.get(f"{ENV_PREFIX}CONFIG")
        if yaml_path:
            config = cls.from_yaml(yaml_path, base=config)

        overrides = {}
        for f in fields(cls):
            value = env.get(f"{ENV_PREFIX}{f.name.upper()}")
            if value is not None:
                overrides[f.name] = value
        return config.with_overrides(overrides)


def _coerce(key: str, raw: Any, current: Any) -> Any:
    if key == "tolerations":
        return _parse_tolerations(raw)
    if isinstance(current, tuple):
        items = raw.split(",") if isinstance(raw, str) else list(raw)
        return tuple(int(i) for i in items)
    if isinstance(current, bool):
        return str(raw).lower() in ("1", "true", "yes")
    if isinstance(current, int) and not isinstance(current, bool):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return str(raw)


def _parse_tolerations(raw: Any) -> Tuple[Toleration, ...]:
    # Env values arrive as YAML text, file values as a list of mappings.
    if isinstance(raw, str):
        raw = yaml.safe_load(raw) or []
    items: List[Toleration] = []
    for entry in raw:
        if isinstance(entry, Toleration):
            items.append(entry)
            continue
        items.append(Toleration(
            key=str(entry["key"]),
            value=str(entry.get("value", "")),
            operator=str(entry.get("operator", "Equal")),
        ))
    return tuple(items)
