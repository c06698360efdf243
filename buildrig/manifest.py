"""Kubernetes manifests for a build daemon deployment and its config maps."""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from buildrig.driver import DEFAULT_IMAGE, QEMU_IMAGE

CONTAINER_NAME = "buildkitd"
ANNOTATION_PLATFORM = "buildx.docker.com/platform"
CONFIG_MOUNT_ROOT = "/etc/buildkit"
ROOTLESS_STATE_DIR = "/home/user/.local/share/buildkit"

_QUANTITY_RE = re.compile(
    r"([+-]?)(\d+(?:\.\d*)?|\.\d+)"
    r"(Ki|Mi|Gi|Ti|Pi|Ei|n|u|m|k|M|G|T|P|E|[eE][+-]?\d+)?"
)
_SUFFIXES = {
    "": Decimal(1),
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
}


def parse_quantity(text: str) -> Decimal:
    """Parse a resource quantity such as ``100m`` or ``64Mi`` into base units.

    Raises ValueError when the text is not a valid quantity.
    """
    match = _QUANTITY_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"quantities must match the regular expression: {text!r}")
    sign, number, suffix = match.groups()
    suffix = suffix or ""
    if suffix[:1] in ("e", "E") and suffix not in _SUFFIXES:
        multiplier = Decimal(10) ** int(suffix[1:])
    else:
        multiplier = _SUFFIXES[suffix]
    value = Decimal(number) * multiplier
    return -value if sign == "-" else value


@dataclass
class QemuOpt:
    # When set, an init container installs binfmt handlers.
    install: bool = False
    image: str = QEMU_IMAGE


@dataclass
class Toleration:
    key: str = ""
    operator: str = ""
    value: str = ""
    effect: str = ""
    toleration_seconds: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name, value in (
            ("key", self.key),
            ("operator", self.operator),
            ("value", self.value),
            ("effect", self.effect),
        ):
            if value:
                out[name] = value
        if self.toleration_seconds is not None:
            out["tolerationSeconds"] = self.toleration_seconds
        return out


@dataclass
class DeploymentOpt:
    namespace: str = ""
    name: str = ""
    image: str = DEFAULT_IMAGE
    replicas: int = 1
    service_account_name: str = ""
    qemu: QemuOpt = field(default_factory=QemuOpt)
    buildkit_flags: list[str] | None = None
    # Files mounted under /etc/buildkit.
    config_files: dict[str, bytes] = field(default_factory=dict)
    rootless: bool = False
    node_selector: dict[str, str] = field(default_factory=dict)
    tolerations: list[Toleration] = field(default_factory=list)
    requests_cpu: str = ""
    requests_memory: str = ""
    limits_cpu: str = ""
    limits_memory: str = ""
    platforms: list[Any] = field(default_factory=list)


@dataclass
class ConfigGroup:
    """Config files sharing one directory, stored in one config map."""

    name: str
    path: str
    files: dict[str, str] = field(default_factory=dict)


def split_config_files(files: dict[str, bytes]) -> list[ConfigGroup]:
    """Group config files by directory, naming groups config, config-1, ..."""
    groups: dict[str, ConfigGroup] = {}
    name_index = 0
    for key, data in files.items():
        directory = posixpath.dirname(key) or "."
        group = groups.get(directory)
        if group is None:
            name = "config"
            if directory != ".":
                name_index += 1
                name = f"config-{name_index}"
            group = groups[directory] = ConfigGroup(name=name, path=directory)
        text = data.decode() if isinstance(data, (bytes, bytearray)) else str(data)
        group.files[posixpath.basename(key)] = text
    return list(groups.values())


def _format_platform(platform: Any) -> str:
    if isinstance(platform, str):
        return platform
    if isinstance(platform, dict):
        parts = [platform.get("os", ""), platform.get("architecture", "")]
        variant = platform.get("variant", "")
    else:
        parts = [getattr(platform, "os", ""), getattr(platform, "architecture", "")]
        variant = getattr(platform, "variant", "")
    if variant:
        parts.append(variant)
    return "/".join(parts)


def _metadata(namespace: str, name: str, **extra: Any) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    if namespace:
        meta["namespace"] = namespace
    if name:
        meta["name"] = name
    meta.update(extra)
    return meta


def _to_rootless(deployment: dict[str, Any]) -> None:
    template = deployment["spec"]["template"]
    pod_spec = template["spec"]
    container = pod_spec["containers"][0]
    container["args"].append("--oci-worker-no-process-sandbox")
    container["securityContext"] = {"seccompProfile": {"type": "Unconfined"}}
    annotations = template["metadata"].setdefault("annotations", {})
    annotations[f"container.apparmor.security.beta.kubernetes.io/{CONTAINER_NAME}"] = "unconfined"
    # A default VOLUME does not work rootless on hosts mounting it nosuid,nodev.
    container.setdefault("volumeMounts", []).append(
        {"name": CONTAINER_NAME, "mountPath": ROOTLESS_STATE_DIR}
    )
    pod_spec.setdefault("volumes", []).append({"name": CONTAINER_NAME, "emptyDir": {}})


def new_deployment(opt: DeploymentOpt) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    """Build the deployment manifest and the config maps it mounts.

    Raises ValueError when a resource quantity is invalid.
    """
    labels = {"app": opt.name}
    # Labels and annotations are shared between objects, as in the manifests.
    annotations: dict[str, str] = {}
    if opt.platforms:
        annotations[ANNOTATION_PLATFORM] = ",".join(
            _format_platform(p) for p in opt.platforms
        )

    container: dict[str, Any] = {
        "name": CONTAINER_NAME,
        "image": opt.image,
        "args": list(opt.buildkit_flags or []),
        "securityContext": {"privileged": True},
        "readinessProbe": {"exec": {"command": ["buildctl", "debug", "workers"]}},
        "resources": {"requests": {}, "limits": {}},
    }
    pod_spec: dict[str, Any] = {"containers": [container]}
    if opt.service_account_name:
        pod_spec["serviceAccountName"] = opt.service_account_name

    deployment: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(opt.namespace, opt.name, labels=labels, annotations=annotations),
        "spec": {
            "replicas": int(opt.replicas),
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels, "annotations": annotations},
                "spec": pod_spec,
            },
        },
    }

    config_maps: list[dict[str, Any]] = []
    for group in split_config_files(opt.config_files):
        map_name = f"{opt.name}-{group.name}"
        config_maps.append(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": _metadata(opt.namespace, map_name, annotations=annotations),
                "data": dict(group.files),
            }
        )
        container["volumeMounts"] = [
            {
                "name": group.name,
                "mountPath": posixpath.normpath(posixpath.join(CONFIG_MOUNT_ROOT, group.path)),
            }
        ]
        pod_spec["volumes"] = [{"name": "config", "configMap": {"name": map_name}}]

    if opt.qemu.install:
        pod_spec["initContainers"] = [
            {
                "name": "qemu",
                "image": opt.qemu.image,
                "args": ["--install", "all"],
                "securityContext": {"privileged": True},
            }
        ]

    if opt.rootless:
        _to_rootless(deployment)

    if opt.node_selector:
        pod_spec["nodeSelector"] = dict(opt.node_selector)
    if opt.tolerations:
        pod_spec["tolerations"] = [t.to_dict() for t in opt.tolerations]

    resources = container["resources"]
    for section, key, value in (
        ("requests", "cpu", opt.requests_cpu),
        ("requests", "memory", opt.requests_memory),
        ("limits", "cpu", opt.limits_cpu),
        ("limits", "memory", opt.limits_memory),
    ):
        if value:
            parse_quantity(value)
            resources[section][key] = value

    return deployment, config_maps