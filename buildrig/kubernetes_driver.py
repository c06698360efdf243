"""Factory for drivers that run the build daemon as a Kubernetes deployment."""

from __future__ import annotations

import re
from typing import Any, Callable

from buildrig.driver import (
    DEFAULT_IMAGE,
    DEFAULT_ROOTLESS_IMAGE,
    QEMU_IMAGE,
    Driver,
    DriverError,
    Factory,
    InitConfig,
)
from buildrig.manifest import DeploymentOpt, QemuOpt, Toleration, new_deployment

DRIVER_NAME = "kubernetes"

LOADBALANCE_RANDOM = "random"
LOADBALANCE_STICKY = "sticky"

PRIORITY_SUPPORTED = 40
PRIORITY_UNSUPPORTED = 80

_BUILDER_PREFIX = "buildx_buildkit_"
_INT_RE = re.compile(r"[+-]?[0-9]+")
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}

DriverBuilder = Callable[..., Driver]


def _parse_int(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise DriverError(f'invalid integer "{text}"')
    return int(text)


def _parse_bool(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise DriverError(f'invalid boolean "{text}"')


def deployment_name_from_builder(name: str) -> str:
    """Turn a builder node name into a deployment name.

    ``buildx_buildkit_loving_mendeleev0`` becomes ``loving-mendeleev0``.
    """
    if not name.startswith(_BUILDER_PREFIX):
        raise DriverError(f'expected a string with "{_BUILDER_PREFIX}", got "{name}"')
    return name.removeprefix(_BUILDER_PREFIX).replace("_", "-")


def _parse_node_selector(value: str) -> dict[str, str]:
    selector: dict[str, str] = {}
    for item in value.strip('"').split(","):
        parts = item.split("=")
        if len(parts) == 2:
            selector[parts[0]] = parts[1]
    return selector


def _parse_tolerations(value: str) -> list[Toleration]:
    tolerations = []
    for spec in value.split(";"):
        toleration = Toleration()
        for item in spec.split(","):
            parts = item.split("=")
            if len(parts) != 2:
                continue
            key, val = parts
            if key == "key":
                toleration.key = val
            elif key == "operator":
                toleration.operator = val
            elif key == "value":
                toleration.value = val
            elif key == "effect":
                toleration.effect = val
            elif key == "tolerationSeconds":
                toleration.toleration_seconds = _parse_int(val)
            else:
                raise DriverError(f'invalid tolaration "{value}"')
        tolerations.append(toleration)
    return tolerations


class KubernetesFactory(Factory):
    """Builds the deployment for a Kubernetes driver.

    ``build_driver`` receives the prepared deployment as keyword arguments
    (factory, config, client_config, namespace, deployment, config_maps,
    min_replicas, loadbalance) and returns the driver talking to the cluster.
    """

    name = DRIVER_NAME
    usage = DRIVER_NAME

    def __init__(self, build_driver: DriverBuilder | None = None) -> None:
        self._build_driver = build_driver

    def priority(self, endpoint: str, api: Any) -> int:
        return PRIORITY_UNSUPPORTED if api is None else PRIORITY_SUPPORTED

    def new(self, cfg: InitConfig) -> Driver:
        if cfg.kube_client_config is None:
            raise DriverError(f"{DRIVER_NAME} driver requires kubernetes API access")
        deployment_name = deployment_name_from_builder(cfg.name)
        try:
            namespace, _ = cfg.kube_client_config.namespace()
        except Exception as exc:
            raise DriverError(
                f"cannot determine Kubernetes namespace, specify manually: {exc}"
            ) from exc
        client_config = cfg.kube_client_config.client_config()

        opt, loadbalance, namespace = self.process_driver_opts(deployment_name, namespace, cfg)
        deployment, config_maps = new_deployment(opt)

        if self._build_driver is None:
            raise DriverError(f"{DRIVER_NAME} driver requires a kubernetes API client")
        return self._build_driver(
            factory=self,
            config=cfg,
            client_config=client_config,
            namespace=namespace,
            deployment=deployment,
            config_maps=config_maps,
            min_replicas=opt.replicas,
            loadbalance=loadbalance,
        )

    def process_driver_opts(
        self, deployment_name: str, namespace: str, cfg: InitConfig
    ) -> tuple[DeploymentOpt, str, str]:
        """Apply driver options; return the deployment options, load balancing and namespace."""
        opt = DeploymentOpt(
            name=deployment_name,
            image=DEFAULT_IMAGE,
            replicas=1,
            buildkit_flags=cfg.buildkit_flags,
            rootless=False,
            platforms=list(cfg.platforms),
            config_files=dict(cfg.files),
            qemu=QemuOpt(install=False, image=QEMU_IMAGE),
        )
        loadbalance = LOADBALANCE_STICKY

        for key, value in cfg.driver_opts.items():
            if key == "image":
                if value:
                    opt.image = value
            elif key == "namespace":
                namespace = value
            elif key == "replicas":
                opt.replicas = _parse_int(value)
            elif key == "requests.cpu":
                opt.requests_cpu = value
            elif key == "requests.memory":
                opt.requests_memory = value
            elif key == "limits.cpu":
                opt.limits_cpu = value
            elif key == "limits.memory":
                opt.limits_memory = value
            elif key == "rootless":
                opt.rootless = _parse_bool(value)
                if "image" not in cfg.driver_opts:
                    opt.image = DEFAULT_ROOTLESS_IMAGE
            elif key == "serviceaccount":
                opt.service_account_name = value
            elif key == "nodeselector":
                opt.node_selector = _parse_node_selector(value)
            elif key == "tolerations":
                opt.tolerations = _parse_tolerations(value)
            elif key == "loadbalance":
                if value not in (LOADBALANCE_STICKY, LOADBALANCE_RANDOM):
                    raise DriverError(f'invalid loadbalance "{value}"')
                loadbalance = value
            elif key == "qemu.install":
                opt.qemu.install = _parse_bool(value)
            elif key == "qemu.image":
                if value:
                    opt.qemu.image = value
            else:
                raise DriverError(f"invalid driver option {key} for driver {DRIVER_NAME}")

        return opt, loadbalance, namespace

    def allows_instances(self) -> bool:
        return True