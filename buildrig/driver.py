"""Driver abstractions, feature flags and the registry of driver factories."""

from __future__ import annotations

import abc
import enum
import threading
from dataclasses import dataclass, field
from typing import Any

DEFAULT_IMAGE = "moby/buildkit:buildx-stable-1"
QEMU_IMAGE = "tonistiigi/binfmt:latest"
DEFAULT_ROOTLESS_IMAGE = DEFAULT_IMAGE + "-rootless"


class DriverError(Exception):
    """Base error raised by drivers and the driver registry."""


class DriverNotRunning(DriverError):
    """The driver's daemon is not running."""

    def __init__(self, message: str = "driver not running") -> None:
        super().__init__(message)


class DriverNotConnecting(DriverError):
    """The driver cannot reach its daemon."""

    def __init__(self, message: str = "driver not connecting") -> None:
        super().__init__(message)


class Status(enum.IntEnum):
    INACTIVE = 0
    STARTING = 1
    RUNNING = 2
    STOPPING = 3
    STOPPED = 4

    def __str__(self) -> str:
        return self.name.lower()


class Feature(str, enum.Enum):
    OCI_EXPORTER = "OCI exporter"
    DOCKER_EXPORTER = "Docker exporter"
    CACHE_EXPORT = "Cache export"
    MULTI_PLATFORM = "Multiple platforms"


@dataclass
class Info:
    status: Status
    # Must stay empty when the nodes are listed statically in the store.
    dynamic_nodes: list[Any] = field(default_factory=list)


@dataclass
class InitConfig:
    name: str = ""
    endpoint_addr: str = ""
    docker_api: Any = None
    kube_client_config: Any = None
    buildkit_flags: list[str] | None = None
    files: dict[str, bytes] = field(default_factory=dict)
    driver_opts: dict[str, str] = field(default_factory=dict)
    auth: Any = None
    platforms: list[Any] = field(default_factory=list)
    # Used to pick pods in a driver instance.
    context_path_hash: str = ""


class Factory(abc.ABC):
    """Creates drivers of one kind."""

    name: str = ""
    usage: str = ""

    @abc.abstractmethod
    def priority(self, endpoint: str, api: Any) -> int:
        """Lower numbers are preferred when picking a default driver."""

    @abc.abstractmethod
    def new(self, cfg: InitConfig) -> "Driver":
        """Create a driver from an init config."""

    @abc.abstractmethod
    def allows_instances(self) -> bool:
        """Whether more than one instance of this driver may be created."""


class Driver(abc.ABC):
    """A connection to one build daemon."""

    def __init__(self, factory: Factory, config: InitConfig) -> None:
        self.factory = factory
        self.config = config

    @abc.abstractmethod
    def bootstrap(self, logger: Any) -> None: ...

    @abc.abstractmethod
    def info(self) -> Info: ...

    @abc.abstractmethod
    def version(self) -> str: ...

    @abc.abstractmethod
    def stop(self, force: bool) -> None: ...

    @abc.abstractmethod
    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None: ...

    @abc.abstractmethod
    def client(self) -> Any: ...

    @abc.abstractmethod
    def features(self) -> dict[Feature, bool]: ...

    @abc.abstractmethod
    def is_moby_driver(self) -> bool: ...


class DriverHandle:
    """Wraps a driver and computes its client and features only once."""

    def __init__(self, driver: Driver) -> None:
        self.driver = driver
        self._lock = threading.Lock()
        self._client_done = False
        self._client: Any = None
        self._client_error: BaseException | None = None
        self._features: dict[Feature, bool] | None = None

    def __getattr__(self, name: str) -> Any:
        if name == "driver":
            raise AttributeError(name)
        return getattr(self.driver, name)

    def client(self) -> Any:
        with self._lock:
            if not self._client_done:
                try:
                    self._client = self.driver.client()
                except Exception as exc:  # cached and re-raised on every call
                    self._client_error = exc
                self._client_done = True
        if self._client_error is not None:
            raise self._client_error
        return self._client

    def features(self) -> dict[Feature, bool]:
        with self._lock:
            if self._features is None:
                self._features = self.driver.features()
        return self._features


def boot(handle: DriverHandle, logger: Any = None) -> Any:
    """Bring the driver up if needed and return its client."""
    attempt = 0
    while True:
        info = handle.info()
        attempt += 1
        if info.status != Status.RUNNING:
            if attempt > 2:
                raise DriverError(
                    f"failed to bootstrap {type(handle.driver).__name__} driver in attempts"
                )
            handle.bootstrap(logger)
        try:
            return handle.client()
        except DriverNotRunning:
            if attempt <= 2:
                continue
            raise


class Registry:
    """Registered driver factories, looked up by name or by priority."""

    def __init__(self) -> None:
        self._factories: dict[str, Factory] = {}

    def register(self, factory: Factory) -> None:
        self._factories[factory.name] = factory

    def _eligible(self, instance_required: bool) -> list[Factory]:
        return [
            f
            for f in self._factories.values()
            if not (instance_required and not f.allows_instances())
        ]

    def get_default_factory(self, endpoint: str, api: Any, instance_required: bool) -> Factory:
        if not self._factories:
            raise DriverError("no drivers available")
        ranked = [(f.priority(endpoint, api), f) for f in self._eligible(instance_required)]
        if not ranked:
            raise DriverError("no drivers available")
        return min(ranked, key=lambda item: item[0])[1]

    def get_factory(self, name: str, instance_required: bool) -> Factory:
        factory = self._factories.get(name)
        if factory is None:
            raise DriverError(f'failed to find driver "{name}"')
        if instance_required and not factory.allows_instances():
            raise DriverError(f'additional instances of driver "{name}" cannot be created')
        return factory

    def get_factories(self, instance_required: bool) -> list[Factory]:
        return sorted(self._eligible(instance_required), key=lambda f: f.name)

    def get_driver(
        self,
        name: str,
        factory: Factory | None,
        endpoint_addr: str,
        api: Any,
        auth: Any,
        kube_client_config: Any,
        flags: list[str] | None,
        files: dict[str, bytes] | None,
        driver_opts: dict[str, str] | None,
        platforms: list[Any] | None,
        context_path_hash: str,
    ) -> DriverHandle:
        cfg = InitConfig(
            name=name,
            endpoint_addr=endpoint_addr,
            docker_api=api,
            kube_client_config=kube_client_config,
            buildkit_flags=flags,
            files=dict(files or {}),
            driver_opts=dict(driver_opts or {}),
            auth=auth,
            platforms=list(platforms or []),
            context_path_hash=context_path_hash,
        )
        if factory is None:
            factory = self.get_default_factory(endpoint_addr, api, False)
        return DriverHandle(factory.new(cfg))


_registry = Registry()


def register(factory: Factory) -> None:
    _registry.register(factory)


def get_default_factory(endpoint: str, api: Any, instance_required: bool) -> Factory:
    return _registry.get_default_factory(endpoint, api, instance_required)


def get_factory(name: str, instance_required: bool) -> Factory:
    return _registry.get_factory(name, instance_required)


def get_factories(instance_required: bool) -> list[Factory]:
    return _registry.get_factories(instance_required)


def get_driver(
    name, factory, endpoint_addr, api, auth, kube_client_config, flags, files,
    driver_opts, platforms, context_path_hash,
) -> DriverHandle:
    return _registry.get_driver(
        name, factory, endpoint_addr, api, auth, kube_client_config, flags, files,
        driver_opts, platforms, context_path_hash,
    )