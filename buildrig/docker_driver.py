"""Driver that builds with the daemon built into the Docker engine."""

from __future__ import annotations

import functools
from typing import Any, Callable

from buildrig.driver import (
    Driver,
    DriverError,
    DriverNotConnecting,
    Factory,
    Feature,
    Info,
    InitConfig,
    Status,
)
from buildrig.semver import Constraint, parse_constraint, parse_version

PRIORITY_SUPPORTED = 10
PRIORITY_UNSUPPORTED = 99

SNAPSHOTTER_LABEL = "org.mobyproject.buildkit.worker.snapshotter"

# Engine version constraint -> build daemon version embedded in that engine.
MOBY_BUILDKIT_VERSIONS: tuple[tuple[str, str], ...] = (
    (">= 18.06.0-0, < 18.06.1-0", "v0.0.0+9acf51e"),
    (">= 18.06.1-0, < 18.09.0-0", "v0.0.0+98f1604"),
    (">= 18.09.0-0, < 18.09.1-0", "v0.0.0+c7bb575"),
    ("~18.09.1-0", "v0.3.3"),
    ("> 18.09.1-0, < 18.09.6-0", "v0.3.3+d9f7592"),
    (">= 18.09.6-0, < 18.09.7-0", "v0.4.0+ed4da8b"),
    (">= 18.09.7-0, < 19.03.0-0", "v0.4.0+05766c5"),
    ("<= 19.03.0-beta2", "v0.4.0+b302896"),
    ("<= 19.03.0-beta3", "v0.4.0+8818c67"),
    ("<= 19.03.0-beta5", "v0.5.1+f238f1e"),
    ("< 19.03.2-0", "v0.5.1+1f89ec1"),
    ("<= 19.03.2-beta1", "v0.6.1"),
    (">= 19.03.2-0, < 19.03.3-0", "v0.6.1+588c73e"),
    (">= 19.03.3-0, < 19.03.5-beta2", "v0.6.2"),
    ("<= 19.03.5-rc1", "v0.6.2+ff93519"),
    ("<= 19.03.5", "v0.6.3+928f3b4"),
    ("<= 19.03.6-rc1", "v0.6.3+926935b"),
    (">= 19.03.6-rc2, < 19.03.7-0", "v0.6.3+57e8ad5"),
    (">= 19.03.7-0, < 19.03.9-0", "v0.6.4"),
    (">= 19.03.9-0, < 19.03.13-0", "v0.6.4+a7d7b7f"),
    ("<= 19.03.13-beta2", "v0.6.4+da1f4bf"),
    ("<= 19.03.14", "v0.6.4+df89d4d"),
    ("< 20.10.0", "v0.6.4+396bfe2"),
    ("20.10.0-0 - 20.10.2-0", "v0.8.1"),
    (">= 20.10.3-0, < 20.10.4-0", "v0.8.1+68bb095"),
    ("20.10.4-0 - 20.10.6", "v0.8.2"),
    ("20.10.7-0 - 20.10.10-0", "v0.8.2+244e8cde"),
    ("20.10.11-0 - 20.10.18-0", "v0.8.2+bc07b2b8"),
    (">= 20.10.19-0, < 20.10.20-0", "v0.8.2+3a1eeca5"),
    (">= 20.10.20-0, < 20.10.21-0", "v0.8.2+c0149372"),
    (">= 20.10.21-0, <= 20.10.23", "v0.8.2+eeb7b65"),
    ("~20.10-0", "v0.8+unknown"),
    ("~22.06-0", "v0.10.3"),
    (">= 23.0.0-0, < 23.0.1-0", "v0.10.6"),
    ("23.0.1", "v0.10.6+4f0ee09"),
    (">= 23.0.2-0, < 23.0.4-0", "v0.10.6+70f2ad5"),
    (">= 23.0.4-0, < 23.0.7-0", "v0.10.6+d52b2d5"),
    ("~23-0", "v0.10+unknown"),
)


@functools.lru_cache(maxsize=None)
def _constraint(text: str) -> Constraint:
    return parse_constraint(text)


def resolve_buildkit_version(version: str) -> str:
    """Map an engine version to its embedded daemon version, or "" if unknown.

    Raises ValueError when the engine version is not a semantic version.
    """
    engine = parse_version(version)
    for constraint, buildkit in MOBY_BUILDKIT_VERSIONS:
        if _constraint(constraint).check(engine):
            return buildkit
    return ""


Connector = Callable[[Any], Any]


class DockerDriver(Driver):
    """Uses the engine's API; the engine owns the daemon's lifecycle.

    The API object must provide ``version()`` returning a mapping with a
    ``"Version"`` key. ``connect(api)`` opens a client whose
    ``list_workers()`` yields workers with a ``labels`` mapping.
    """

    def __init__(self, factory: Factory, config: InitConfig, connect: Connector | None = None) -> None:
        super().__init__(factory, config)
        self._connect = connect

    def _engine_version(self) -> str:
        try:
            return self.config.docker_api.version()["Version"]
        except Exception as exc:
            raise DriverNotConnecting(f"{exc}: driver not connecting") from exc

    def bootstrap(self, logger: Any) -> None:
        return None

    def info(self) -> Info:
        self._engine_version()
        return Info(status=Status.RUNNING)

    def version(self) -> str:
        engine = self._engine_version()
        try:
            buildkit = resolve_buildkit_version(engine)
        except ValueError:
            buildkit = ""
        if buildkit:
            return buildkit
        return engine.removesuffix("-moby")

    def stop(self, force: bool) -> None:
        return None

    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None:
        return None

    def client(self) -> Any:
        if self._connect is None:
            raise DriverNotConnecting("no connector available for the docker engine")
        return self._connect(self.config.docker_api)

    def features(self) -> dict[Feature, bool]:
        snapshotter = False
        try:
            client = self.client()
        except Exception:
            client = None
        if client is not None:
            try:
                workers = client.list_workers()
            except Exception:
                workers = []
            snapshotter = any(SNAPSHOTTER_LABEL in (w.labels or {}) for w in workers)
            client.close()
        return {feature: snapshotter for feature in Feature}

    def is_moby_driver(self) -> bool:
        return True


class DockerFactory(Factory):
    name = "docker"
    usage = "docker"

    def __init__(self, connect: Connector | None = None) -> None:
        self._connect = connect

    def priority(self, endpoint: str, api: Any) -> int:
        if api is None:
            return PRIORITY_UNSUPPORTED
        try:
            conn = api.dial_hijack("/grpc", "h2c", None)
        except Exception:
            return PRIORITY_UNSUPPORTED
        conn.close()
        return PRIORITY_SUPPORTED

    def new(self, cfg: InitConfig) -> DockerDriver:
        if cfg.docker_api is None:
            raise DriverError("docker driver requires docker API access")
        if cfg.files:
            raise DriverError(
                "setting config file is not supported for docker driver, "
                "use dockerd configuration file"
            )
        return DockerDriver(self, cfg, self._connect)

    def allows_instances(self) -> bool:
        return False