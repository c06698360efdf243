from dataclasses import dataclass, field

import pytest

from buildrig.docker_driver import (
    MOBY_BUILDKIT_VERSIONS,
    PRIORITY_SUPPORTED,
    PRIORITY_UNSUPPORTED,
    SNAPSHOTTER_LABEL,
    DockerDriver,
    DockerFactory,
    resolve_buildkit_version,
)
from buildrig.driver import DriverError, DriverNotConnecting, Feature, InitConfig, Status
from buildrig.semver import parse_constraint, parse_version


class _Conn:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class _Api:
    def __init__(self, version="20.10.16", fail=False, dial_fail=False):
        self._version = version
        self._fail = fail
        self._dial_fail = dial_fail
        self.conns = []

    def version(self):
        if self._fail:
            raise OSError("connection refused")
        return {"Version": self._version}

    def dial_hijack(self, path, proto, meta):
        if self._dial_fail:
            raise OSError("cannot dial")
        conn = _Conn()
        self.conns.append(conn)
        return conn


@dataclass
class _Worker:
    labels: dict = field(default_factory=dict)


class _Client:
    def __init__(self, workers):
        self._workers = workers
        self.closed = False

    def list_workers(self):
        return self._workers

    def close(self):
        self.closed = True


@pytest.mark.parametrize("constraint", [c for c, _ in MOBY_BUILDKIT_VERSIONS])
def test_constraint(constraint):
    # Every constraint in the table parses and is bounded above.
    assert parse_constraint(constraint).check(parse_version("99.0.0")) is False


@pytest.mark.parametrize(
    "moby_version, expected",
    [
        ("18.06.1-ce", "v0.0.0+98f1604"),
        ("18.09.1-beta1", "v0.3.3"),
        ("19.03.0-beta1", "v0.4.0+b302896"),
        ("19.03.5-beta2", "v0.6.2+ff93519"),
        ("19.03.13-beta1", "v0.6.4+da1f4bf"),
        ("19.03.13-beta2", "v0.6.4+da1f4bf"),
        ("19.03.13", "v0.6.4+df89d4d"),
        ("20.10.3-rc.1", "v0.8.1+68bb095"),
        ("20.10.3", "v0.8.1+68bb095"),
        ("20.10.4", "v0.8.2"),
        ("20.10.16", "v0.8.2+bc07b2b8"),
        ("20.10.19", "v0.8.2+3a1eeca5"),
        ("20.10.23", "v0.8.2+eeb7b65"),
        ("20.10.24", "v0.8+unknown"),
        ("20.10.50", "v0.8+unknown"),
        ("22.06.0-beta.0", "v0.10.3"),
        ("22.06.0", "v0.10.3"),
        ("23.0.0-rc.4", "v0.10.6"),
        ("23.0.0", "v0.10.6"),
        ("23.0.1", "v0.10.6+4f0ee09"),
        ("23.0.2-rc.1", "v0.10.6+70f2ad5"),
        ("23.0.3", "v0.10.6+70f2ad5"),
        ("23.0.5", "v0.10.6+d52b2d5"),
        ("23.0.7", "v0.10+unknown"),
    ],
)
def test_resolve_buildkit_version(moby_version, expected):
    assert resolve_buildkit_version(moby_version) == expected


def test_resolve_unknown_version_is_empty():
    assert resolve_buildkit_version("24.0.2") == ""


def test_resolve_invalid_version_raises():
    with pytest.raises(ValueError):
        resolve_buildkit_version("not-a-version")


def test_priority_without_api():
    assert DockerFactory().priority("", None) == PRIORITY_UNSUPPORTED


def test_priority_with_reachable_api_closes_connection():
    api = _Api()
    assert DockerFactory().priority("", api) == PRIORITY_SUPPORTED
    assert [c.closed for c in api.conns] == [True]


def test_priority_when_dial_fails():
    assert DockerFactory().priority("", _Api(dial_fail=True)) == PRIORITY_UNSUPPORTED


def test_factory_does_not_allow_instances():
    assert DockerFactory().allows_instances() is False
    assert DockerFactory.name == "docker"


def test_new_requires_api():
    with pytest.raises(DriverError, match="requires docker API access"):
        DockerFactory().new(InitConfig(name="default"))


def test_new_rejects_config_files():
    cfg = InitConfig(name="default", docker_api=_Api(), files={"buildkitd.toml": b"debug = true"})
    with pytest.raises(DriverError, match="config file is not supported"):
        DockerFactory().new(cfg)


def test_new_returns_moby_driver():
    factory = DockerFactory()
    driver = factory.new(InitConfig(name="default", docker_api=_Api()))
    assert isinstance(driver, DockerDriver)
    assert driver.is_moby_driver() is True
    assert driver.factory is factory


def test_info_running():
    driver = DockerFactory().new(InitConfig(docker_api=_Api()))
    assert driver.info().status == Status.RUNNING


def test_info_unreachable_raises_not_connecting():
    driver = DockerFactory().new(InitConfig(docker_api=_Api(fail=True)))
    with pytest.raises(DriverNotConnecting, match="connection refused"):
        driver.info()


def test_version_resolves_embedded_daemon():
    driver = DockerFactory().new(InitConfig(docker_api=_Api("20.10.16")))
    assert driver.version() == "v0.8.2+bc07b2b8"


def test_version_falls_back_to_engine_version():
    assert DockerFactory().new(InitConfig(docker_api=_Api("24.0.2"))).version() == "24.0.2"
    assert DockerFactory().new(InitConfig(docker_api=_Api("dev-moby"))).version() == "dev"


def test_version_unreachable_raises():
    driver = DockerFactory().new(InitConfig(docker_api=_Api(fail=True)))
    with pytest.raises(DriverNotConnecting):
        driver.version()


def test_features_with_snapshotter():
    client = _Client([_Worker({SNAPSHOTTER_LABEL: "overlayfs"})])
    driver = DockerFactory(connect=lambda api: client).new(InitConfig(docker_api=_Api()))
    assert driver.features() == {f: True for f in Feature}
    assert client.closed is True


def test_features_without_snapshotter():
    client = _Client([_Worker({"org.mobyproject.buildkit.worker.executor": "oci"})])
    driver = DockerFactory(connect=lambda api: client).new(InitConfig(docker_api=_Api()))
    assert driver.features() == {f: False for f in Feature}


def test_features_without_client():
    driver = DockerFactory().new(InitConfig(docker_api=_Api()))
    assert driver.features() == {f: False for f in Feature}
    with pytest.raises(DriverNotConnecting):
        driver.client()


def test_stop_and_rm_leave_engine_alone():
    api = _Api()
    driver = DockerFactory().new(InitConfig(docker_api=api))
    assert driver.stop(True) is None
    assert driver.rm(True, True, True) is None
    assert driver.info().status == Status.RUNNING